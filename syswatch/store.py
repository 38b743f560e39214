import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from sqlalchemy import delete, func, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from .database import utcnow
from .errors import ConfigurationError, StorageReadFailed, StorageWriteFailed
from .models import TABLES, Alert, DiskMetric, SystemEvent, SystemInfo

logger = logging.getLogger(__name__)


class MetricsStore:
    """
    Persistence sink shared by the collector and the alert engine.

    Every method opens its own session from the pool, so concurrent callers
    queue on pool checkout rather than on each other.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    def _model(self, table: str):
        try:
            return TABLES[table]
        except KeyError:
            raise ConfigurationError(f"unknown table: {table}") from None

    # -------------------------------------------------------
    # Generic time-series contract
    # -------------------------------------------------------

    async def insert(self, table: str, record: Dict[str, Any]) -> int:
        model = self._model(table)
        columns = model.__table__.columns.keys()
        row = model(**{k: v for k, v in record.items() if k in columns and k != "id"})
        try:
            async with self.session_factory() as session:
                session.add(row)
                await session.commit()
                return row.id
        except SQLAlchemyError as exc:
            raise StorageWriteFailed(table, str(exc)) from exc

    async def query_latest(self, table: str, limit: int = 100) -> List[Dict[str, Any]]:
        model = self._model(table)
        stmt = select(model).order_by(model.timestamp.desc(), model.id.desc()).limit(limit)
        return await self._fetch(table, stmt)

    async def query_range(
        self, table: str, start: datetime, end: datetime, limit: int = 1000
    ) -> List[Dict[str, Any]]:
        model = self._model(table)
        stmt = (
            select(model)
            .where(model.timestamp >= start, model.timestamp <= end)
            .order_by(model.timestamp.desc(), model.id.desc())
            .limit(limit)
        )
        return await self._fetch(table, stmt)

    async def delete_older_than(self, table: str, days: int) -> int:
        model = self._model(table)
        cutoff = utcnow() - timedelta(days=days)
        try:
            async with self.session_factory() as session:
                result = await session.execute(delete(model).where(model.timestamp < cutoff))
                await session.commit()
                return result.rowcount or 0
        except SQLAlchemyError as exc:
            raise StorageWriteFailed(table, str(exc)) from exc

    async def ping(self) -> bool:
        try:
            async with self.session_factory() as session:
                await session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as exc:
            logger.error("Database ping failed: %s", exc)
            return False

    async def _fetch(self, table: str, stmt) -> List[Dict[str, Any]]:
        try:
            async with self.session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            raise StorageReadFailed(table, str(exc)) from exc
        return [r.to_dict() for r in rows]

    # -------------------------------------------------------
    # Alerts
    # -------------------------------------------------------

    async def get_alert(self, alert_id: int) -> Optional[Dict[str, Any]]:
        rows = await self._fetch("alerts", select(Alert).where(Alert.id == alert_id))
        return rows[0] if rows else None

    async def list_alerts(
        self,
        limit: int = 50,
        offset: int = 0,
        severity: Optional[str] = None,
        resolved: Optional[bool] = None,
        alert_type: Optional[str] = None,
        hours: Optional[float] = None,
    ) -> List[Dict[str, Any]]:
        stmt = select(Alert)
        if hours is not None:
            stmt = stmt.where(Alert.timestamp >= utcnow() - timedelta(hours=hours))
        if severity:
            stmt = stmt.where(Alert.severity == severity)
        if resolved is not None:
            stmt = stmt.where(Alert.resolved.is_(resolved))
        if alert_type:
            stmt = stmt.where(Alert.alert_type == alert_type)
        stmt = stmt.order_by(Alert.timestamp.desc(), Alert.id.desc()).limit(limit).offset(offset)
        return await self._fetch("alerts", stmt)

    async def active_alerts(self) -> List[Dict[str, Any]]:
        return await self.list_alerts(limit=1000, resolved=False)

    async def resolve_alert(self, alert_id: int) -> bool:
        """Mark one open alert resolved. False when missing or already resolved."""
        stmt = (
            update(Alert)
            .where(Alert.id == alert_id, Alert.resolved.is_(False))
            .values(resolved=True, resolved_at=utcnow())
        )
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
                return (result.rowcount or 0) > 0
        except SQLAlchemyError as exc:
            raise StorageWriteFailed("alerts", str(exc)) from exc

    async def resolve_alerts(
        self, alert_type: Optional[str] = None, severity: Optional[str] = None
    ) -> List[int]:
        conditions = [Alert.resolved.is_(False)]
        if alert_type:
            conditions.append(Alert.alert_type == alert_type)
        if severity:
            conditions.append(Alert.severity == severity)
        try:
            async with self.session_factory() as session:
                ids = (await session.execute(select(Alert.id).where(*conditions))).scalars().all()
                if ids:
                    await session.execute(
                        update(Alert)
                        .where(Alert.id.in_(ids), Alert.resolved.is_(False))
                        .values(resolved=True, resolved_at=utcnow())
                    )
                    await session.commit()
                return list(ids)
        except SQLAlchemyError as exc:
            raise StorageWriteFailed("alerts", str(exc)) from exc

    async def recovered_alert_ids(
        self, alert_type: str, table: str, column: str, below: float, since: datetime
    ) -> List[int]:
        """Open alerts of alert_type with a later sample in the window where column < below."""
        metric = self._model(table)
        value = getattr(metric, column)
        recovered = (
            select(metric.id)
            .where(metric.timestamp > Alert.timestamp, metric.timestamp >= since, value < below)
            .exists()
        )
        stmt = select(Alert.id).where(
            Alert.alert_type == alert_type, Alert.resolved.is_(False), recovered
        )
        try:
            async with self.session_factory() as session:
                return list((await session.execute(stmt)).scalars().all())
        except SQLAlchemyError as exc:
            raise StorageReadFailed("alerts", str(exc)) from exc

    # -------------------------------------------------------
    # Category helpers
    # -------------------------------------------------------

    async def latest_disk_usage(self, since: datetime) -> List[Dict[str, Any]]:
        """Newest disk row per (filesystem, mount_point) recorded since `since`."""
        newest = (
            select(
                DiskMetric.filesystem,
                DiskMetric.mount_point,
                func.max(DiskMetric.timestamp).label("ts"),
            )
            .where(DiskMetric.timestamp >= since)
            .group_by(DiskMetric.filesystem, DiskMetric.mount_point)
            .subquery()
        )
        stmt = (
            select(DiskMetric)
            .join(
                newest,
                (DiskMetric.filesystem == newest.c.filesystem)
                & (DiskMetric.mount_point == newest.c.mount_point)
                & (DiskMetric.timestamp == newest.c.ts),
            )
            .order_by(DiskMetric.mount_point)
        )
        return await self._fetch("disk_metrics", stmt)

    async def record_event(self, event_type: str, event_data: Dict[str, Any], description: str) -> int:
        return await self.insert(
            SystemEvent.__tablename__,
            {"event_type": event_type, "event_data": event_data, "description": description},
        )

    async def list_events(self, event_type: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        stmt = select(SystemEvent)
        if event_type:
            stmt = stmt.where(SystemEvent.event_type == event_type)
        stmt = stmt.order_by(SystemEvent.timestamp.desc(), SystemEvent.id.desc()).limit(limit)
        return await self._fetch("system_events", stmt)

    async def upsert_system_info(self, info: Dict[str, Any]) -> None:
        try:
            async with self.session_factory() as session:
                row = (
                    await session.execute(select(SystemInfo).where(SystemInfo.hostname == info["hostname"]))
                ).scalar_one_or_none()
                if row is None:
                    session.add(SystemInfo(**info))
                else:
                    for key in ("platform", "arch", "kernel", "uptime_seconds", "boot_time"):
                        setattr(row, key, info.get(key))
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageWriteFailed("system_info", str(exc)) from exc

    async def summarize(self, table: str, columns: Sequence[str], hours: float = 24) -> Dict[str, Any]:
        """avg/min/max/count per column over the last `hours`, ignoring nulls."""
        model = self._model(table)
        cols = [getattr(model, c) for c in columns]
        stmt = select(*cols).where(model.timestamp >= utcnow() - timedelta(hours=hours))
        try:
            async with self.session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as exc:
            raise StorageReadFailed(table, str(exc)) from exc

        summary: Dict[str, Any] = {}
        for i, name in enumerate(columns):
            vals = np.array([r[i] for r in rows if r[i] is not None], dtype=float)
            if vals.size == 0:
                summary[name] = None
                continue
            summary[name] = {
                "avg": round(float(np.mean(vals)), 2),
                "min": float(np.min(vals)),
                "max": float(np.max(vals)),
                "count": int(vals.size),
            }
        return summary
