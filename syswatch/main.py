import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .config import Settings, get_settings
from .errors import ConfigurationError, StorageError, TransportSendFailed
from .hub import NORMAL_CLOSURE
from .logger import setup_logging
from .pipeline import MonitorPipeline
from .sensors import MetricCategory

LATEST_LIMITS = {
    MetricCategory.CPU: 1,
    MetricCategory.MEMORY: 1,
    MetricCategory.DISK: 5,
    MetricCategory.NETWORK: 10,
    MetricCategory.PROCESS: 1,
    MetricCategory.GPU: 1,
}


class ResolveRequest(BaseModel):
    resolved_by: Optional[str] = None


class BulkResolveRequest(BaseModel):
    alert_type: Optional[str] = None
    severity: Optional[str] = None
    resolved_by: Optional[str] = None


class ThresholdUpdate(BaseModel):
    cpu: Optional[float] = None
    memory: Optional[float] = None
    disk: Optional[float] = None
    temperature: Optional[float] = None
    load: Optional[float] = None


class WebSocketTransport:
    """Adapts a Starlette WebSocket to the hub's transport interface."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.client_id: Optional[str] = None

    async def send_text(self, data: str) -> None:
        try:
            await self.websocket.send_text(data)
        except (RuntimeError, WebSocketDisconnect) as exc:
            raise TransportSendFailed(self.client_id or "unregistered", str(exc)) from exc

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        await self.websocket.close(code=code, reason=reason)


def get_pipeline(request: Request) -> MonitorPipeline:
    return request.app.state.pipeline


def create_app(settings: Optional[Settings] = None, pipeline: Optional[MonitorPipeline] = None) -> FastAPI:
    settings = settings or get_settings()
    pipeline = pipeline or MonitorPipeline(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.LOG_DIR, settings.LOG_LEVEL)
        app.state.started_at = time.time()
        await pipeline.start()
        try:
            yield
        finally:
            await pipeline.stop()

    app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION, lifespan=lifespan)
    app.state.pipeline = pipeline
    app.state.started_at = time.time()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -------------------------------------------------------
    # Service
    # -------------------------------------------------------

    @app.get("/")
    def root():
        return {"message": f"{settings.APP_NAME} host monitoring backend", "version": settings.APP_VERSION}

    @app.get("/api/health")
    async def health(request: Request, p: MonitorPipeline = Depends(get_pipeline)):
        db_ok = await p.store.ping()
        return {
            "status": "healthy" if db_ok else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "database": "connected" if db_ok else "disconnected",
            "uptime": round(time.time() - request.app.state.started_at, 3),
            "collecting": p.collector.is_collecting,
            "monitoring": p.alerts.is_monitoring,
            "clients": len(p.hub.clients),
            "version": settings.APP_VERSION,
        }

    # -------------------------------------------------------
    # Metrics
    # -------------------------------------------------------

    @app.get("/api/metrics/latest")
    async def latest_metrics(p: MonitorPipeline = Depends(get_pipeline)):
        result = {}
        try:
            for category, limit in LATEST_LIMITS.items():
                result[category.payload_key] = await p.store.query_latest(category.table, limit)
        except StorageError as exc:
            raise HTTPException(status_code=500, detail=str(exc))
        result["timestamp"] = datetime.now(timezone.utc).isoformat()
        return result

    @app.get("/api/metrics/summary")
    async def metrics_summary(hours: float = Query(24, gt=0), p: MonitorPipeline = Depends(get_pipeline)):
        try:
            cpu = await p.store.summarize("cpu_metrics", ["cpu_usage_percent", "cpu_temp_celsius"], hours)
            memory = await p.store.summarize("memory_metrics", ["usage_percent", "used_bytes"], hours)
            disk = await p.store.summarize("disk_metrics", ["usage_percent"], hours)
        except StorageError as exc:
            raise HTTPException(status_code=500, detail=str(exc))
        return {
            "period_hours": hours,
            "cpu": cpu,
            "memory": memory,
            "disk": disk,
            "generated_at": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/api/metrics/{category}")
    async def category_metrics(
        category: MetricCategory,
        limit: int = Query(100, ge=1, le=10000),
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        p: MonitorPipeline = Depends(get_pipeline),
    ):
        try:
            if start is not None or end is not None:
                start = start or datetime.min
                end = end or datetime.max
                return await p.store.query_range(category.table, _naive_utc(start), _naive_utc(end), limit)
            return await p.store.query_latest(category.table, limit)
        except StorageError as exc:
            raise HTTPException(status_code=500, detail=str(exc))

    # -------------------------------------------------------
    # Alerts
    # -------------------------------------------------------

    @app.get("/api/alerts")
    async def get_alerts(
        limit: int = Query(50, ge=1, le=1000),
        offset: int = Query(0, ge=0),
        severity: Optional[str] = None,
        resolved: Optional[bool] = None,
        alert_type: Optional[str] = None,
        hours: float = Query(24, gt=0),
        p: MonitorPipeline = Depends(get_pipeline),
    ):
        try:
            alerts = await p.store.list_alerts(
                limit=limit, offset=offset, severity=severity, resolved=resolved, alert_type=alert_type, hours=hours
            )
        except StorageError as exc:
            raise HTTPException(status_code=500, detail=str(exc))
        return {"count": len(alerts), "alerts": alerts}

    @app.get("/api/alerts/active")
    async def get_active_alerts(p: MonitorPipeline = Depends(get_pipeline)):
        try:
            return await p.store.active_alerts()
        except StorageError as exc:
            raise HTTPException(status_code=500, detail=str(exc))

    @app.get("/api/alerts/thresholds")
    def get_thresholds(p: MonitorPipeline = Depends(get_pipeline)):
        return p.alerts.thresholds.model_dump()

    @app.put("/api/alerts/thresholds")
    def put_thresholds(body: ThresholdUpdate, p: MonitorPipeline = Depends(get_pipeline)):
        try:
            updated = p.alerts.update_thresholds(body.model_dump(exclude_none=True))
        except ConfigurationError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        return updated.model_dump()

    @app.put("/api/alerts/resolve-all")
    async def resolve_all(body: BulkResolveRequest, p: MonitorPipeline = Depends(get_pipeline)):
        try:
            count = await p.alerts.resolve_alerts(body.alert_type, body.severity, body.resolved_by or "system")
        except ConfigurationError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        except StorageError as exc:
            raise HTTPException(status_code=500, detail=str(exc))
        return {"message": f"{count} alerts resolved successfully", "count": count}

    @app.put("/api/alerts/{alert_id}/resolve")
    async def resolve_alert(alert_id: int, body: ResolveRequest, p: MonitorPipeline = Depends(get_pipeline)):
        try:
            resolved = await p.alerts.resolve_alert(alert_id, body.resolved_by or "system")
        except StorageError as exc:
            raise HTTPException(status_code=500, detail=str(exc))
        if not resolved:
            raise HTTPException(status_code=404, detail="Alert not found or already resolved")
        return {"message": "Alert resolved successfully"}

    # -------------------------------------------------------
    # System
    # -------------------------------------------------------

    @app.get("/api/system/info")
    async def system_info(p: MonitorPipeline = Depends(get_pipeline)):
        try:
            rows = await p.store.query_latest("system_info", 1)
        except StorageError as exc:
            raise HTTPException(status_code=500, detail=str(exc))
        return {"system": rows[0] if rows else None, "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.get("/api/system/events")
    async def system_events(
        event_type: Optional[str] = None,
        limit: int = Query(100, ge=1, le=1000),
        p: MonitorPipeline = Depends(get_pipeline),
    ):
        try:
            return await p.store.list_events(event_type=event_type, limit=limit)
        except StorageError as exc:
            raise HTTPException(status_code=500, detail=str(exc))

    @app.get("/api/system/clients")
    def client_stats(p: MonitorPipeline = Depends(get_pipeline)):
        return p.hub.get_client_stats()

    # -------------------------------------------------------
    # Live feed
    # -------------------------------------------------------

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        hub = websocket.app.state.pipeline.hub
        await websocket.accept()
        transport = WebSocketTransport(websocket)
        conn = await hub.connect(
            transport,
            client_host=websocket.client.host if websocket.client else None,
            user_agent=websocket.headers.get("user-agent"),
        )
        transport.client_id = conn.id
        try:
            while conn.id in hub.clients:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    hub.disconnect(conn.id, message.get("code"))
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes", b"")
                await hub.handle_message(conn.id, raw)
        except WebSocketDisconnect as exc:
            hub.disconnect(conn.id, exc.code)

    return app


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


app = create_app()


def run():
    import uvicorn

    settings = get_settings()
    uvicorn.run("syswatch.main:app", host=settings.HOST, port=settings.PORT)


if __name__ == "__main__":
    run()
