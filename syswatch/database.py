from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import AsyncAdaptedQueuePool

from .errors import StorageInitError


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every table stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ModelBase:
    def to_dict(self) -> Dict[str, Any]:
        return {c.name: getattr(self, c.name) for c in self.__table__.columns}


Base = declarative_base(cls=ModelBase)


def _is_memory_sqlite(url: str) -> bool:
    u = make_url(url)
    return u.get_backend_name() == "sqlite" and u.database in (None, "", ":memory:")


def create_engine(url: str, *, pool_size: int = 20, pool_timeout: float = 30.0, echo: bool = False) -> AsyncEngine:
    """
    Fixed-size pool: no overflow connections, so a burst of writers waits
    for a free connection (up to pool_timeout) instead of failing.
    """
    if _is_memory_sqlite(url):
        # in-memory SQLite lives in a single shared connection
        return create_async_engine(url, echo=echo)
    return create_async_engine(
        url,
        echo=echo,
        poolclass=AsyncAdaptedQueuePool,
        pool_size=pool_size,
        max_overflow=0,
        pool_timeout=pool_timeout,
        pool_pre_ping=True,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


async def init_models(engine: AsyncEngine) -> None:
    from . import models  # noqa: F401  registers tables on Base.metadata

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except SQLAlchemyError as exc:
        raise StorageInitError("database", str(exc)) from exc
