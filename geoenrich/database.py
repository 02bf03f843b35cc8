from sqlalchemy import MetaData, create_engine
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from geoenrich.config import settings

convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=convention)


class Base(DeclarativeBase):
    metadata = metadata


def _engine_kwargs(url: str) -> dict:
    kwargs: dict = {"echo": settings.app_debug}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs["pool_size"] = 5
        kwargs["max_overflow"] = 5
        kwargs["pool_pre_ping"] = True
    return kwargs


def sync_url(url: str) -> str:
    """Map an async driver URL onto its blocking counterpart.

    The emergency checkpoint is written from an atexit/signal handler where no
    event loop can be relied upon, so it needs a plain synchronous engine.
    """
    for async_driver, sync_driver in (
        ("sqlite+aiosqlite", "sqlite"),
        ("postgresql+asyncpg", "postgresql"),
    ):
        if url.startswith(async_driver):
            return sync_driver + url[len(async_driver):]
    return url


def build_engine(url: str | None = None) -> AsyncEngine:
    url = url or settings.effective_database_url
    return create_async_engine(url, **_engine_kwargs(url))


def build_sync_engine(url: str | None = None):
    url = sync_url(url or settings.effective_database_url)
    return create_engine(url, **_engine_kwargs(url))


engine = build_engine()


async def create_all_tables(target: AsyncEngine | None = None):
    """Create the key-value table if it does not exist yet."""
    from geoenrich.models.kv_entry import KVEntry

    async with (target or engine).begin() as conn:
        for table in [KVEntry.__table__]:
            await conn.run_sync(lambda sync_conn, t=table: t.create(sync_conn, checkfirst=True))
