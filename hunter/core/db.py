import os

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy import text
from sqlalchemy.pool import NullPool
from .config import settings
from .logger import get_logger

_use_null_pool = bool(os.getenv("PYTEST_CURRENT_TEST")) or (settings.app_env or "").strip().lower() in {"test", "pytest"}
engine = create_async_engine(
    settings.database_url,
    echo=False,
    pool_pre_ping=True,
    poolclass=NullPool if _use_null_pool else None,
)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
log = get_logger("db")

# Tables the hosted database must already provide; this service only reads/writes them.
HOSTED_TABLES = (
    "profiles",
    "jackpot_groups",
    "fixtures",
    "jackpot_variants",
    "predictions",
    "variant_settlements",
    "payout_rules",
    "cycles",
    "cycle_variants",
    "cycle_subscriptions",
    "participants",
    "credit_ledger",
)


async def _missing_hosted_tables(conn) -> list[str]:
    res = await conn.execute(
        text(
            """
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema='public' AND table_type='BASE TABLE'
            """
        )
    )
    present = {row.table_name for row in res.fetchall()}
    return [name for name in HOSTED_TABLES if name not in present]


async def _has_alembic_version(conn) -> bool:
    res = await conn.execute(
        text(
            """
            SELECT 1
            FROM information_schema.tables
            WHERE table_schema='public'
              AND table_type='BASE TABLE'
              AND table_name='alembic_version'
            LIMIT 1
            """
        )
    )
    return res.first() is not None


async def init_db():
    dev = (settings.app_env or "").lower() == "dev"
    async with engine.begin() as conn:
        missing = await _missing_hosted_tables(conn)
        if missing:
            msg = f"hosted schema is incomplete; missing tables: {', '.join(missing)}"
            if dev:
                log.warning(msg)
                return
            raise RuntimeError(msg)

        if not await _has_alembic_version(conn):
            msg = "service tables are not initialized; run `alembic upgrade head`"
            if dev:
                log.warning(msg)
                return
            raise RuntimeError(msg)


async def get_session():
    async with SessionLocal() as session:
        yield session
