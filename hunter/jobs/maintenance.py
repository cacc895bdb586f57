from __future__ import annotations

from datetime import timedelta

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from hunter.core.config import settings
from hunter.core.logger import get_logger
from hunter.core.timeutils import utcnow

log = get_logger("jobs.maintenance")


async def _cleanup_job_runs(session: AsyncSession) -> dict:
    days = int(getattr(settings, "job_runs_retention_days", 90) or 90)
    if days <= 0:
        return {"job_runs_deleted": 0}
    cutoff = utcnow() - timedelta(days=days)
    res = await session.execute(
        text(
            """
            DELETE FROM job_runs
            WHERE finished_at IS NOT NULL
              AND finished_at < :cutoff
            """
        ),
        {"cutoff": cutoff},
    )
    return {"job_runs_deleted": int(res.rowcount or 0)}


async def _expire_cycles(session: AsyncSession) -> dict:
    res = await session.execute(
        text(
            """
            UPDATE cycles
            SET status = 'expired'
            WHERE status IN ('active', 'waiting')
              AND max_end_at IS NOT NULL
              AND max_end_at < now()
            """
        )
    )
    return {"cycles_expired": int(res.rowcount or 0)}


async def run(session: AsyncSession) -> dict:
    log.info("maintenance start")
    out: dict = {}
    out.update(await _cleanup_job_runs(session))
    out.update(await _expire_cycles(session))
    await session.commit()
    log.info("maintenance done %s", out)
    return out
