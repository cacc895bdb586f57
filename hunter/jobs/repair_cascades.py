from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from hunter.core.config import settings
from hunter.core.logger import get_logger
from hunter.services import settling

log = get_logger("jobs.repair_cascades")


async def run(session: AsyncSession) -> dict:
    """Retry failed cycle cascades for settled groups, oldest attempt first."""
    group_ids = await settling.failed_cascades(
        session,
        max_attempts=int(settings.cascade_repair_max_attempts or 5),
        limit=int(settings.cascade_repair_batch or 20),
    )
    await session.commit()
    repaired = 0
    failed = 0
    for gid in group_ids:
        outcome = await settling.repair_cascade(session, gid)
        if isinstance(outcome, settling.Settled):
            repaired += 1
        else:
            failed += 1
    out = {"candidates": len(group_ids), "repaired": repaired, "still_failed": failed}
    log.info("repair_cascades done %s", out)
    return out
