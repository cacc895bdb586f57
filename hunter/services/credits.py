from __future__ import annotations

from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from hunter.core.logger import get_logger

log = get_logger("services.credits")


async def adjust_credits(
    session: AsyncSession,
    user_id: str,
    delta: int,
    *,
    reason: str,
    ref_type: Optional[str] = None,
    ref_id: Optional[str] = None,
    created_by: Optional[str] = None,
    allow_negative: bool = False,
) -> Optional[int]:
    """
    Atomically add `delta` to a wallet and write the ledger row.

    Returns the new balance, or None when the profile is missing or a debit
    would take the balance below zero (unless `allow_negative`). The caller
    owns the transaction.
    """
    delta = int(delta)
    res = await session.execute(
        text(
            """
            UPDATE profiles
            SET credits = COALESCE(credits, 0) + :delta
            WHERE id = CAST(:uid AS uuid)
              AND (:allow_negative OR COALESCE(credits, 0) + :delta >= 0)
            RETURNING credits
            """
        ),
        {"uid": str(user_id), "delta": delta, "allow_negative": bool(allow_negative)},
    )
    row = res.first()
    if row is None:
        log.info("credits_adjust_refused user=%s delta=%s reason=%s", user_id, delta, reason)
        return None

    await session.execute(
        text(
            """
            INSERT INTO credit_ledger(user_id, delta, reason, ref_type, ref_id, created_by)
            VALUES(CAST(:uid AS uuid), :delta, :reason, :ref_type, :ref_id, CAST(:created_by AS uuid))
            """
        ),
        {
            "uid": str(user_id),
            "delta": delta,
            "reason": reason,
            "ref_type": ref_type,
            "ref_id": ref_id,
            "created_by": created_by,
        },
    )
    balance = int(row.credits or 0)
    log.info("credits_adjusted user=%s delta=%s reason=%s balance=%s", user_id, delta, reason, balance)
    return balance


async def increment_total_wins(session: AsyncSession, user_id: str) -> None:
    await session.execute(
        text(
            """
            UPDATE profiles
            SET total_wins = COALESCE(total_wins, 0) + 1
            WHERE id = CAST(:uid AS uuid)
            """
        ),
        {"uid": str(user_id)},
    )


async def get_balance(session: AsyncSession, user_id: str) -> Optional[int]:
    res = await session.execute(
        text("SELECT credits FROM profiles WHERE id = CAST(:uid AS uuid)"),
        {"uid": str(user_id)},
    )
    row = res.first()
    if row is None:
        return None
    return int(row.credits or 0)
