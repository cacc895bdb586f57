from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from hunter.core.config import settings
from hunter.core.logger import get_logger
from hunter.core.timeutils import is_past, utcnow
from hunter.services.credits import adjust_credits, increment_total_wins
from hunter.services.errors import InvalidTransitionError, NotFoundError, ValidationError

log = get_logger("services.cycles")

CLOSED_CYCLE_STATUSES = {"won", "expired", "archived", "success", "failed"}
ENTRY_MODES = ("full", "custom")
ALL_SITES = "ALL"


@dataclass
class JoinResult:
    ok: bool
    message: str
    cost: int = 0
    remaining_credits: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class EnterResult:
    success: bool
    message: str
    used_credit: bool = False
    sites_selected: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class CycleSettlement:
    cycle_id: str
    status: str
    participants: int = 0
    won: int = 0
    missed_opportunity: int = 0
    lost: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


async def _fetch_cycle(session: AsyncSession, cycle_id: str):
    res = await session.execute(
        text(
            """
            SELECT id, name, status, credit_cost, is_free, max_end_at
            FROM cycles
            WHERE id = CAST(:cid AS uuid)
            """
        ),
        {"cid": str(cycle_id)},
    )
    return res.first()


async def _has_future_lock(session: AsyncSession, cycle_id: str) -> bool:
    res = await session.execute(
        text(
            """
            SELECT 1
            FROM cycle_variants cv
            JOIN jackpot_groups g ON g.id = cv.group_id
            WHERE cv.cycle_id = CAST(:cid AS uuid)
              AND g.lock_time > now()
            LIMIT 1
            """
        ),
        {"cid": str(cycle_id)},
    )
    return res.first() is not None


async def _active_subscription(session: AsyncSession, cycle_id: str, user_id: str):
    res = await session.execute(
        text(
            """
            SELECT id, status, credits_paid
            FROM cycle_subscriptions
            WHERE cycle_id = CAST(:cid AS uuid)
              AND user_id = CAST(:uid AS uuid)
              AND status = 'active'
            """
        ),
        {"cid": str(cycle_id), "uid": str(user_id)},
    )
    return res.first()


async def _claim_subscription(session: AsyncSession, cycle_id: str, user_id: str, credits_paid: int) -> bool:
    """Insert or reactivate the subscription; False when another request already holds it active."""
    res = await session.execute(
        text(
            """
            INSERT INTO cycle_subscriptions(user_id, cycle_id, status, credits_paid, joined_at)
            VALUES(CAST(:uid AS uuid), CAST(:cid AS uuid), 'active', :paid, now())
            ON CONFLICT (user_id, cycle_id) DO UPDATE
            SET status = 'active',
                credits_paid = EXCLUDED.credits_paid,
                joined_at = EXCLUDED.joined_at
            WHERE cycle_subscriptions.status <> 'active'
            RETURNING id
            """
        ),
        {"uid": str(user_id), "cid": str(cycle_id), "paid": int(credits_paid)},
    )
    return res.first() is not None


def join_rejection(cycle, *, has_future_lock: bool, now=None) -> Optional[str]:
    """Reason a cycle cannot be joined right now, or None when it can."""
    status = (cycle.status or "").strip().lower()
    if status in CLOSED_CYCLE_STATUSES:
        return "cycle_closed"
    if is_past(cycle.max_end_at, now or utcnow()):
        return "cycle_ended"
    if status == "waiting" or has_future_lock:
        return None
    return "cycle_not_open"


def join_cost(cycle) -> int:
    if cycle.is_free:
        return 0
    return max(0, int(cycle.credit_cost or 0))


async def join_cycle(session: AsyncSession, cycle_id: str, user_id: str) -> JoinResult:
    """
    Subscribe a user to a cycle, charging its credit cost.

    The subscription row is claimed first and only a successful claim is
    charged; claim and deduction commit together, so overlapping joins for
    the same user charge once.
    """
    cycle = await _fetch_cycle(session, cycle_id)
    if cycle is None:
        return JoinResult(ok=False, message="cycle_not_found")

    reason = join_rejection(cycle, has_future_lock=await _has_future_lock(session, cycle_id))
    if reason:
        log.info("cycle_join_rejected cycle=%s user=%s reason=%s", cycle_id, user_id, reason)
        return JoinResult(ok=False, message=reason)

    if await _active_subscription(session, cycle_id, user_id) is not None:
        return JoinResult(ok=True, message="already_joined", cost=0)

    cost = join_cost(cycle)
    remaining = None
    try:
        if not await _claim_subscription(session, cycle_id, user_id, cost):
            await session.rollback()
            return JoinResult(ok=True, message="already_joined", cost=0)
        if cost > 0:
            remaining = await adjust_credits(
                session,
                user_id,
                -cost,
                reason="cycle_join",
                ref_type="cycle",
                ref_id=str(cycle_id),
            )
            if remaining is None:
                await session.rollback()
                return JoinResult(ok=False, message="insufficient_credits", cost=cost)
        await session.commit()
    except Exception:
        log.exception("cycle_join_failed cycle=%s user=%s", cycle_id, user_id)
        await session.rollback()
        return JoinResult(ok=False, message="join_failed", cost=0)

    log.info("cycle_joined cycle=%s user=%s cost=%s", cycle_id, user_id, cost)
    return JoinResult(ok=True, message="joined", cost=cost, remaining_credits=remaining)


def sites_for_entry(mode: str, site: Optional[str]) -> list[str]:
    mode = (mode or "").strip().lower()
    if mode not in ENTRY_MODES:
        raise ValidationError("mode must be one of: full, custom")
    if mode == "full":
        return [ALL_SITES]
    site = (site or "").strip()
    if not site:
        raise ValidationError("site is required for a custom entry")
    return [site]


async def _upsert_participant(session: AsyncSession, cycle_id: str, user_id: str, sites: list[str]) -> None:
    await session.execute(
        text(
            """
            INSERT INTO participants(user_id, cycle_id, sites_selected, checklist_completed, personal_outcome, joined_at)
            VALUES(CAST(:uid AS uuid), CAST(:cid AS uuid), :sites, true, 'pending', now())
            ON CONFLICT (user_id, cycle_id) DO UPDATE
            SET sites_selected = EXCLUDED.sites_selected,
                checklist_completed = true,
                personal_outcome = 'pending',
                joined_at = EXCLUDED.joined_at
            """
        ),
        {"uid": str(user_id), "cid": str(cycle_id), "sites": sites},
    )


async def enter_cycle(
    session: AsyncSession,
    cycle_id: str,
    user_id: str,
    mode: str,
    site: Optional[str] = None,
) -> EnterResult:
    """Legacy participant entry: consumes one rollover credit when the user has one."""
    sites = sites_for_entry(mode, site)
    cycle = await _fetch_cycle(session, cycle_id)
    if cycle is None:
        raise NotFoundError("cycle not found")
    if (cycle.status or "").strip().lower() in CLOSED_CYCLE_STATUSES:
        return EnterResult(success=False, message="cycle_closed")

    balance = await adjust_credits(
        session,
        user_id,
        -1,
        reason="rollover_entry",
        ref_type="cycle",
        ref_id=str(cycle_id),
    )
    used_credit = balance is not None
    try:
        await _upsert_participant(session, cycle_id, user_id, sites)
        await session.commit()
    except Exception:
        log.exception("cycle_enter_failed cycle=%s user=%s", cycle_id, user_id)
        await session.rollback()
        return EnterResult(success=False, message="entry_failed")

    log.info("cycle_entered cycle=%s user=%s sites=%s used_credit=%s", cycle_id, user_id, sites, used_credit)
    message = "Entry unlocked using 1 rollover credit." if used_credit else "Entry unlocked."
    return EnterResult(success=True, message=message, used_credit=used_credit, sites_selected=sites)


def classify_outcome(sites_selected, winning_platform: Optional[str]) -> tuple[str, bool]:
    """Return (personal_outcome, rollover_credit) for one legacy participant."""
    if not winning_platform:
        return "lost", False
    sites = list(sites_selected or [])
    if ALL_SITES in sites or winning_platform in sites:
        return "won", False
    return "missed_opportunity", True


async def _fetch_participants(session: AsyncSession, cycle_id: str) -> list:
    res = await session.execute(
        text(
            """
            SELECT id, user_id, sites_selected
            FROM participants
            WHERE cycle_id = CAST(:cid AS uuid)
            """
        ),
        {"cid": str(cycle_id)},
    )
    return list(res.fetchall())


async def _close_cycle(session: AsyncSession, cycle_id: str, status: str) -> bool:
    res = await session.execute(
        text(
            """
            UPDATE cycles
            SET status = :status
            WHERE id = CAST(:cid AS uuid)
              AND status NOT IN ('success', 'failed')
            RETURNING id
            """
        ),
        {"cid": str(cycle_id), "status": status},
    )
    return res.first() is not None


async def _set_participant_outcome(session: AsyncSession, participant_id, outcome: str, rollover: bool) -> None:
    await session.execute(
        text(
            """
            UPDATE participants
            SET personal_outcome = :outcome, rollover_credit = :rollover
            WHERE id = CAST(:pid AS uuid)
            """
        ),
        {"pid": str(participant_id), "outcome": outcome, "rollover": bool(rollover)},
    )


async def settle_cycle(
    session: AsyncSession,
    cycle_id: str,
    winning_platform: Optional[str],
    *,
    actor: Optional[str] = None,
) -> CycleSettlement:
    """
    Close a legacy cycle and grade every participant.

    Winners get total_wins + 1; participants who picked the wrong platform of a
    winning cycle get a rollover credit. All writes commit together; the status
    write only succeeds from an unsettled cycle, so concurrent settles grade once.
    """
    cycle = await _fetch_cycle(session, cycle_id)
    if cycle is None:
        raise NotFoundError("cycle not found")
    current = (cycle.status or "").strip().lower()
    if current in {"success", "failed"}:
        raise InvalidTransitionError(f"cycle is already settled ({current})")

    winning_platform = (winning_platform or "").strip() or None
    new_status = "success" if winning_platform else "failed"
    summary = CycleSettlement(cycle_id=str(cycle_id), status=new_status)

    try:
        if not await _close_cycle(session, cycle_id, new_status):
            raise InvalidTransitionError("cycle was settled by another request")
        for p in await _fetch_participants(session, cycle_id):
            outcome, rollover = classify_outcome(p.sites_selected, winning_platform)
            await _set_participant_outcome(session, p.id, outcome, rollover)
            if rollover:
                await adjust_credits(
                    session,
                    p.user_id,
                    int(settings.rollover_credit_amount or 1),
                    reason="rollover_credit",
                    ref_type="cycle",
                    ref_id=str(cycle_id),
                    created_by=actor,
                )
            elif outcome == "won":
                await increment_total_wins(session, p.user_id)
            summary.participants += 1
            if outcome == "won":
                summary.won += 1
            elif outcome == "missed_opportunity":
                summary.missed_opportunity += 1
            else:
                summary.lost += 1
        await session.commit()
    except Exception:
        log.exception("cycle_settle_failed cycle=%s", cycle_id)
        await session.rollback()
        raise

    log.info(
        "cycle_settled cycle=%s status=%s participants=%s won=%s missed=%s lost=%s",
        cycle_id,
        new_status,
        summary.participants,
        summary.won,
        summary.missed_opportunity,
        summary.lost,
    )
    return summary
