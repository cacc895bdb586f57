"""
Admin settlement workflow for jackpot groups.

A group is opened from the settling queue, fixture outcomes are entered and
saved, and finally the results are locked: fixtures, per-variant settlements
and the group status commit together under a row lock on the group. The
cycle cascade (`settle_group_and_update_cycles`) runs afterwards in its own
transaction; its outcome is recorded in `settlement_cascades` so a failed
cascade can be repaired without touching the locked results.
"""
from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Union

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from hunter.core.config import settings
from hunter.core.logger import get_logger
from hunter.core.timeutils import is_past, iso_or_none, utcnow
from hunter.data.mappers import normalize_fixture_status, normalize_pick, result_from_score
from hunter.services.alerts import notify_admin
from hunter.services.errors import (
    InvalidTransitionError,
    MissingResultsError,
    NotFoundError,
    TierTableError,
    ValidationError,
)
from hunter.services.tally import missing_results, tally_correct
from hunter.services.tiers import compute_tier_and_payout, parse_tiers, tiers_to_json

log = get_logger("services.settling")

CLEARS_RESULT = {"void", "postponed"}


@dataclass
class VariantResult:
    variant_id: str
    variant: Optional[str]
    correct_count: int
    tier_hit: Optional[str]
    payout_estimated: Optional[Decimal]

    def to_dict(self) -> dict:
        return {
            "variant_id": self.variant_id,
            "variant": self.variant,
            "correct_count": self.correct_count,
            "tier_hit": self.tier_hit,
            "payout_estimated": float(self.payout_estimated) if self.payout_estimated is not None else None,
        }


@dataclass
class Settled:
    group_id: str
    cycles_updated: int
    cycles_won_now: int
    variants: list[VariantResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "group_id": self.group_id,
            "cascade": "ok",
            "cycles_updated": self.cycles_updated,
            "cycles_won_now": self.cycles_won_now,
            "variants": [v.to_dict() for v in self.variants],
        }


@dataclass
class SettledWithCascadeFailure:
    group_id: str
    reason: str
    variants: list[VariantResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "group_id": self.group_id,
            "cascade": "failed",
            "reason": self.reason,
            "variants": [v.to_dict() for v in self.variants],
        }


LockOutcome = Union[Settled, SettledWithCascadeFailure]


def _rows(res) -> list[dict]:
    return [dict(r._mapping) for r in res.fetchall()]


async def _fetch_queue(session: AsyncSession, limit: int) -> list[dict]:
    res = await session.execute(
        text(
            """
            SELECT id, site_id, jackpot_type_id, status, lock_time, end_time, prize_pool, currency
            FROM jackpot_groups
            WHERE status <> 'archived'
              AND (status IN ('locked', 'settling') OR end_time < now())
            ORDER BY end_time DESC NULLS LAST
            LIMIT :limit
            """
        ),
        {"limit": int(limit)},
    )
    return _rows(res)


async def _fetch_group(session: AsyncSession, group_id: str, *, for_update: bool = False) -> Optional[dict]:
    sql = """
        SELECT id, site_id, jackpot_type_id, status, lock_time, end_time,
               prize_pool, currency, payout_tiers_override
        FROM jackpot_groups
        WHERE id = CAST(:gid AS uuid)
    """
    if for_update:
        sql += " FOR UPDATE"
    res = await session.execute(text(sql), {"gid": str(group_id)})
    row = res.first()
    return dict(row._mapping) if row is not None else None


async def _fetch_fixtures(session: AsyncSession, group_id: str) -> list[dict]:
    res = await session.execute(
        text(
            """
            SELECT id, seq, match_name, home_team, away_team, kickoff_time, status, result, final_score
            FROM fixtures
            WHERE group_id = CAST(:gid AS uuid)
            ORDER BY seq ASC
            """
        ),
        {"gid": str(group_id)},
    )
    return _rows(res)


async def _fetch_variants(session: AsyncSession, group_id: str) -> list[dict]:
    res = await session.execute(
        text(
            """
            SELECT id, variant, strategy_tag, price_credits
            FROM jackpot_variants
            WHERE group_id = CAST(:gid AS uuid)
            ORDER BY variant ASC
            """
        ),
        {"gid": str(group_id)},
    )
    return _rows(res)


async def _fetch_predictions(session: AsyncSession, variant_ids: list[str]) -> list[dict]:
    if not variant_ids:
        return []
    res = await session.execute(
        text(
            """
            SELECT variant_id, fixture_id, pick
            FROM predictions
            WHERE variant_id = ANY(CAST(:vids AS uuid[]))
            """
        ),
        {"vids": [str(v) for v in variant_ids]},
    )
    return _rows(res)


async def _fetch_rule_tiers(session: AsyncSession, site_id, jackpot_type_id):
    res = await session.execute(
        text(
            """
            SELECT tiers
            FROM payout_rules
            WHERE site_id = :site_id AND jackpot_type_id = :jt
            LIMIT 1
            """
        ),
        {"site_id": site_id, "jt": jackpot_type_id},
    )
    row = res.first()
    return row.tiers if row is not None else None


def _as_json(value):
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return None
    return value


async def effective_tiers(session: AsyncSession, group: Mapping):
    """The group's override table when set, else its payout rule. Raw JSON or None."""
    override = _as_json(group.get("payout_tiers_override"))
    if override:
        return override
    return _as_json(await _fetch_rule_tiers(session, group.get("site_id"), group.get("jackpot_type_id")))


def apply_fixture_updates(fixtures: Iterable[Mapping], updates: Iterable[Mapping]) -> list[dict]:
    """
    Return copies of `fixtures` with admin edits applied.

    Each update carries an `id` plus any of status, result, final_score.
    Setting a result on a fixture that is not void/postponed marks it
    finished; void and postponed always clear the result.
    """
    out = {str(f["id"]): dict(f) for f in fixtures}
    for upd in updates or ():
        fid = str(upd.get("id") or "")
        fx = out.get(fid)
        if fx is None:
            raise ValidationError(f"fixture {fid or '?'} does not belong to this group")

        if "status" in upd and upd["status"] is not None:
            status = normalize_fixture_status(upd["status"])
            if status is None:
                raise ValidationError(f"fixture {fid}: unknown status {upd['status']!r}")
            fx["status"] = status

        if "final_score" in upd:
            fx["final_score"] = (upd["final_score"] or "").strip() or None

        if "result" in upd:
            raw = upd["result"]
            if raw is None or (isinstance(raw, str) and not raw.strip()):
                fx["result"] = None
            else:
                pick = normalize_pick(raw)
                if pick is None:
                    raise ValidationError(f"fixture {fid}: result must be 1, X or 2")
                fx["result"] = pick
                if "status" not in upd and fx.get("status") not in CLEARS_RESULT:
                    fx["status"] = "finished"
        elif fx.get("status") == "finished" and not fx.get("result") and fx.get("final_score"):
            fx["result"] = result_from_score(fx["final_score"])

        if fx.get("status") in CLEARS_RESULT:
            fx["result"] = None
    return list(out.values())


def _tier_table(tiers) -> tuple[Optional[dict], Optional[str]]:
    """Parsed tier table plus the parse error, if the stored table is malformed."""
    if not isinstance(tiers, Mapping) or not tiers:
        return None, None
    try:
        return parse_tiers(tiers), None
    except TierTableError as exc:
        return None, exc.message


def build_preview(
    group: Mapping,
    fixtures: list,
    variants: list,
    predictions: list,
    tiers,
    *,
    policy: Optional[str] = None,
    strict: bool = True,
) -> list[VariantResult]:
    """
    Per-variant correct counts and tier payouts. Pure; used for preview and lock alike.

    A malformed tier table raises TierTableError when `strict`, otherwise every
    variant is reported with no tier and a null payout.
    """
    table, error = _tier_table(tiers)
    if error and strict:
        raise TierTableError(error)
    counts = tally_correct(fixtures, predictions, [v["id"] for v in variants])
    out: list[VariantResult] = []
    for v in variants:
        vid = str(v["id"])
        correct = counts.get(vid, 0)
        outcome = compute_tier_and_payout(
            correct,
            group.get("prize_pool"),
            table or {},
            policy=policy or settings.tier_match_policy,
        )
        out.append(
            VariantResult(
                variant_id=vid,
                variant=v.get("variant"),
                correct_count=correct,
                tier_hit=outcome.tier_hit,
                payout_estimated=outcome.payout_estimated,
            )
        )
    return out


def _group_to_dict(group: Mapping) -> dict:
    prize_pool = group.get("prize_pool")
    return {
        "id": str(group["id"]),
        "site_id": group.get("site_id"),
        "jackpot_type_id": group.get("jackpot_type_id"),
        "status": group.get("status"),
        "lock_time": iso_or_none(group.get("lock_time")),
        "end_time": iso_or_none(group.get("end_time")),
        "prize_pool": float(prize_pool) if prize_pool is not None else None,
        "currency": group.get("currency"),
    }


def _fixture_to_dict(f: Mapping) -> dict:
    return {
        "id": str(f["id"]),
        "seq": f.get("seq"),
        "match_name": f.get("match_name"),
        "home_team": f.get("home_team"),
        "away_team": f.get("away_team"),
        "kickoff_time": iso_or_none(f.get("kickoff_time")),
        "status": f.get("status"),
        "result": f.get("result"),
        "final_score": f.get("final_score"),
    }


async def settling_queue(session: AsyncSession, limit: Optional[int] = None) -> list[dict]:
    limit = int(limit or settings.settling_queue_limit or 50)
    return [_group_to_dict(g) for g in await _fetch_queue(session, limit)]


async def _load_sheet(session: AsyncSession, group: Mapping) -> tuple[list, list, list, object]:
    fixtures = await _fetch_fixtures(session, group["id"])
    variants = await _fetch_variants(session, group["id"])
    predictions = await _fetch_predictions(session, [str(v["id"]) for v in variants])
    tiers = await effective_tiers(session, group)
    return fixtures, variants, predictions, tiers


def _sheet_dict(group, fixtures, variants, predictions, tiers, preview) -> dict:
    table, error = _tier_table(tiers)
    return {
        "group": _group_to_dict(group),
        "fixtures": [_fixture_to_dict(f) for f in fixtures],
        "variants": [
            {
                "id": str(v["id"]),
                "variant": v.get("variant"),
                "strategy_tag": v.get("strategy_tag"),
                "price_credits": v.get("price_credits"),
            }
            for v in variants
        ],
        "predictions": [
            {"variant_id": str(p["variant_id"]), "fixture_id": str(p["fixture_id"]), "pick": p.get("pick")}
            for p in predictions
        ],
        "tiers": tiers_to_json(table) if table else None,
        "tiers_error": error,
        "missing_results": len(missing_results(fixtures)),
        "preview": [r.to_dict() for r in preview],
    }


async def open_group(session: AsyncSession, group_id: str) -> dict:
    """Load the settlement sheet for a group; a locked group moves to settling."""
    group = await _fetch_group(session, group_id)
    if group is None:
        raise NotFoundError("group not found")
    if group.get("status") == "locked":
        await _set_group_status(session, group_id, "settling")
        await session.commit()
        group["status"] = "settling"
        log.info("settle_opened group=%s status=settling", group_id)

    fixtures, variants, predictions, tiers = await _load_sheet(session, group)
    preview = build_preview(group, fixtures, variants, predictions, tiers, strict=False)
    return _sheet_dict(group, fixtures, variants, predictions, tiers, preview)


async def preview(session: AsyncSession, group_id: str, updates: Iterable[Mapping] = ()) -> list[VariantResult]:
    """Live preview with unsaved fixture edits applied. Writes nothing."""
    group = await _fetch_group(session, group_id)
    if group is None:
        raise NotFoundError("group not found")
    fixtures, variants, predictions, tiers = await _load_sheet(session, group)
    fixtures = apply_fixture_updates(fixtures, updates)
    return build_preview(group, fixtures, variants, predictions, tiers, strict=False)


async def set_group_tiers(session: AsyncSession, group_id: str, tiers) -> dict:
    """
    Replace the group's tier override. An empty or missing table clears it, so
    the site's payout rule applies again. Malformed tables are rejected.
    """
    table = parse_tiers(tiers) if tiers else {}
    normalized = tiers_to_json(table) if table else None
    try:
        group = await _fetch_group(session, group_id, for_update=True)
        if group is None:
            raise NotFoundError("group not found")
        status = group.get("status")
        if status in {"settled", "archived"}:
            raise InvalidTransitionError(f"group is {status}; payout tiers can no longer be changed")
        await session.execute(
            text(
                """
                UPDATE jackpot_groups
                SET payout_tiers_override = CAST(:tiers AS jsonb)
                WHERE id = CAST(:gid AS uuid)
                """
            ),
            {"gid": str(group_id), "tiers": json.dumps(normalized) if normalized else None},
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    log.info("settle_tiers_replaced group=%s tiers=%s", group_id, len(normalized or {}))
    return {"group_id": str(group_id), "tiers": normalized}


async def _set_group_status(session: AsyncSession, group_id: str, status: str) -> None:
    await session.execute(
        text("UPDATE jackpot_groups SET status = :status WHERE id = CAST(:gid AS uuid)"),
        {"gid": str(group_id), "status": status},
    )


async def _write_fixtures(session: AsyncSession, group_id: str, fixtures: list[Mapping]) -> None:
    if not fixtures:
        return
    await session.execute(
        text(
            """
            UPDATE fixtures
            SET status = :status, result = :result, final_score = :final_score
            WHERE id = CAST(:fid AS uuid) AND group_id = CAST(:gid AS uuid)
            """
        ),
        [
            {
                "fid": str(f["id"]),
                "gid": str(group_id),
                "status": f.get("status"),
                "result": f.get("result"),
                "final_score": f.get("final_score"),
            }
            for f in fixtures
        ],
    )


async def _write_settlements(session: AsyncSession, results: list[VariantResult], settled_by: Optional[str]) -> None:
    if not results:
        return
    now = utcnow()
    await session.execute(
        text(
            """
            INSERT INTO variant_settlements(variant_id, correct_count, tier_hit, payout_estimated,
                                            payout_actual, settled_at, settled_by)
            VALUES(CAST(:vid AS uuid), :correct, :tier_hit, :payout, NULL, :settled_at, CAST(:settled_by AS uuid))
            ON CONFLICT (variant_id) DO UPDATE
            SET correct_count = EXCLUDED.correct_count,
                tier_hit = EXCLUDED.tier_hit,
                payout_estimated = EXCLUDED.payout_estimated,
                payout_actual = EXCLUDED.payout_actual,
                settled_at = EXCLUDED.settled_at,
                settled_by = EXCLUDED.settled_by
            """
        ),
        [
            {
                "vid": r.variant_id,
                "correct": r.correct_count,
                "tier_hit": r.tier_hit,
                "payout": r.payout_estimated,
                "settled_at": now,
                "settled_by": settled_by,
            }
            for r in results
        ],
    )


def _check_editable(group: Mapping) -> None:
    status = group.get("status")
    if status in {"settled", "archived"}:
        raise InvalidTransitionError(f"group is {status}; results can no longer be edited")
    if status == "draft":
        raise InvalidTransitionError("group is still a draft")


def _check_settleable(group: Mapping) -> None:
    status = group.get("status")
    if status == "settled":
        raise InvalidTransitionError("group is already settled; use cascade repair to re-run cycle updates")
    _check_editable(group)
    if status == "active" and not is_past(group.get("end_time")):
        raise InvalidTransitionError("group has not ended yet")


async def save_progress(session: AsyncSession, group_id: str, updates: Iterable[Mapping]) -> dict:
    group = await _fetch_group(session, group_id, for_update=True)
    if group is None:
        raise NotFoundError("group not found")
    try:
        _check_editable(group)
        fixtures = apply_fixture_updates(await _fetch_fixtures(session, group_id), updates)
        await _write_fixtures(session, group_id, fixtures)
        await _set_group_status(session, group_id, "settling")
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    log.info("settle_progress_saved group=%s fixtures=%s", group_id, len(fixtures))
    return {
        "group_id": str(group_id),
        "status": "settling",
        "missing_results": len(missing_results(fixtures)),
    }


async def lock_results(
    session: AsyncSession,
    group_id: str,
    updates: Iterable[Mapping] = (),
    *,
    settled_by: Optional[str] = None,
) -> LockOutcome:
    """
    Persist fixtures, write variant settlements and mark the group settled.

    Those writes commit together; the cycle cascade then runs separately and a
    failure there is returned as SettledWithCascadeFailure, never rolled back
    into the locked results.
    """
    try:
        group = await _fetch_group(session, group_id, for_update=True)
        if group is None:
            raise NotFoundError("group not found")
        _check_settleable(group)

        fixtures, variants, predictions, tiers = await _load_sheet(session, group)
        fixtures = apply_fixture_updates(fixtures, updates)
        missing = missing_results(fixtures)
        if missing:
            raise MissingResultsError(len(missing))

        results = build_preview(group, fixtures, variants, predictions, tiers)
        await _write_fixtures(session, group_id, fixtures)
        await _write_settlements(session, results, settled_by)
        await _set_group_status(session, group_id, "settled")
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    log.info("settle_locked group=%s variants=%s by=%s", group_id, len(results), settled_by)
    return await _run_cascade(session, str(group_id), results)


async def _call_cascade(session: AsyncSession, group_id: str) -> dict:
    res = await session.execute(
        text("SELECT settle_group_and_update_cycles(CAST(:gid AS uuid)) AS out"),
        {"gid": group_id},
    )
    row = res.first()
    out = _as_json(row.out) if row is not None else None
    return out if isinstance(out, dict) else {}


async def _record_cascade(
    session: AsyncSession,
    group_id: str,
    status: str,
    *,
    error: Optional[str] = None,
    cycles_updated: Optional[int] = None,
    cycles_won_now: Optional[int] = None,
) -> None:
    await session.execute(
        text(
            """
            INSERT INTO settlement_cascades(group_id, status, attempts, last_error,
                                            cycles_updated, cycles_won_now, last_attempt_at)
            VALUES(CAST(:gid AS uuid), :status, 1, :error, :updated, :won, now())
            ON CONFLICT (group_id) DO UPDATE
            SET status = EXCLUDED.status,
                attempts = settlement_cascades.attempts + 1,
                last_error = EXCLUDED.last_error,
                cycles_updated = EXCLUDED.cycles_updated,
                cycles_won_now = EXCLUDED.cycles_won_now,
                last_attempt_at = EXCLUDED.last_attempt_at
            """
        ),
        {
            "gid": group_id,
            "status": status,
            "error": error,
            "updated": cycles_updated,
            "won": cycles_won_now,
        },
    )
    await session.commit()


async def _run_cascade(session: AsyncSession, group_id: str, results: list[VariantResult]) -> LockOutcome:
    try:
        out = await _call_cascade(session, group_id)
        await session.commit()
    except Exception as exc:
        await session.rollback()
        reason = str(exc).strip().splitlines()[0] if str(exc).strip() else exc.__class__.__name__
        log.exception("settle_cascade_failed group=%s", group_id)
        try:
            await _record_cascade(session, group_id, "failed", error=reason[:2000])
        except Exception:
            log.exception("settle_cascade_record_failed group=%s", group_id)
            await session.rollback()
        await notify_admin(f"Results locked for group {group_id}, but cycle update failed: {reason[:500]}")
        return SettledWithCascadeFailure(group_id=group_id, reason=reason, variants=results)

    updated = int(out.get("cycles_updated") or 0)
    won_now = int(out.get("cycles_won_now") or 0)
    try:
        await _record_cascade(session, group_id, "ok", cycles_updated=updated, cycles_won_now=won_now)
    except Exception:
        log.exception("settle_cascade_record_failed group=%s", group_id)
        await session.rollback()
    log.info("settle_cascade_ok group=%s cycles_updated=%s cycles_won_now=%s", group_id, updated, won_now)
    return Settled(group_id=group_id, cycles_updated=updated, cycles_won_now=won_now, variants=results)


async def repair_cascade(session: AsyncSession, group_id: str) -> LockOutcome:
    """Re-run the cycle cascade for a settled group and record the outcome. Safe to repeat."""
    group = await _fetch_group(session, group_id)
    if group is None:
        raise NotFoundError("group not found")
    if group.get("status") != "settled":
        raise InvalidTransitionError("only settled groups can have their cycle cascade repaired")
    await session.commit()
    log.info("settle_cascade_repair group=%s", group_id)
    return await _run_cascade(session, str(group_id), [])


async def failed_cascades(session: AsyncSession, *, max_attempts: int, limit: int) -> list[str]:
    res = await session.execute(
        text(
            """
            SELECT sc.group_id
            FROM settlement_cascades sc
            JOIN jackpot_groups g ON g.id = sc.group_id
            WHERE sc.status = 'failed'
              AND sc.attempts < :max_attempts
              AND g.status = 'settled'
            ORDER BY sc.last_attempt_at ASC
            LIMIT :limit
            """
        ),
        {"max_attempts": int(max_attempts), "limit": int(limit)},
    )
    return [str(r.group_id) for r in res.fetchall()]


async def cascade_status(session: AsyncSession, group_id: str) -> Optional[dict]:
    res = await session.execute(
        text(
            """
            SELECT group_id, status, attempts, last_error, cycles_updated, cycles_won_now, last_attempt_at
            FROM settlement_cascades
            WHERE group_id = CAST(:gid AS uuid)
            """
        ),
        {"gid": str(group_id)},
    )
    row = res.first()
    if row is None:
        return None
    return {
        "group_id": str(row.group_id),
        "status": row.status,
        "attempts": int(row.attempts or 0),
        "last_error": row.last_error,
        "cycles_updated": row.cycles_updated,
        "cycles_won_now": row.cycles_won_now,
        "last_attempt_at": iso_or_none(row.last_attempt_at),
    }
