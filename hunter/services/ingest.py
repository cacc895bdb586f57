from __future__ import annotations

import json
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator, model_validator
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from hunter.core.config import settings
from hunter.core.logger import get_logger
from hunter.core.timeutils import ensure_aware_utc
from hunter.data.mappers import normalize_fixture_status, normalize_pick, result_from_score
from hunter.services.errors import InvalidTransitionError, TierTableError, ValidationError
from hunter.services.tiers import parse_tiers, tiers_to_json

log = get_logger("services.ingest")

INGEST_GROUP_STATUSES = ("draft", "active")
VARIANT_LETTERS = ("A", "B")


def _tiers_json(raw) -> dict:
    try:
        return tiers_to_json(parse_tiers(raw))
    except TierTableError as exc:
        raise ValueError(exc.message) from exc


class FixtureIn(BaseModel):
    seq: int = Field(..., ge=1)
    home: str = Field(..., min_length=1)
    away: str = Field(..., min_length=1)
    kickoff: Optional[datetime] = None
    match_name: Optional[str] = None
    status: Optional[str] = None
    result: Optional[str] = None
    final_score: Optional[str] = None

    @field_validator("home", "away")
    @classmethod
    def _strip_team(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("team name must not be blank")
        return v

    @field_validator("status")
    @classmethod
    def _normalize_status(cls, v: Optional[str]) -> str:
        status = normalize_fixture_status(v)
        if status is None:
            raise ValueError(f"unknown fixture status {v!r}")
        return status

    @field_validator("result")
    @classmethod
    def _normalize_result(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not str(v).strip():
            return None
        pick = normalize_pick(v)
        if pick is None:
            raise ValueError(f"unknown result {v!r}")
        return pick

    @model_validator(mode="after")
    def _result_consistency(self):
        if self.status is None:
            self.status = "scheduled"
        if self.status == "finished" and self.result is None and self.final_score:
            self.result = result_from_score(self.final_score)
        if self.status != "finished":
            self.result = None
        return self

    @property
    def display_name(self) -> str:
        return (self.match_name or "").strip() or f"{self.home} vs {self.away}"


class VariantIn(BaseModel):
    variant: str
    strategy_tag: Optional[str] = None
    price_credits: int = Field(default=0, ge=0)
    picks: dict[int, str]

    @field_validator("variant")
    @classmethod
    def _normalize_variant(cls, v: str) -> str:
        v = (v or "").strip().upper()
        if v not in VARIANT_LETTERS:
            raise ValueError("variant must be A or B")
        return v

    @field_validator("picks")
    @classmethod
    def _normalize_picks(cls, v: dict[int, str]) -> dict[int, str]:
        out: dict[int, str] = {}
        for seq, raw in v.items():
            pick = normalize_pick(raw)
            if pick is None:
                raise ValueError(f"pick for fixture {seq}: {raw!r} is not 1, X or 2")
            out[int(seq)] = pick
        return out


class GroupIngest(BaseModel):
    site_id: str = Field(..., min_length=1)
    jackpot_type_id: str = Field(..., min_length=1)
    lock_time: datetime
    end_time: datetime
    prize_pool: Optional[Decimal] = Field(default=None, ge=0)
    currency: Optional[str] = None
    external_ref: Optional[str] = None
    status: str = "active"
    payout_tiers_override: Optional[dict] = None
    fixtures: list[FixtureIn]
    variants: list[VariantIn]

    @field_validator("status")
    @classmethod
    def _check_status(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if v not in INGEST_GROUP_STATUSES:
            raise ValueError("status must be draft or active")
        return v

    @field_validator("payout_tiers_override")
    @classmethod
    def _check_tiers(cls, v: Optional[dict]) -> Optional[dict]:
        if not v:
            return None
        return _tiers_json(v)

    @model_validator(mode="after")
    def _check_shape(self):
        if not self.fixtures:
            raise ValueError("at least one fixture is required")
        max_fixtures = int(settings.ingest_max_fixtures or 60)
        if len(self.fixtures) > max_fixtures:
            raise ValueError(f"at most {max_fixtures} fixtures per group")
        seqs = [f.seq for f in self.fixtures]
        if len(set(seqs)) != len(seqs):
            raise ValueError("fixture seq values must be unique")
        if ensure_aware_utc(self.end_time) < ensure_aware_utc(self.lock_time):
            raise ValueError("end_time must not be before lock_time")
        letters = [v.variant for v in self.variants]
        if len(set(letters)) != len(letters):
            raise ValueError("each variant letter may appear once")
        expected = set(seqs)
        for v in self.variants:
            if set(v.picks) != expected:
                missing = sorted(expected - set(v.picks))
                extra = sorted(set(v.picks) - expected)
                raise ValueError(f"variant {v.variant}: picks must cover every fixture (missing={missing} extra={extra})")
        if self.currency is None:
            self.currency = settings.default_currency
        if self.prize_pool is None:
            self.prize_pool = settings.default_prize_pool
        return self


def _format_errors(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc") or ()) or "payload"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


def parse_group_payload(raw) -> GroupIngest:
    if isinstance(raw, GroupIngest):
        return raw
    try:
        return GroupIngest.model_validate(raw)
    except PydanticValidationError as exc:
        raise ValidationError(_format_errors(exc)) from exc


def _chunks(items: list, size: int):
    size = max(1, int(size or 1))
    for i in range(0, len(items), size):
        yield items[i : i + size]


async def _external_ref_exists(session: AsyncSession, external_ref: str) -> bool:
    res = await session.execute(
        text("SELECT 1 FROM jackpot_groups WHERE external_ref = :ref LIMIT 1"),
        {"ref": external_ref},
    )
    return res.first() is not None


async def ingest_group(session: AsyncSession, raw) -> dict:
    """
    Create a jackpot group with its fixtures, variants and predictions.

    Everything commits in one transaction; fixture and prediction rows are
    written in chunks of INGEST_CHUNK_SIZE.
    """
    payload = parse_group_payload(raw)
    chunk = int(settings.ingest_chunk_size or 50)

    if payload.external_ref and await _external_ref_exists(session, payload.external_ref):
        raise InvalidTransitionError(f"group with external_ref {payload.external_ref!r} already exists")

    group_id = str(uuid.uuid4())
    fixture_ids = {f.seq: str(uuid.uuid4()) for f in payload.fixtures}
    variant_ids = {v.variant: str(uuid.uuid4()) for v in payload.variants}

    fixture_rows = [
        {
            "id": fixture_ids[f.seq],
            "gid": group_id,
            "seq": f.seq,
            "match_name": f.display_name,
            "home": f.home,
            "away": f.away,
            "kickoff": ensure_aware_utc(f.kickoff) if f.kickoff else None,
            "status": f.status,
            "result": f.result,
            "final_score": f.final_score,
        }
        for f in sorted(payload.fixtures, key=lambda x: x.seq)
    ]
    prediction_rows = [
        {"vid": variant_ids[v.variant], "fid": fixture_ids[seq], "pick": pick}
        for v in payload.variants
        for seq, pick in sorted(v.picks.items())
    ]

    try:
        await session.execute(
            text(
                """
                INSERT INTO jackpot_groups(id, site_id, jackpot_type_id, status, lock_time, end_time,
                                           prize_pool, currency, external_ref, payout_tiers_override)
                VALUES(CAST(:gid AS uuid), :site_id, :jt, :status, :lock_time, :end_time,
                       :prize_pool, :currency, :external_ref, CAST(:tiers AS jsonb))
                """
            ),
            {
                "gid": group_id,
                "site_id": payload.site_id,
                "jt": payload.jackpot_type_id,
                "status": payload.status,
                "lock_time": ensure_aware_utc(payload.lock_time),
                "end_time": ensure_aware_utc(payload.end_time),
                "prize_pool": payload.prize_pool,
                "currency": payload.currency,
                "external_ref": payload.external_ref,
                "tiers": json.dumps(payload.payout_tiers_override) if payload.payout_tiers_override else None,
            },
        )
        for part in _chunks(fixture_rows, chunk):
            await session.execute(
                text(
                    """
                    INSERT INTO fixtures(id, group_id, seq, match_name, home_team, away_team,
                                         kickoff_time, status, result, final_score)
                    VALUES(CAST(:id AS uuid), CAST(:gid AS uuid), :seq, :match_name, :home, :away,
                           :kickoff, :status, :result, :final_score)
                    """
                ),
                part,
            )
        if variant_ids:
            await session.execute(
                text(
                    """
                    INSERT INTO jackpot_variants(id, group_id, variant, strategy_tag, price_credits)
                    VALUES(CAST(:id AS uuid), CAST(:gid AS uuid), :variant, :tag, :price)
                    """
                ),
                [
                    {
                        "id": variant_ids[v.variant],
                        "gid": group_id,
                        "variant": v.variant,
                        "tag": v.strategy_tag,
                        "price": v.price_credits,
                    }
                    for v in payload.variants
                ],
            )
        for part in _chunks(prediction_rows, chunk):
            await session.execute(
                text(
                    """
                    INSERT INTO predictions(variant_id, fixture_id, pick)
                    VALUES(CAST(:vid AS uuid), CAST(:fid AS uuid), :pick)
                    """
                ),
                part,
            )
        await session.commit()
    except Exception:
        log.exception("ingest_group_failed site=%s type=%s", payload.site_id, payload.jackpot_type_id)
        await session.rollback()
        raise

    log.info(
        "ingest_group_ok group=%s site=%s fixtures=%s variants=%s predictions=%s",
        group_id,
        payload.site_id,
        len(fixture_rows),
        len(variant_ids),
        len(prediction_rows),
    )
    return {
        "group_id": group_id,
        "fixtures": len(fixture_rows),
        "variants": {letter: vid for letter, vid in sorted(variant_ids.items())},
        "predictions": len(prediction_rows),
    }


async def upsert_payout_rule(
    session: AsyncSession,
    site_id: str,
    jackpot_type_id: str,
    tiers,
    currency: Optional[str] = None,
) -> dict:
    """Validate and store the tier table for (site, jackpot type). Malformed tables are rejected."""
    site_id = (site_id or "").strip()
    jackpot_type_id = (jackpot_type_id or "").strip()
    if not site_id or not jackpot_type_id:
        raise ValidationError("site_id and jackpot_type_id are required")
    table = parse_tiers(tiers)
    if not table:
        raise TierTableError("tier table must contain at least one tier")
    normalized = tiers_to_json(table)
    currency = (currency or settings.default_currency).strip().upper()

    await session.execute(
        text(
            """
            INSERT INTO payout_rules(site_id, jackpot_type_id, currency, tiers)
            VALUES(:site_id, :jt, :currency, CAST(:tiers AS jsonb))
            ON CONFLICT (site_id, jackpot_type_id) DO UPDATE
            SET currency = EXCLUDED.currency,
                tiers = EXCLUDED.tiers
            """
        ),
        {"site_id": site_id, "jt": jackpot_type_id, "currency": currency, "tiers": json.dumps(normalized)},
    )
    await session.commit()
    log.info("payout_rule_upserted site=%s type=%s tiers=%s", site_id, jackpot_type_id, len(normalized))
    return {"site_id": site_id, "jackpot_type_id": jackpot_type_id, "currency": currency, "tiers": normalized}
