"""
Payout tier tables.

A site publishes a tier table keyed by number of correct picks, e.g.

    {"12": 20000, "13": {"kind": "percent", "pct": 0.03}, "17": {"kind": "full"}}

Entries are parsed into a closed set of shapes (Fixed, Percent, Full, Raw).
Anything else is rejected with TierTableError when the table is entered, so
settlement never meets an entry it cannot price.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union

from hunter.core.decimalutils import D, parse_number, q_money, q_money_or_none
from hunter.services.errors import TierTableError, ValidationError


@dataclass(frozen=True)
class Fixed:
    amount: Decimal
    label: Optional[str] = None


@dataclass(frozen=True)
class Percent:
    pct: Decimal
    label: Optional[str] = None


@dataclass(frozen=True)
class Full:
    label: Optional[str] = None


@dataclass(frozen=True)
class Raw:
    value: Decimal
    label: Optional[str] = None


TierEntry = Union[Fixed, Percent, Full, Raw]
TierTable = dict[int, TierEntry]


@dataclass(frozen=True)
class TierOutcome:
    tier_hit: Optional[str]
    payout_estimated: Optional[Decimal]


NO_HIT = TierOutcome(tier_hit=None, payout_estimated=None)


def _parse_key(raw_key) -> int:
    num = parse_number(raw_key)
    if num is None or num != num.to_integral_value() or num < 0:
        raise TierTableError(f"tier key {raw_key!r} must be a non-negative integer")
    return int(num)


def _parse_label(key, raw: Mapping) -> Optional[str]:
    label = raw.get("label")
    if label is None:
        return None
    if not isinstance(label, str) or not label.strip():
        raise TierTableError(f"tier {key}: label must be a non-empty string")
    return label.strip()


def parse_tier_entry(key, raw) -> TierEntry:
    if isinstance(raw, Mapping):
        label = _parse_label(key, raw)
        kind = raw.get("kind")
        if kind == "fixed":
            amount = parse_number(raw.get("amount"))
            if amount is None:
                raise TierTableError(f"tier {key}: fixed entry needs a numeric amount")
            return Fixed(amount=amount, label=label)
        if kind == "percent":
            pct = parse_number(raw.get("pct"))
            if pct is None:
                raise TierTableError(f"tier {key}: percent entry needs a numeric pct")
            return Percent(pct=pct, label=label)
        if kind == "full":
            return Full(label=label)
        raise TierTableError(f"tier {key}: unknown kind {kind!r} (expected fixed, percent or full)")

    value = parse_number(raw)
    if value is None:
        raise TierTableError(f"tier {key}: {raw!r} is not a number or tier object")
    return Raw(value=value)


def parse_tiers(raw) -> TierTable:
    """Validate a raw tier table; raise TierTableError on the first bad key or entry."""
    if not isinstance(raw, Mapping):
        raise TierTableError("tier table must be a JSON object keyed by correct count")
    table: TierTable = {}
    for raw_key, raw_entry in raw.items():
        key = _parse_key(raw_key)
        if key in table:
            raise TierTableError(f"tier key {raw_key!r} is duplicated")
        table[key] = parse_tier_entry(raw_key, raw_entry)
    return table


def _is_parsed(tiers: Mapping) -> bool:
    return all(isinstance(k, int) and isinstance(v, (Fixed, Percent, Full, Raw)) for k, v in tiers.items())


def select_tier_key(correct_count: int, keys, policy: str = "floor") -> Optional[int]:
    keys = sorted(keys)
    if correct_count in keys:
        return correct_count
    if policy == "exact":
        return None
    below = [k for k in keys if k <= correct_count]
    return below[-1] if below else None


def entry_payout(entry: TierEntry, prize_pool: Optional[Decimal]) -> Optional[Decimal]:
    if isinstance(entry, Raw):
        return q_money(entry.value)
    if isinstance(entry, Fixed):
        return q_money(entry.amount)
    if isinstance(entry, Percent):
        if prize_pool is None:
            return None
        return q_money(D(prize_pool) * entry.pct)
    if isinstance(entry, Full):
        return q_money_or_none(prize_pool)
    raise TypeError(f"unsupported tier entry {entry!r}")


def compute_tier_and_payout(
    correct_count: int,
    prize_pool,
    tiers,
    *,
    policy: str = "floor",
) -> TierOutcome:
    """
    Resolve the tier reached by `correct_count` and its estimated payout.

    `tiers` may be a raw JSON mapping or an already parsed table. A missing or
    empty table is a no-hit; a malformed one raises TierTableError.
    """
    if correct_count is None or int(correct_count) < 0:
        raise ValidationError("correct_count must be a non-negative integer")
    correct_count = int(correct_count)

    if not isinstance(tiers, Mapping) or not tiers:
        return NO_HIT
    table = tiers if _is_parsed(tiers) else parse_tiers(tiers)

    key = select_tier_key(correct_count, table.keys(), policy)
    if key is None:
        return NO_HIT

    entry = table[key]
    pool = parse_number(prize_pool)
    return TierOutcome(
        tier_hit=entry.label or f"{key}_correct",
        payout_estimated=entry_payout(entry, pool),
    )


def entry_to_json(entry: TierEntry):
    if isinstance(entry, Raw):
        return float(entry.value)
    out: dict = {}
    if isinstance(entry, Fixed):
        out = {"kind": "fixed", "amount": float(entry.amount)}
    elif isinstance(entry, Percent):
        out = {"kind": "percent", "pct": float(entry.pct)}
    elif isinstance(entry, Full):
        out = {"kind": "full"}
    if entry.label:
        out["label"] = entry.label
    return out


def tiers_to_json(table: TierTable) -> dict[str, object]:
    return {str(k): entry_to_json(v) for k, v in sorted(table.items())}
