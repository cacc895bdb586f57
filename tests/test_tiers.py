from decimal import Decimal

import pytest

from hunter.services.errors import TierTableError, ValidationError
from hunter.services.tiers import (
    Fixed,
    Full,
    Percent,
    Raw,
    compute_tier_and_payout,
    parse_tiers,
    select_tier_key,
    tiers_to_json,
)

SAMPLE = {"12": 20000, "15": {"kind": "full"}}


def test_no_key_below_count_is_no_hit():
    out = compute_tier_and_payout(3, 500000, SAMPLE)
    assert out.tier_hit is None
    assert out.payout_estimated is None


def test_empty_or_missing_table_is_no_hit():
    for tiers in (None, {}, [], "12:100"):
        out = compute_tier_and_payout(13, 1000, tiers)
        assert out.tier_hit is None
        assert out.payout_estimated is None


def test_exact_and_floor_matches():
    exact = compute_tier_and_payout(12, 500000, SAMPLE)
    assert exact.tier_hit == "12_correct"
    assert exact.payout_estimated == Decimal("20000")

    floored = compute_tier_and_payout(14, 500000, SAMPLE)
    assert floored.tier_hit == "12_correct"
    assert floored.payout_estimated == Decimal("20000")

    full = compute_tier_and_payout(15, 500000, SAMPLE)
    assert full.tier_hit == "15_correct"
    assert full.payout_estimated == Decimal("500000")


def test_exact_policy_ignores_lower_keys():
    out = compute_tier_and_payout(14, 500000, SAMPLE, policy="exact")
    assert out.tier_hit is None
    assert out.payout_estimated is None
    assert compute_tier_and_payout(12, 500000, SAMPLE, policy="exact").tier_hit == "12_correct"


def test_percent_of_pool():
    out = compute_tier_and_payout(2, 1000, {"2": {"kind": "percent", "pct": 0.5}})
    assert out.tier_hit == "2_correct"
    assert out.payout_estimated == Decimal("500.00")


def test_percent_and_full_without_pool_have_no_payout():
    tiers = {"10": {"kind": "percent", "pct": "0.1", "label": "Bonus 10"}, "13": {"kind": "full"}}
    pct = compute_tier_and_payout(11, None, tiers)
    assert pct.tier_hit == "Bonus 10"
    assert pct.payout_estimated is None
    full = compute_tier_and_payout(13, None, tiers)
    assert full.tier_hit == "13_correct"
    assert full.payout_estimated is None


def test_numeric_string_and_fixed_entries():
    tiers = {"5": "1500.5", "7": {"kind": "fixed", "amount": 9000, "label": "Seven"}}
    assert compute_tier_and_payout(6, None, tiers).payout_estimated == Decimal("1500.50")
    out = compute_tier_and_payout(9, None, tiers)
    assert out.tier_hit == "Seven"
    assert out.payout_estimated == Decimal("9000.00")


def test_label_wins_over_key_name():
    out = compute_tier_and_payout(17, 100, {"17": {"kind": "full", "label": "Jackpot"}})
    assert out.tier_hit == "Jackpot"
    assert out.payout_estimated == Decimal("100.00")


@pytest.mark.parametrize(
    "raw",
    [
        {"12": "lots"},
        {"12": None},
        {"12": {"kind": "bonus"}},
        {"12": {"kind": "fixed", "amount": "x"}},
        {"12": {"kind": "percent"}},
        {"twelve": 100},
        {"12.5": 100},
        {"-1": 100},
        {"12": True},
    ],
)
def test_malformed_tables_are_rejected(raw):
    with pytest.raises(TierTableError):
        parse_tiers(raw)
    with pytest.raises(TierTableError):
        compute_tier_and_payout(12, 1000, raw)


def test_negative_count_rejected():
    with pytest.raises(ValidationError):
        compute_tier_and_payout(-1, 1000, SAMPLE)


def test_parse_tiers_shapes_and_json():
    table = parse_tiers(
        {
            "10": 100,
            "12": {"kind": "fixed", "amount": 2000},
            "13": {"kind": "percent", "pct": 0.03},
            "17": {"kind": "full", "label": "Jackpot"},
        }
    )
    assert table[10] == Raw(Decimal("100"))
    assert table[12] == Fixed(Decimal("2000"))
    assert table[13] == Percent(Decimal("0.03"))
    assert table[17] == Full(label="Jackpot")
    assert tiers_to_json(table) == {
        "10": 100.0,
        "12": {"kind": "fixed", "amount": 2000.0},
        "13": {"kind": "percent", "pct": 0.03},
        "17": {"kind": "full", "label": "Jackpot"},
    }


def test_parsed_table_is_accepted_directly():
    table = parse_tiers(SAMPLE)
    assert compute_tier_and_payout(13, 500000, table).payout_estimated == Decimal("20000")


def test_select_tier_key():
    assert select_tier_key(14, [15, 12, 10]) == 12
    assert select_tier_key(9, [15, 12, 10]) is None
    assert select_tier_key(14, [15, 12], policy="exact") is None
