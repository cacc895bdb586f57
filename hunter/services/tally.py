from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Mapping
from typing import Optional


def _field(row, name: str):
    if isinstance(row, Mapping):
        return row.get(name)
    return getattr(row, name, None)


def _key(value) -> Optional[str]:
    return str(value) if value is not None else None


def is_gradable(status: Optional[str], result: Optional[str]) -> bool:
    return status == "finished" and bool(result)


def tally_correct(
    fixtures: Iterable,
    predictions: Iterable,
    variant_ids: Iterable | None = None,
) -> dict[str, int]:
    """
    Count correct picks per variant.

    A pick counts only when its fixture is finished with a result and the pick
    equals that result. Every id in `variant_ids` appears in the output, with 0
    when nothing matched. Inputs are not mutated.
    """
    outcomes: dict[str, tuple[Optional[str], Optional[str]]] = {}
    for f in fixtures:
        outcomes[_key(_field(f, "id"))] = (_field(f, "status"), _field(f, "result"))

    counts: dict[str, int] = defaultdict(int)
    for vid in variant_ids or ():
        counts[_key(vid)] += 0

    for p in predictions:
        vid = _key(_field(p, "variant_id"))
        if vid is None:
            continue
        counts[vid] += 0
        outcome = outcomes.get(_key(_field(p, "fixture_id")))
        if outcome is None:
            continue
        status, result = outcome
        if not is_gradable(status, result):
            continue
        if _field(p, "pick") == result:
            counts[vid] += 1
    return dict(counts)


def missing_results(fixtures: Iterable) -> list:
    """Fixtures marked finished that still have no result."""
    return [f for f in fixtures if _field(f, "status") == "finished" and not _field(f, "result")]
