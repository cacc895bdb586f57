import re
from typing import Optional

_SCORE_RE = re.compile(r"^\s*(\d+)\s*[-:]\s*(\d+)\s*$")


def normalize_fixture_status(raw: Optional[str]) -> Optional[str]:
    """Map native and feed-style status codes onto fixture statuses; None when unknown."""
    code = (raw or "").strip().upper()
    if not code:
        return "scheduled"

    finished = {"FINISHED", "FT", "AET", "PEN"}
    scheduled = {"SCHEDULED", "NS", "TBD", "PENDING"}
    void = {"VOID", "CANC", "CANCELLED", "CANCELED", "AWD", "WO"}
    postponed = {"POSTPONED", "PST"}
    abandoned = {"ABANDONED", "ABD", "SUSP"}

    if code in finished:
        return "finished"
    if code in scheduled:
        return "scheduled"
    if code in void:
        return "void"
    if code in postponed:
        return "postponed"
    if code in abandoned:
        return "abandoned"
    return None


def normalize_pick(raw) -> Optional[str]:
    """Map a 1X2 pick in any common spelling onto '1' | 'X' | '2'; None when unknown."""
    if raw is None or isinstance(raw, bool):
        return None
    code = str(raw).strip().upper()
    if code in {"1", "H", "HOME", "HOME_WIN"}:
        return "1"
    if code in {"X", "D", "DRAW"}:
        return "X"
    if code in {"2", "A", "AWAY", "AWAY_WIN"}:
        return "2"
    return None


def result_from_score(final_score: Optional[str]) -> Optional[str]:
    m = _SCORE_RE.match(final_score or "")
    if not m:
        return None
    home, away = int(m.group(1)), int(m.group(2))
    if home > away:
        return "1"
    if home == away:
        return "X"
    return "2"
