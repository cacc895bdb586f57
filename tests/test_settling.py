import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest

from hunter.services import settling
from hunter.services.errors import (
    InvalidTransitionError,
    MissingResultsError,
    NotFoundError,
    TierTableError,
    ValidationError,
)

GID = "00000000-0000-0000-0000-0000000000aa"


class _FakeResult:
    def __init__(self, row=None):
        self._row = row

    def first(self):
        return self._row

    def fetchall(self):
        return [self._row] if self._row is not None else []


class _FakeSession:
    def __init__(self, *, fail_on: str | None = None):
        self.calls: list[tuple[str, object]] = []
        self.commits = 0
        self.rollbacks = 0
        self.fail_on = fail_on

    async def execute(self, stmt, params=None):
        sql = str(stmt)
        self.calls.append((sql, params))
        if self.fail_on and self.fail_on in sql:
            raise RuntimeError("function settle_group_and_update_cycles(uuid) does not exist")
        return _FakeResult()

    async def commit(self):
        self.commits += 1

    async def rollback(self):
        self.rollbacks += 1


def _group(status="settling", **extra):
    row = {
        "id": GID,
        "site_id": "sportpesa",
        "jackpot_type_id": "mega",
        "status": status,
        "lock_time": datetime.now(timezone.utc) - timedelta(days=2),
        "end_time": datetime.now(timezone.utc) - timedelta(hours=2),
        "prize_pool": Decimal("1000"),
        "currency": "KES",
        "payout_tiers_override": None,
    }
    row.update(extra)
    return row


def _sheet():
    fixtures = [
        {"id": "f1", "seq": 1, "status": "finished", "result": "1", "final_score": "2-0"},
        {"id": "f2", "seq": 2, "status": "finished", "result": "1", "final_score": "1-0"},
        {"id": "f3", "seq": 3, "status": "finished", "result": "2", "final_score": "0-3"},
    ]
    variants = [{"id": "va", "variant": "A"}, {"id": "vb", "variant": "B"}]
    predictions = [
        {"variant_id": "va", "fixture_id": "f1", "pick": "1"},
        {"variant_id": "va", "fixture_id": "f2", "pick": "X"},
        {"variant_id": "va", "fixture_id": "f3", "pick": "2"},
        {"variant_id": "vb", "fixture_id": "f1", "pick": "X"},
        {"variant_id": "vb", "fixture_id": "f2", "pick": "X"},
        {"variant_id": "vb", "fixture_id": "f3", "pick": "X"},
    ]
    tiers = {"2": {"kind": "percent", "pct": 0.5}}
    return fixtures, variants, predictions, tiers


def _patch_loads(monkeypatch, group, sheet=None):
    sheet = sheet or _sheet()

    async def _fetch_group(_session, _gid, *, for_update=False):
        return dict(group) if group is not None else None

    async def _load_sheet(_session, _group):
        fixtures, variants, predictions, tiers = sheet
        return [dict(f) for f in fixtures], variants, predictions, tiers

    monkeypatch.setattr(settling, "_fetch_group", _fetch_group)
    monkeypatch.setattr(settling, "_load_sheet", _load_sheet)


def test_build_preview_percent_tier():
    fixtures, variants, predictions, tiers = _sheet()
    rows = settling.build_preview({"prize_pool": Decimal("1000")}, fixtures, variants, predictions, tiers)
    by_variant = {r.variant: r for r in rows}
    assert by_variant["A"].correct_count == 2
    assert by_variant["A"].tier_hit == "2_correct"
    assert by_variant["A"].payout_estimated == Decimal("500.00")
    assert by_variant["B"].correct_count == 0
    assert by_variant["B"].tier_hit is None
    assert by_variant["B"].payout_estimated is None


def test_apply_fixture_updates_rules():
    fixtures = [
        {"id": "f1", "status": "scheduled", "result": None, "final_score": None},
        {"id": "f2", "status": "finished", "result": "1", "final_score": "1-0"},
        {"id": "f3", "status": "finished", "result": None, "final_score": None},
    ]
    out = settling.apply_fixture_updates(
        fixtures,
        [
            {"id": "f1", "result": "home"},
            {"id": "f2", "status": "postponed"},
            {"id": "f3", "final_score": "1-1"},
        ],
    )
    by_id = {f["id"]: f for f in out}
    assert by_id["f1"]["status"] == "finished" and by_id["f1"]["result"] == "1"
    assert by_id["f2"]["status"] == "postponed" and by_id["f2"]["result"] is None
    assert by_id["f3"]["result"] == "X"
    assert fixtures[0]["result"] is None


def test_apply_fixture_updates_rejects_foreign_fixture_and_bad_values():
    fixtures = [{"id": "f1", "status": "scheduled", "result": None}]
    with pytest.raises(ValidationError):
        settling.apply_fixture_updates(fixtures, [{"id": "zz", "result": "1"}])
    with pytest.raises(ValidationError):
        settling.apply_fixture_updates(fixtures, [{"id": "f1", "result": "4"}])
    with pytest.raises(ValidationError):
        settling.apply_fixture_updates(fixtures, [{"id": "f1", "status": "live"}])


def test_lock_results_settles_and_runs_cascade(monkeypatch):
    _patch_loads(monkeypatch, _group())

    async def _call_cascade(_session, _gid):
        return {"cycles_updated": 3, "cycles_won_now": 1}

    monkeypatch.setattr(settling, "_call_cascade", _call_cascade)
    session = _FakeSession()
    outcome = asyncio.run(settling.lock_results(session, GID, settled_by=None))

    assert isinstance(outcome, settling.Settled)
    assert outcome.cycles_updated == 3
    assert outcome.cycles_won_now == 1
    sqls = [sql for sql, _ in session.calls]
    assert any("UPDATE fixtures" in s for s in sqls)
    settlement_calls = [p for s, p in session.calls if "INSERT INTO variant_settlements" in s]
    assert len(settlement_calls) == 1
    rows = {r["vid"]: r for r in settlement_calls[0]}
    assert rows["va"]["correct"] == 2 and rows["va"]["payout"] == Decimal("500.00")
    assert rows["vb"]["correct"] == 0 and rows["vb"]["tier_hit"] is None
    assert any("UPDATE jackpot_groups SET status" in s and p["status"] == "settled" for s, p in session.calls)
    cascade_rows = [p for s, p in session.calls if "INSERT INTO settlement_cascades" in s]
    assert cascade_rows and cascade_rows[-1]["status"] == "ok"
    assert outcome.to_dict()["cascade"] == "ok"


def test_lock_results_cascade_failure_keeps_settlement(monkeypatch):
    _patch_loads(monkeypatch, _group())
    alerts = []

    async def _notify(text):
        alerts.append(text)
        return True

    monkeypatch.setattr(settling, "notify_admin", _notify)
    session = _FakeSession(fail_on="settle_group_and_update_cycles")
    outcome = asyncio.run(settling.lock_results(session, GID))

    assert isinstance(outcome, settling.SettledWithCascadeFailure)
    assert "does not exist" in outcome.reason
    # settlement transaction committed before the cascade was attempted
    group_update = next(i for i, (s, _) in enumerate(session.calls) if "UPDATE jackpot_groups" in s)
    cascade_call = next(i for i, (s, _) in enumerate(session.calls) if "settle_group_and_update_cycles" in s)
    assert group_update < cascade_call
    assert session.commits >= 1
    failed = [p for s, p in session.calls if "INSERT INTO settlement_cascades" in s]
    assert failed and failed[-1]["status"] == "failed"
    assert alerts and GID in alerts[0]
    assert outcome.to_dict()["cascade"] == "failed"


def test_lock_results_requires_results_for_finished_fixtures(monkeypatch):
    fixtures, variants, predictions, tiers = _sheet()
    fixtures[1]["result"] = None
    fixtures[2]["result"] = None
    _patch_loads(monkeypatch, _group(), (fixtures, variants, predictions, tiers))
    session = _FakeSession()

    with pytest.raises(MissingResultsError) as exc:
        asyncio.run(settling.lock_results(session, GID))
    assert exc.value.count == 2
    assert session.rollbacks == 1
    assert not any("variant_settlements" in s for s, _ in session.calls)


def test_lock_results_void_update_satisfies_precondition(monkeypatch):
    fixtures, variants, predictions, tiers = _sheet()
    fixtures[2]["result"] = None
    _patch_loads(monkeypatch, _group(), (fixtures, variants, predictions, tiers))

    async def _call_cascade(_session, _gid):
        return {}

    monkeypatch.setattr(settling, "_call_cascade", _call_cascade)
    outcome = asyncio.run(settling.lock_results(_FakeSession(), GID, [{"id": "f3", "status": "void"}]))
    assert isinstance(outcome, settling.Settled)
    assert {v.variant: v.correct_count for v in outcome.variants} == {"A": 1, "B": 0}


@pytest.mark.parametrize(
    "group",
    [
        _group(status="settled"),
        _group(status="archived"),
        _group(status="draft"),
        _group(status="active", end_time=datetime.now(timezone.utc) + timedelta(hours=3)),
    ],
)
def test_lock_results_refuses_wrong_status(monkeypatch, group):
    _patch_loads(monkeypatch, group)
    with pytest.raises(InvalidTransitionError):
        asyncio.run(settling.lock_results(_FakeSession(), GID))


def test_lock_results_unknown_group(monkeypatch):
    _patch_loads(monkeypatch, None)
    with pytest.raises(NotFoundError):
        asyncio.run(settling.lock_results(_FakeSession(), GID))


def test_open_group_moves_locked_to_settling(monkeypatch):
    _patch_loads(monkeypatch, _group(status="locked"))
    session = _FakeSession()
    sheet = asyncio.run(settling.open_group(session, GID))

    assert sheet["group"]["status"] == "settling"
    assert any("UPDATE jackpot_groups SET status" in s and p["status"] == "settling" for s, p in session.calls)
    assert sheet["missing_results"] == 0
    assert sheet["tiers"] == {"2": {"kind": "percent", "pct": 0.5}}
    assert [v["variant"] for v in sheet["preview"]] == ["A", "B"]
    assert sheet["preview"][0]["payout_estimated"] == 500.0


def test_preview_does_not_write(monkeypatch):
    _patch_loads(monkeypatch, _group())
    session = _FakeSession()
    rows = asyncio.run(settling.preview(session, GID, [{"id": "f2", "result": "X"}]))
    assert {r.variant: r.correct_count for r in rows} == {"A": 3, "B": 1}
    assert session.calls == []
    assert session.commits == 0


def test_save_progress_marks_group_settling(monkeypatch):
    _patch_loads(monkeypatch, _group(status="locked"))

    async def _fetch_fixtures(_session, _gid):
        return [{"id": "f1", "status": "scheduled", "result": None, "final_score": None}]

    monkeypatch.setattr(settling, "_fetch_fixtures", _fetch_fixtures)
    session = _FakeSession()
    out = asyncio.run(settling.save_progress(session, GID, [{"id": "f1", "status": "FT"}]))

    assert out["status"] == "settling"
    assert out["missing_results"] == 1
    assert session.commits == 1


def test_repair_cascade_only_for_settled(monkeypatch):
    _patch_loads(monkeypatch, _group(status="settling"))
    with pytest.raises(InvalidTransitionError):
        asyncio.run(settling.repair_cascade(_FakeSession(), GID))


def test_repair_cascade_records_success(monkeypatch):
    _patch_loads(monkeypatch, _group(status="settled"))

    async def _call_cascade(_session, _gid):
        return {"cycles_updated": 2, "cycles_won_now": 0}

    monkeypatch.setattr(settling, "_call_cascade", _call_cascade)
    session = _FakeSession()
    outcome = asyncio.run(settling.repair_cascade(session, GID))

    assert isinstance(outcome, settling.Settled)
    assert outcome.cycles_updated == 2
    recorded = [p for s, p in session.calls if "INSERT INTO settlement_cascades" in s]
    assert recorded[-1]["status"] == "ok"
    assert recorded[-1]["updated"] == 2


def test_effective_tiers_prefers_override(monkeypatch):
    async def _rule(*_args):
        raise AssertionError("payout rule must not be read when an override exists")

    monkeypatch.setattr(settling, "_fetch_rule_tiers", _rule)
    group = _group(payout_tiers_override='{"13": 100}')
    assert asyncio.run(settling.effective_tiers(_FakeSession(), group)) == {"13": 100}


def test_effective_tiers_falls_back_to_rule(monkeypatch):
    async def _rule(_session, site_id, jackpot_type_id):
        assert (site_id, jackpot_type_id) == ("sportpesa", "mega")
        return {"12": 5000}

    monkeypatch.setattr(settling, "_fetch_rule_tiers", _rule)
    assert asyncio.run(settling.effective_tiers(_FakeSession(), _group())) == {"12": 5000}


LEGACY_TIERS = {"2": {"kind": "percent", "pct": 0.5}, "note": "set by old admin page"}


def _legacy_sheet():
    fixtures, variants, predictions, _ = _sheet()
    return fixtures, variants, predictions, LEGACY_TIERS


def test_open_group_with_malformed_tiers_still_returns_sheet(monkeypatch):
    _patch_loads(monkeypatch, _group(status="locked"), _legacy_sheet())
    session = _FakeSession()
    sheet = asyncio.run(settling.open_group(session, GID))

    assert sheet["group"]["status"] == "settling"
    assert sheet["tiers"] is None
    assert "'note'" in sheet["tiers_error"]
    assert [v["correct_count"] for v in sheet["preview"]] == [2, 0]
    assert all(v["tier_hit"] is None and v["payout_estimated"] is None for v in sheet["preview"])


def test_open_group_reports_no_tiers_error_for_valid_table(monkeypatch):
    _patch_loads(monkeypatch, _group())
    sheet = asyncio.run(settling.open_group(_FakeSession(), GID))
    assert sheet["tiers_error"] is None


def test_preview_with_malformed_tiers_has_null_payouts(monkeypatch):
    _patch_loads(monkeypatch, _group(), _legacy_sheet())
    rows = asyncio.run(settling.preview(_FakeSession(), GID))
    assert {r.variant: (r.correct_count, r.payout_estimated) for r in rows} == {"A": (2, None), "B": (0, None)}


def test_lock_results_refuses_malformed_tiers(monkeypatch):
    _patch_loads(monkeypatch, _group(), _legacy_sheet())
    session = _FakeSession()

    with pytest.raises(TierTableError):
        asyncio.run(settling.lock_results(session, GID))
    assert session.rollbacks == 1
    assert not any("variant_settlements" in s for s, _ in session.calls)
    assert not any("settle_group_and_update_cycles" in s for s, _ in session.calls)


def test_build_preview_strict_by_default():
    fixtures, variants, predictions, _ = _sheet()
    with pytest.raises(TierTableError):
        settling.build_preview({"prize_pool": Decimal("1000")}, fixtures, variants, predictions, LEGACY_TIERS)


def test_set_group_tiers_replaces_override(monkeypatch):
    _patch_loads(monkeypatch, _group())
    session = _FakeSession()
    out = asyncio.run(settling.set_group_tiers(session, GID, {"13": 100, "12": {"kind": "full"}}))

    assert out["tiers"] == {"12": {"kind": "full"}, "13": 100.0}
    sql, params = session.calls[-1]
    assert "SET payout_tiers_override" in sql
    assert params["gid"] == GID and params["tiers"] is not None
    assert session.commits == 1


def test_set_group_tiers_clears_override(monkeypatch):
    _patch_loads(monkeypatch, _group())
    session = _FakeSession()
    out = asyncio.run(settling.set_group_tiers(session, GID, None))
    assert out["tiers"] is None
    assert session.calls[-1][1]["tiers"] is None


def test_set_group_tiers_rejects_malformed_table(monkeypatch):
    _patch_loads(monkeypatch, _group())
    session = _FakeSession()
    with pytest.raises(TierTableError):
        asyncio.run(settling.set_group_tiers(session, GID, LEGACY_TIERS))
    assert session.calls == []


def test_set_group_tiers_refuses_settled_group(monkeypatch):
    _patch_loads(monkeypatch, _group(status="settled"))
    session = _FakeSession()
    with pytest.raises(InvalidTransitionError):
        asyncio.run(settling.set_group_tiers(session, GID, {"13": 100}))
    assert session.rollbacks == 1
    assert not any("payout_tiers_override" in s for s, _ in session.calls)


def _row(**values):
    row = SimpleNamespace(**values)
    row._mapping = values
    return row


class _RowsResult:
    def __init__(self, rows):
        self._rows = rows

    def first(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class _RowsSession(_FakeSession):
    def __init__(self, rows):
        super().__init__()
        self.rows = rows

    async def execute(self, stmt, params=None):
        self.calls.append((str(stmt), params))
        return _RowsResult(self.rows)


def test_settling_queue_filters_and_limits():
    end = datetime(2026, 3, 1, 18, 0, tzinfo=timezone.utc)
    session = _RowsSession(
        [_row(id=GID, site_id="sportpesa", jackpot_type_id="mega", status="locked",
              lock_time=end - timedelta(days=2), end_time=end, prize_pool=Decimal("1000"), currency="KES")]
    )
    groups = asyncio.run(settling.settling_queue(session, 5))

    sql, params = session.calls[0]
    assert params == {"limit": 5}
    assert "status <> 'archived'" in sql
    assert "status IN ('locked', 'settling')" in sql
    assert groups == [
        {
            "id": GID,
            "site_id": "sportpesa",
            "jackpot_type_id": "mega",
            "status": "locked",
            "lock_time": "2026-02-27T18:00:00+00:00",
            "end_time": "2026-03-01T18:00:00+00:00",
            "prize_pool": 1000.0,
            "currency": "KES",
        }
    ]


def test_settling_queue_default_limit():
    session = _RowsSession([])
    assert asyncio.run(settling.settling_queue(session)) == []
    assert session.calls[0][1] == {"limit": 50}


def test_cascade_status_reads_record():
    at = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)
    session = _RowsSession(
        [_row(group_id=GID, status="failed", attempts=2, last_error="rpc missing",
              cycles_updated=None, cycles_won_now=None, last_attempt_at=at)]
    )
    out = asyncio.run(settling.cascade_status(session, GID))

    assert session.calls[0][1] == {"gid": GID}
    assert "FROM settlement_cascades" in session.calls[0][0]
    assert out == {
        "group_id": GID,
        "status": "failed",
        "attempts": 2,
        "last_error": "rpc missing",
        "cycles_updated": None,
        "cycles_won_now": None,
        "last_attempt_at": "2026-03-02T09:30:00+00:00",
    }


def test_cascade_status_missing_record():
    assert asyncio.run(settling.cascade_status(_RowsSession([]), GID)) is None
