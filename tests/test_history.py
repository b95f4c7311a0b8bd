import json
from datetime import datetime, timedelta, timezone

from querygate.core.governance.history import HistoryLedger
from querygate.core.schemas import (
    DateWindow,
    HistoryEntry,
    HistoryFilter,
    HistorySortField,
    QueryKind,
    QueryStatus,
)

BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)


def make_entry(n, kind=QueryKind.DATABASE, status=QueryStatus.SUCCESS, **kwargs):
    return HistoryEntry(
        id=f"entry-{n}",
        kind=kind,
        raw_query=kwargs.pop("raw_query", f"SELECT {n} FROM orders"),
        user_id="user-1",
        timestamp=kwargs.pop("timestamp", BASE_TIME + timedelta(minutes=n)),
        status=status,
        **kwargs,
    )


def test_bucket_keeps_newest_hundred():
    """150 appends leave entries 51..150, newest first"""
    ledger = HistoryLedger(limit=100)
    for n in range(1, 151):
        ledger.append(make_entry(n), QueryKind.DATABASE)

    entries = ledger.query(kind=QueryKind.DATABASE).to_list()
    assert len(entries) == 100
    assert entries[0].id == "entry-150"
    assert entries[-1].id == "entry-51"
    assert all(e.id != "entry-50" for e in entries)
    assert ledger.size(QueryKind.FILE) == 0


def test_kinds_are_separate_and_merged_newest_first():
    ledger = HistoryLedger()
    ledger.append(make_entry(1, kind=QueryKind.FILE))
    ledger.append(make_entry(2))
    ledger.append(make_entry(3, kind=QueryKind.FILE))

    assert ledger.size(QueryKind.FILE) == 2
    assert ledger.size() == 3
    assert [e.id for e in ledger.query()] == ["entry-3", "entry-2", "entry-1"]


def test_clear_one_kind_or_all():
    ledger = HistoryLedger()
    ledger.append(make_entry(1, kind=QueryKind.FILE))
    ledger.append(make_entry(2))

    ledger.clear(QueryKind.FILE)
    assert ledger.size(QueryKind.FILE) == 0
    assert ledger.size(QueryKind.DATABASE) == 1

    ledger.clear()
    assert ledger.size() == 0


def test_filters():
    ledger = HistoryLedger()
    ledger.append(make_entry(1, raw_query="SELECT * FROM payroll"))
    ledger.append(make_entry(2, status=QueryStatus.ERROR))
    ledger.append(make_entry(3, raw_query="select name from PAYROLL_archive"))

    found = ledger.query(HistoryFilter(search="payroll")).to_list()
    assert [e.id for e in found] == ["entry-3", "entry-1"]

    failed = ledger.query(HistoryFilter(status=QueryStatus.ERROR)).to_list()
    assert [e.id for e in failed] == ["entry-2"]

    ranged = ledger.query(
        HistoryFilter(since=BASE_TIME + timedelta(minutes=2), until=BASE_TIME + timedelta(minutes=2))
    )
    assert [e.id for e in ranged] == ["entry-2"]


def test_date_window():
    ledger = HistoryLedger()
    now = datetime.now(timezone.utc)
    ledger.append(make_entry(1, timestamp=now - timedelta(days=20)))
    ledger.append(make_entry(2, timestamp=now - timedelta(days=3)))

    week = ledger.query(HistoryFilter(window=DateWindow.WEEK)).to_list()
    assert [e.id for e in week] == ["entry-2"]
    assert ledger.query(HistoryFilter(window=DateWindow.MONTH)).count() == 2


def test_view_is_lazy_restartable_snapshot():
    ledger = HistoryLedger()
    ledger.append(make_entry(1))
    view = ledger.query()

    ledger.append(make_entry(2))
    assert [e.id for e in view] == ["entry-1"]
    # Iterating again starts over
    assert [e.id for e in view] == ["entry-1"]


def test_explicit_sort_puts_missing_values_last():
    ledger = HistoryLedger()
    ledger.append(make_entry(1, execution_time_ms=30.0))
    ledger.append(make_entry(2))
    ledger.append(make_entry(3, execution_time_ms=10.0))

    slowest = ledger.query(HistoryFilter(sort_by=HistorySortField.EXECUTION_TIME))
    assert [e.id for e in slowest] == ["entry-1", "entry-3", "entry-2"]

    fastest = ledger.query(
        HistoryFilter(sort_by=HistorySortField.EXECUTION_TIME, descending=False)
    )
    assert [e.id for e in fastest] == ["entry-3", "entry-1", "entry-2"]


def test_remove_selected_entries():
    ledger = HistoryLedger()
    for n in range(1, 4):
        ledger.append(make_entry(n))

    assert ledger.remove(["entry-2", "missing"]) == 1
    assert [e.id for e in ledger.query()] == ["entry-3", "entry-1"]


def test_stats_and_export():
    ledger = HistoryLedger()
    ledger.append(make_entry(1, execution_time_ms=10.0, row_count=3))
    ledger.append(make_entry(2, execution_time_ms=30.0, row_count=1))
    ledger.append(make_entry(3, status=QueryStatus.ERROR, message="boom"))

    stats = ledger.stats()
    assert stats.total == 3
    assert stats.succeeded == 2
    assert stats.failed == 1
    assert stats.success_rate == 66.67
    assert stats.avg_execution_time_ms == 20.0

    exported = json.loads(ledger.export_json(HistoryFilter(status=QueryStatus.ERROR)))
    assert len(exported) == 1
    assert exported[0]["id"] == "entry-3"
    assert exported[0]["message"] == "boom"
    assert exported[0]["kind"] == "database"
