import heapq
import json
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Deque, Dict, Iterable, Iterator, List, Optional, Tuple

from querygate.core.config import settings
from querygate.core.schemas import (
    DateWindow,
    HistoryEntry,
    HistoryFilter,
    HistorySortField,
    HistoryStats,
    QueryKind,
    QueryStatus,
    utc_now,
)


# -----------------------------------------------------------------------------
# HISTORY LEDGER
# Purpose: keep the last N finished (or blocked) queries per kind, newest first.
# Why: users re-run and audit recent queries; the log must never grow unbounded.
# -----------------------------------------------------------------------------


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # Naive datetimes from query strings are taken as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def window_start(window: DateWindow, now: datetime) -> datetime:
    if window == DateWindow.TODAY:
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if window == DateWindow.WEEK:
        return now - timedelta(days=7)
    return now - timedelta(days=30)


class HistoryView:
    """
    Lazy, restartable view over a snapshot of history entries.

    Every iteration starts over from the snapshot taken at query time, so later
    appends never change what an existing view yields.
    """

    def __init__(
        self,
        sources: Tuple[Tuple[HistoryEntry, ...], ...],
        history_filter: HistoryFilter,
        now: Optional[datetime] = None,
    ):
        self._sources = sources
        self.filter = history_filter
        now = now or utc_now()

        since = _aware(history_filter.since)
        if history_filter.window is not None:
            start = window_start(history_filter.window, now)
            since = max(since, start) if since else start
        self._since = since
        self._until = _aware(history_filter.until)
        self._search = (history_filter.search or "").strip().lower()

    def _matches(self, entry: HistoryEntry) -> bool:
        f = self.filter
        if self._search and self._search not in entry.raw_query.lower():
            return False
        if f.status is not None and entry.status != f.status:
            return False
        if f.kind is not None and entry.kind != f.kind:
            return False
        if self._since is not None and entry.timestamp < self._since:
            return False
        if self._until is not None and entry.timestamp > self._until:
            return False
        return True

    def _newest_first(self) -> Iterable[HistoryEntry]:
        if len(self._sources) == 1:
            return self._sources[0]
        return heapq.merge(*self._sources, key=lambda e: e.timestamp, reverse=True)

    def __iter__(self) -> Iterator[HistoryEntry]:
        matching = (e for e in self._newest_first() if self._matches(e))
        sort_by = self.filter.sort_by
        if sort_by is None:
            yield from matching
            return

        field = sort_by.value
        present, missing = [], []
        for entry in matching:
            (missing if getattr(entry, field) is None else present).append(entry)
        present.sort(key=lambda e: getattr(e, field), reverse=self.filter.descending)
        yield from present
        yield from missing

    def to_list(self) -> List[HistoryEntry]:
        return list(self)

    def count(self) -> int:
        return sum(1 for _ in self)


class HistoryLedger:
    """Bounded, append-only log with one bucket per query kind."""

    def __init__(self, limit: Optional[int] = None):
        self.limit = limit or settings.HISTORY_LIMIT
        self._buckets: Dict[QueryKind, Deque[HistoryEntry]] = {
            kind: deque(maxlen=self.limit) for kind in QueryKind
        }

    def append(self, entry: HistoryEntry, kind: Optional[QueryKind] = None) -> None:
        # appendleft on a bounded deque evicts the oldest entry on the right
        self._buckets[kind or entry.kind].appendleft(entry)

    def clear(self, kind: Optional[QueryKind] = None) -> None:
        kinds = [kind] if kind is not None else list(QueryKind)
        for k in kinds:
            self._buckets[k].clear()

    def size(self, kind: Optional[QueryKind] = None) -> int:
        if kind is not None:
            return len(self._buckets[kind])
        return sum(len(bucket) for bucket in self._buckets.values())

    def query(
        self,
        history_filter: Optional[HistoryFilter] = None,
        kind: Optional[QueryKind] = None,
    ) -> HistoryView:
        """
        Entries matching the filter, newest first unless a sort is requested.

        Args:
            history_filter: search / status / kind / date predicates and sort
            kind: shortcut that restricts the view to one bucket
        """
        history_filter = history_filter or HistoryFilter()
        kind = kind or history_filter.kind
        kinds = [kind] if kind is not None else list(QueryKind)
        sources = tuple(tuple(self._buckets[k]) for k in kinds)
        return HistoryView(sources, history_filter)

    def remove(self, ids: Iterable[str]) -> int:
        """Drop the selected entries; returns how many were removed."""
        targets = set(ids)
        removed = 0
        for kind, bucket in self._buckets.items():
            kept = [entry for entry in bucket if entry.id not in targets]
            removed += len(bucket) - len(kept)
            self._buckets[kind] = deque(kept, maxlen=self.limit)
        return removed

    def stats(self, kind: Optional[QueryKind] = None) -> HistoryStats:
        entries = self.query(kind=kind).to_list()
        succeeded = sum(1 for e in entries if e.status == QueryStatus.SUCCESS)
        timings = [e.execution_time_ms for e in entries if e.execution_time_ms is not None]

        return HistoryStats(
            total=len(entries),
            succeeded=succeeded,
            failed=len(entries) - succeeded,
            success_rate=round(succeeded / len(entries) * 100, 2) if entries else 0.0,
            avg_execution_time_ms=round(sum(timings) / len(timings), 2) if timings else None,
        )

    def export_json(self, history_filter: Optional[HistoryFilter] = None) -> str:
        records = [entry.model_dump(mode="json") for entry in self.query(history_filter)]
        return json.dumps(records, indent=2)
