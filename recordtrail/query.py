from __future__ import annotations

import calendar
import datetime as _dt
from collections import Counter
from typing import Dict, List, Optional

from .normalize import parse_upstream_ts
from .schemas import (
    AuditStats,
    CaptureRunRecord,
    RequestVolume,
    SearchFilters,
    SnapshotPage,
    StatusChangeRecord,
    TimelineEntry,
    VolumeWeek,
)
from .storage import SnapshotStore, TimeBound


def _months_before(now: _dt.datetime, months: int) -> _dt.datetime:
    years, month0 = divmod(now.month - 1 - months, 12)
    year = now.year + years
    day = min(now.day, calendar.monthrange(year, month0 + 1)[1])
    return now.replace(year=year, month=month0 + 1, day=day)


class AuditQueryService:
    """Read-only views over the stored history."""

    def __init__(self, store: SnapshotStore) -> None:
        self.store = store

    def timeline(self, identifier: str) -> List[TimelineEntry]:
        record_id = self.store.resolve_record_id(identifier)
        if record_id is None:
            return []
        events = {e.new_snapshot_id: e for e in self.store.status_changes(record_id)}
        return [
            TimelineEntry(snapshot=snap, status_change=events.get(snap.snapshot_id))
            for snap in self.store.history(record_id)
        ]

    def status_changes(self, identifier: str) -> List[StatusChangeRecord]:
        record_id = self.store.resolve_record_id(identifier)
        if record_id is None:
            return []
        return self.store.status_changes(record_id)

    def recent_status_changes(self, since: TimeBound = None, until: TimeBound = None, limit: int = 500) -> List[StatusChangeRecord]:
        return self.store.status_changes_between(since, until, limit=limit)

    def search(self, filters: Optional[SearchFilters] = None, page: int = 1, limit: int = 50) -> SnapshotPage:
        return self.store.search(filters, page=page, limit=limit)

    def stats(self) -> AuditStats:
        return self.store.stats()

    def runs(self, limit: int = 20) -> List[CaptureRunRecord]:
        return self.store.list_runs(limit)

    def request_volume(self, months: int = 6, now: Optional[_dt.datetime] = None) -> RequestVolume:
        """Weekly counts of records created upstream in the last `months` months."""
        now = now or _dt.datetime.now(tz=_dt.timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=_dt.timezone.utc)
        start = _months_before(now, months)

        weeks: Dict[_dt.date, list] = {}
        for snap in self.store.first_snapshots(created_from=start):
            created = parse_upstream_ts(snap.upstream_created_at)
            if created is None or created < start or created > now:
                continue
            day = created.astimezone(_dt.timezone.utc).date()
            weeks.setdefault(day - _dt.timedelta(days=day.weekday()), []).append(snap)

        created_snaps = [s for group in weeks.values() for s in group]
        total = len(created_snaps)
        days = (now - start).days
        weekly = [
            VolumeWeek(
                week_start=monday.isoformat(),
                requests_created=len(group),
                unique_accounts=len({s.account_name for s in group if s.account_name}),
                request_types=sorted({s.request_type for s in group if s.request_type}),
            )
            for monday, group in sorted(weeks.items())
        ]
        return RequestVolume(
            period_start=start.date().isoformat(),
            period_end=now.date().isoformat(),
            months=months,
            days_in_period=days,
            weeks_in_period=round(days / 7, 1),
            total_requests=total,
            unique_accounts=len({s.account_name for s in created_snaps if s.account_name}),
            weeks_with_activity=len(weekly),
            requests_per_week=round(total / len(weekly), 2) if weekly else 0.0,
            requests_per_day=round(total / days, 2) if days > 0 else 0.0,
            request_types=dict(Counter(s.request_type for s in created_snaps if s.request_type)),
            weekly=weekly,
        )
