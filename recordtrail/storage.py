from __future__ import annotations

import datetime as _dt
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, List, Optional, Union

import orjson
from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    or_,
    and_,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import aliased, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import ConcurrentWriteConflict, InvalidSnapshotError, StoreUnavailableError
from .schemas import (
    AuditStats,
    CaptureRunRecord,
    SearchFilters,
    SnapshotDraft,
    SnapshotPage,
    SnapshotRecord,
    StatusChangeDraft,
    StatusChangeRecord,
)


Base = declarative_base()

CAPTURE_REASONS = ("initial", "periodic")

TimeBound = Union[str, _dt.datetime, None]


def _utc_now_iso() -> str:
    # Fixed width so ISO strings sort chronologically
    return _dt.datetime.now(tz=_dt.timezone.utc).isoformat(timespec="microseconds")


def to_iso(value: TimeBound) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if value.tzinfo is None:
        value = value.replace(tzinfo=_dt.timezone.utc)
    return value.astimezone(_dt.timezone.utc).isoformat(timespec="microseconds")


class Snapshot(Base):
    __tablename__ = "snapshots"
    snapshot_id = Column(String, primary_key=True)
    record_id = Column(String, nullable=False)
    seq = Column(Integer, nullable=False)
    record_label = Column(String, nullable=True)
    account_id = Column(String, nullable=True)
    account_name = Column(String, nullable=True)
    status = Column(String, nullable=False)
    request_type = Column(String, nullable=True)
    fingerprint = Column(String, nullable=False)
    raw_json = Column(Text, nullable=False)
    upstream_modified_at = Column(String, nullable=True)
    upstream_created_at = Column(String, nullable=True)
    captured_at = Column(String, nullable=False)
    capture_reason = Column(String, nullable=False)

    __table_args__ = (
        UniqueConstraint("record_id", "seq", name="uq_snapshots_record_seq"),
        Index("ix_snapshots_record_captured", "record_id", "captured_at"),
        Index("ix_snapshots_record_fingerprint", "record_id", "fingerprint"),
        Index("ix_snapshots_record_label", "record_label"),
        Index("ix_snapshots_account_name", "account_name"),
        Index("ix_snapshots_status", "status"),
        Index("ix_snapshots_captured_at", "captured_at"),
    )


class StatusChange(Base):
    __tablename__ = "status_changes"
    event_id = Column(String, primary_key=True)
    record_id = Column(String, nullable=False)
    previous_status = Column(String, nullable=False)
    new_status = Column(String, nullable=False)
    prior_snapshot_id = Column(String, ForeignKey("snapshots.snapshot_id"), nullable=False)
    new_snapshot_id = Column(String, ForeignKey("snapshots.snapshot_id"), nullable=False, unique=True)
    detected_at = Column(String, nullable=False)

    __table_args__ = (
        Index("ix_status_changes_record_detected", "record_id", "detected_at"),
    )


class CaptureRun(Base):
    __tablename__ = "capture_runs"
    run_id = Column(String, primary_key=True)
    started_at = Column(String, nullable=False)
    completed_at = Column(String, nullable=True)
    window_start = Column(String, nullable=True)
    window_end = Column(String, nullable=True)
    records_processed = Column(Integer, nullable=False, default=0)
    new_snapshots = Column(Integer, nullable=False, default=0)
    changes_detected = Column(Integer, nullable=False, default=0)
    records_failed = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False)
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_capture_runs_status_started", "status", "started_at"),
    )


def _snapshot_record(row: Snapshot) -> SnapshotRecord:
    return SnapshotRecord(
        snapshot_id=row.snapshot_id,
        record_id=row.record_id,
        seq=row.seq,
        record_label=row.record_label,
        account_id=row.account_id,
        account_name=row.account_name,
        status=row.status,
        request_type=row.request_type,
        fingerprint=row.fingerprint,
        raw_fields=orjson.loads(row.raw_json),
        upstream_modified_at=row.upstream_modified_at,
        upstream_created_at=row.upstream_created_at,
        captured_at=row.captured_at,
        capture_reason=row.capture_reason,
    )


def _status_change_record(row: StatusChange) -> StatusChangeRecord:
    return StatusChangeRecord(
        event_id=row.event_id,
        record_id=row.record_id,
        previous_status=row.previous_status,
        new_status=row.new_status,
        prior_snapshot_id=row.prior_snapshot_id,
        new_snapshot_id=row.new_snapshot_id,
        detected_at=row.detected_at,
    )


def _run_record(row: CaptureRun) -> CaptureRunRecord:
    return CaptureRunRecord(
        run_id=row.run_id,
        started_at=row.started_at,
        completed_at=row.completed_at,
        window_start=row.window_start,
        window_end=row.window_end,
        records_processed=row.records_processed,
        new_snapshots=row.new_snapshots,
        changes_detected=row.changes_detected,
        records_failed=row.records_failed,
        status=row.status,
        error_message=row.error_message,
    )


def make_engine(url: str, busy_timeout_s: int = 30) -> Engine:
    if not url.startswith("sqlite"):
        return create_engine(url, echo=False, future=True, pool_pre_ping=True)

    kwargs: dict[str, Any] = {
        "connect_args": {"check_same_thread": False, "timeout": busy_timeout_s},
    }
    path = url.split("///", 1)[-1]
    if path in ("", ":memory:"):
        kwargs["poolclass"] = StaticPool
    else:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(url, echo=False, future=True, **kwargs)

    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_conn, _record):
        cur = dbapi_conn.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        cur.close()

    return engine


class SnapshotHistory:
    """Oldest-first iterable over one record's snapshots.

    Each iteration re-queries the store in keyset pages, so the object can
    be iterated again and picks up rows committed in the meantime.
    """

    def __init__(
        self,
        store: "SnapshotStore",
        record_id: str,
        start: TimeBound = None,
        end: TimeBound = None,
        batch_size: int = 200,
    ) -> None:
        self.store = store
        self.record_id = record_id
        self.start = to_iso(start)
        self.end = to_iso(end)
        self.batch_size = max(int(batch_size), 1)

    def __iter__(self) -> Iterator[SnapshotRecord]:
        after = None
        while True:
            page = self.store._history_page(self.record_id, self.start, self.end, after, self.batch_size)
            yield from page
            if len(page) < self.batch_size:
                return
            after = (page[-1].captured_at, page[-1].seq)


class SnapshotStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._Session = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: str, busy_timeout_s: int = 30, init: bool = True) -> "SnapshotStore":
        store = cls(make_engine(url, busy_timeout_s=busy_timeout_s))
        if init:
            store.init_schema()
        return store

    def init_schema(self) -> None:
        try:
            Base.metadata.create_all(self.engine)
        except (OperationalError, InterfaceError) as e:
            raise StoreUnavailableError(f"Snapshot store unavailable: {e}") from e

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def _session(self):
        try:
            with self._Session() as session:
                yield session
        except (OperationalError, InterfaceError) as e:
            raise StoreUnavailableError(f"Snapshot store unavailable: {e}") from e

    # Snapshots

    def append(self, draft: SnapshotDraft, event: Optional[StatusChangeDraft] = None) -> str:
        """Insert a snapshot (and its status-change event) and return its id.

        Raises ConcurrentWriteConflict when (record_id, seq) is already taken.
        """
        if not draft.record_id:
            raise InvalidSnapshotError("Snapshot is missing record_id")
        if not draft.status:
            raise InvalidSnapshotError(f"Snapshot for {draft.record_id} is missing status")
        if draft.capture_reason not in CAPTURE_REASONS:
            raise InvalidSnapshotError(f"Unknown capture reason: {draft.capture_reason!r}")
        if event is not None:
            if event.new_snapshot_id != draft.snapshot_id or event.record_id != draft.record_id:
                raise InvalidSnapshotError("Status change does not reference the appended snapshot")
            if event.previous_status == event.new_status:
                raise InvalidSnapshotError("Status change must change the status")

        try:
            raw_json = orjson.dumps(draft.raw_fields, option=orjson.OPT_SORT_KEYS).decode()
        except TypeError as e:
            raise InvalidSnapshotError(f"Snapshot of {draft.record_id} cannot be serialized: {e}") from e

        captured_at = _utc_now_iso()
        if draft.not_before and draft.not_before > captured_at:
            captured_at = draft.not_before

        row = Snapshot(
            snapshot_id=draft.snapshot_id,
            record_id=draft.record_id,
            seq=draft.seq,
            record_label=draft.record_label,
            account_id=draft.account_id,
            account_name=draft.account_name,
            status=draft.status,
            request_type=draft.request_type,
            fingerprint=draft.fingerprint,
            raw_json=raw_json,
            upstream_modified_at=draft.upstream_modified_at,
            upstream_created_at=draft.upstream_created_at,
            captured_at=captured_at,
            capture_reason=draft.capture_reason,
        )
        with self._session() as session:
            try:
                session.add(row)
                session.flush()
                if event is not None:
                    session.add(
                        StatusChange(
                            event_id=event.event_id,
                            record_id=event.record_id,
                            previous_status=event.previous_status,
                            new_status=event.new_status,
                            prior_snapshot_id=event.prior_snapshot_id,
                            new_snapshot_id=event.new_snapshot_id,
                            detected_at=captured_at,
                        )
                    )
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise ConcurrentWriteConflict(
                    f"Snapshot {draft.seq} of {draft.record_id} was already written"
                ) from e
        return draft.snapshot_id

    def latest(self, record_id: str) -> Optional[SnapshotRecord]:
        with self._session() as session:
            stmt = (
                select(Snapshot)
                .where(Snapshot.record_id == record_id)
                .order_by(Snapshot.captured_at.desc(), Snapshot.seq.desc())
                .limit(1)
            )
            row = session.execute(stmt).scalars().first()
            return _snapshot_record(row) if row else None

    def history(self, record_id: str, start: TimeBound = None, end: TimeBound = None, batch_size: int = 200) -> SnapshotHistory:
        return SnapshotHistory(self, record_id, start=start, end=end, batch_size=batch_size)

    def _history_page(self, record_id, start, end, after, limit) -> List[SnapshotRecord]:
        conds = [Snapshot.record_id == record_id]
        if start:
            conds.append(Snapshot.captured_at >= start)
        if end:
            conds.append(Snapshot.captured_at <= end)
        if after is not None:
            cap, seq = after
            conds.append(
                or_(
                    Snapshot.captured_at > cap,
                    and_(Snapshot.captured_at == cap, Snapshot.seq > seq),
                )
            )
        with self._session() as session:
            stmt = (
                select(Snapshot)
                .where(*conds)
                .order_by(Snapshot.captured_at.asc(), Snapshot.seq.asc())
                .limit(limit)
            )
            return [_snapshot_record(r) for r in session.execute(stmt).scalars().all()]

    def resolve_record_id(self, identifier: str) -> Optional[str]:
        """Map a record id or a record label to a record id."""
        if not identifier:
            return None
        with self._session() as session:
            by_id = session.execute(
                select(Snapshot.record_id).where(Snapshot.record_id == identifier).limit(1)
            ).scalars().first()
            if by_id:
                return by_id
            return session.execute(
                select(Snapshot.record_id)
                .where(Snapshot.record_label == identifier)
                .order_by(Snapshot.captured_at.desc())
                .limit(1)
            ).scalars().first()

    def search(self, filters: Optional[SearchFilters] = None, page: int = 1, limit: int = 50) -> SnapshotPage:
        filters = filters or SearchFilters()
        page = max(int(page), 1)
        limit = max(int(limit), 1)
        conds = []
        if filters.query:
            like = f"%{filters.query}%"
            conds.append(
                or_(
                    Snapshot.record_label.ilike(like),
                    Snapshot.record_id.ilike(like),
                    Snapshot.account_name.ilike(like),
                )
            )
        if filters.account_name:
            conds.append(Snapshot.account_name.ilike(f"%{filters.account_name}%"))
        if filters.status:
            conds.append(Snapshot.status == filters.status)
        if filters.captured_from:
            conds.append(Snapshot.captured_at >= to_iso(filters.captured_from))
        if filters.captured_to:
            conds.append(Snapshot.captured_at <= to_iso(filters.captured_to))
        if filters.latest_only:
            newer = aliased(Snapshot)
            conds.append(
                Snapshot.seq
                == select(func.max(newer.seq))
                .where(newer.record_id == Snapshot.record_id)
                .correlate(Snapshot)
                .scalar_subquery()
            )

        with self._session() as session:
            total = session.execute(select(func.count()).select_from(Snapshot).where(*conds)).scalar_one()
            stmt = (
                select(Snapshot)
                .where(*conds)
                .order_by(Snapshot.captured_at.desc(), Snapshot.seq.desc())
                .limit(limit)
                .offset((page - 1) * limit)
            )
            rows = session.execute(stmt).scalars().all()
        return SnapshotPage(
            records=[_snapshot_record(r) for r in rows],
            page=page,
            limit=limit,
            total_count=int(total),
            total_pages=(int(total) + limit - 1) // limit,
        )

    def status_changes(self, record_id: str) -> List[StatusChangeRecord]:
        with self._session() as session:
            stmt = (
                select(StatusChange)
                .where(StatusChange.record_id == record_id)
                .order_by(StatusChange.detected_at.asc())
            )
            return [_status_change_record(r) for r in session.execute(stmt).scalars().all()]

    def status_changes_between(self, start: TimeBound = None, end: TimeBound = None, limit: int = 500) -> List[StatusChangeRecord]:
        """Status changes across all records detected inside [start, end]."""
        conds = []
        if start is not None:
            conds.append(StatusChange.detected_at >= to_iso(start))
        if end is not None:
            conds.append(StatusChange.detected_at <= to_iso(end))
        with self._session() as session:
            stmt = (
                select(StatusChange)
                .where(*conds)
                .order_by(StatusChange.detected_at.asc())
                .limit(max(int(limit), 1))
            )
            return [_status_change_record(r) for r in session.execute(stmt).scalars().all()]

    def first_snapshots(self, created_from: TimeBound = None) -> List[SnapshotRecord]:
        """Each record's first snapshot that carries an upstream creation time.

        created_from is applied on its date part only; callers refine further.
        """
        conds = [Snapshot.seq == 0, Snapshot.upstream_created_at.is_not(None)]
        if created_from is not None:
            conds.append(Snapshot.upstream_created_at >= to_iso(created_from)[:10])
        with self._session() as session:
            stmt = select(Snapshot).where(*conds).order_by(Snapshot.upstream_created_at.asc())
            return [_snapshot_record(r) for r in session.execute(stmt).scalars().all()]

    def stats(self) -> AuditStats:
        with self._session() as session:
            records, snapshots, earliest, latest = session.execute(
                select(
                    func.count(func.distinct(Snapshot.record_id)),
                    func.count(Snapshot.snapshot_id),
                    func.min(Snapshot.captured_at),
                    func.max(Snapshot.captured_at),
                )
            ).one()
            changes = session.execute(select(func.count(StatusChange.event_id))).scalar_one()
        return AuditStats(
            total_records=int(records or 0),
            total_snapshots=int(snapshots or 0),
            total_status_changes=int(changes or 0),
            earliest_snapshot_at=earliest,
            latest_snapshot_at=latest,
        )

    # Capture runs

    def create_run(self, window_start: TimeBound = None, window_end: TimeBound = None) -> CaptureRunRecord:
        row = CaptureRun(
            run_id=str(uuid.uuid4()),
            started_at=_utc_now_iso(),
            completed_at=None,
            window_start=to_iso(window_start),
            window_end=to_iso(window_end),
            records_processed=0,
            new_snapshots=0,
            changes_detected=0,
            records_failed=0,
            status="running",
            error_message=None,
        )
        with self._session() as session:
            session.add(row)
            session.commit()
            return _run_record(row)

    def finish_run(
        self,
        run_id: str,
        status: str,
        records_processed: int = 0,
        new_snapshots: int = 0,
        changes_detected: int = 0,
        records_failed: int = 0,
        error_message: Optional[str] = None,
    ) -> Optional[CaptureRunRecord]:
        if status not in ("completed", "failed"):
            raise ValueError(f"Runs finish as completed or failed, not {status!r}")
        with self._session() as session:
            stmt = (
                update(CaptureRun)
                .where(CaptureRun.run_id == run_id, CaptureRun.status == "running")
                .values(
                    completed_at=_utc_now_iso(),
                    status=status,
                    records_processed=records_processed,
                    new_snapshots=new_snapshots,
                    changes_detected=changes_detected,
                    records_failed=records_failed,
                    error_message=error_message,
                )
            )
            session.execute(stmt)
            session.commit()
            row = session.get(CaptureRun, run_id)
            return _run_record(row) if row else None

    def get_run(self, run_id: str) -> Optional[CaptureRunRecord]:
        with self._session() as session:
            row = session.get(CaptureRun, run_id)
            return _run_record(row) if row else None

    def last_successful_run(self) -> Optional[CaptureRunRecord]:
        with self._session() as session:
            stmt = (
                select(CaptureRun)
                .where(CaptureRun.status == "completed")
                .order_by(CaptureRun.started_at.desc())
                .limit(1)
            )
            row = session.execute(stmt).scalars().first()
            return _run_record(row) if row else None

    def list_runs(self, limit: int = 20) -> List[CaptureRunRecord]:
        with self._session() as session:
            stmt = select(CaptureRun).order_by(CaptureRun.started_at.desc()).limit(max(int(limit), 1))
            return [_run_record(r) for r in session.execute(stmt).scalars().all()]


_default_store: Optional[SnapshotStore] = None


def get_default_store() -> SnapshotStore:
    """Store bound to the configured database, created on first use."""
    global _default_store
    if _default_store is None:
        from .settings import settings

        _default_store = SnapshotStore.from_url(
            settings.resolved_database_url(),
            busy_timeout_s=int(settings.database.get("busy_timeout_s", 30)),
        )
    return _default_store
