"""Persistent store for the queued and running task sets."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, NamedTuple

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, text
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from task_pump.errors import CallbackDecodeError, TaskStoreError
from task_pump.queue.callbacks import (
    decode_callback,
    decode_parameters,
    encode_callback,
    encode_parameters,
)
from task_pump.queue.models import (
    Callback,
    TaskFilter,
    TaskKind,
    TaskPriority,
    TaskState,
    TaskView,
)
from task_pump.storage.alembic_runner import upgrade_head
from task_pump.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from task_pump.storage.sqlmodel_models import (
    INITIAL_LAST_TASK_RUN_AT,
    SETTINGS_ROW_ID,
    QueuedTask,
    QueueSettingsRecord,
    RunningTask,
)

CLAIMED = "claimed"
QUEUE_EMPTY = "queue_empty"
CONCURRENCY_CAP = "concurrency_cap"


class ClaimOutcome(NamedTuple):
    task: TaskView | None
    reason: str


@dataclass(slots=True)
class QueueSettingsView:
    """Persisted queue-wide settings."""

    last_task_run_at: datetime
    max_concurrent_tasks: int | None
    task_execution_enabled: bool


class TaskRepository:
    """Queue persistence facade backed by SQLModel + SQLite.

    Plain reads and single-statement writes use `engine`. Every read-then-write
    sequence (claim, requeue, dedup escalation, pruning, id reset) runs on a
    second engine whose transactions start with ``BEGIN IMMEDIATE``, so
    concurrent processes serialize on the database writer lock. Inside an
    `atomic()` block every call shares the block's locked transaction.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 30_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )
        self._locking_engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
            begin_immediate=True,
        )
        self._atomic_session: Session | None = None

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()
        self._locking_engine.dispose()

    @property
    def in_atomic(self) -> bool:
        return self._atomic_session is not None

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Run every repository call in the block inside one ``BEGIN IMMEDIATE`` transaction.

        The writer lock is taken on entry and held until the block exits; the
        transaction commits on normal exit and rolls back if the block raises.
        Nested blocks join the outer transaction.
        """

        if self._atomic_session is not None:
            yield
            return
        with Session(self._locking_engine) as session:
            session.connection()
            self._atomic_session = session
            try:
                yield
                session.commit()
            finally:
                self._atomic_session = None

    @contextmanager
    def _session(self, *, locking: bool = False) -> Iterator[Session]:
        if self._atomic_session is not None:
            yield self._atomic_session
            return
        with Session(self._locking_engine if locking else self.engine) as session:
            yield session
            session.commit()

    def init_schema(self) -> None:
        """Run schema migrations and make sure the settings record exists."""

        try:
            upgrade_head(self.db_path)
            self._ensure_settings_record()
            settings = self.get_settings()
        except SQLAlchemyError as error:
            raise TaskStoreError(f"Unable to initialize task store at {self.db_path}.") from error
        if settings is None:
            raise TaskStoreError("Unable to load task queue settings.")

    def _ensure_settings_record(self) -> None:
        with self._session(locking=True) as session:
            record = session.get(QueueSettingsRecord, SETTINGS_ROW_ID)
            if record is not None:
                return
            session.add(
                QueueSettingsRecord(
                    id=SETTINGS_ROW_ID,
                    last_task_run_at=INITIAL_LAST_TASK_RUN_AT,
                ),
            )

    # ---- enqueue ------------------------------------------------------------

    def enqueue_task(  # noqa: PLR0913
        self,
        callback: Callback,
        parameters: Sequence[Any] | None = None,
        priority: int = TaskPriority.LOW,
        description: str = "",
        *,
        kind: TaskKind = TaskKind.DIRECT,
        periodic_event: str | None = None,
    ) -> int:
        """Append a queued task without any uniqueness check."""

        with self._session() as session:
            row = self._new_queued_row(
                callback=callback,
                parameters=parameters,
                priority=priority,
                description=description,
                kind=kind,
                periodic_event=periodic_event,
            )
            session.add(row)
            session.flush()
            task_id = int(row.id or 0)
            return task_id

    def enqueue_unique_task(  # noqa: PLR0913
        self,
        callback: Callback,
        parameters: Sequence[Any] | None = None,
        priority: int = TaskPriority.LOW,
        description: str = "",
        *,
        kind: TaskKind = TaskKind.DIRECT,
        periodic_event: str | None = None,
    ) -> bool:
        """Queue a task unless an equal one is queued or running.

        When a queued duplicate has a less urgent priority it is escalated to
        the requested priority. A running duplicate is never modified.
        """

        clamped = TaskPriority.clamp(priority)
        with self._session(locking=True) as session:
            queued_match = _match_clauses(QueuedTask, callback, parameters)
            running_match = _match_clauses(RunningTask, callback, parameters)
            found = _count(session, QueuedTask, queued_match) + _count(
                session,
                RunningTask,
                running_match,
            )
            if found:
                session.exec(
                    sa_update(QueuedTask)
                    .where(*queued_match, col(QueuedTask.priority) > int(clamped))
                    .values(priority=int(clamped)),
                )
                return False

            session.add(
                self._new_queued_row(
                    callback=callback,
                    parameters=parameters,
                    priority=clamped,
                    description=description,
                    kind=kind,
                    periodic_event=periodic_event,
                ),
            )
            return True

    def task_exists(self, callback: Callback, parameters: Sequence[Any] | None = None) -> bool:
        """Whether an equal task is queued or running."""

        with self._session() as session:
            queued = _count(session, QueuedTask, _match_clauses(QueuedTask, callback, parameters))
            running = _count(
                session,
                RunningTask,
                _match_clauses(RunningTask, callback, parameters),
            )
        return (queued + running) > 0

    # ---- queries ------------------------------------------------------------

    def count_queued_tasks(self, task_filter: TaskFilter | None = None) -> int:
        with self._session() as session:
            return _count(session, QueuedTask, _filter_clauses(QueuedTask, task_filter))

    def list_queued_tasks(
        self,
        task_filter: TaskFilter | None = None,
        *,
        count: int = 100,
        offset: int = 0,
    ) -> list[TaskView]:
        with self._session() as session:
            rows = session.exec(
                select(QueuedTask)
                .where(*_filter_clauses(QueuedTask, task_filter))
                .order_by(col(QueuedTask.priority).asc(), col(QueuedTask.id).asc())
                .offset(max(0, offset))
                .limit(max(0, count)),
            ).all()
            return [_queued_to_view(row, list_form=True) for row in rows]

    def count_running_tasks(
        self,
        *,
        orphan_cutoff: datetime,
        task_filter: TaskFilter | None = None,
    ) -> int:
        """Running tasks that are not yet orphaned."""

        clauses = [
            *_filter_clauses(RunningTask, task_filter),
            col(RunningTask.started_at) >= to_db_datetime(orphan_cutoff),
        ]
        with self._session() as session:
            return _count(session, RunningTask, clauses)

    def list_running_tasks(
        self,
        *,
        orphan_cutoff: datetime,
        task_filter: TaskFilter | None = None,
        count: int = 100,
        offset: int = 0,
    ) -> list[TaskView]:
        clauses = [
            *_filter_clauses(RunningTask, task_filter),
            col(RunningTask.started_at) >= to_db_datetime(orphan_cutoff),
        ]
        return self._list_running(clauses, count=count, offset=offset)

    def count_orphaned_tasks(
        self,
        *,
        orphan_cutoff: datetime,
        task_filter: TaskFilter | None = None,
    ) -> int:
        clauses = [
            *_filter_clauses(RunningTask, task_filter),
            col(RunningTask.started_at) < to_db_datetime(orphan_cutoff),
        ]
        with self._session() as session:
            return _count(session, RunningTask, clauses)

    def list_orphaned_tasks(
        self,
        *,
        orphan_cutoff: datetime,
        task_filter: TaskFilter | None = None,
        count: int = 100,
        offset: int = 0,
    ) -> list[TaskView]:
        clauses = [
            *_filter_clauses(RunningTask, task_filter),
            col(RunningTask.started_at) < to_db_datetime(orphan_cutoff),
        ]
        return self._list_running(clauses, count=count, offset=offset)

    def count_tracked_running_tasks(self) -> int:
        """All running rows, orphaned or not."""

        with self._session() as session:
            return _count(session, RunningTask, [])

    def _list_running(self, clauses: list[Any], *, count: int, offset: int) -> list[TaskView]:
        with self._session() as session:
            rows = session.exec(
                select(RunningTask)
                .where(*clauses)
                .order_by(col(RunningTask.started_at).asc(), col(RunningTask.id).asc())
                .offset(max(0, offset))
                .limit(max(0, count)),
            ).all()
            return [_running_to_view(row, list_form=True) for row in rows]

    def get_queued_task_ids(
        self,
        callback: Callback,
        parameters: Sequence[Any] | None = None,
    ) -> list[int]:
        with self._session() as session:
            ids = session.exec(
                select(QueuedTask.id)
                .where(*_match_clauses(QueuedTask, callback, parameters))
                .order_by(col(QueuedTask.id).asc()),
            ).all()
        return [int(task_id) for task_id in ids if task_id is not None]

    def get_running_task_ids(
        self,
        callback: Callback,
        parameters: Sequence[Any] | None = None,
        *,
        orphan_cutoff: datetime,
    ) -> list[int]:
        with self._session() as session:
            ids = session.exec(
                select(RunningTask.id)
                .where(
                    *_match_clauses(RunningTask, callback, parameters),
                    col(RunningTask.started_at) >= to_db_datetime(orphan_cutoff),
                )
                .order_by(col(RunningTask.id).asc()),
            ).all()
        return [int(task_id) for task_id in ids]

    def get_task(self, task_id: int) -> TaskView | None:
        """Look a task up in the queue first, then among running tasks."""

        with self._session() as session:
            queued = session.get(QueuedTask, int(task_id))
            if queued is not None:
                return _queued_to_view(queued, list_form=False)
            running = session.get(RunningTask, int(task_id))
            if running is not None:
                return _running_to_view(running, list_form=False)
        return None

    # ---- mutations ----------------------------------------------------------

    def delete_task(self, task_id: int) -> int:
        """Remove a task from both sets and return the number of rows removed."""

        with self._session() as session:
            queued = session.exec(sa_delete(QueuedTask).where(col(QueuedTask.id) == int(task_id)))
            running = session.exec(
                sa_delete(RunningTask).where(col(RunningTask.id) == int(task_id)),
            )
            return int(queued.rowcount or 0) + int(running.rowcount or 0)

    def delete_running_task(self, task_id: int) -> bool:
        with self._session() as session:
            result = session.exec(
                sa_delete(RunningTask).where(col(RunningTask.id) == int(task_id)),
            )
            return int(result.rowcount or 0) == 1

    def claim_next_task(
        self,
        *,
        max_concurrent_tasks: int,
        orphan_cutoff: datetime,
        now: datetime | None = None,
    ) -> ClaimOutcome:
        """Atomically move the head of the queue into the running set."""

        now = now or utc_now()
        with self._session(locking=True) as session:
            head = session.exec(
                select(QueuedTask)
                .order_by(col(QueuedTask.priority).asc(), col(QueuedTask.id).asc())
                .limit(1),
            ).one_or_none()
            if head is None:
                return ClaimOutcome(task=None, reason=QUEUE_EMPTY)

            running = _count(
                session,
                RunningTask,
                [col(RunningTask.started_at) >= to_db_datetime(orphan_cutoff)],
            )
            if running >= max_concurrent_tasks:
                return ClaimOutcome(task=None, reason=CONCURRENCY_CAP)

            claimed = RunningTask(
                id=int(head.id or 0),
                kind=head.kind,
                periodic_event=head.periodic_event,
                callback=head.callback,
                parameters=head.parameters,
                priority=head.priority,
                description=head.description,
                started_at=to_db_datetime(now),
            )
            session.delete(head)
            session.add(claimed)
            settings = session.get(QueueSettingsRecord, SETTINGS_ROW_ID)
            if settings is not None:
                settings.last_task_run_at = to_db_datetime(now)
                session.add(settings)
            session.flush()
            view = _running_to_view(claimed, list_form=False)
            return ClaimOutcome(task=view, reason=CLAIMED)

    def requeue_running_task(self, task_id: int, *, priority: int | None = None) -> int | None:
        """Move a running task back to the queue; returns its new queued id."""

        with self._session(locking=True) as session:
            row = session.get(RunningTask, int(task_id))
            if row is None:
                return None
            queued = QueuedTask(
                kind=row.kind,
                periodic_event=row.periodic_event,
                callback=row.callback,
                parameters=row.parameters,
                priority=int(
                    TaskPriority.clamp(priority if priority is not None else row.priority),
                ),
                description=row.description,
            )
            session.delete(row)
            session.add(queued)
            session.flush()
            new_id = int(queued.id or 0)
            return new_id

    def prune_running_tasks(self, *, max_to_track: int) -> int:
        """Delete the oldest running rows beyond `max_to_track`."""

        with self._session(locking=True) as session:
            excess = _count(session, RunningTask, []) - max_to_track
            if excess <= 0:
                return 0
            oldest = session.exec(
                select(RunningTask.id)
                .order_by(col(RunningTask.started_at).asc(), col(RunningTask.id).asc())
                .limit(excess),
            ).all()
            session.exec(sa_delete(RunningTask).where(col(RunningTask.id).in_(list(oldest))))
            return len(oldest)

    def next_queued_task_id(self) -> int:
        """Identifier the next enqueue will receive."""

        with self._session() as session:
            return _next_queued_id(session)

    def reset_queued_ids_if_exhausted(self, *, threshold: float) -> bool:
        """Restart queued ids just past the highest running id, only while the queue is empty.

        Running rows keep their ids, so new ids never collide with them. No reset
        happens while a running row still holds an id above `threshold`.
        """

        with self._session(locking=True) as session:
            if _count(session, QueuedTask, []) > 0:
                return False
            if _next_queued_id(session) <= threshold:
                return False
            floor = int(session.exec(select(func.max(RunningTask.id))).one() or 0)
            if floor > threshold:
                return False
            session.exec(sa_delete(QueuedTask))
            session.connection().execute(
                text("UPDATE sqlite_sequence SET seq = :seq WHERE name = :name"),
                {"seq": floor, "name": QueuedTask.__tablename__},
            )
            return True

    # ---- settings -----------------------------------------------------------

    def get_settings(self) -> QueueSettingsView | None:
        with self._session() as session:
            record = session.get(QueueSettingsRecord, SETTINGS_ROW_ID)
            if record is None:
                return None
            return QueueSettingsView(
                last_task_run_at=to_utc_aware_datetime(record.last_task_run_at),
                max_concurrent_tasks=record.max_concurrent_tasks,
                task_execution_enabled=bool(record.task_execution_enabled),
            )

    def update_settings(
        self,
        *,
        max_concurrent_tasks: int | None = None,
        task_execution_enabled: bool | None = None,
    ) -> None:
        with self._session(locking=True) as session:
            record = session.get(QueueSettingsRecord, SETTINGS_ROW_ID)
            if record is None:
                raise TaskStoreError("Unable to load task queue settings.")
            if max_concurrent_tasks is not None:
                record.max_concurrent_tasks = int(max_concurrent_tasks)
            if task_execution_enabled is not None:
                record.task_execution_enabled = bool(task_execution_enabled)
            session.add(record)

    @staticmethod
    def _new_queued_row(  # noqa: PLR0913
        *,
        callback: Callback,
        parameters: Sequence[Any] | None,
        priority: int,
        description: str,
        kind: TaskKind,
        periodic_event: str | None,
    ) -> QueuedTask:
        return QueuedTask(
            kind=kind.value,
            periodic_event=periodic_event,
            callback=encode_callback(callback),
            parameters=encode_parameters(parameters),
            priority=int(TaskPriority.clamp(priority)),
            description=description or "",
        )


def _count(
    session: Session,
    model: type[QueuedTask] | type[RunningTask],
    clauses: list[Any],
) -> int:
    return int(session.exec(select(func.count()).select_from(model).where(*clauses)).one())


def _match_clauses(
    model: type[QueuedTask] | type[RunningTask],
    callback: Callback,
    parameters: Sequence[Any] | None,
) -> list[Any]:
    # empty parameters match any parameters, same as omitting them
    clauses: list[Any] = [col(model.callback) == encode_callback(callback)]
    if parameters:
        clauses.append(col(model.parameters) == encode_parameters(parameters))
    return clauses


def _filter_clauses(
    model: type[QueuedTask] | type[RunningTask],
    task_filter: TaskFilter | None,
) -> list[Any]:
    if task_filter is None:
        return []
    clauses: list[Any] = []
    if task_filter.callback is not None:
        clauses.append(col(model.callback) == encode_callback(task_filter.callback))
    if task_filter.parameters is not None:
        clauses.append(col(model.parameters) == encode_parameters(task_filter.parameters))
    if task_filter.priority is not None:
        clauses.append(col(model.priority) == int(task_filter.priority))
    if task_filter.description is not None:
        clauses.append(col(model.description) == task_filter.description)
    return clauses


def _next_queued_id(session: Session) -> int:
    seq = (
        session.connection()
        .execute(
            text("SELECT seq FROM sqlite_sequence WHERE name = :name"),
            {"name": QueuedTask.__tablename__},
        )
        .scalar_one_or_none()
    )
    return int(seq or 0) + 1


def _queued_to_view(row: QueuedTask, *, list_form: bool) -> TaskView:
    return _to_task_view(
        task_id=int(row.id or 0),
        state=TaskState.QUEUED,
        kind=row.kind,
        periodic_event=row.periodic_event,
        raw_callback=row.callback,
        raw_parameters=row.parameters,
        priority=row.priority,
        description=row.description,
        started_at=None,
        list_form=list_form,
    )


def _running_to_view(row: RunningTask, *, list_form: bool) -> TaskView:
    return _to_task_view(
        task_id=int(row.id),
        state=TaskState.RUNNING,
        kind=row.kind,
        periodic_event=row.periodic_event,
        raw_callback=row.callback,
        raw_parameters=row.parameters,
        priority=row.priority,
        description=row.description,
        started_at=to_utc_aware_datetime(row.started_at),
        list_form=list_form,
    )


def _to_task_view(  # noqa: PLR0913
    *,
    task_id: int,
    state: TaskState,
    kind: str,
    periodic_event: str | None,
    raw_callback: str,
    raw_parameters: str,
    priority: int,
    description: str,
    started_at: datetime | None,
    list_form: bool,
) -> TaskView:
    task_kind = TaskKind(kind) if kind in {k.value for k in TaskKind} else TaskKind.DIRECT
    callback: Callback | None
    parameters: list[Any] | None
    try:
        callback = decode_callback(raw_callback)
        parameters = decode_parameters(raw_parameters)
    except CallbackDecodeError:
        # undecodable rows surface with no callback so the executor reports them
        callback, parameters = None, []
    if list_form and task_kind is TaskKind.PERIODIC:
        parameters = None
    return TaskView(
        task_id=task_id,
        state=state,
        kind=task_kind,
        callback=callback,
        parameters=parameters,
        priority=TaskPriority.clamp(priority),
        description=description or "",
        started_at=started_at,
        periodic_event=periodic_event,
        raw_callback=raw_callback,
    )
