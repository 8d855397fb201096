"""Domain models for the persisted task queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any


class TaskPriority(IntEnum):
    """Task urgency; lower values drain first."""

    HIGH = 1
    MEDIUM = 2
    LOW = 3
    BACKGROUND = 4

    @classmethod
    def clamp(cls, value: int) -> TaskPriority:
        """Normalize any integer into the supported priority range."""

        return cls(min(int(cls.BACKGROUND), max(int(cls.HIGH), int(value))))


class TaskKind(str, Enum):
    """How a stored task is dispatched."""

    DIRECT = "direct"
    PERIODIC = "periodic"


class TaskState(str, Enum):
    """Which persisted set a task row was read from."""

    QUEUED = "queued"
    RUNNING = "running"


@dataclass(slots=True, frozen=True)
class FunctionRef:
    """Reference to a free function registered by name."""

    name: str


@dataclass(slots=True, frozen=True)
class MethodRef:
    """Reference to a method on a registered object or type."""

    target: str
    method: str


Callback = FunctionRef | MethodRef


@dataclass(slots=True)
class TaskView:
    """Readable task view for callers, CLI and executor logic."""

    task_id: int
    state: TaskState
    kind: TaskKind
    callback: Callback | None
    parameters: list[Any] | None
    priority: TaskPriority
    description: str
    started_at: datetime | None = None
    periodic_event: str | None = None
    # stored encoding, kept for rows whose callback cannot be decoded
    raw_callback: str = ""


@dataclass(slots=True)
class TaskFilter:
    """Exact-match filters for count and list queries."""

    callback: Callback | None = None
    parameters: list[Any] | None = None
    priority: int | None = None
    description: str | None = None


@dataclass(slots=True)
class PumpSummary:
    """Aggregate pump counters for host and CLI reporting."""

    claimed: int = 0
    completed: int = 0
    requeued: int = 0
    stuck: int = 0
    stop_reason: str = ""
    id_space_reset: bool = False
    task_ids: list[int] = field(default_factory=list)
