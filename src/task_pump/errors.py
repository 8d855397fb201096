"""Exception types raised by the task queue."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class TaskQueueError(Exception):
    """Base task queue error."""

    message: str
    code: str = "task_queue_error"

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True)
class TaskStoreError(TaskQueueError):
    """Task store is unreadable or was not initialized."""

    code: str = "task_store_error"


@dataclass(slots=True)
class CallbackDecodeError(TaskQueueError):
    """Stored callback or parameter encoding could not be decoded."""

    code: str = "callback_decode_error"


@dataclass(slots=True)
class NoCurrentTaskError(TaskQueueError):
    """Operation is only valid from inside an executing task body."""

    code: str = "no_current_task"
