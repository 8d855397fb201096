"""Resource budget the pump consults between tasks."""

from __future__ import annotations

import time
from typing import Protocol

import psutil

from task_pump.config import HostSettings


class ResourceBudget(Protocol):
    """Host introspection needed for admission control."""

    def remaining_seconds(self) -> float: ...

    def free_memory_fraction(self) -> float: ...

    def free_memory_bytes(self) -> int: ...

    def memory_ceiling_bytes(self) -> int: ...

    def max_execution_seconds(self) -> float: ...


class ProcessResourceBudget:
    """Budget of the current process: wall time since start, RSS against a ceiling."""

    def __init__(
        self,
        *,
        max_execution_seconds: float,
        memory_ceiling_bytes: int,
        started_at: float | None = None,
    ) -> None:
        self._max_execution_seconds = float(max_execution_seconds)
        self._memory_ceiling_bytes = int(memory_ceiling_bytes)
        self._started_at = time.monotonic() if started_at is None else started_at
        self._process = psutil.Process()

    @classmethod
    def from_settings(cls, host: HostSettings) -> ProcessResourceBudget:
        return cls(
            max_execution_seconds=host.max_execution_seconds,
            memory_ceiling_bytes=host.memory_ceiling_bytes,
        )

    def remaining_seconds(self) -> float:
        elapsed = time.monotonic() - self._started_at
        return max(0.0, self._max_execution_seconds - elapsed)

    def free_memory_bytes(self) -> int:
        used = int(self._process.memory_info().rss)
        return max(0, self._memory_ceiling_bytes - used)

    def free_memory_fraction(self) -> float:
        return self.free_memory_bytes() / self._memory_ceiling_bytes

    def memory_ceiling_bytes(self) -> int:
        return self._memory_ceiling_bytes

    def max_execution_seconds(self) -> float:
        return self._max_execution_seconds
