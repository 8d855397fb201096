"""Runtime configuration for the task queue and its host budget."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_ID_SPACE_MAX = 2**63 - 1
DEFAULT_MEMORY_CEILING_BYTES = 512 * 1024 * 1024


@dataclass(slots=True)
class QueueSettings:
    """Admission control and housekeeping thresholds."""

    min_seconds_to_run_task: float = 65.0
    min_free_memory_fraction: float = 0.25
    max_running_tasks_to_track: int = 250
    memory_leak_log_fraction: float = 0.10
    default_max_concurrent_tasks: int = 2
    id_guard_min_seconds: float = 30.0
    id_space_max: int = DEFAULT_ID_SPACE_MAX
    id_reset_fraction: float = 0.90


@dataclass(slots=True)
class HostSettings:
    """Limits of the host process the queue is pumped from."""

    max_execution_seconds: float = 300.0
    memory_ceiling_bytes: int = DEFAULT_MEMORY_CEILING_BYTES


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".task_pump.db")
    sqlite_busy_timeout_ms: int = 30_000
    queue: QueueSettings = field(default_factory=QueueSettings)
    host: HostSettings = field(default_factory=HostSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("TASK_PUMP_DB_PATH", ".task_pump.db")),
            sqlite_busy_timeout_ms=int(os.getenv("TASK_PUMP_SQLITE_BUSY_TIMEOUT_MS", "30000")),
            queue=QueueSettings(
                min_seconds_to_run_task=float(
                    os.getenv("TASK_PUMP_MIN_SECONDS_TO_RUN_TASK", "65"),
                ),
                min_free_memory_fraction=float(
                    os.getenv("TASK_PUMP_MIN_FREE_MEMORY_FRACTION", "0.25"),
                ),
                max_running_tasks_to_track=int(
                    os.getenv("TASK_PUMP_MAX_RUNNING_TASKS_TO_TRACK", "250"),
                ),
                memory_leak_log_fraction=float(
                    os.getenv("TASK_PUMP_MEMORY_LEAK_LOG_FRACTION", "0.10"),
                ),
                default_max_concurrent_tasks=int(
                    os.getenv("TASK_PUMP_MAX_CONCURRENT_TASKS", "2"),
                ),
                id_guard_min_seconds=float(os.getenv("TASK_PUMP_ID_GUARD_MIN_SECONDS", "30")),
                id_space_max=int(
                    os.getenv("TASK_PUMP_ID_SPACE_MAX", str(DEFAULT_ID_SPACE_MAX)),
                ),
                id_reset_fraction=float(os.getenv("TASK_PUMP_ID_RESET_FRACTION", "0.90")),
            ),
            host=HostSettings(
                max_execution_seconds=float(
                    os.getenv("TASK_PUMP_MAX_EXECUTION_SECONDS", "300"),
                ),
                memory_ceiling_bytes=int(
                    os.getenv(
                        "TASK_PUMP_MEMORY_CEILING_BYTES",
                        str(DEFAULT_MEMORY_CEILING_BYTES),
                    ),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any threshold is out of range."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("TASK_PUMP_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        queue = self.queue
        if queue.min_seconds_to_run_task < 0:
            raise ValueError("TASK_PUMP_MIN_SECONDS_TO_RUN_TASK must be >= 0.")
        if not 0.0 <= queue.min_free_memory_fraction < 1.0:
            raise ValueError("TASK_PUMP_MIN_FREE_MEMORY_FRACTION must be in [0, 1).")
        if queue.max_running_tasks_to_track <= 0:
            raise ValueError("TASK_PUMP_MAX_RUNNING_TASKS_TO_TRACK must be a positive integer.")
        if not 0.0 < queue.memory_leak_log_fraction <= 1.0:
            raise ValueError("TASK_PUMP_MEMORY_LEAK_LOG_FRACTION must be in (0, 1].")
        if queue.default_max_concurrent_tasks <= 0:
            raise ValueError("TASK_PUMP_MAX_CONCURRENT_TASKS must be a positive integer.")
        if queue.id_guard_min_seconds < 0:
            raise ValueError("TASK_PUMP_ID_GUARD_MIN_SECONDS must be >= 0.")
        if queue.id_space_max <= 1:
            raise ValueError("TASK_PUMP_ID_SPACE_MAX must be > 1.")
        if not 0.0 < queue.id_reset_fraction < 1.0:
            raise ValueError("TASK_PUMP_ID_RESET_FRACTION must be in (0, 1).")
        if self.host.max_execution_seconds <= 0:
            raise ValueError("TASK_PUMP_MAX_EXECUTION_SECONDS must be > 0.")
        if self.host.memory_ceiling_bytes <= 0:
            raise ValueError("TASK_PUMP_MEMORY_CEILING_BYTES must be > 0.")
