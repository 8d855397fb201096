"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from task_pump.config import Settings
from task_pump.queue.callbacks import CallbackRegistry
from task_pump.queue.repository import TaskRepository
from task_pump.queue.service import TaskQueue


@dataclass
class FakeBudget:
    """Deterministic stand-in for host introspection."""

    seconds: float = 3600.0
    free_bytes: int = 900_000
    ceiling_bytes: int = 1_000_000
    max_execution: float = 300.0

    def remaining_seconds(self) -> float:
        return self.seconds

    def free_memory_fraction(self) -> float:
        return self.free_bytes / self.ceiling_bytes

    def free_memory_bytes(self) -> int:
        return self.free_bytes

    def memory_ceiling_bytes(self) -> int:
        return self.ceiling_bytes

    def max_execution_seconds(self) -> float:
        return self.max_execution


class StepClock:
    """UTC clock advancing a fixed step on every reading."""

    def __init__(self, start: datetime | None = None, step: timedelta | None = None) -> None:
        self.current = start or datetime.now(tz=UTC)
        self.step = step or timedelta(milliseconds=1)

    def __call__(self) -> datetime:
        self.current += self.step
        return self.current


@pytest.fixture()
def budget() -> FakeBudget:
    return FakeBudget()


@pytest.fixture()
def step_clock() -> StepClock:
    return StepClock()


@pytest.fixture()
def registry() -> CallbackRegistry:
    return CallbackRegistry()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(db_path=tmp_path / "queue.db")


@pytest.fixture()
def task_queue(
    settings: Settings,
    registry: CallbackRegistry,
    budget: FakeBudget,
) -> Iterator[TaskQueue]:
    with TaskQueue.open(settings, registry, budget) as queue:
        yield queue


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[TaskRepository]:
    repo = TaskRepository(tmp_path / "repository.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()
