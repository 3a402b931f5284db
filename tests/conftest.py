from __future__ import annotations

from typing import Callable

import pytest

from factories import NOW
from yerba_insights.repository import InMemoryRepository
from yerba_insights.service import MetricsService


class ManualClock:
    """Float clock the cache tests advance by hand."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def empty_repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture()
def service_for() -> Callable[[InMemoryRepository], MetricsService]:
    def _build(repository: InMemoryRepository) -> MetricsService:
        return MetricsService(repository, clock=lambda: NOW)

    return _build
