"""Shared test fixtures."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterator

import pytest

from aularis.orchestrator.models import ContentKind, WorkItem
from aularis.orchestrator.store import PipelineStore

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


class MutableClock:
    """Deterministic clock that tests move forward by hand."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def store(tmp_path: Path) -> Iterator[PipelineStore]:
    pipeline_store = PipelineStore(tmp_path / "aularis.db")
    yield pipeline_store
    pipeline_store.close()


@pytest.fixture
def make_item() -> Callable[..., WorkItem]:
    def factory(
        activity_id: str = "1",
        tenant_id: str = "101",
        *,
        course_id: str = "10",
        kind: ContentKind = ContentKind.ASSIGNMENT,
        **overrides,
    ) -> WorkItem:
        return WorkItem(
            tenant_id=tenant_id,
            course_id=course_id,
            activity_id=activity_id,
            kind=kind,
            name=overrides.pop("name", f"Activity {activity_id}"),
            **overrides,
        )

    return factory
