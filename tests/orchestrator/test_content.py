"""Tests for course payload normalisation and tenant content sync."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from aularis.orchestrator.content import (
    ContentSynchronizer,
    normalise_activity,
    normalise_course,
    parse_timestamp,
)
from aularis.orchestrator.models import ContentKind, Tenant

TENANT = Tenant(id="101", base_url="https://aula101.example.edu/", name="aula101")


def test_parse_timestamp_variants() -> None:
    assert parse_timestamp(0) is None
    assert parse_timestamp(None) is None
    assert parse_timestamp("") is None
    assert parse_timestamp("0") is None
    assert parse_timestamp(1741608000) == datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)
    assert parse_timestamp("1741608000") == datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)
    assert parse_timestamp("2025-03-10T12:00:00") == datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)
    with pytest.raises(ValueError):
        parse_timestamp("next tuesday")


def test_assignment_dates_and_url() -> None:
    item = normalise_activity(
        TENANT,
        "42",
        {
            "id": 7,
            "modname": "assign",
            "name": "Essay",
            "visible": 1,
            "allowsubmissionsfromdate": 1741608000,
            "duedate": 1741694400,
            "cutoffdate": 0,
        },
    )

    assert item.kind == ContentKind.ASSIGNMENT
    assert item.activity_id == "7"
    assert item.course_id == "42"
    assert item.open_date == datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)
    assert item.close_date == datetime(2025, 3, 11, 12, 0, tzinfo=timezone.utc)
    assert item.payload["url"] == "https://aula101.example.edu/mod/assign/view.php?id=7"


def test_forum_is_keyed_by_instance() -> None:
    item = normalise_activity(TENANT, "42", {"id": 900, "instance": 33, "modname": "forum"})

    assert item.kind == ContentKind.DISCUSSION
    assert item.activity_id == "33"
    assert item.payload["url"].endswith("/mod/forum/view.php?id=900")


def test_quiz_window_and_unknown_modules() -> None:
    quiz = normalise_activity(
        TENANT, "42", {"id": 5, "modname": "quiz", "timeopen": 1741608000, "timeclose": 1741694400}
    )
    page = normalise_activity(TENANT, "42", {"id": 6, "modname": "page", "visible": 0})

    assert quiz.kind == ContentKind.QUIZ
    assert quiz.close_date == datetime(2025, 3, 11, 12, 0, tzinfo=timezone.utc)
    assert page.kind == ContentKind.OTHER
    assert page.visible is False
    assert page.open_date is None and page.close_date is None


def test_activity_without_id_is_rejected() -> None:
    with pytest.raises(ValueError):
        normalise_activity(TENANT, "42", {"modname": "assign", "name": "Orphan"})


def test_normalise_course_collects_errors() -> None:
    items, errors = normalise_course(
        TENANT,
        {
            "id": 42,
            "fullname": "Algebra",
            "activities": [
                {"id": 1, "modname": "assign"},
                {"modname": "quiz", "name": "No id"},
                {"id": 3, "modname": "quiz", "timeopen": "soon"},
            ],
        },
    )

    assert [item.activity_id for item in items] == ["1"]
    assert len(errors) == 2
    assert all(error.startswith("101/42:") for error in errors)

    assert normalise_course(TENANT, {"activities": []}) == ([], ["Course without id in tenant 101"])


@pytest.mark.asyncio()
async def test_sync_tenant_upserts_items(store, clock) -> None:
    requested = []

    async def fetch(tenant):
        requested.append(tenant.id)
        return [
            {"id": 42, "activities": [{"id": 1, "modname": "assign"}, {"id": 2, "modname": "quiz"}]},
            {"id": 43, "activities": [{"id": 3, "modname": "forum", "instance": 8}, {"modname": "quiz"}]},
        ]

    progress = []
    synchronizer = ContentSynchronizer(store, fetch, clock=clock)

    result = await synchronizer.sync_tenant(TENANT, on_course=lambda r: progress.append(r.courses))

    assert requested == ["101"]
    assert result.courses == 2
    assert result.items == 3
    assert len(result.errors) == 1
    assert progress == [1, 2]
    assert result.total_courses == 2
    assert result.processed_courses == 2
    stored = store.list_work_items("101")
    assert {(item.activity_id, item.kind) for item in stored} == {
        ("1", ContentKind.ASSIGNMENT),
        ("2", ContentKind.QUIZ),
        ("8", ContentKind.DISCUSSION),
    }
    assert all(item.last_synced_at == clock() for item in stored)


@pytest.mark.asyncio()
async def test_sync_accepts_plain_fetcher_and_propagates_failures(store, clock) -> None:
    synchronizer = ContentSynchronizer(store, lambda tenant: [], clock=clock)
    assert (await synchronizer.sync_tenant(TENANT)).courses == 0

    def broken(tenant):
        raise ConnectionError("LMS down")

    with pytest.raises(ConnectionError):
        await ContentSynchronizer(store, broken, clock=clock).sync_tenant(TENANT)


@pytest.mark.asyncio()
async def test_sync_without_fetcher_is_disabled(store) -> None:
    synchronizer = ContentSynchronizer(store, None)

    assert synchronizer.enabled is False
    assert (await synchronizer.sync_tenant(TENANT)).items == 0
