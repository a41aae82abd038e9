"""Normalisation of raw LMS course payloads into work items.

The content fetcher returns Moodle-shaped course dictionaries::

    {"id": 42, "fullname": "Algebra", "activities": [
        {"id": 7, "modname": "assign", "name": "Essay", "visible": 1,
         "allowsubmissionsfromdate": 1760000000, "duedate": 1760600000},
        ...
    ]}

Dates are unix seconds; zero or missing means unbounded on that side.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .collaborators import ContentFetcher, resolve
from .models import ContentKind, Tenant, WorkItem, utcnow
from .store import PipelineStore

logger = logging.getLogger(__name__)


MODNAME_KINDS: Dict[str, ContentKind] = {
    "assign": ContentKind.ASSIGNMENT,
    "forum": ContentKind.DISCUSSION,
    "quiz": ContentKind.QUIZ,
}

OPEN_DATE_FIELDS = ("allowsubmissionsfromdate", "timeopen")
CLOSE_DATE_FIELDS = ("cutoffdate", "duedate", "timeclose")


@dataclass(slots=True)
class SyncResult:
    """Outcome of syncing one tenant."""

    tenant_id: str
    total_courses: int = 0
    processed_courses: int = 0
    courses: int = 0
    items: int = 0
    errors: List[str] = field(default_factory=list)


def kind_for_modname(modname: Optional[str]) -> ContentKind:
    return MODNAME_KINDS.get((modname or "").lower(), ContentKind.OTHER)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Convert a unix-seconds (or ISO) value to an aware UTC datetime."""
    if value is None or value == "" or value == 0:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").isdigit():
            seconds = int(text)
            return datetime.fromtimestamp(seconds, tz=timezone.utc) if seconds else None
        parsed = datetime.fromisoformat(text)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"Unsupported date value: {value!r}")


def _first_date(raw: Dict[str, Any], fields: Tuple[str, ...]) -> Optional[datetime]:
    for name in fields:
        parsed = parse_timestamp(raw.get(name))
        if parsed is not None:
            return parsed
    return None


def normalise_activity(tenant: Tenant, course_id: str, raw: Dict[str, Any]) -> WorkItem:
    """Build a work item from one raw activity.

    Forums are identified by their ``instance`` (the forum id) rather than
    the course-module id.

    Raises:
        ValueError: If the activity has no usable id or malformed dates
    """
    modname = raw.get("modname")
    kind = kind_for_modname(modname)
    activity_id = raw.get("instance") if kind == ContentKind.DISCUSSION else None
    if activity_id in (None, ""):
        activity_id = raw.get("id")
    if activity_id in (None, ""):
        raise ValueError(f"Activity without id in course {course_id}: {raw.get('name')!r}")

    payload = dict(raw)
    payload.setdefault(
        "url", f"{tenant.base_url.rstrip('/')}/mod/{modname or 'resource'}/view.php?id={raw.get('id', activity_id)}"
    )
    return WorkItem(
        tenant_id=tenant.id,
        course_id=str(course_id),
        activity_id=str(activity_id),
        kind=kind,
        name=str(raw.get("name") or ""),
        visible=bool(raw.get("visible", True)),
        open_date=_first_date(raw, OPEN_DATE_FIELDS),
        close_date=_first_date(raw, CLOSE_DATE_FIELDS),
        payload=payload,
    )


def normalise_course(tenant: Tenant, raw_course: Dict[str, Any]) -> Tuple[List[WorkItem], List[str]]:
    """Normalise every activity of a course; bad activities become error strings."""
    course_id = raw_course.get("id")
    if course_id in (None, ""):
        return [], [f"Course without id in tenant {tenant.id}"]

    items: List[WorkItem] = []
    errors: List[str] = []
    for raw in raw_course.get("activities") or []:
        try:
            items.append(normalise_activity(tenant, str(course_id), raw))
        except (ValueError, TypeError, OverflowError) as exc:
            errors.append(f"{tenant.id}/{course_id}: {exc}")
    return items, errors


class ContentSynchronizer:
    """Fetches a tenant's courses and upserts their work items."""

    def __init__(
        self,
        store: PipelineStore,
        fetcher: Optional[ContentFetcher],
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._fetcher = fetcher
        self._clock = clock

    @property
    def enabled(self) -> bool:
        return self._fetcher is not None

    async def sync_tenant(
        self,
        tenant: Tenant,
        on_course: Optional[Callable[[SyncResult], None]] = None,
    ) -> SyncResult:
        """Sync one tenant.

        Fetch failures propagate to the caller; per-course and per-activity
        problems are collected in ``SyncResult.errors``.
        """
        result = SyncResult(tenant_id=tenant.id)
        if self._fetcher is None:
            return result

        fetched: Optional[Iterable[Dict[str, Any]]] = await resolve(self._fetcher(tenant))
        courses = list(fetched or [])
        result.total_courses = len(courses)
        for raw_course in courses:
            items, errors = normalise_course(tenant, raw_course)
            result.errors.extend(errors)
            now = self._clock()
            for item in items:
                try:
                    self._store.upsert_work_item(item, now=now)
                except Exception as exc:  # noqa: BLE001
                    logger.exception(
                        "Failed to store work item",
                        extra={"tenant_id": tenant.id, "activity_id": item.activity_id},
                    )
                    result.errors.append(f"{tenant.id}/{item.activity_id}: {exc}")
                    continue
                result.items += 1
            if raw_course.get("id") not in (None, ""):
                result.courses += 1
            result.processed_courses += 1
            if on_course is not None:
                on_course(result)

        logger.info(
            "Synced tenant content",
            extra={
                "tenant_id": tenant.id,
                "courses": result.courses,
                "items": result.items,
                "errors": len(result.errors),
            },
        )
        return result
