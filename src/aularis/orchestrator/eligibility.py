"""Bulk marking of work items that are due for analysis."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Callable, Dict, Optional

from .models import to_iso, utcnow
from .store import PipelineStore

logger = logging.getLogger(__name__)


MARK_ELIGIBLE_SQL = """
UPDATE work_items
SET needs_analysis = 1
WHERE needs_analysis = 0
  AND visible = 1
  AND (open_date IS NULL OR open_date <= :now)
  AND (close_date IS NULL OR close_date > :now)
"""

UNMARK_OUT_OF_WINDOW_SQL = """
UPDATE work_items
SET needs_analysis = 0
WHERE needs_analysis = 1
  AND (
      visible = 0
      OR (open_date IS NOT NULL AND open_date > :now)
      OR (close_date IS NOT NULL AND close_date <= :now)
  )
"""

ACTIVITY_STATS_SQL = """
SELECT tenant_id, needs_analysis, COUNT(*) AS total
FROM work_items
WHERE visible = 1
  AND (open_date IS NULL OR open_date <= :now)
  AND (close_date IS NULL OR close_date > :now)
"""


class EligibilityMarker:
    """Flags visible, currently-open work items as needing analysis.

    Marking is a guarded UPDATE, so running it twice in a row changes
    nothing the second time. The same transaction clears the flag on items
    that were hidden or left their window since they were marked.
    """

    def __init__(
        self,
        store: PipelineStore,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._clock = clock

    def mark_eligible(self, tenant_id: Optional[str] = None) -> int:
        """Mark eligible items, optionally for one tenant; return rows changed.

        Raises:
            sqlite3.Error: The transaction is rolled back and nothing is marked
        """
        now = to_iso(self._clock())
        mark = MARK_ELIGIBLE_SQL
        unmark = UNMARK_OUT_OF_WINDOW_SQL
        params: Dict[str, object] = {"now": now}
        if tenant_id is not None:
            mark += "  AND tenant_id = :tenant_id\n"
            unmark += "  AND tenant_id = :tenant_id\n"
            params["tenant_id"] = tenant_id

        try:
            with self._store.transaction() as conn:
                cleared = conn.execute(unmark, params).rowcount
                changed = conn.execute(mark, params).rowcount
        except sqlite3.Error:
            logger.exception(
                "Failed to mark eligible work items", extra={"tenant_id": tenant_id}
            )
            raise

        logger.info(
            "Marked work items for analysis",
            extra={"tenant_id": tenant_id, "marked": changed, "cleared": cleared},
        )
        return changed

    def activity_stats(self, tenant_id: Optional[str] = None) -> Dict[str, Dict[str, int]]:
        """Per-tenant counts of open items still pending analysis vs analyzed."""
        statement = ACTIVITY_STATS_SQL
        params: Dict[str, object] = {"now": to_iso(self._clock())}
        if tenant_id is not None:
            statement += "  AND tenant_id = :tenant_id\n"
            params["tenant_id"] = tenant_id
        statement += "GROUP BY tenant_id, needs_analysis"

        stats: Dict[str, Dict[str, int]] = {}
        for row in self._store.fetchall(statement, params):
            bucket = stats.setdefault(row["tenant_id"], {"pending": 0, "analyzed": 0})
            if row["needs_analysis"]:
                bucket["pending"] += row["total"]
            else:
                bucket["analyzed"] += row["total"]
        return stats
