"""
Review report registry.

Reports of one session live at ``sessions/<id>/reports/<report_id>.json``
where the id is derived from the creation timestamp, so key order is
creation order.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from agent_relay.errors import ArtifactNotFoundError, NotFoundError
from agent_relay.models import ReviewReport

if TYPE_CHECKING:
    from agent_relay.artifact_store import ArtifactStore


class ReportRegistry:
    """Review reports of a single session."""

    def __init__(self, store: ArtifactStore, session_id: str) -> None:
        self.store = store
        self.session_id = session_id

    @property
    def prefix(self) -> str:
        return f"sessions/{self.session_id}/reports/"

    def save(self, report: ReviewReport) -> str:
        """Persist a report and return its store key."""
        key = f"{self.prefix}{report.report_id}"
        self.store.put(key, report.to_dict())
        return key

    def get(self, report_id: str) -> ReviewReport:
        """
        Load a report by id.

        Raises:
            NotFoundError: If no report has that id.
        """
        try:
            return ReviewReport.from_dict(self.store.get(f"{self.prefix}{report_id}"))
        except ArtifactNotFoundError:
            raise NotFoundError(f"report not found: {report_id}")

    def list(self) -> list[str]:
        """Report ids, oldest first."""
        return [key[len(self.prefix):] for key in self.store.list(self.prefix)]

    def latest(self) -> Optional[ReviewReport]:
        ids = self.list()
        if not ids:
            return None
        return self.get(ids[-1])

    def exists(self) -> bool:
        return bool(self.list())
