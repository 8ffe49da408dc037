from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional, Sequence

from peer_review.schemas.data import (
    Batch, ReportState, ReviewAssignment, ReviewStatus, ReviewerProgress
)
from peer_review.services.assignment_engine import PaperAssignment


class ReviewStore(ABC):
    """Persistence contract the assignment and completion core relies on.

    Every operation is atomic with respect to the records it touches.
    ``update_status`` and ``claim_report`` must be linearizable per record:
    of several concurrent callers at most one observes the transition.
    """

    # Batches
    @abstractmethod
    async def batch_exists(self, batch_key: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def create_batch(self, batch: Batch, assignments: Sequence[PaperAssignment]) -> list[int]:
        """Persist batch, submissions and all records as pending in one transaction."""
        raise NotImplementedError

    @abstractmethod
    async def get_batch(self, batch_key: str) -> Optional[Batch]:
        raise NotImplementedError

    # Review assignments
    @abstractmethod
    async def create_assignment(
        self, *, batch_key: str, paper_id: str, author_id: str, reviewer_id: str
    ) -> int:
        raise NotImplementedError

    @abstractmethod
    async def get_assignments_for_reviewer(self, batch_key: str, reviewer_id: str) -> list[ReviewAssignment]:
        """Ordered by creation."""
        raise NotImplementedError

    @abstractmethod
    async def get_assignments_for_paper(self, batch_key: str, paper_id: str) -> list[ReviewAssignment]:
        raise NotImplementedError

    @abstractmethod
    async def get_assignments_for_author(self, batch_key: str, author_id: str) -> list[ReviewAssignment]:
        raise NotImplementedError

    @abstractmethod
    async def get_batch_assignments(self, batch_key: str) -> list[ReviewAssignment]:
        raise NotImplementedError

    @abstractmethod
    async def update_status(
        self,
        assignment_id: int,
        new_status: ReviewStatus,
        payload: Any = None,
        *,
        reviewer_id: Optional[str] = None,
    ) -> bool:
        """Return True only for the call that moved the record pending→complete."""
        raise NotImplementedError

    # Reviewer progress
    @abstractmethod
    async def get_progress(self, batch_key: str, reviewer_id: str) -> Optional[ReviewerProgress]:
        raise NotImplementedError

    @abstractmethod
    async def set_passback_target(self, batch_key: str, reviewer_id: str, passback_ref: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def claim_report(
        self, batch_key: str, reviewer_id: str, from_states: Iterable[ReportState]
    ) -> bool:
        """Compare-and-set the delivery flag to ``delivering``."""
        raise NotImplementedError

    @abstractmethod
    async def finish_report(
        self, batch_key: str, reviewer_id: str, *, delivered: bool, error: Optional[str] = None
    ) -> None:
        raise NotImplementedError

    # Aggregate reports
    @abstractmethod
    async def get_report_batches(self) -> list[dict]:
        """Returns: { batchKey, pending, complete, reviewers, reported }"""
        raise NotImplementedError
