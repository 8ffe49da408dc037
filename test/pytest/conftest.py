import asyncio
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Sequence

import pytest

from peer_review.clients.grade_passback import GradePassback
from peer_review.core.errors import (
    AssignmentNotFoundError, BatchExistsError, PassbackError, ReviewerNotFoundError
)
from peer_review.database.review_store import ReviewStore
from peer_review.schemas.data import (
    Batch, ReportState, ReviewAssignment, ReviewStatus, ReviewerProgress
)
from peer_review.services.assignment_engine import PaperAssignment
from peer_review.services.completion_tracker import CompletionTracker
from peer_review.services.outcome_reporter import OutcomeReporter

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeReviewStore(ReviewStore):
    """In-memory store; every operation yields to the loop so callers interleave."""

    def __init__(self):
        self.batches: dict[str, Batch] = {}
        self.assignments: dict[int, ReviewAssignment] = {}
        self.progress: dict[tuple[str, str], ReviewerProgress] = {}
        self.claims = 0
        self._lock = asyncio.Lock()
        self._next_id = 1

    async def batch_exists(self, batch_key):
        await asyncio.sleep(0)
        return batch_key in self.batches

    async def create_batch(self, batch: Batch, assignments: Sequence[PaperAssignment]):
        async with self._lock:
            if batch.batch_key in self.batches:
                raise BatchExistsError(batch.batch_key)
            self.batches[batch.batch_key] = batch
        ids = []
        for a in assignments:
            for reviewer in a.reviewer_ids:
                ids.append(await self.create_assignment(
                    batch_key=batch.batch_key, paper_id=a.paper_id,
                    author_id=a.author_id, reviewer_id=reviewer,
                ))
        return ids

    async def get_batch(self, batch_key):
        await asyncio.sleep(0)
        return self.batches.get(batch_key)

    async def create_assignment(self, *, batch_key, paper_id, author_id, reviewer_id):
        async with self._lock:
            assignment_id = self._next_id
            self._next_id += 1
            self.assignments[assignment_id] = ReviewAssignment(
                id=assignment_id, batch_key=batch_key, paper_id=paper_id, author_id=author_id,
                reviewer_id=reviewer_id, status=ReviewStatus.PENDING,
                created_at=T0 + timedelta(seconds=assignment_id),
            )
            self.progress.setdefault(
                (batch_key, reviewer_id),
                ReviewerProgress(batch_key=batch_key, reviewer_id=reviewer_id),
            )
            return assignment_id

    async def _select(self, **match) -> list[ReviewAssignment]:
        await asyncio.sleep(0)
        rows = [
            a.model_copy() for a in self.assignments.values()
            if all(getattr(a, k) == v for k, v in match.items())
        ]
        return sorted(rows, key=lambda a: (a.created_at, a.id))

    async def get_assignments_for_reviewer(self, batch_key, reviewer_id):
        return await self._select(batch_key=batch_key, reviewer_id=reviewer_id)

    async def get_assignments_for_paper(self, batch_key, paper_id):
        return await self._select(batch_key=batch_key, paper_id=paper_id)

    async def get_assignments_for_author(self, batch_key, author_id):
        return await self._select(batch_key=batch_key, author_id=author_id)

    async def get_batch_assignments(self, batch_key):
        return await self._select(batch_key=batch_key)

    async def update_status(self, assignment_id, new_status, payload=None, *, reviewer_id=None):
        if ReviewStatus(new_status) != ReviewStatus.COMPLETE:
            raise ValueError("A review assignment can only move to 'complete'")
        await asyncio.sleep(0)
        async with self._lock:
            record = self.assignments.get(assignment_id)
            if record is None or (reviewer_id is not None and record.reviewer_id != reviewer_id):
                raise AssignmentNotFoundError(assignment_id)
            if record.status == ReviewStatus.COMPLETE:
                if payload is not None:
                    record.payload = payload
                return False
            record.status = ReviewStatus.COMPLETE
            record.payload = payload
            record.completed_at = T0
            return True

    async def get_progress(self, batch_key, reviewer_id):
        await asyncio.sleep(0)
        progress = self.progress.get((batch_key, reviewer_id))
        return progress.model_copy() if progress else None

    async def set_passback_target(self, batch_key, reviewer_id, passback_ref):
        progress = self.progress.get((batch_key, reviewer_id))
        if progress is None:
            raise ReviewerNotFoundError(batch_key, reviewer_id)
        progress.passback_ref = passback_ref

    async def claim_report(self, batch_key, reviewer_id, from_states: Iterable[ReportState]):
        await asyncio.sleep(0)
        async with self._lock:
            progress = self.progress.get((batch_key, reviewer_id))
            if progress is None or progress.report_state not in set(from_states):
                return False
            progress.report_state = ReportState.DELIVERING
            progress.report_error = None
            self.claims += 1
            return True

    async def finish_report(self, batch_key, reviewer_id, *, delivered, error=None):
        async with self._lock:
            progress = self.progress[(batch_key, reviewer_id)]
            if progress.report_state != ReportState.DELIVERING:
                return
            progress.report_state = ReportState.DELIVERED if delivered else ReportState.FAILED
            progress.report_error = error
            if delivered:
                progress.reported_at = T0

    async def get_report_batches(self):
        rows = []
        for key in sorted(self.batches):
            records = [a for a in self.assignments.values() if a.batch_key == key]
            reviewers = [p for (b, _), p in self.progress.items() if b == key]
            rows.append({
                "batchKey": key,
                "pending": sum(1 for a in records if not a.is_complete),
                "complete": sum(1 for a in records if a.is_complete),
                "reviewers": len(reviewers),
                "reported": sum(1 for p in reviewers if p.report_state == ReportState.DELIVERED),
            })
        return rows


class FakePassback(GradePassback):
    def __init__(self, failures: int = 0):
        self.failures = failures
        self.sent: list[tuple[str, Optional[float], str]] = []

    async def replace_result(self, passback_ref, score, report_text):
        await asyncio.sleep(0)
        if self.failures > 0:
            self.failures -= 1
            raise PassbackError("outcome service unavailable")
        self.sent.append((passback_ref, score, report_text))


@pytest.fixture
def store() -> FakeReviewStore:
    return FakeReviewStore()


@pytest.fixture
def passback() -> FakePassback:
    return FakePassback()


@pytest.fixture
def reporter(store, passback) -> OutcomeReporter:
    return OutcomeReporter(store, passback, score=1.0, max_retries=2, retry_delay=0)


@pytest.fixture
def tracker(store, reporter) -> CompletionTracker:
    return CompletionTracker(store, reporter, max_retries=2, retry_delay=0)


async def seed_reviewer(store: FakeReviewStore, batch_key: str, reviewer_id: str,
                        papers: Sequence[tuple[str, str]], passback_ref: Optional[str] = "sourced-1") -> list[int]:
    """Create one assignment per (paper_id, author_id) for ``reviewer_id``."""
    store.batches.setdefault(batch_key, Batch(batch_key=batch_key, review_num=len(papers)))
    ids = [
        await store.create_assignment(batch_key=batch_key, paper_id=p, author_id=a, reviewer_id=reviewer_id)
        for p, a in papers
    ]
    if passback_ref:
        await store.set_passback_target(batch_key, reviewer_id, passback_ref)
    return ids


@pytest.fixture
def seed(store):
    async def _seed(batch_key, reviewer_id, papers, passback_ref="sourced-1"):
        return await seed_reviewer(store, batch_key, reviewer_id, papers, passback_ref)
    return _seed
