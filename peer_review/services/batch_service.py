from __future__ import annotations
import asyncio
import logging
import random
from typing import Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from peer_review.clients.submission_registry import SubmissionRegistry
from peer_review.core.errors import BatchExistsError
from peer_review.database.review_store import ReviewStore
from peer_review.schemas.data import Batch, ReviewAssignment, Submission
from peer_review.services.assignment_engine import assign, effective_review_num

logger = logging.getLogger(__name__)


def make_batch_key(course_id: str, activity_id: str) -> str:
    return f"{course_id}:{activity_id}"


class FetchFailure(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    submission_id: str = Field(..., alias="submissionId")
    error: str


class BatchCreated(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    batch_key: str = Field(..., alias="batchKey")
    review_num: int = Field(..., alias="reviewNum")
    submission_count: int = Field(..., alias="submissionCount")
    assignment_count: int = Field(..., alias="assignmentCount")
    failures: list[FetchFailure] = Field(default_factory=list)


async def collect_submissions(
    registry: SubmissionRegistry,
    course_id: str,
    activity_id: str,
    *,
    concurrency: int = 8,
) -> tuple[list[Submission], list[FetchFailure]]:
    """Fetch every submission of the activity with at most ``concurrency`` calls in flight.

    A failing submission is reported in the second list and does not abort the others.
    Successful submissions keep the registry's order.
    """
    if concurrency <= 0:
        logger.warning("Invalid fetch concurrency (%s), defaulting to 1.", concurrency)
        concurrency = 1
    semaphore = asyncio.Semaphore(concurrency)
    ids = await registry.list_submission_ids(course_id, activity_id)

    async def fetch(submission_id: str) -> Submission | FetchFailure:
        async with semaphore:
            try:
                return await registry.get_submission(course_id, activity_id, submission_id)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("Fetching submission failed",
                                 extra={"course_id": course_id, "activity_id": activity_id,
                                        "submission_id": submission_id})
                return FetchFailure(submission_id=submission_id, error=str(exc) or type(exc).__name__)

    results = await asyncio.gather(*(fetch(i) for i in ids))
    fetched = [r for r in results if isinstance(r, Submission)]
    failures = [r for r in results if isinstance(r, FetchFailure)]
    logger.info("Submissions collected",
                extra={"course_id": course_id, "activity_id": activity_id,
                       "fetched": len(fetched), "failed": len(failures)})
    return fetched, failures


class BatchService:
    """Instructor-facing operations on a batch: creation and progress views."""

    def __init__(
        self,
        store: ReviewStore,
        registry: Optional[SubmissionRegistry] = None,
        *,
        concurrency: int = 8,
    ) -> None:
        self.store = store
        self.registry = registry
        self.concurrency = concurrency

    async def create_batch(
        self,
        course_id: str,
        activity_id: str,
        review_num: int,
        submissions: Optional[Sequence[Submission]] = None,
    ) -> BatchCreated:
        """Assign reviewers for the activity and persist the batch.

        Runs at most once per batch: an existing batch raises BatchExistsError.
        Invalid parameters abort before anything is written.
        """
        batch_key = make_batch_key(course_id, activity_id)
        if await self.store.batch_exists(batch_key):
            raise BatchExistsError(batch_key)

        failures: list[FetchFailure] = []
        if submissions is None:
            if self.registry is None:
                raise RuntimeError("No submission registry configured")
            submissions, failures = await collect_submissions(
                self.registry, course_id, activity_id, concurrency=self.concurrency
            )

        # ordering is fixed per batch and unrelated to submission time
        assignments = assign(submissions, review_num, rng=random.Random(batch_key))
        k = effective_review_num(review_num, len(submissions))
        if k != review_num:
            logger.info("reviewNum clamped", extra={"batch_key": batch_key, "requested": review_num, "used": k})

        batch = Batch(batch_key=batch_key, review_num=k, submissions=list(submissions))
        ids = await self.store.create_batch(batch, assignments)
        return BatchCreated(
            batch_key=batch_key,
            review_num=k,
            submission_count=len(submissions),
            assignment_count=len(ids),
            failures=failures,
        )

    async def reviewer_status(self, batch_key: str, reviewer_id: str) -> dict:
        assignments = await self.store.get_assignments_for_reviewer(batch_key, reviewer_id)
        return {
            "reviewerId": reviewer_id,
            "completed": bool(assignments) and all(a.is_complete for a in assignments),
            "assignments": [a.model_dump(by_alias=True, mode="json") for a in assignments],
        }

    async def reviews_of_author(self, batch_key: str, author_id: str) -> dict:
        reviews = await self.store.get_assignments_for_author(batch_key, author_id)
        return _author_entry(author_id, reviews)

    async def overview(self, batch_key: str) -> list[dict]:
        """Per author: the reviews of their paper and how many are still pending."""
        batch = await self.store.get_batch(batch_key)
        if batch is None:
            return []
        by_author: dict[str, list[ReviewAssignment]] = {s.author_id: [] for s in batch.submissions}
        for a in await self.store.get_batch_assignments(batch_key):
            by_author.setdefault(a.author_id, []).append(a)
        return [_author_entry(author, reviews) for author, reviews in by_author.items()]


def _author_entry(author_id: str, reviews: Sequence[ReviewAssignment]) -> dict:
    return {
        "authorId": author_id,
        "incompleteCount": sum(1 for r in reviews if not r.is_complete),
        "reviews": [r.model_dump(by_alias=True, mode="json") for r in reviews],
    }
