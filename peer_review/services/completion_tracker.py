from __future__ import annotations
import logging
from typing import Any

from peer_review.core.errors import PassbackError, PersistenceError
from peer_review.database.review_store import ReviewStore
from peer_review.schemas.data import CompletionResult, ReportState, ReviewStatus
from peer_review.services.outcome_reporter import OutcomeReporter
from peer_review.services.retry import retry_async

logger = logging.getLogger(__name__)


class CompletionTracker:
    def __init__(
        self,
        store: ReviewStore,
        reporter: OutcomeReporter,
        *,
        max_retries: int = 3,
        retry_delay: float = 0.5,
    ) -> None:
        self.store = store
        self.reporter = reporter
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    async def _retry(self, operation, description: str):
        return await retry_async(
            operation,
            retry_on=(PersistenceError,),
            max_retries=self.max_retries,
            delay=self.retry_delay,
            description=description,
        )

    async def on_assignment_completed(
        self,
        assignment_id: int,
        reviewer_id: str,
        batch_key: str,
        payload: Any = None,
    ) -> CompletionResult:
        """Complete one review and report the reviewer once all their reviews are done.

        The call that performs the pending→complete transition looks at the
        reviewer's other assignments. A repeated submission does the same only
        while the reviewer's report is still pending, which picks up a follow-up
        lost to a store failure; otherwise it is a no-op. Concurrent callers may
        all see the reviewer as fully complete; the reporter's delivery flag
        keeps that to a single report.

        Store failures are retried per step, so a retry never repeats a
        transition that already happened.
        """
        transitioned = await self._retry(
            lambda: self.store.update_status(
                assignment_id, ReviewStatus.COMPLETE, payload, reviewer_id=reviewer_id
            ),
            "Review status update",
        )
        if not transitioned:
            progress = await self._retry(
                lambda: self.store.get_progress(batch_key, reviewer_id), "Report state lookup"
            )
            if progress is None or progress.report_state != ReportState.PENDING:
                logger.debug("Review already complete",
                             extra={"assignment_id": assignment_id, "reviewer_id": reviewer_id})
                return CompletionResult(assignment_id=assignment_id, transitioned=False)
            logger.debug("Review already complete, report still pending",
                         extra={"assignment_id": assignment_id, "reviewer_id": reviewer_id})

        assignments = await self._retry(
            lambda: self.store.get_assignments_for_reviewer(batch_key, reviewer_id),
            "Reviewer assignments lookup",
        )
        fully_complete = bool(assignments) and all(a.is_complete for a in assignments)
        result = CompletionResult(
            assignment_id=assignment_id, transitioned=transitioned, fully_complete=fully_complete
        )
        if not fully_complete:
            return result

        logger.info("Reviewer fully complete", extra={"batch_key": batch_key, "reviewer_id": reviewer_id})
        try:
            # a failed attempt leaves the flag claimable, so retrying is safe
            result.reported = await self._retry(
                lambda: self.reporter.report(reviewer_id, batch_key), "Report delivery"
            )
        except PassbackError as exc:
            # reviews stay complete; delivery is retried through the reporter
            logger.error("Grade passback failed, left for operator retry",
                         extra={"batch_key": batch_key, "reviewer_id": reviewer_id, "error": str(exc)})
            result.report_error = str(exc)
        return result
