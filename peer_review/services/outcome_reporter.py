from __future__ import annotations
import html
import logging
from typing import Any, Optional, Sequence

from peer_review.clients.grade_passback import GradePassback
from peer_review.core.errors import PassbackError, ReviewerNotFoundError
from peer_review.database.review_store import ReviewStore
from peer_review.schemas.data import ReportState, ReviewAssignment
from peer_review.services.retry import retry_async

logger = logging.getLogger(__name__)

CLAIMABLE = (ReportState.PENDING, ReportState.FAILED)


def render_payload(payload: Any) -> str:
    if payload is None:
        return ""
    if isinstance(payload, dict):
        return "".join(
            f"<b>{html.escape(str(key))}:</b> {html.escape(str(value))}<br/>"
            for key, value in payload.items()
        )
    if isinstance(payload, (list, tuple)):
        return "".join(f"{html.escape(str(item))}<br/>" for item in payload)
    return f"{html.escape(str(payload))}<br/>"


def build_report(assignments: Sequence[ReviewAssignment]) -> str:
    """One block per complete review, in creation order."""
    blocks = []
    for a in sorted(assignments, key=lambda a: (a.created_at, a.id)):
        if not a.is_complete:
            continue
        blocks.append(
            f"<p><b>Review of {html.escape(a.author_id)}</b><br/>{render_payload(a.payload)}</p>"
        )
    return "".join(blocks)


class OutcomeReporter:
    """Delivers a reviewer's report to the grade-passback channel once.

    The single-delivery flag lives in the store (``claim_report``); only the
    caller that wins the compare-and-set talks to the passback channel.
    """

    def __init__(
        self,
        store: ReviewStore,
        passback: GradePassback,
        *,
        score: Optional[float] = 1.0,
        max_retries: int = 3,
        retry_delay: float = 0.5,
    ) -> None:
        self.store = store
        self.passback = passback
        self.score = score
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    async def report(self, reviewer_id: str, batch_key: str, *, force: bool = False) -> bool:
        """Return True if this call delivered the report, False if nothing was sent.

        Nothing is sent while any of the reviewer's assignments is still pending,
        or when the report was already delivered or is in flight. ``force`` also
        reclaims a delivery left in flight, for operator retries.
        Raises PassbackError when the channel fails; record statuses are untouched.
        """
        assignments = await self.store.get_assignments_for_reviewer(batch_key, reviewer_id)
        if not assignments:
            raise ReviewerNotFoundError(batch_key, reviewer_id)
        pending = sum(1 for a in assignments if not a.is_complete)
        if pending:
            logger.info("Reviewer still has pending assignments, not reporting",
                        extra={"batch_key": batch_key, "reviewer_id": reviewer_id, "pending": pending})
            return False

        states = CLAIMABLE + (ReportState.DELIVERING,) if force else CLAIMABLE
        if not await self.store.claim_report(batch_key, reviewer_id, states):
            if await self.store.get_progress(batch_key, reviewer_id) is None:
                raise ReviewerNotFoundError(batch_key, reviewer_id)
            logger.info("Report already delivered or in flight",
                        extra={"batch_key": batch_key, "reviewer_id": reviewer_id})
            return False

        try:
            progress = await self.store.get_progress(batch_key, reviewer_id)
            if progress is None or not progress.passback_ref:
                raise PassbackError(f"No passback target stored for reviewer {reviewer_id}")

            # re-read so payloads edited since the check are the ones sent
            text = build_report(await self.store.get_assignments_for_reviewer(batch_key, reviewer_id))

            await retry_async(
                lambda: self.passback.replace_result(progress.passback_ref, self.score, text),
                retry_on=(PassbackError,),
                max_retries=self.max_retries,
                delay=self.retry_delay,
                description="Grade passback",
            )
        except Exception as exc:
            await self._release(batch_key, reviewer_id, str(exc) or type(exc).__name__)
            raise

        await self.store.finish_report(batch_key, reviewer_id, delivered=True)
        logger.info("Report delivered", extra={"batch_key": batch_key, "reviewer_id": reviewer_id})
        return True

    async def _release(self, batch_key: str, reviewer_id: str, error: str) -> None:
        """Move a claimed delivery to failed so a later call can claim it again."""
        logger.error("Report delivery failed",
                     extra={"batch_key": batch_key, "reviewer_id": reviewer_id, "error": error})
        try:
            await self.store.finish_report(batch_key, reviewer_id, delivered=False, error=error)
        except Exception:
            # the flag stays delivering; report(..., force=True) reclaims it
            logger.exception("Could not reset report state",
                             extra={"batch_key": batch_key, "reviewer_id": reviewer_id})
