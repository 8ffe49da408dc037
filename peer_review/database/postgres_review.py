from __future__ import annotations
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging
from typing import Any, AsyncIterator, Iterable, Optional, Sequence
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, AsyncSession
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy import select, insert, update, func, literal_column

from peer_review.core.errors import (
    AssignmentNotFoundError, BatchExistsError, PersistenceError, ReviewerNotFoundError
)
from peer_review.database.review_store import ReviewStore
from peer_review.database.tables import (
    metadata, batches, submissions, review_assignments, reviewer_progress
)
from peer_review.schemas.data import (
    Batch, ReportState, ReviewAssignment, ReviewStatus, ReviewerProgress, Submission
)
from peer_review.services.assignment_engine import PaperAssignment

logger = logging.getLogger("peer_review.store")

ra = review_assignments


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PostgresReviewStore(ReviewStore):
    """SQL review store.

    Written against portable SQLAlchemy Core so it runs on PostgreSQL (asyncpg)
    and SQLite (aiosqlite). Single-winner transitions are conditional UPDATEs
    whose row count tells the caller whether it performed the transition.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self.session_factory = async_sessionmaker(bind=engine, expire_on_commit=False)

    async def ensure_schema(self) -> None:
        logger.info("Ensuring schema for peer review tables")
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)
        logger.info("Schema ready")

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as exc:
            logger.error("Store operation failed", extra={"error": str(exc)})
            raise PersistenceError(str(exc)) from exc

    # 1) batches
    async def batch_exists(self, batch_key: str) -> bool:
        async with self._transaction() as session:
            row = (await session.execute(
                select(batches.c.batch_key).where(batches.c.batch_key == batch_key)
            )).first()
        return row is not None

    async def create_batch(self, batch: Batch, assignments: Sequence[PaperAssignment]) -> list[int]:
        if not batch.batch_key:
            raise ValueError("batch_key is required")
        now = _utcnow()
        rows = [
            {
                "batch_key": batch.batch_key,
                "paper_id": a.paper_id,
                "author_id": a.author_id,
                "reviewer_id": reviewer,
                "status": ReviewStatus.PENDING.value,
                "payload": None,
                "created_at": now,
            }
            for a in assignments
            for reviewer in a.reviewer_ids
        ]
        reviewers = sorted({r["reviewer_id"] for r in rows})
        try:
            async with self._transaction() as session:
                await session.execute(insert(batches).values(
                    batch_key=batch.batch_key, review_num=batch.review_num, created_at=now,
                ))
                if batch.submissions:
                    await session.execute(insert(submissions), [
                        {
                            "batch_key": batch.batch_key,
                            "paper_id": s.paper_id,
                            "author_id": s.author_id,
                            "attachment_ref": s.attachment_ref,
                            "position": position,
                        }
                        for position, s in enumerate(batch.submissions)
                    ])
                # one row at a time so ids follow creation order on every backend
                ids = []
                for row in rows:
                    result = await session.execute(insert(ra).values(**row))
                    ids.append(result.inserted_primary_key[0])
                if reviewers:
                    await session.execute(insert(reviewer_progress), [
                        {"batch_key": batch.batch_key, "reviewer_id": r,
                         "report_state": ReportState.PENDING.value}
                        for r in reviewers
                    ])
        except PersistenceError as exc:
            if isinstance(exc.__cause__, IntegrityError):
                raise BatchExistsError(batch.batch_key) from exc
            raise
        logger.info("Batch persisted",
                    extra={"batch_key": batch.batch_key, "assignments": len(ids), "reviewers": len(reviewers)})
        return ids

    async def get_batch(self, batch_key: str) -> Optional[Batch]:
        async with self._transaction() as session:
            head = (await session.execute(
                select(batches).where(batches.c.batch_key == batch_key)
            )).mappings().first()
            if head is None:
                return None
            subs = (await session.execute(
                select(submissions)
                .where(submissions.c.batch_key == batch_key)
                .order_by(submissions.c.position)
            )).mappings().all()
        return Batch(
            batch_key=head["batch_key"],
            review_num=head["review_num"],
            submissions=[
                Submission(paper_id=s["paper_id"], author_id=s["author_id"], attachment_ref=s["attachment_ref"])
                for s in subs
            ],
        )

    # 2) review assignments
    async def create_assignment(
        self, *, batch_key: str, paper_id: str, author_id: str, reviewer_id: str
    ) -> int:
        if not batch_key or not paper_id or not author_id or not reviewer_id:
            raise ValueError("batch_key, paper_id, author_id, reviewer_id are required")
        if reviewer_id == author_id:
            raise ValueError("An author cannot review their own paper")
        async with self._transaction() as session:
            result = await session.execute(insert(ra).values(
                batch_key=batch_key,
                paper_id=paper_id,
                author_id=author_id,
                reviewer_id=reviewer_id,
                status=ReviewStatus.PENDING.value,
                payload=None,
                created_at=_utcnow(),
            ))
            assignment_id = result.inserted_primary_key[0]
            progress = (await session.execute(
                select(reviewer_progress.c.reviewer_id).where(
                    reviewer_progress.c.batch_key == batch_key,
                    reviewer_progress.c.reviewer_id == reviewer_id,
                )
            )).first()
            if progress is None:
                await session.execute(insert(reviewer_progress).values(
                    batch_key=batch_key, reviewer_id=reviewer_id,
                    report_state=ReportState.PENDING.value,
                ))
        logger.debug("Assignment created",
                     extra={"assignment_id": assignment_id, "batch_key": batch_key, "reviewer_id": reviewer_id})
        return assignment_id

    async def _select_assignments(self, *conditions) -> list[ReviewAssignment]:
        stmt = select(ra).where(*conditions).order_by(ra.c.created_at, ra.c.id)
        async with self._transaction() as session:
            rows = (await session.execute(stmt)).mappings().all()
        return [ReviewAssignment.model_validate(dict(r)) for r in rows]

    async def get_assignments_for_reviewer(self, batch_key: str, reviewer_id: str) -> list[ReviewAssignment]:
        return await self._select_assignments(ra.c.batch_key == batch_key, ra.c.reviewer_id == reviewer_id)

    async def get_assignments_for_paper(self, batch_key: str, paper_id: str) -> list[ReviewAssignment]:
        return await self._select_assignments(ra.c.batch_key == batch_key, ra.c.paper_id == paper_id)

    async def get_assignments_for_author(self, batch_key: str, author_id: str) -> list[ReviewAssignment]:
        return await self._select_assignments(ra.c.batch_key == batch_key, ra.c.author_id == author_id)

    async def get_batch_assignments(self, batch_key: str) -> list[ReviewAssignment]:
        return await self._select_assignments(ra.c.batch_key == batch_key)

    async def update_status(
        self,
        assignment_id: int,
        new_status: ReviewStatus,
        payload: Any = None,
        *,
        reviewer_id: Optional[str] = None,
    ) -> bool:
        if ReviewStatus(new_status) != ReviewStatus.COMPLETE:
            raise ValueError("A review assignment can only move to 'complete'")

        target = [ra.c.id == assignment_id]
        if reviewer_id is not None:
            target.append(ra.c.reviewer_id == reviewer_id)

        async with self._transaction() as session:
            result = await session.execute(
                update(ra)
                .where(*target, ra.c.status == ReviewStatus.PENDING.value)
                .values(status=ReviewStatus.COMPLETE.value, payload=payload, completed_at=_utcnow())
            )
            if result.rowcount == 1:
                performed = True
            else:
                existing = (await session.execute(select(ra.c.id).where(*target))).first()
                if existing is None:
                    raise AssignmentNotFoundError(assignment_id)
                # already complete: keep the status, refresh the feedback
                if payload is not None:
                    await session.execute(update(ra).where(*target).values(payload=payload))
                performed = False

        logger.debug("Status update", extra={"assignment_id": assignment_id, "transitioned": performed})
        return performed

    # 3) reviewer progress
    async def get_progress(self, batch_key: str, reviewer_id: str) -> Optional[ReviewerProgress]:
        async with self._transaction() as session:
            row = (await session.execute(
                select(reviewer_progress).where(
                    reviewer_progress.c.batch_key == batch_key,
                    reviewer_progress.c.reviewer_id == reviewer_id,
                )
            )).mappings().first()
        return ReviewerProgress.model_validate(dict(row)) if row is not None else None

    async def set_passback_target(self, batch_key: str, reviewer_id: str, passback_ref: str) -> None:
        if not passback_ref:
            raise ValueError("passback_ref is required")
        async with self._transaction() as session:
            result = await session.execute(
                update(reviewer_progress)
                .where(
                    reviewer_progress.c.batch_key == batch_key,
                    reviewer_progress.c.reviewer_id == reviewer_id,
                )
                .values(passback_ref=passback_ref)
            )
            if result.rowcount == 0:
                raise ReviewerNotFoundError(batch_key, reviewer_id)
        logger.debug("Passback target stored", extra={"batch_key": batch_key, "reviewer_id": reviewer_id})

    async def claim_report(
        self, batch_key: str, reviewer_id: str, from_states: Iterable[ReportState]
    ) -> bool:
        states = [ReportState(s).value for s in from_states]
        async with self._transaction() as session:
            result = await session.execute(
                update(reviewer_progress)
                .where(
                    reviewer_progress.c.batch_key == batch_key,
                    reviewer_progress.c.reviewer_id == reviewer_id,
                    reviewer_progress.c.report_state.in_(states),
                )
                .values(report_state=ReportState.DELIVERING.value, report_error=None)
            )
        return result.rowcount == 1

    async def finish_report(
        self, batch_key: str, reviewer_id: str, *, delivered: bool, error: Optional[str] = None
    ) -> None:
        values: dict[str, Any] = {
            "report_state": (ReportState.DELIVERED if delivered else ReportState.FAILED).value,
            "report_error": error,
        }
        if delivered:
            values["reported_at"] = _utcnow()
        async with self._transaction() as session:
            await session.execute(
                update(reviewer_progress)
                .where(
                    reviewer_progress.c.batch_key == batch_key,
                    reviewer_progress.c.reviewer_id == reviewer_id,
                    reviewer_progress.c.report_state == ReportState.DELIVERING.value,
                )
                .values(**values)
            )

    async def get_report_batches(self) -> list[dict]:
        """
        Returns rows: { batchKey, pending, complete, reviewers, reported }
        """
        counts = (
            select(
                ra.c.batch_key.label("batchKey"),
                func.count().filter(ra.c.status == literal_column("'pending'")).label("pending"),
                func.count().filter(ra.c.status == literal_column("'complete'")).label("complete"),
            )
            .group_by(ra.c.batch_key)
            .order_by(ra.c.batch_key)
        )
        progress = (
            select(
                reviewer_progress.c.batch_key.label("batchKey"),
                func.count().label("reviewers"),
                func.count().filter(
                    reviewer_progress.c.report_state == literal_column("'delivered'")
                ).label("reported"),
            )
            .group_by(reviewer_progress.c.batch_key)
        )
        async with self._transaction() as session:
            count_rows = (await session.execute(counts)).mappings().all()
            progress_rows = {r["batchKey"]: r for r in (await session.execute(progress)).mappings().all()}
        report = []
        for r in count_rows:
            p = progress_rows.get(r["batchKey"])
            report.append({
                "batchKey": r["batchKey"],
                "pending": int(r["pending"]),
                "complete": int(r["complete"]),
                "reviewers": int(p["reviewers"]) if p else 0,
                "reported": int(p["reported"]) if p else 0,
            })
        return report
