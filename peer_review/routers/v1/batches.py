# peer_review/routers/v1/batches.py
from typing import Annotated
from fastapi import APIRouter, Depends, HTTPException, Response, status
from peer_review.core.deps import get_batch_service, get_reporter, get_store, get_tracker
from peer_review.core.errors import (
    BatchExistsError, ParameterError, PassbackError, PersistenceError, PopulationError
)
from peer_review.database.review_store import ReviewStore
from peer_review.schemas.payloads import (
    BatchCreateRequest, PassbackTargetRequest, ReportRetryRequest, ReviewSubmitRequest
)
from peer_review.services.batch_service import BatchService
from peer_review.services.completion_tracker import CompletionTracker
from peer_review.services.outcome_reporter import OutcomeReporter

router = APIRouter()
StoreDep = Annotated[ReviewStore, Depends(get_store)]
BatchServiceDep = Annotated[BatchService, Depends(get_batch_service)]
TrackerDep = Annotated[CompletionTracker, Depends(get_tracker)]
ReporterDep = Annotated[OutcomeReporter, Depends(get_reporter)]


@router.post("/batches/{course_id}/{activity_id}", status_code=status.HTTP_201_CREATED)
async def create_batch(course_id: str, activity_id: str, body: BatchCreateRequest, service: BatchServiceDep):
    try:
        created = await service.create_batch(course_id, activity_id, body.reviewNum)
    except (ParameterError, PopulationError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except BatchExistsError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return created.model_dump(by_alias=True)


@router.post("/batches/{batch_key}/reviews/{assignment_id}")
async def submit_review(
    batch_key: str, assignment_id: int, body: ReviewSubmitRequest, response: Response, tracker: TrackerDep
):
    try:
        result = await tracker.on_assignment_completed(assignment_id, body.reviewerId, batch_key, body.payload)
    except LookupError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    # 202 while the reviewer still has reviews to do
    if not result.fully_complete:
        response.status_code = status.HTTP_202_ACCEPTED
    return result.model_dump(by_alias=True)


@router.get("/batches/{batch_key}/reviewers/{reviewer_id}")
async def reviewer_assignments(batch_key: str, reviewer_id: str, service: BatchServiceDep):
    try:
        return await service.reviewer_status(batch_key, reviewer_id)
    except PersistenceError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.get("/batches/{batch_key}/authors/{author_id}")
async def author_reviews(batch_key: str, author_id: str, service: BatchServiceDep):
    try:
        return await service.reviews_of_author(batch_key, author_id)
    except PersistenceError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.get("/batches/{batch_key}/overview")
async def batch_overview(batch_key: str, service: BatchServiceDep, store: StoreDep):
    try:
        if not await store.batch_exists(batch_key):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Batch {batch_key} not found")
        return await service.overview(batch_key)
    except PersistenceError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.put("/batches/{batch_key}/reviewers/{reviewer_id}/passback", status_code=status.HTTP_204_NO_CONTENT)
async def set_passback_target(batch_key: str, reviewer_id: str, body: PassbackTargetRequest, store: StoreDep):
    try:
        await store.set_passback_target(batch_key, reviewer_id, body.passbackRef)
    except LookupError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("/batches/{batch_key}/reviewers/{reviewer_id}/report")
async def retry_report(batch_key: str, reviewer_id: str, body: ReportRetryRequest, reporter: ReporterDep):
    try:
        delivered = await reporter.report(reviewer_id, batch_key, force=bool(body.force))
    except LookupError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except PassbackError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return {"delivered": delivered}
