from typing import Annotated
from fastapi import APIRouter, Depends, HTTPException, status
from peer_review.core.deps import get_store
from peer_review.core.errors import PersistenceError
from peer_review.database.review_store import ReviewStore

router = APIRouter()
StoreDep = Annotated[ReviewStore, Depends(get_store)]

@router.get("/report/batches")
async def report_batches(store: StoreDep):
    try:
        return await store.get_report_batches()
    except PersistenceError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
