from fastapi import Request
from peer_review.database.review_store import ReviewStore
from peer_review.services.batch_service import BatchService
from peer_review.services.completion_tracker import CompletionTracker
from peer_review.services.outcome_reporter import OutcomeReporter

def _state(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise RuntimeError(f"{name} not initialized")
    return value

def get_store(request: Request) -> ReviewStore:
    return _state(request, "review_store")

def get_batch_service(request: Request) -> BatchService:
    return _state(request, "batch_service")

def get_tracker(request: Request) -> CompletionTracker:
    return _state(request, "tracker")

def get_reporter(request: Request) -> OutcomeReporter:
    return _state(request, "reporter")
