# peer_review/main.py
from contextlib import asynccontextmanager
import aiohttp
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from peer_review.core.config import settings
from peer_review.routers.v1 import batches
from peer_review.routers.v1 import health
from peer_review.routers.v1 import report

from sqlalchemy.ext.asyncio import create_async_engine
from peer_review.clients.grade_passback import LtiGradePassback
from peer_review.clients.submission_registry import CanvasSubmissionRegistry
from peer_review.database.postgres_review import PostgresReviewStore
from peer_review.services.batch_service import BatchService
from peer_review.services.completion_tracker import CompletionTracker
from peer_review.services.consumer_service import ReviewConsumerService
from peer_review.services.outcome_reporter import OutcomeReporter

def create_app() -> FastAPI:
    engine = create_async_engine(settings.postgres_url, echo=settings.env == "dev", pool_pre_ping=True)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store = PostgresReviewStore(engine)
        await store.ensure_schema()

        http = aiohttp.ClientSession()
        reporter = OutcomeReporter(
            store,
            LtiGradePassback(http, settings.passback_url, timeout=settings.passback_timeout),
            score=settings.passback_score,
            max_retries=settings.retry_attempts,
            retry_delay=settings.retry_delay,
        )
        tracker = CompletionTracker(
            store, reporter, max_retries=settings.retry_attempts, retry_delay=settings.retry_delay
        )
        registry = CanvasSubmissionRegistry(http, settings.lms_api_url, settings.lms_api_key)

        app.state.review_store = store
        app.state.reporter = reporter
        app.state.tracker = tracker
        app.state.batch_service = BatchService(store, registry, concurrency=settings.fetch_concurrency)

        consumer = ReviewConsumerService(
            tracker,
            reporter,
            rabbitmq_url=settings.rabbitmq_url,
            exchange_name=settings.exchange_name,
            durable=True,
            max_retries=settings.retry_attempts,
            retry_delay=settings.retry_delay,
        )
        app.state.consumer = consumer
        await consumer.start()

        try:
            yield
        finally:
            try:
                await consumer.stop()
            finally:
                await http.close()
                await engine.dispose()

    app = FastAPI(
        title="Peer Review Microservice",
        description="Peer review assignment and completion tracking",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"], allow_credentials=True,
        allow_methods=["*"], allow_headers=["*"],
    )

    app.include_router(health.router, prefix="/api/v1", tags=["health"])
    app.include_router(batches.router, prefix="/api/v1", tags=["batches"])
    app.include_router(report.router, prefix="/api/v1", tags=["report"])
    return app


app = create_app()
