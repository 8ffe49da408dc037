# peer_review/services/consumer_service.py
import asyncio
import json
import logging
from typing import Optional, Callable, Awaitable
import aio_pika
import aio_pika.abc
import aio_pika.exceptions
from aio_pika import ExchangeType, IncomingMessage

from peer_review.core.errors import PassbackError, PeerReviewError
from peer_review.schemas.payloads import ReportRetryMessage, ReviewCompletedMessage
from peer_review.services.completion_tracker import CompletionTracker
from peer_review.services.outcome_reporter import OutcomeReporter
from peer_review.services.retry import retry_async

logger = logging.getLogger(__name__)

class ReviewConsumerService:
    """
    Consumer for reviewer events:
      - reviews.completed  -> CompletionTracker
      - reports.retry      -> OutcomeReporter (operator retry)
    Both queues share the same DIRECT exchange.
    """

    def __init__(
        self,
        tracker: CompletionTracker,
        reporter: OutcomeReporter,
        rabbitmq_url: str,
        *,
        exchange_name: str = "elearning.peer_review",
        heartbeat: int = 30,
        durable: bool = True,
        prefetch_count: int = 20,
        requeue_on_error: bool = False,
        max_retries: int = 3,
        retry_delay: float = 0.5,
    ) -> None:
        self.tracker = tracker
        self.reporter = reporter
        self.rabbitmq_url = rabbitmq_url
        self.exchange_name = exchange_name
        self.heartbeat = heartbeat
        self.durable = durable
        self.prefetch_count = prefetch_count
        self.requeue_on_error = requeue_on_error
        self.max_retries = max_retries
        self.retry_delay = retry_delay

        # AMQP resources
        self._conn: Optional[aio_pika.RobustConnection] = None
        self._channel: Optional[aio_pika.RobustChannel] = None
        self._exchange: Optional[aio_pika.Exchange] = None

        self._consumers: list[tuple[aio_pika.abc.AbstractQueue, str]] = []

        # guards connect/close
        self._lock = asyncio.Lock()

        # routing key == queue name
        self.completed_q = "reviews.completed"
        self.retry_q = "reports.retry"

    # -----------------------------
    # Lifecycle
    # -----------------------------
    async def _open_channel(self) -> None:
        assert self._conn is not None
        self._channel = await self._conn.channel()
        await self._channel.set_qos(prefetch_count=self.prefetch_count)
        self._exchange = await self._channel.declare_exchange(
            self.exchange_name, ExchangeType.DIRECT, durable=self.durable
        )

    async def connect(self) -> None:
        """Make sure a connection, a channel and the exchange are open.

        Reuses whatever is still open; a failed connection attempt is retried.
        """
        async with self._lock:
            if self._conn is None or self._conn.is_closed:
                self._conn = await retry_async(
                    lambda: aio_pika.connect_robust(self.rabbitmq_url, heartbeat=self.heartbeat),
                    retry_on=(aio_pika.exceptions.AMQPError, OSError),
                    max_retries=self.max_retries,
                    delay=self.retry_delay,
                    description="RabbitMQ connection",
                )
                self._channel = None
            if self._channel is None or self._channel.is_closed:
                await self._open_channel()
            logger.info("Connected to RabbitMQ.")

    async def close(self) -> None:
        async with self._lock:
            consumers, self._consumers = self._consumers, []
            if self._channel is not None and not self._channel.is_closed:
                for queue, tag in consumers:
                    try:
                        await queue.cancel(tag)
                    except Exception:
                        logger.exception("Failed to cancel consumer tag=%s", tag)
                await self._channel.close()
            if self._conn is not None and not self._conn.is_closed:
                await self._conn.close()
            self._conn = self._channel = self._exchange = None

    # -----------------------------
    # Consuming
    # -----------------------------
    async def start(self) -> None:
        await self.connect()
        await self._declare_and_consume(self.completed_q, self._on_review_completed)
        await self._declare_and_consume(self.retry_q, self._on_report_retry)
        logger.info("ReviewConsumerService listening on 2 queues.")

    async def stop(self) -> None:
        await self.close()
        logger.info("ReviewConsumerService stopped.")

    async def _declare_and_consume(
        self,
        queue_name: str,
        handler: Callable[[IncomingMessage], Awaitable[None]],
    ) -> None:
        assert self._channel is not None and self._exchange is not None

        queue = await self._channel.declare_queue(
            name=queue_name,
            durable=self.durable,
            exclusive=False,
            auto_delete=False,
        )
        await queue.bind(self._exchange, routing_key=queue_name)

        tag = await queue.consume(handler, no_ack=False)
        self._consumers.append((queue, tag))
        logger.info("Queue ready: %s (consumer tag=%s)", queue_name, tag)

    # -----------------------------
    # reviews.completed
    # -----------------------------
    async def handle_review_completed(self, payload: ReviewCompletedMessage) -> None:
        # expected payload: { batchKey, assignmentId, reviewerId, payload }
        batch_key = payload.get("batchKey")
        assignment_id = payload.get("assignmentId")
        reviewer_id = payload.get("reviewerId")

        if not batch_key:
            raise ValueError("Missing required field: batchKey")
        if assignment_id is None:
            raise ValueError("Missing required field: assignmentId")
        if not reviewer_id:
            raise ValueError("Missing required field: reviewerId")

        result = await self.tracker.on_assignment_completed(
            int(assignment_id), str(reviewer_id), batch_key, payload.get("payload")
        )
        logger.info("Review completion processed",
                    extra={"batchKey": batch_key, "assignmentId": assignment_id,
                           "transitioned": result.transitioned, "reported": result.reported})

    async def _on_review_completed(self, message: IncomingMessage) -> None:
        await self._process(message, self.handle_review_completed, "reviews.completed")

    # -----------------------------
    # reports.retry
    # -----------------------------
    async def handle_report_retry(self, payload: ReportRetryMessage) -> None:
        batch_key = payload.get("batchKey")
        reviewer_id = payload.get("reviewerId")
        if not batch_key:
            raise ValueError("Missing required field: batchKey")
        if not reviewer_id:
            raise ValueError("Missing required field: reviewerId")

        delivered = await self.reporter.report(str(reviewer_id), batch_key, force=bool(payload.get("force")))
        logger.info("Report retry processed",
                    extra={"batchKey": batch_key, "reviewerId": reviewer_id, "delivered": delivered})

    async def _on_report_retry(self, message: IncomingMessage) -> None:
        await self._process(message, self.handle_report_retry, "reports.retry")

    async def _process(
        self,
        message: IncomingMessage,
        handler: Callable[[dict], Awaitable[None]],
        queue_name: str,
    ) -> None:
        try:
            payload = json.loads(message.body.decode("utf-8"))
            await handler(payload)
            await message.ack()

        except json.JSONDecodeError:
            logger.exception("Invalid JSON on %s", queue_name)
            await message.nack(requeue=False)

        except (ValueError, LookupError) as ve:
            logger.error("Validation error on %s: message rejected (no requeue)", queue_name,
                         extra={"error": str(ve)})
            await message.nack(requeue=False)

        except PassbackError as pe:
            # delivery state is persisted as failed, retried through reports.retry
            logger.error("Grade passback failed on %s", queue_name, extra={"error": str(pe)})
            await message.ack()

        except PeerReviewError:
            logger.exception("Processing failed on %s", queue_name)
            await message.nack(requeue=self.requeue_on_error)

        except Exception:
            logger.exception("Unexpected error on %s", queue_name)
            await message.nack(requeue=self.requeue_on_error)
