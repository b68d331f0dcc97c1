"""
Transactional outbox for post-settlement side effects.

Callers add a row inside their own transaction with `enqueue`; the worker
polls `new` rows, hands each payload to the handler registered for its
topic and marks the row `sent` or `failed`. Handler failures are logged
and recorded on the row, never raised to whoever enqueued the work.
"""
import json
import logging
import threading
from typing import Callable, Dict, Any

from sqlalchemy.orm import Session

from common.settings import settings
from common.tracing import get_current_trace_id, settlement_tracer
from settlement_service.models import Outbox
from settlement_service.repositories import OutboxRepository

logger = logging.getLogger(__name__)

TOPIC_BOOKING_CREATE = "booking.create"
TOPIC_ORDER_CONFIRMATION_EMAIL = "order.confirmation_email"
TOPIC_SUBSCRIBER_UPSERT = "subscriber.upsert"

Handler = Callable[[Dict[str, Any]], None]

def enqueue(db: Session, topic: str, payload: Dict[str, Any]) -> Outbox:
    """Add an outbox row to the caller's session; it is published when the caller commits."""
    return OutboxRepository(db).add(Outbox(
        topic=topic,
        payload=json.dumps(payload, default=str),
        status="new",
        trace_id=get_current_trace_id(),
    ))

class OutboxWorker:
    def __init__(self, session_factory, handlers: Dict[str, Handler] = None,
                 poll_interval: float = None, batch_size: int = None):
        self.session_factory = session_factory
        self.handlers: Dict[str, Handler] = dict(handlers or {})
        self.poll_interval = poll_interval or settings.outbox_poll_interval
        self.batch_size = batch_size or settings.outbox_batch_size
        self._stop = threading.Event()
        self._thread = None

    def register(self, topic: str, handler: Handler) -> None:
        self.handlers[topic] = handler

    def _dispatch(self, row: Outbox) -> None:
        handler = self.handlers.get(row.topic)
        if handler is None:
            raise LookupError(f"no handler registered for topic {row.topic}")
        with settlement_tracer.start_span(f"outbox {row.topic}", trace_id=row.trace_id) as span:
            span.add_tag("outbox.id", row.id)
            handler(json.loads(row.payload))

    def run_once(self) -> int:
        """Process one batch. Returns the number of rows handled."""
        with self.session_factory() as db:
            rows = OutboxRepository(db).pending(self.batch_size)

        for row in rows:
            try:
                self._dispatch(row)
            except Exception as e:
                logger.error(f"Outbox task {row.id} ({row.topic}) failed: {e}", exc_info=True)
                status, error = "failed", str(e)[:1000]
            else:
                status, error = "sent", None
            with self.session_factory() as db:
                OutboxRepository(db).mark(row.id, status, error)
                db.commit()
        return len(rows)

    def run(self) -> None:
        logger.info("Outbox worker started")
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Outbox poll failed: {e}", exc_info=True)
            self._stop.wait(self.poll_interval)
        logger.info("Outbox worker stopped")

    def start(self) -> threading.Thread:
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name="outbox-worker", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
