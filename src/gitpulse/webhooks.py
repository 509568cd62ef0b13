"""Webhook intake.

Deliveries are stored as envelopes first and processed later:

- enqueue() is idempotent on the GitHub delivery id, so redeliveries are
  absorbed before any business logic runs.
- process() canonicalizes the payload and persists every resulting event.
  Duplicates are not errors; the envelope is completed either way.
- A failed envelope keeps its error and a retry counter; sweep() re-dispatches
  it until ``webhook_max_retries`` is reached. An envelope stuck in
  ``processing`` past ``webhook_processing_timeout_ms`` is re-dispatched too.

The HTTP ingress that receives deliveries is expected to call
verify_signature() and enqueue(), then acknowledge immediately.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Any, Callable

from .config import SyncConfig, get_config
from .connectors.github.canonicalize import canonicalize, inputs_for_webhook
from .facts import FactContext, FactService
from .metrics import webhook_deliveries_total
from .models import PersistStatus, WebhookEnvelope, WebhookStatus, now_ms
from .scheduler import PROCESS_WEBHOOK, Scheduler
from .storage import WEBHOOK_EVENTS, DuplicateKeyError, SyncStore

__all__ = ["SIGNATURE_PREFIX", "WebhookIntake", "WebhookOutcome", "verify_signature"]

logger = logging.getLogger("gitpulse.webhooks")

SIGNATURE_PREFIX = "sha256="


def verify_signature(secret: str, body: bytes, signature_header: str | None) -> bool:
    """Check an ``X-Hub-Signature-256`` header against the raw request body.

    Args:
        secret: Webhook secret configured on the GitHub App
        body: Raw request body, exactly as received
        signature_header: Header value, ``sha256=<hex digest>``

    Returns:
        True only for a well-formed header whose digest matches.
    """
    if not secret or not signature_header or not signature_header.startswith(SIGNATURE_PREFIX):
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature_header[len(SIGNATURE_PREFIX):])


@dataclass
class WebhookOutcome:
    """Counts from processing one envelope."""

    envelope_id: str
    status: WebhookStatus | None
    inserted: int = 0
    duplicates: int = 0
    skipped: int = 0
    error: str | None = None


class WebhookIntake:
    """Store and process GitHub webhook deliveries.

    Args:
        store: Durable store
        scheduler: Processing is scheduled here with PROCESS_WEBHOOK
        fact_service: Persists canonical events (built if omitted)
        config: SyncConfig (webhook_max_retries)
        clock: Epoch-ms clock
    """

    def __init__(
        self,
        store: SyncStore,
        scheduler: Scheduler,
        fact_service: FactService | None = None,
        config: SyncConfig | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.fact_service = fact_service or FactService(store, clock=clock)
        self.config = config or get_config()
        self._clock = clock

    def enqueue(
        self,
        delivery_id: str,
        event_kind: str,
        payload: dict[str, Any],
        installation_id: int | None = None,
    ) -> str:
        """Store a delivery and schedule its processing.

        Returns:
            Envelope id; the existing one when ``delivery_id`` was seen before.
        """
        existing = self.store.get_by(WEBHOOK_EVENTS, "delivery_id", delivery_id)
        if existing is not None:
            return self._duplicate(existing["id"], delivery_id, event_kind)

        if installation_id is None:
            installation_id = (payload.get("installation") or {}).get("id")
        envelope = WebhookEnvelope(
            id=self.store.new_id(),
            delivery_id=delivery_id,
            event_kind=event_kind,
            payload=payload,
            installation_id=installation_id,
            received_at=self._clock(),
        )
        try:
            envelope_id = self.store.insert(WEBHOOK_EVENTS, envelope.to_dict())
        except DuplicateKeyError as e:
            return self._duplicate(e.existing_id, delivery_id, event_kind)

        self.scheduler.schedule_after(0, PROCESS_WEBHOOK, {"envelope_id": envelope_id})
        webhook_deliveries_total.labels(event=event_kind, status="enqueued").inc()
        logger.info(
            "webhook_enqueued",
            extra={"delivery_id": delivery_id, "event": event_kind, "envelope_id": envelope_id},
        )
        return envelope_id

    def _duplicate(self, envelope_id: str, delivery_id: str, event_kind: str) -> str:
        webhook_deliveries_total.labels(event=event_kind, status="duplicate").inc()
        logger.info(
            "webhook_duplicate_delivery",
            extra={"delivery_id": delivery_id, "envelope_id": envelope_id},
        )
        return envelope_id

    async def handle(self, args: dict[str, Any]) -> WebhookOutcome:
        """Scheduler entry point for PROCESS_WEBHOOK."""
        return self.process(args["envelope_id"])

    def process(self, envelope_id: str) -> WebhookOutcome:
        """Process one envelope. Safe to re-invoke with the same id."""
        envelope = self.store.get_envelope(envelope_id)
        if envelope is None:
            logger.error("webhook_envelope_not_found", extra={"envelope_id": envelope_id})
            return WebhookOutcome(envelope_id, None, error="Envelope not found")
        if envelope.status == WebhookStatus.COMPLETED:
            return WebhookOutcome(envelope_id, WebhookStatus.COMPLETED)

        self.store.patch(
            WEBHOOK_EVENTS,
            envelope_id,
            {"status": WebhookStatus.PROCESSING, "processing_started_at": self._clock()},
        )
        outcome = WebhookOutcome(envelope_id, WebhookStatus.PROCESSING)
        try:
            payload = envelope.payload or {}
            context = FactContext(
                installation_id=envelope.installation_id,
                repository=payload.get("repository"),
                source="webhook",
            )
            for source in inputs_for_webhook(envelope.event_kind, payload):
                event = canonicalize(source)
                if event is None:
                    outcome.skipped += 1
                    continue
                result = self.fact_service.persist(event, context)
                if result.status is PersistStatus.INSERTED:
                    outcome.inserted += 1
                elif result.status is PersistStatus.DUPLICATE:
                    outcome.duplicates += 1
                else:
                    outcome.skipped += 1
        except Exception as e:
            message = str(e) or type(e).__name__
            self.store.patch(
                WEBHOOK_EVENTS,
                envelope_id,
                {
                    "status": WebhookStatus.FAILED,
                    "error_message": message,
                    "retry_count": envelope.retry_count + 1,
                },
            )
            webhook_deliveries_total.labels(event=envelope.event_kind, status="failed").inc()
            logger.error(
                "webhook_processing_failed",
                extra={
                    "delivery_id": envelope.delivery_id,
                    "event": envelope.event_kind,
                    "retry_count": envelope.retry_count + 1,
                    "error": message,
                },
            )
            outcome.status = WebhookStatus.FAILED
            outcome.error = message
            return outcome

        self.store.patch(
            WEBHOOK_EVENTS,
            envelope_id,
            {
                "status": WebhookStatus.COMPLETED,
                "error_message": None,
                "processed_at": self._clock(),
            },
        )
        webhook_deliveries_total.labels(event=envelope.event_kind, status="completed").inc()
        logger.info(
            "webhook_processed",
            extra={
                "delivery_id": envelope.delivery_id,
                "event": envelope.event_kind,
                "inserted": outcome.inserted,
                "duplicates": outcome.duplicates,
                "skipped": outcome.skipped,
            },
        )
        outcome.status = WebhookStatus.COMPLETED
        return outcome

    def sweep(self) -> dict[str, int]:
        """Re-dispatch envelopes that are waiting, retryable or stalled.

        An envelope counts as stalled when it has been ``processing`` for
        longer than ``webhook_processing_timeout_ms``. Its start time is
        moved forward with a conditional write before it is re-dispatched,
        so overlapping sweeps dispatch it once.
        """
        now = self._clock()
        pending = self.store.query(WEBHOOK_EVENTS, status=WebhookStatus.PENDING)
        failed = [
            r
            for r in self.store.query(WEBHOOK_EVENTS, status=WebhookStatus.FAILED)
            if (r.get("retry_count") or 0) < self.config.webhook_max_retries
        ]
        cutoff = now - self.config.webhook_processing_timeout_ms
        stalled = []
        for record in self.store.query(WEBHOOK_EVENTS, status=WebhookStatus.PROCESSING):
            started = record.get("processing_started_at")
            if (started or 0) >= cutoff:
                continue
            claimed = self.store.patch(
                WEBHOOK_EVENTS,
                record["id"],
                {"processing_started_at": now},
                expect={"status": WebhookStatus.PROCESSING, "processing_started_at": started},
            )
            if claimed:
                stalled.append(record)
        for record in pending + failed + stalled:
            self.scheduler.schedule_after(0, PROCESS_WEBHOOK, {"envelope_id": record["id"]})
        if pending or failed or stalled:
            logger.info(
                "webhook_sweep_dispatched",
                extra={"pending": len(pending), "retried": len(failed), "stalled": len(stalled)},
            )
        return {"pending": len(pending), "retried": len(failed), "stalled": len(stalled)}
