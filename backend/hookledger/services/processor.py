"""
Idempotent event processing.

``WebhookProcessor.process`` registers the event in the ledger, runs the
domain handler at most once for this delivery, then finalizes the row as
``completed`` or ``failed`` and writes an audit entry. It never retries the
handler itself; retries only come from provider redeliveries.
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable

from hookledger.core.errors import ConcurrentInFlight, HandlerFailure, StoreFailure
from hookledger.db.ledger import LedgerStore, RegistrationOutcome
from hookledger.db.models import Provider
from hookledger.services.audit import AuditSink

logger = logging.getLogger(__name__)

AUDIT_ACTOR = "webhook"


def _json_safe(value: Any) -> bool:
    # Audit metadata is a JSON column
    if value is None:
        return False
    try:
        json.dumps(value)
    except (TypeError, ValueError, RecursionError):
        return False
    return True


@dataclass
class ProcessResult:
    result: Any = None
    skipped: bool = False
    attempts: int = 0


class WebhookProcessor:
    def __init__(self, store: LedgerStore, audit_sink: AuditSink):
        self.store = store
        self.audit_sink = audit_sink

    def process(
        self,
        provider: Provider,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
        handler: Callable[[], Any],
    ) -> ProcessResult:
        registration = self.store.register(provider, event_id, event_type, payload)

        if registration.outcome is RegistrationOutcome.ALREADY_PROCESSED:
            return ProcessResult(skipped=True, attempts=registration.event.attempts)
        if registration.outcome is RegistrationOutcome.IN_FLIGHT:
            raise ConcurrentInFlight(
                f"Event {provider.value}/{event_id} is currently being processed"
            )

        attempt = registration.event.attempts
        metadata = {
            "provider": provider.value,
            "event_type": event_type,
            "attempts": attempt,
        }

        try:
            result = handler()
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.warning(
                f"Handler failed for {provider.value}/{event_id} "
                f"(attempt {attempt}): {message}"
            )
            self._finalize(self.store.fail, provider, event_id, attempt, message)
            self._audit("failed", event_id, {**metadata, "status": "failed", "error": message})
            raise HandlerFailure(message) from exc

        self._finalize(self.store.complete, provider, event_id, attempt)
        completed = {**metadata, "status": "completed"}
        if _json_safe(result):
            completed["result"] = result
        self._audit("completed", event_id, completed)
        logger.info(f"Processed {provider.value}/{event_id} ({event_type})")
        return ProcessResult(result=result, skipped=False, attempts=attempt)

    def _finalize(self, transition, provider, event_id, attempt, *args) -> None:
        try:
            transition(provider, event_id, attempt, *args)
        except StoreFailure:
            # The row stays processing until the sweeper or an operator demotes it
            logger.error(
                f"Could not finalize {provider.value}/{event_id} attempt {attempt}",
                exc_info=True,
            )
            raise

    def _audit(self, action: str, event_id: str, metadata: dict[str, Any]) -> None:
        try:
            self.audit_sink.record(
                actor=AUDIT_ACTOR, action=action, resource_id=event_id, metadata=metadata
            )
        except Exception:
            logger.exception(f"Audit sink rejected {action} entry for {event_id}")
