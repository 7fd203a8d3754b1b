"""
Event ledger store and idempotency registrar.

Every method runs in its own short transaction and touches a single ledger
row (the stale sweep touches one row at a time). Mutual exclusion between
concurrent deliveries comes from the ``uq_webhook_events_provider_event``
unique constraint and from conditional ``UPDATE ... WHERE status IN (...)``
statements, never from an in-process lock.
"""
import enum
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from hookledger.core.errors import StoreFailure
from hookledger.db.models import EventStatus, Provider, WebhookEvent, utc_now

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = (EventStatus.PENDING, EventStatus.FAILED)
STALE_ERROR_MESSAGE = "processing timed out"


class RegistrationOutcome(str, enum.Enum):
    PROCEED_FRESH = "proceed_fresh"
    PROCEED_RETRY = "proceed_retry"
    ALREADY_PROCESSED = "already_processed"
    IN_FLIGHT = "in_flight"


@dataclass
class Registration:
    outcome: RegistrationOutcome
    event: WebhookEvent

    @property
    def should_process(self) -> bool:
        return self.outcome in (
            RegistrationOutcome.PROCEED_FRESH,
            RegistrationOutcome.PROCEED_RETRY,
        )


class LedgerStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    # ---------- registrar ----------
    def register(
        self,
        provider: Provider,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> Registration:
        """Insert-or-inspect the ledger row for ``(provider, event_id)``.

        A fresh insert wins the event outright. On a uniqueness conflict a
        single conditional update moves a ``pending``/``failed`` row to
        ``processing``; if it matches nothing the row is either completed
        (skip) or owned by another delivery (reject).
        """
        now = utc_now()
        try:
            with self._session_factory.begin() as db:
                event = WebhookEvent(
                    provider=provider,
                    provider_event_id=event_id,
                    event_type=event_type,
                    payload=payload,
                    status=EventStatus.PROCESSING,
                    attempts=1,
                    created_at=now,
                    last_attempt_at=now,
                )
                db.add(event)
                db.flush()
            logger.info(f"Registered new event {provider.value}/{event_id}")
            return Registration(RegistrationOutcome.PROCEED_FRESH, event)
        except IntegrityError:
            logger.info(f"Event {provider.value}/{event_id} already in ledger")
        except SQLAlchemyError as exc:
            logger.error(f"Ledger insert failed for {provider.value}/{event_id}: {exc}")
            raise StoreFailure("Ledger insert failed") from exc

        return self._register_existing(provider, event_id)

    def _register_existing(self, provider: Provider, event_id: str) -> Registration:
        try:
            with self._session_factory.begin() as db:
                claimed = (
                    self._by_key(db, provider, event_id)
                    .filter(WebhookEvent.status.in_(RETRYABLE_STATUSES))
                    .update(
                        {
                            WebhookEvent.status: EventStatus.PROCESSING,
                            WebhookEvent.attempts: WebhookEvent.attempts + 1,
                            WebhookEvent.last_attempt_at: utc_now(),
                            WebhookEvent.error_message: None,
                        },
                        synchronize_session=False,
                    )
                )
                event = self._by_key(db, provider, event_id).first()
        except SQLAlchemyError as exc:
            logger.error(f"Ledger update failed for {provider.value}/{event_id}: {exc}")
            raise StoreFailure("Ledger update failed") from exc

        if event is None:
            # The insert was rejected by some other constraint
            raise StoreFailure(f"Ledger insert rejected for {provider.value}/{event_id}")

        if claimed:
            logger.info(
                f"Retrying event {provider.value}/{event_id} (attempt {event.attempts})"
            )
            return Registration(RegistrationOutcome.PROCEED_RETRY, event)
        if event.status == EventStatus.COMPLETED:
            logger.info(f"Event {provider.value}/{event_id} already processed, skipping")
            return Registration(RegistrationOutcome.ALREADY_PROCESSED, event)

        # Processing when the update ran, even if it has finished since
        logger.warning(f"Event {provider.value}/{event_id} is already being processed")
        return Registration(RegistrationOutcome.IN_FLIGHT, event)

    # ---------- finalization ----------
    def complete(self, provider: Provider, event_id: str, attempt: int) -> None:
        self._finalize(
            provider,
            event_id,
            attempt,
            {
                WebhookEvent.status: EventStatus.COMPLETED,
                WebhookEvent.completed_at: utc_now(),
                WebhookEvent.error_message: None,
            },
        )

    def fail(
        self, provider: Provider, event_id: str, attempt: int, error_message: str
    ) -> None:
        self._finalize(
            provider,
            event_id,
            attempt,
            {
                WebhookEvent.status: EventStatus.FAILED,
                WebhookEvent.error_message: error_message,
            },
        )

    def _finalize(self, provider, event_id, attempt, values) -> None:
        # Only the delivery that was handed this attempt may finalize it
        try:
            with self._session_factory.begin() as db:
                updated = (
                    self._by_key(db, provider, event_id)
                    .filter(
                        WebhookEvent.status == EventStatus.PROCESSING,
                        WebhookEvent.attempts == attempt,
                    )
                    .update(values, synchronize_session=False)
                )
        except SQLAlchemyError as exc:
            logger.error(f"Ledger finalization failed for {provider.value}/{event_id}: {exc}")
            raise StoreFailure("Ledger finalization failed") from exc

        if not updated:
            raise StoreFailure(
                f"Event {provider.value}/{event_id} is no longer processing attempt {attempt}"
            )

    # ---------- reads ----------
    def get(self, provider: Provider, event_id: str) -> WebhookEvent | None:
        try:
            with self._session_factory() as db:
                return self._by_key(db, provider, event_id).first()
        except SQLAlchemyError as exc:
            raise StoreFailure("Ledger read failed") from exc

    def list_events(
        self,
        provider: Provider | None = None,
        status: EventStatus | None = None,
        limit: int = 100,
    ) -> list[WebhookEvent]:
        try:
            with self._session_factory() as db:
                query = db.query(WebhookEvent)
                if provider is not None:
                    query = query.filter(WebhookEvent.provider == provider)
                if status is not None:
                    query = query.filter(WebhookEvent.status == status)
                return (
                    query.order_by(WebhookEvent.created_at.desc(), WebhookEvent.id.desc())
                    .limit(limit)
                    .all()
                )
        except SQLAlchemyError as exc:
            raise StoreFailure("Ledger read failed") from exc

    # ---------- recovery ----------
    def requeue(
        self, provider: Provider, event_id: str, reason: str = "requeued by operator"
    ) -> bool:
        """Demote a ``processing`` row to ``failed`` so the next delivery retries it."""
        try:
            with self._session_factory.begin() as db:
                updated = (
                    self._by_key(db, provider, event_id)
                    .filter(WebhookEvent.status == EventStatus.PROCESSING)
                    .update(
                        {
                            WebhookEvent.status: EventStatus.FAILED,
                            WebhookEvent.error_message: reason,
                        },
                        synchronize_session=False,
                    )
                )
        except SQLAlchemyError as exc:
            raise StoreFailure("Ledger requeue failed") from exc
        return bool(updated)

    def requeue_stale(self, older_than: timedelta) -> list[WebhookEvent]:
        """Demote every ``processing`` row whose last attempt is older than ``older_than``."""
        cutoff = utc_now() - older_than
        demoted = []
        try:
            with self._session_factory.begin() as db:
                stale = (
                    db.query(WebhookEvent)
                    .filter(
                        WebhookEvent.status == EventStatus.PROCESSING,
                        WebhookEvent.last_attempt_at < cutoff,
                    )
                    .all()
                )
                # Detached copies are edited to mirror the UPDATEs below
                db.expunge_all()
                for event in stale:
                    # Skip rows re-registered after they were read
                    updated = (
                        db.query(WebhookEvent)
                        .filter(
                            WebhookEvent.id == event.id,
                            WebhookEvent.status == EventStatus.PROCESSING,
                            WebhookEvent.attempts == event.attempts,
                        )
                        .update(
                            {
                                WebhookEvent.status: EventStatus.FAILED,
                                WebhookEvent.error_message: STALE_ERROR_MESSAGE,
                            },
                            synchronize_session=False,
                        )
                    )
                    if updated:
                        event.status = EventStatus.FAILED
                        event.error_message = STALE_ERROR_MESSAGE
                        demoted.append(event)
        except SQLAlchemyError as exc:
            raise StoreFailure("Stale sweep failed") from exc
        return demoted

    @staticmethod
    def _by_key(db: Session, provider: Provider, event_id: str):
        return db.query(WebhookEvent).filter(
            WebhookEvent.provider == provider,
            WebhookEvent.provider_event_id == event_id,
        )
