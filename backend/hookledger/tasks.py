import logging
from datetime import timedelta

from celery.signals import worker_process_init, worker_process_shutdown

from hookledger.celery_app import celery
from hookledger.core.config import get_settings
from hookledger.db.ledger import STALE_ERROR_MESSAGE, LedgerStore
from hookledger.runtime import Services, build_services
from hookledger.services.audit import AuditSink

logger = logging.getLogger(__name__)

SWEEPER_ACTOR = "sweeper"

# Built per worker process, see the signal handlers below
_worker_services: Services | None = None


@worker_process_init.connect
def _init_worker_services(**kwargs):
    global _worker_services
    _worker_services = build_services(get_settings())


@worker_process_shutdown.connect
def _close_worker_services(**kwargs):
    global _worker_services
    if _worker_services is not None:
        _worker_services.close()
        _worker_services = None


def sweep_stale_events(store: LedgerStore, audit_sink: AuditSink, older_than: timedelta) -> int:
    """Demote stuck ``processing`` rows to ``failed`` so a redelivery can retry them."""
    demoted = store.requeue_stale(older_than)
    for event in demoted:
        logger.warning(
            f"Requeued stale event {event.provider.value}/{event.provider_event_id} "
            f"after attempt {event.attempts}"
        )
        audit_sink.record(
            actor=SWEEPER_ACTOR,
            action="requeued",
            resource_id=event.provider_event_id,
            metadata={
                "provider": event.provider.value,
                "event_type": event.event_type,
                "attempts": event.attempts,
                "error": STALE_ERROR_MESSAGE,
            },
        )
    return len(demoted)


@celery.task
def requeue_stale_events(services: Services | None = None) -> dict:
    services = services or _worker_services
    if services is None:
        # The solo and threads pools never send worker_process_init
        _init_worker_services()
        services = _worker_services

    threshold = services.settings.stale_processing_seconds
    if threshold <= 0:
        return {"requeued": 0}

    count = sweep_stale_events(
        services.store, services.audit_sink, timedelta(seconds=threshold)
    )
    logger.info(f"Stale sweep finished, {count} event(s) requeued")
    return {"requeued": count}
