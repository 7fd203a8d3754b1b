import logging
import threading
import time

import pytest

from hookledger.core.errors import ConcurrentInFlight, HandlerFailure, StoreFailure
from hookledger.db import crud
from hookledger.db.models import EventStatus, Provider
from hookledger.services.processor import WebhookProcessor

logger = logging.getLogger(__name__)

PAYLOAD = {"id": "evt_123", "type": "payment.succeeded", "amount": 1000}


class Counter:
    def __init__(self, result="ok"):
        self.calls = 0
        self.result = result
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            self.calls += 1
        return self.result


@pytest.fixture
def processor(store, audit_sink) -> WebhookProcessor:
    return WebhookProcessor(store, audit_sink)


def _process(processor, handler, event_id="evt_123", payload=PAYLOAD):
    return processor.process(Provider.PAYMENTS, event_id, "payment.succeeded", payload, handler)


def test_second_delivery_after_success_is_skipped(processor, store):
    handler = Counter()

    first = _process(processor, handler)
    assert first.skipped is False
    assert first.result == "ok"
    assert first.attempts == 1

    second = _process(processor, handler)
    assert second.skipped is True
    assert second.result is None
    assert second.attempts == 1

    assert handler.calls == 1
    row = store.get(Provider.PAYMENTS, "evt_123")
    assert row.status == EventStatus.COMPLETED
    assert row.attempts == 1


def test_skip_ignores_payload_differences(processor):
    handler = Counter()
    _process(processor, handler)

    retry = _process(processor, handler, payload={**PAYLOAD, "amount": 9999})
    assert retry.skipped is True
    assert handler.calls == 1


def test_failed_handler_is_retried_on_redelivery(processor, store):
    def flaky():
        raise TimeoutError("network timeout")

    with pytest.raises(HandlerFailure) as exc_info:
        _process(processor, flaky)
    assert exc_info.value.message == "network timeout"
    assert isinstance(exc_info.value.__cause__, TimeoutError)

    row = store.get(Provider.PAYMENTS, "evt_123")
    assert row.status == EventStatus.FAILED
    assert row.error_message == "network timeout"
    assert row.attempts == 1

    seen = []

    def recovering():
        # The row is owned by this attempt while the handler runs
        current = store.get(Provider.PAYMENTS, "evt_123")
        seen.append((current.status, current.attempts))
        return "done"

    result = _process(processor, recovering)
    assert seen == [(EventStatus.PROCESSING, 2)]
    assert result.skipped is False
    assert result.attempts == 2

    row = store.get(Provider.PAYMENTS, "evt_123")
    assert row.status == EventStatus.COMPLETED
    assert row.error_message is None
    assert row.completed_at is not None


def test_exception_without_message_records_its_type(processor, store):
    def silent():
        raise KeyError()

    with pytest.raises(HandlerFailure):
        _process(processor, silent)
    assert store.get(Provider.PAYMENTS, "evt_123").error_message == "KeyError"


def test_reentrant_delivery_is_rejected_as_in_flight(processor):
    inner_errors = []
    calls = []

    def handler():
        calls.append(1)
        # A redelivery lands while this delivery is still running
        try:
            _process(processor, handler)
        except ConcurrentInFlight as exc:
            inner_errors.append(exc)
        return "ok"

    result = _process(processor, handler)

    assert result.skipped is False
    assert len(calls) == 1
    assert len(inner_errors) == 1
    assert inner_errors[0].status_code == 409


def test_simultaneous_first_deliveries_run_handler_once(processor, store):
    workers = 6
    barrier = threading.Barrier(workers)
    entered = threading.Event()
    release = threading.Event()
    calls = []
    outcomes = []
    outcomes_lock = threading.Lock()

    def handler():
        calls.append(threading.get_ident())
        entered.set()
        release.wait(10)
        return "ok"

    def deliver():
        barrier.wait()
        try:
            outcome = _process(processor, handler)
        except Exception as exc:
            outcome = exc
        with outcomes_lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=deliver) for _ in range(workers)]
    for thread in threads:
        thread.start()

    # Hold the winner inside its handler until every other delivery has resolved
    deadline = time.monotonic() + 60
    while time.monotonic() < deadline:
        with outcomes_lock:
            if len(outcomes) >= workers - 1:
                break
        time.sleep(0.01)
    release.set()
    for thread in threads:
        thread.join(timeout=60)

    logger.info(f"Concurrent outcomes: {outcomes}")
    assert entered.is_set()
    assert len(calls) == 1
    assert len(outcomes) == workers

    processed = [o for o in outcomes if not isinstance(o, Exception) and not o.skipped]
    rejected = [o for o in outcomes if isinstance(o, ConcurrentInFlight)]
    assert len(processed) == 1
    assert len(rejected) == workers - 1

    row = store.get(Provider.PAYMENTS, "evt_123")
    assert row.status == EventStatus.COMPLETED
    assert row.attempts == 1


def test_audit_entries_for_each_transition(processor, audit_sink):
    def failing():
        raise ValueError("bad state")

    with pytest.raises(HandlerFailure):
        _process(processor, failing)
    _process(processor, Counter())
    _process(processor, Counter())

    # Skips and rejections are not transitions
    assert audit_sink.actions() == ["failed", "completed"]

    failed, completed = audit_sink.entries
    assert failed["actor"] == "webhook"
    assert failed["resource_id"] == "evt_123"
    assert failed["metadata"] == {
        "provider": "payments",
        "event_type": "payment.succeeded",
        "attempts": 1,
        "status": "failed",
        "error": "bad state",
    }
    assert completed["metadata"]["attempts"] == 2
    assert completed["metadata"]["status"] == "completed"


def test_audit_sink_failure_does_not_undo_processing(store, caplog):
    class BrokenSink:
        def record(self, actor, action, resource_id, metadata=None):
            raise RuntimeError("audit store down")

    processor = WebhookProcessor(store, BrokenSink())
    handler = Counter()

    with caplog.at_level(logging.ERROR):
        result = _process(processor, handler)

    assert result.skipped is False
    assert handler.calls == 1
    assert store.get(Provider.PAYMENTS, "evt_123").status == EventStatus.COMPLETED
    assert "Audit sink rejected completed entry" in caplog.text


def test_lost_ownership_surfaces_store_failure(processor, store):
    def handler():
        # An operator requeues the row and a redelivery claims it meanwhile
        store.requeue(Provider.PAYMENTS, "evt_123")
        store.register(Provider.PAYMENTS, "evt_123", "payment.succeeded", PAYLOAD)
        return "ok"

    with pytest.raises(StoreFailure):
        _process(processor, handler)

    row = store.get(Provider.PAYMENTS, "evt_123")
    assert row.status == EventStatus.PROCESSING
    assert row.attempts == 2


def test_processed_events_are_recorded_in_audit_table(services):
    services.processor.process(
        Provider.SMS, "SM1:delivered", "message.delivered", {"MessageSid": "SM1"}, Counter()
    )

    with services.session_factory() as db:
        entries = crud.list_audit_entries(db, "SM1:delivered")
    assert [(e.actor, e.action) for e in entries] == [("webhook", "completed")]
    assert entries[0].details["provider"] == "sms"


def test_completed_audit_records_serialisable_result(processor, audit_sink):
    _process(processor, Counter(result={"charge": "ch_1", "captured": True}))
    _process(processor, Counter(result=object()), event_id="evt_opaque")
    _process(processor, Counter(result=None), event_id="evt_none")

    with_result, opaque, empty = audit_sink.entries
    assert with_result["metadata"]["result"] == {"charge": "ch_1", "captured": True}
    assert "result" not in opaque["metadata"]
    assert "result" not in empty["metadata"]
