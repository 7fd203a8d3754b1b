"""
Inbound webhook pipeline: verify, decode, identify, then process idempotently.

Domain handlers are registered per ``(provider, event_type)``::

    registry = HandlerRegistry()

    @registry.register(Provider.PAYMENTS, "payment_intent.succeeded")
    def mark_paid(payload):
        ...

Event types without a handler are acknowledged and recorded as completed.
"""
import json
import logging
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable
from urllib.parse import parse_qsl

from hookledger.core.errors import PayloadInvalid, SignatureInvalid
from hookledger.db.models import Provider
from hookledger.services.processor import ProcessResult, WebhookProcessor
from hookledger.services.signatures import verify_signature

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Any]


def unhandled_event(provider: Provider, event_type: str, payload: dict[str, Any]) -> None:
    logger.info(f"Unhandled event type: {provider.value}/{event_type}")
    return None


class HandlerRegistry:
    def __init__(self):
        self._handlers: dict[tuple[Provider, str], Handler] = {}

    def register(self, provider: Provider, event_type: str):
        def decorator(func: Handler) -> Handler:
            self.add(provider, event_type, func)
            return func

        return decorator

    def add(self, provider: Provider, event_type: str, handler: Handler) -> None:
        self._handlers[(provider, event_type)] = handler

    def resolve(self, provider: Provider, event_type: str) -> Handler:
        handler = self._handlers.get((provider, event_type))
        if handler is None:
            return partial(unhandled_event, provider, event_type)
        return handler


@dataclass
class InboundEvent:
    event_id: str
    event_type: str
    payload: dict[str, Any]


@dataclass
class IngestOutcome:
    event_id: str
    event_type: str
    result: ProcessResult


def decode_payload(provider: Provider, raw_body: bytes) -> dict[str, Any]:
    try:
        if provider is Provider.SMS:
            return dict(parse_qsl(raw_body.decode("utf-8"), keep_blank_values=True))
        payload = json.loads(raw_body)
    except (ValueError, RecursionError):
        # JSONDecodeError and UnicodeDecodeError are ValueErrors
        raise PayloadInvalid("Invalid payload encoding")

    if not isinstance(payload, dict):
        raise PayloadInvalid("Payload must be an object")
    return payload


def _status_scoped(object_id: Any, status: Any, prefix: str) -> tuple[str, str]:
    # One delivery per (object, status) transition
    if status:
        return f"{object_id}:{status}", f"{prefix}.{status}"
    return str(object_id), f"{prefix}.unknown"


def extract_event(provider: Provider, payload: dict[str, Any]) -> InboundEvent:
    if provider is Provider.IDENTITY:
        object_id = payload.get("id")
        event_id, event_type = _status_scoped(object_id, payload.get("status"), "application")
    elif provider is Provider.SMS:
        object_id = payload.get("MessageSid")
        status = payload.get("MessageStatus") or payload.get("SmsStatus")
        event_id, event_type = _status_scoped(object_id, status, "message")
    else:
        object_id = payload.get("id")
        event_id = str(object_id)
        event_type = str(payload.get("type") or payload.get("event") or "unknown")

    if object_id in (None, ""):
        raise PayloadInvalid("Missing event id")
    return InboundEvent(event_id=event_id, event_type=event_type, payload=payload)


def ingest(
    processor: WebhookProcessor,
    registry: HandlerRegistry,
    provider: Provider,
    raw_body: bytes,
    signature: str | None,
    secret: str,
    tolerance: int | None = None,
) -> IngestOutcome:
    if not signature:
        raise SignatureInvalid("Missing signature")
    if not verify_signature(provider, raw_body, signature, secret, tolerance=tolerance):
        raise SignatureInvalid("Invalid signature")

    event = extract_event(provider, decode_payload(provider, raw_body))
    handler = registry.resolve(provider, event.event_type)
    result = processor.process(
        provider,
        event.event_id,
        event.event_type,
        event.payload,
        partial(handler, event.payload),
    )
    return IngestOutcome(event_id=event.event_id, event_type=event.event_type, result=result)
