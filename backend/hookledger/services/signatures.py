"""
Webhook signature verification.

Each provider family signs differently and the schemes are not
interchangeable:

* timestamped HMAC (payments): header ``t=<ts>,v1=<hex>``, HMAC-SHA256 over
  ``"{t}.{raw body}"``
* simple HMAC (sms): base64 HMAC-SHA1 over the raw body
* generic HMAC (identity, other): hex HMAC-SHA256 over the raw body

Verification always runs on the raw request body, before anything parses it.
"""
import base64
import enum
import hashlib
import hmac
import logging
import time

from hookledger.db.models import Provider

logger = logging.getLogger(__name__)


class SignatureScheme(str, enum.Enum):
    TIMESTAMPED_HMAC = "timestamped_hmac"
    SIMPLE_HMAC = "simple_hmac"
    GENERIC_HMAC = "generic_hmac"


PROVIDER_SCHEMES = {
    Provider.PAYMENTS: SignatureScheme.TIMESTAMPED_HMAC,
    Provider.SMS: SignatureScheme.SIMPLE_HMAC,
    Provider.IDENTITY: SignatureScheme.GENERIC_HMAC,
    Provider.OTHER: SignatureScheme.GENERIC_HMAC,
}

SIGNATURE_HEADERS = {
    Provider.PAYMENTS: "Stripe-Signature",
    Provider.SMS: "X-Twilio-Signature",
    Provider.IDENTITY: "X-Signature",
    Provider.OTHER: "X-Signature",
}


def _to_bytes(value: str | bytes) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def _parse_timestamped_header(header: str) -> tuple[str | None, list[str]]:
    timestamp = None
    signatures = []
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == "v1":
            # Several v1 entries are sent while a secret is being rolled
            signatures.append(value)
    return timestamp, signatures


def _timestamped_digest(timestamp: str, raw_payload: bytes, secret: bytes) -> str:
    signed = _to_bytes(timestamp) + b"." + raw_payload
    return hmac.new(secret, signed, hashlib.sha256).hexdigest()


def _simple_digest(raw_payload: bytes, secret: bytes) -> str:
    digest = hmac.new(secret, raw_payload, hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def _generic_digest(raw_payload: bytes, secret: bytes) -> str:
    return hmac.new(secret, raw_payload, hashlib.sha256).hexdigest()


def _matches(expected: str, received: str) -> bool:
    return hmac.compare_digest(expected.encode("ascii"), _to_bytes(received))


def _verify_timestamped(
    raw_payload: bytes, header: str, secret: bytes, tolerance: int | None
) -> bool:
    timestamp, signatures = _parse_timestamped_header(header)
    if not timestamp or not signatures:
        return False
    # Integer arithmetic; float(time) overflows on absurd timestamps
    if tolerance is not None and abs(int(time.time()) - int(timestamp)) > tolerance:
        logger.warning("Timestamped signature outside tolerance window")
        return False
    expected = _timestamped_digest(timestamp, raw_payload, secret)
    return any(_matches(expected, candidate) for candidate in signatures)


def verify_signature(
    provider: Provider | str,
    raw_payload: str | bytes,
    signature: str | None,
    secret: str | None,
    *,
    tolerance: int | None = None,
) -> bool:
    """Return True only if ``signature`` proves ``raw_payload`` was signed with ``secret``.

    Never raises: an unknown provider, an empty secret/header/payload, or a
    malformed header all verify as False.
    """
    try:
        provider = Provider(provider)
        if not raw_payload or not signature or not secret:
            return False
        raw = _to_bytes(raw_payload)
        key = _to_bytes(secret)

        scheme = PROVIDER_SCHEMES[provider]
        if scheme is SignatureScheme.TIMESTAMPED_HMAC:
            return _verify_timestamped(raw, signature, key, tolerance)
        if scheme is SignatureScheme.SIMPLE_HMAC:
            return _matches(_simple_digest(raw, key), signature.strip())
        return _matches(_generic_digest(raw, key), signature.strip())
    except (ValueError, TypeError, KeyError, OverflowError) as exc:
        logger.warning(f"Signature verification error for {provider}: {exc}")
        return False


def sign_payload(
    provider: Provider | str,
    raw_payload: str | bytes,
    secret: str,
    timestamp: int | None = None,
) -> str:
    """Build the signature header value a provider would send for ``raw_payload``."""
    provider = Provider(provider)
    raw = _to_bytes(raw_payload)
    key = _to_bytes(secret)

    scheme = PROVIDER_SCHEMES[provider]
    if scheme is SignatureScheme.TIMESTAMPED_HMAC:
        ts = str(int(time.time()) if timestamp is None else timestamp)
        return f"t={ts},v1={_timestamped_digest(ts, raw, key)}"
    if scheme is SignatureScheme.SIMPLE_HMAC:
        return _simple_digest(raw, key)
    return _generic_digest(raw, key)
