"""
Webhook error taxonomy.

Every error that can reach the HTTP boundary is one of these; each carries the
status code returned to the sending provider. A duplicate of an already
completed event is not an error (see ``ProcessResult.skipped``).
"""


class WebhookError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class SignatureInvalid(WebhookError):
    """Payload/signature mismatch or malformed signature header."""

    status_code = 400


class PayloadInvalid(WebhookError):
    """Verified body that cannot be decoded or carries no event id."""

    status_code = 400


class ConcurrentInFlight(WebhookError):
    """Another delivery of the same event is being processed right now."""

    status_code = 409


class HandlerFailure(WebhookError):
    """The domain handler raised; the ledger row is marked failed."""

    status_code = 500


class StoreFailure(WebhookError):
    """Ledger I/O failed or a finalization lost ownership of the row."""

    status_code = 503
