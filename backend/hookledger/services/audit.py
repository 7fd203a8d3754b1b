import logging
from typing import Any, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from hookledger.db.models import AuditLog

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    def record(
        self,
        actor: str,
        action: str,
        resource_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> None: ...


class DatabaseAuditSink:
    """Appends lifecycle transitions to ``audit_logs``.

    Fire-and-forget: a failed write is logged and dropped so that it can never
    undo or block a ledger transition.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def record(self, actor, action, resource_id, metadata=None) -> None:
        try:
            with self._session_factory.begin() as db:
                db.add(
                    AuditLog(
                        actor=actor,
                        action=action,
                        resource_type="webhook",
                        resource_id=resource_id,
                        details=metadata or {},
                    )
                )
        except SQLAlchemyError:
            logger.exception(f"Audit log write failed: {actor} {action} {resource_id}")
