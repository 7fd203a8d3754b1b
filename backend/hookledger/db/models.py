import enum
from datetime import datetime
from datetime import timezone as tz

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utc_now():
    return datetime.now(tz.utc)


class Provider(str, enum.Enum):
    PAYMENTS = "payments"
    IDENTITY = "identity"
    SMS = "sms"
    OTHER = "other"


class EventStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class WebhookEvent(Base):
    """One row per (provider, provider_event_id) for the lifetime of the system."""

    __tablename__ = "webhook_events"
    id = Column(Integer, primary_key=True)
    provider = Column(
        Enum(Provider, name="webhook_provider", values_callable=_enum_values),
        nullable=False,
    )
    provider_event_id = Column(String(255), nullable=False)
    event_type = Column(String(255), nullable=False)
    payload = Column(JSON, nullable=False)
    status = Column(
        Enum(EventStatus, name="webhook_status", values_callable=_enum_values),
        nullable=False,
        default=EventStatus.PENDING,
    )
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        # The deduplication anchor; concurrent inserts are arbitrated here
        UniqueConstraint(
            "provider", "provider_event_id", name="uq_webhook_events_provider_event"
        ),
        Index("ix_webhook_events_status_last_attempt", "status", "last_attempt_at"),
    )

    def __repr__(self):
        return (
            f"<WebhookEvent {self.provider.value}/{self.provider_event_id} "
            f"status={self.status.value} attempts={self.attempts}>"
        )


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(Integer, primary_key=True)
    actor = Column(String(50), nullable=False)
    action = Column(String(50), nullable=False)
    resource_type = Column(String(50), nullable=False, default="webhook")
    resource_id = Column(String(255), nullable=True, index=True)
    # "metadata" is reserved on declarative classes
    details = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)


class ApiKey(Base):
    __tablename__ = "api_keys"
    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    hashed_key = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now)
