"""
Process-level wiring.

The engine and everything built on it are created once at startup (API
lifespan, Celery worker init) and passed down explicitly; nothing reaches for
a module-level database handle.
"""
from dataclasses import dataclass, field

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from hookledger.core.config import Settings
from hookledger.db.ledger import LedgerStore
from hookledger.db.session import create_db_engine, make_session_factory
from hookledger.services.audit import AuditSink, DatabaseAuditSink
from hookledger.services.ingest import HandlerRegistry
from hookledger.services.processor import WebhookProcessor


@dataclass
class Services:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker
    store: LedgerStore
    audit_sink: AuditSink
    processor: WebhookProcessor
    registry: HandlerRegistry = field(default_factory=HandlerRegistry)

    def close(self) -> None:
        self.engine.dispose()


def build_services(
    settings: Settings,
    registry: HandlerRegistry | None = None,
    engine: Engine | None = None,
) -> Services:
    engine = engine or create_db_engine(settings.database_url)
    session_factory = make_session_factory(engine)
    store = LedgerStore(session_factory)
    audit_sink = DatabaseAuditSink(session_factory)
    return Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        store=store,
        audit_sink=audit_sink,
        processor=WebhookProcessor(store, audit_sink),
        registry=registry or HandlerRegistry(),
    )
