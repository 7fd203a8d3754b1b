import logging
import os
from typing import Iterator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

# Set test environment variables before the app modules read settings
os.environ.update(
    {
        "DATABASE_URL": "sqlite:///./test_hookledger.db",
        "REDIS_URL": "redis://localhost:6379/2",
    }
)

from hookledger.core.config import Settings
from hookledger.db import crud
from hookledger.db.models import Base, Provider
from hookledger.db.session import create_db_engine
from hookledger.main import create_app
from hookledger.runtime import Services, build_services
from hookledger.services.signatures import SIGNATURE_HEADERS, sign_payload

logger = logging.getLogger(__name__)

SECRETS = {
    Provider.PAYMENTS: "whsec_test",
    Provider.IDENTITY: "identity_test_secret",
    Provider.SMS: "sms_auth_token",
    Provider.OTHER: "other_test_secret",
}


class RecordingAuditSink:
    def __init__(self):
        self.entries = []

    def record(self, actor, action, resource_id, metadata=None):
        self.entries.append(
            {
                "actor": actor,
                "action": action,
                "resource_id": resource_id,
                "metadata": metadata or {},
            }
        )

    def actions(self):
        return [entry["action"] for entry in self.entries]


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'ledger.db'}",
        payments_webhook_secret=SECRETS[Provider.PAYMENTS],
        identity_webhook_secret=SECRETS[Provider.IDENTITY],
        sms_auth_token=SECRETS[Provider.SMS],
        other_webhook_secret=SECRETS[Provider.OTHER],
        stale_processing_seconds=900,
    )


@pytest.fixture
def db_engine(settings: Settings):
    engine = create_db_engine(settings.database_url)
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def services(settings: Settings, db_engine) -> Services:
    return build_services(settings, engine=db_engine)


@pytest.fixture
def store(services: Services):
    return services.store


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def db(services: Services) -> Iterator[Session]:
    db = services.session_factory()
    try:
        yield db
    finally:
        db.rollback()
        db.close()


@pytest.fixture
def client(services: Services) -> Iterator[TestClient]:
    app = create_app(services=services)
    with TestClient(app) as test_client:
        logger.info("Test client created")
        yield test_client


@pytest.fixture
def operator_headers(db: Session) -> dict:
    api_key = crud.issue_api_key(db, "ops")
    return {"Authorization": f"Bearer {api_key}"}


@pytest.fixture
def signed():
    """Build (body, headers) for a provider, signed with its test secret."""

    def _signed(provider: Provider, body: str | bytes, **headers):
        raw = body.encode() if isinstance(body, str) else body
        headers[SIGNATURE_HEADERS[provider]] = sign_payload(provider, raw, SECRETS[provider])
        return raw, headers

    return _signed
