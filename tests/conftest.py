import os

# Settings are read at import time; point the app at SQLite before anything imports it
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["GEOIP_LOOKUP_ENABLED"] = "false"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import Base, get_db
from app.main import app
from app.models import Document, Signer
from app.services.bankid import CollectResult, CompletionData, InitiateResult, get_identity_gateway
from app.services.rate_limit import sign_limiter, verify_limiter

VALID_PNR = "197603021234"
BAD_CHECKSUM_PNR = "197603029999"

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class FakeGateway:
    """Scripted stand-in for the BankID client. Queue results; unqueued polls stay pending."""

    def __init__(self):
        self.init_results = []
        self.poll_results = []
        self.cancel_result = True
        self.calls = []
        self._orders = 0

    def initiate(self, ip_address, personal_number=None, display_message=None):
        self.calls.append(("initiate", ip_address))
        if self.init_results:
            return self.init_results.pop(0)
        self._orders += 1
        return InitiateResult(order_ref=f"order-{self._orders}", auto_start_token=f"token-{self._orders}")

    def poll(self, order_ref):
        self.calls.append(("poll", order_ref))
        if self.poll_results:
            return self.poll_results.pop(0)
        return CollectResult(order_ref=order_ref, status="pending", hint_code="outstandingTransaction")

    def cancel(self, order_ref):
        self.calls.append(("cancel", order_ref))
        return self.cancel_result


def complete_result(order_ref, personal_number=VALID_PNR, name="Anna Andersson"):
    return CollectResult(
        order_ref=order_ref,
        status="complete",
        completion=CompletionData(
            personal_number=personal_number,
            name=name,
            given_name=name.split()[0],
            surname=name.split()[-1],
            device_ip="203.0.113.7",
            cert_not_before="2024-01-01T00:00:00Z",
            cert_not_after="2026-01-01T00:00:00Z",
        ),
    )


@pytest.fixture(autouse=True)
def clean_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    verify_limiter.reset()
    sign_limiter.reset()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(gateway):
    def _get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_identity_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


def create_signer(session, *, verified=False, name="Anna Andersson", email="anna@example.se", document=None):
    if document is None:
        document = Document(title="Hyresavtal")
        session.add(document)
        session.flush()
    signer = Signer(document_id=document.id, email=email, name=name)
    if verified:
        signer.identity_verified = True
        signer.verified_identity = name
        signer.identity_provider = "bankid"
        signer.verification_method = "bankid_challenge"
        signer.personal_number_hash = "a" * 64
    session.add(signer)
    session.commit()
    session.refresh(signer)
    return signer
