"""Pytest configuration and fixtures."""

from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from recon_api.billing.exceptions import GatewayFetchError
from recon_api.billing.gateway import CanonicalGatewayRecord
from recon_api.billing.idempotency import InMemoryIdempotencyGuard
from recon_api.billing.reconciliation import ReconciliationEngine
from recon_api.billing.status_mapper import StatusMapper
from recon_api.db.models import Base, Gift, Order, Subscription
from recon_api.notifications.email import EmailMessage


@pytest.fixture(scope="function")
def session_factory():
    """Fresh in-memory SQLite database per test, shared across sessions."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)
    try:
        yield factory
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture(scope="function")
def db_session(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


# ===========================================================================
# Entity factories
# ===========================================================================


def make_order(db: Session, **kwargs) -> Order:
    values = {
        "customer_email": "cliente@example.com",
        "customer_name": "Ana",
        "total": 189.9,
        "status": "pending",
    }
    values.update(kwargs)
    order = Order(**values)
    db.add(order)
    db.commit()
    return order


def make_gift(db: Session, **kwargs) -> Gift:
    values = {
        "plan_name": "Clube Essencial",
        "duration": 3,
        "giver_name": "Bruno",
        "giver_email": "bruno@example.com",
        "recipient_name": "Carla",
        "recipient_email": "carla@example.com",
        "message": "Feliz aniversário!",
        "send_immediate": True,
        "payment_status": "pending",
        "status": "pending",
    }
    values.update(kwargs)
    gift = Gift(**values)
    db.add(gift)
    db.commit()
    return gift


def make_subscription(db: Session, **kwargs) -> Subscription:
    values = {
        "subscriber_email": "dani@example.com",
        "subscriber_name": "Dani",
        "plan_name": "Clube Premium",
        "status": "pending",
        "gateway_subscription_id": "S9",
    }
    values.update(kwargs)
    subscription = Subscription(**values)
    db.add(subscription)
    db.commit()
    return subscription


# ===========================================================================
# Test doubles
# ===========================================================================


class FakeGateway:
    """Gateway stand-in serving canned canonical records by id."""

    def __init__(self):
        self.payments: dict[str, CanonicalGatewayRecord] = {}
        self.subscriptions: dict[str, CanonicalGatewayRecord] = {}
        self.payment_calls: list[str] = []
        self.subscription_calls: list[str] = []
        self.fail_with: Optional[GatewayFetchError] = None

    def add_payment(self, gateway_id: str, status: str, external_reference: Optional[str], **kwargs):
        self.payments[gateway_id] = CanonicalGatewayRecord(
            gateway_id=gateway_id,
            gateway_status=status,
            external_reference=external_reference,
            **kwargs,
        )

    def add_preapproval(self, gateway_id: str, status: str, external_reference: Optional[str] = None):
        self.subscriptions[gateway_id] = CanonicalGatewayRecord(
            gateway_id=gateway_id,
            gateway_status=status,
            external_reference=external_reference,
            subscription_id=gateway_id,
        )

    async def fetch_payment(self, payment_id: str) -> CanonicalGatewayRecord:
        self.payment_calls.append(payment_id)
        if self.fail_with is not None:
            raise self.fail_with
        if payment_id not in self.payments:
            raise GatewayFetchError(
                "HTTP 404", resource="payment", gateway_id=payment_id, status_code=404
            )
        return self.payments[payment_id]

    async def fetch_subscription(self, preapproval_id: str) -> CanonicalGatewayRecord:
        self.subscription_calls.append(preapproval_id)
        if self.fail_with is not None:
            raise self.fail_with
        if preapproval_id not in self.subscriptions:
            raise GatewayFetchError(
                "HTTP 404", resource="preapproval", gateway_id=preapproval_id, status_code=404
            )
        return self.subscriptions[preapproval_id]


class RecordingEmailService:
    """Email sender that records messages instead of talking SMTP."""

    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.sent: list[EmailMessage] = []

    async def send_async(self, message: EmailMessage) -> bool:
        if self.succeed:
            self.sent.append(message)
        return self.succeed


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def email_service() -> RecordingEmailService:
    return RecordingEmailService()


@pytest.fixture
def guard() -> InMemoryIdempotencyGuard:
    return InMemoryIdempotencyGuard()


@pytest.fixture
def engine(gateway, guard, session_factory, email_service) -> ReconciliationEngine:
    return ReconciliationEngine(
        gateway=gateway,
        guard=guard,
        session_factory=session_factory,
        email_service=email_service,
        mapper=StatusMapper(),
    )
