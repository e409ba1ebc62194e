"""Reconciliation engine tests.

Coverage (in-memory SQLite, fake gateway, recording email sender):
  A) approved payment → order paid, confirmation email once
  B) same notification redelivered → no second write, no second email
  rejected order payment → cancelled, failure email once
  C) rejected gift payment → payment_status failed, status not notified
  D) authorized preapproval → subscription active, started_at set once
  E) unknown external reference → no write, nothing raised, key recorded
  Key recording per failure class, guard fail-open, one-shot side effects.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from recon_api.billing.exceptions import GatewayFetchError, PersistenceError
from recon_api.billing.idempotency import InMemoryIdempotencyGuard
from recon_api.billing.reconciliation import (
    ReconciliationEngine,
    ReconciliationOutcome,
    parse_notification,
)
from recon_api.billing.resolver import EntityKind
from recon_api.billing.status_mapper import OrderStatus, StatusMapper
from recon_api.db.models import Gift, Order, Subscription
from tests.conftest import make_gift, make_order, make_subscription


def _payment(gateway_id: str):
    return parse_notification({"type": "payment", "action": "payment.updated", "data": {"id": gateway_id}})


def _preapproval(gateway_id: str, notification_type: str = "subscription_preapproval"):
    return parse_notification({"type": notification_type, "data": {"id": gateway_id}})


def _reload(session_factory, model, entity_id):
    db = session_factory()
    try:
        return db.get(model, entity_id)
    finally:
        db.close()


def _engine_with_guard(engine: ReconciliationEngine, guard) -> ReconciliationEngine:
    """Same collaborators, different guard (simulates restart / other instance)."""
    return ReconciliationEngine(
        gateway=engine.gateway,
        guard=guard,
        session_factory=engine.session_factory,
        email_service=engine.email_service,
        mapper=engine.mapper,
        clock=engine.clock,
    )


# ===========================================================================
# Scenarios A-E
# ===========================================================================


@pytest.mark.asyncio
async def test_scenario_a_approved_payment_marks_order_paid(engine, gateway, email_service, db_session, session_factory):
    make_order(db_session, id=42)
    gateway.add_payment("P1", "approved", "42", amount=189.9, payment_method_id="pix")

    result = await engine.handle(_payment("P1"))

    assert result.outcome is ReconciliationOutcome.UPDATED
    assert result.entity_kind is EntityKind.ORDER
    assert result.entity_id == 42
    assert result.previous_status == "pending"
    assert result.new_status == "paid"
    assert result.notified is True

    order = _reload(session_factory, Order, 42)
    assert order.status == "paid"
    assert order.gateway_payment_id == "P1"
    assert order.payment_details["status"] == "approved"
    assert order.payment_details["payment_method"] == "pix"
    assert order.payment_details["transaction_amount"] == 189.9
    assert order.notified_at is not None

    assert len(email_service.sent) == 1
    assert email_service.sent[0].to == ["cliente@example.com"]
    assert "#42" in email_service.sent[0].subject


@pytest.mark.asyncio
async def test_scenario_b_redelivery_is_suppressed(engine, gateway, email_service, db_session, session_factory):
    make_order(db_session, id=42)
    gateway.add_payment("P1", "approved", "42")

    await engine.handle(_payment("P1"))
    second = await engine.handle(_payment("P1"))

    assert second.outcome is ReconciliationOutcome.DUPLICATE
    assert gateway.payment_calls == ["P1"]
    assert _reload(session_factory, Order, 42).status == "paid"
    assert len(email_service.sent) == 1


@pytest.mark.asyncio
async def test_redelivery_after_guard_loss_does_not_resend_email(engine, gateway, email_service, db_session, session_factory):
    """Evicted/restarted guard: status unchanged, notified flag still blocks the email."""
    make_order(db_session, id=42)
    gateway.add_payment("P1", "approved", "42")
    await engine.handle(_payment("P1"))
    notified_at = _reload(session_factory, Order, 42).notified_at

    fresh = _engine_with_guard(engine, InMemoryIdempotencyGuard())
    result = await fresh.handle(_payment("P1"))

    assert result.outcome is ReconciliationOutcome.UNCHANGED
    assert result.notified is False
    assert len(email_service.sent) == 1
    assert _reload(session_factory, Order, 42).notified_at == notified_at


@pytest.mark.asyncio
async def test_rejected_order_payment_sends_failure_email_once(engine, gateway, email_service, db_session, session_factory):
    make_order(db_session, id=42)
    gateway.add_payment("P9", "rejected", "42", status_detail="cc_rejected_other_reason")

    result = await engine.handle(_payment("P9"))

    assert result.outcome is ReconciliationOutcome.UPDATED
    assert result.new_status == "cancelled"
    assert result.notified is True
    assert len(email_service.sent) == 1
    assert "#42" in email_service.sent[0].subject
    assert "cc_rejected_other_reason" in email_service.sent[0].body
    order = _reload(session_factory, Order, 42)
    assert order.failure_notified_at is not None
    assert order.notified_at is None

    # Guard lost: status unchanged, failure flag blocks the second email
    fresh = _engine_with_guard(engine, InMemoryIdempotencyGuard())
    again = await fresh.handle(_payment("P9"))

    assert again.outcome is ReconciliationOutcome.UNCHANGED
    assert again.notified is False
    assert len(email_service.sent) == 1


@pytest.mark.asyncio
async def test_cancelled_order_payment_sends_no_failure_email(engine, gateway, email_service, db_session, session_factory):
    make_order(db_session, id=42)
    gateway.add_payment("P9", "cancelled", "42")

    result = await engine.handle(_payment("P9"))

    assert result.new_status == "cancelled"
    assert result.notified is False
    assert email_service.sent == []
    assert _reload(session_factory, Order, 42).failure_notified_at is None


@pytest.mark.asyncio
async def test_scenario_c_rejected_gift_payment(engine, gateway, email_service, db_session, session_factory):
    make_gift(db_session, id=7)
    gateway.add_payment("P2", "rejected", "gift-7")

    result = await engine.handle(_payment("P2"))

    assert result.outcome is ReconciliationOutcome.UPDATED
    assert result.entity_kind is EntityKind.GIFT
    gift = _reload(session_factory, Gift, 7)
    assert gift.payment_status == "failed"
    assert gift.status != "notified"
    assert gift.notified_at is None
    assert gift.gateway_payment_id == "P2"
    assert email_service.sent == []


@pytest.mark.asyncio
async def test_scenario_d_authorized_preapproval_starts_subscription_once(
    engine, gateway, email_service, db_session, session_factory
):
    sub = make_subscription(db_session, gateway_subscription_id="S9")
    gateway.add_preapproval("S9", "authorized")
    first_seen = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)
    engine.clock = lambda: first_seen

    first = await engine.handle(_preapproval("S9"))

    assert first.outcome is ReconciliationOutcome.UPDATED
    assert first.entity_kind is EntityKind.SUBSCRIPTION
    assert first.notified is True
    stored = _reload(session_factory, Subscription, sub.id)
    assert stored.status == "active"
    assert stored.started_at.replace(tzinfo=None) == first_seen.replace(tzinfo=None)
    assert stored.gateway_details["status"] == "authorized"

    # Different notification type → different key, same preapproval
    engine.clock = lambda: datetime(2026, 11, 1, 12, 0, tzinfo=timezone.utc)
    second = await engine.handle(_preapproval("S9", "subscription_authorized_payment"))

    assert second.outcome is ReconciliationOutcome.UNCHANGED
    assert second.notified is False
    stored = _reload(session_factory, Subscription, sub.id)
    assert stored.started_at.replace(tzinfo=None) == first_seen.replace(tzinfo=None)
    assert gateway.subscription_calls == ["S9", "S9"]
    assert len(email_service.sent) == 1


@pytest.mark.asyncio
async def test_scenario_e_unknown_reference_writes_nothing(engine, gateway, guard, email_service, db_session, session_factory):
    make_order(db_session, id=1)
    gateway.add_payment("P404", "approved", "9999")

    result = await engine.handle(_payment("P404"))

    assert result.outcome is ReconciliationOutcome.NOT_FOUND
    assert guard.has_processed("payment-P404")
    order = _reload(session_factory, Order, 1)
    assert order.status == "pending"
    assert order.gateway_payment_id is None
    assert email_service.sent == []


# ===========================================================================
# Failure classes and key recording
# ===========================================================================


@pytest.mark.asyncio
async def test_gateway_failure_leaves_key_unrecorded_for_retry(engine, gateway, guard, db_session, session_factory):
    make_order(db_session, id=42)
    gateway.fail_with = GatewayFetchError(
        "timed out", resource="payment", gateway_id="P1"
    )

    failed = await engine.handle(_payment("P1"))

    assert failed.outcome is ReconciliationOutcome.FETCH_FAILED
    assert not guard.has_processed("payment-P1")
    assert _reload(session_factory, Order, 42).status == "pending"

    # Gateway recovers; redelivery completes
    gateway.fail_with = None
    gateway.add_payment("P1", "approved", "42")
    retried = await engine.handle(_payment("P1"))

    assert retried.outcome is ReconciliationOutcome.UPDATED
    assert _reload(session_factory, Order, 42).status == "paid"


@pytest.mark.asyncio
async def test_persistence_failure_leaves_key_unrecorded(engine, gateway, guard, email_service, db_session):
    make_order(db_session, id=42)
    gateway.add_payment("P1", "approved", "42")

    with patch(
        "recon_api.billing.reconciliation.EntityRepository.apply_changes",
        side_effect=PersistenceError("disk full"),
    ):
        result = await engine.handle(_payment("P1"))

    assert result.outcome is ReconciliationOutcome.PERSIST_FAILED
    assert not guard.has_processed("payment-P1")
    assert email_service.sent == []


@pytest.mark.asyncio
async def test_unhandled_notification_type_is_recorded_and_ignored(engine, gateway, guard):
    notification = parse_notification({"type": "merchant_order", "data": {"id": "MO-1"}})

    result = await engine.handle(notification)

    assert result.outcome is ReconciliationOutcome.IGNORED
    assert guard.has_processed("merchant_order-MO-1")
    assert gateway.payment_calls == []
    assert gateway.subscription_calls == []


@pytest.mark.asyncio
async def test_guard_failure_fails_open(engine, gateway, db_session, session_factory):
    make_order(db_session, id=42)
    gateway.add_payment("P1", "approved", "42")
    broken_guard = MagicMock()
    broken_guard.has_processed.side_effect = RuntimeError("ledger unavailable")
    broken_guard.mark_processed.side_effect = RuntimeError("ledger unavailable")

    result = await _engine_with_guard(engine, broken_guard).handle(_payment("P1"))

    assert result.outcome is ReconciliationOutcome.UPDATED
    assert _reload(session_factory, Order, 42).status == "paid"
    broken_guard.mark_processed.assert_called_once_with("payment-P1")


@pytest.mark.asyncio
async def test_unexpected_error_never_escapes_handle(engine, gateway):
    gateway.fail_with = RuntimeError("boom")

    result = await engine.handle(_payment("P1"))

    assert result.outcome is ReconciliationOutcome.ERROR
    assert result.notification_key == "payment-P1"


# ===========================================================================
# Side effects
# ===========================================================================


@pytest.mark.asyncio
async def test_failed_email_is_retried_on_redelivery(engine, gateway, email_service, db_session, session_factory):
    make_order(db_session, id=42)
    gateway.add_payment("P1", "approved", "42")
    email_service.succeed = False

    first = await engine.handle(_payment("P1"))

    assert first.outcome is ReconciliationOutcome.UPDATED
    assert first.notified is False
    order = _reload(session_factory, Order, 42)
    assert order.status == "paid"
    assert order.notified_at is None

    email_service.succeed = True
    second = await _engine_with_guard(engine, InMemoryIdempotencyGuard()).handle(_payment("P1"))

    assert second.outcome is ReconciliationOutcome.UNCHANGED
    assert second.notified is True
    assert len(email_service.sent) == 1
    assert _reload(session_factory, Order, 42).notified_at is not None


@pytest.mark.asyncio
async def test_paid_gift_notifies_recipient_once(engine, gateway, email_service, db_session, session_factory):
    make_gift(db_session, id=7)
    gateway.add_payment("P7", "approved", "gift-7")

    result = await engine.handle(_payment("P7"))

    assert result.notified is True
    gift = _reload(session_factory, Gift, 7)
    assert gift.payment_status == "paid"
    assert gift.status == "notified"
    assert gift.notified_at is not None
    assert email_service.sent[0].to == ["carla@example.com"]
    assert "Bruno" in email_service.sent[0].subject

    notified_at = gift.notified_at
    again = await _engine_with_guard(engine, InMemoryIdempotencyGuard()).handle(_payment("P7"))

    assert again.outcome is ReconciliationOutcome.UNCHANGED
    gift = _reload(session_factory, Gift, 7)
    assert gift.notified_at == notified_at
    assert gift.status == "notified"
    assert len(email_service.sent) == 1


@pytest.mark.asyncio
async def test_scheduled_gift_is_not_sent_immediately(engine, gateway, email_service, db_session, session_factory):
    make_gift(db_session, id=8, send_immediate=False)
    gateway.add_payment("P8", "approved", "gift-8")

    result = await engine.handle(_payment("P8"))

    assert result.notified is False
    gift = _reload(session_factory, Gift, 8)
    assert gift.payment_status == "paid"
    assert gift.status == "paid"
    assert gift.notified_at is None
    assert email_service.sent == []


@pytest.mark.asyncio
async def test_order_resolved_by_stored_payment_id(engine, gateway, db_session, session_factory):
    make_order(db_session, id=5, status="processing", gateway_payment_id="P5")
    gateway.add_payment("P5", "refunded", None)

    result = await engine.handle(_payment("P5"))

    assert result.entity_id == 5
    assert _reload(session_factory, Order, 5).status == "refunded"


@pytest.mark.asyncio
async def test_injected_mapping_handles_new_gateway_status(engine, gateway, db_session, session_factory):
    make_order(db_session, id=42, status="paid")
    gateway.add_payment("P1", "partially_refunded", "42")
    engine.mapper = StatusMapper(order_table={"partially_refunded": OrderStatus.REFUNDED})

    result = await engine.handle(_payment("P1"))

    assert result.new_status == "refunded"
    assert _reload(session_factory, Order, 42).status == "refunded"
