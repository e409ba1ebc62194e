"""Reconciliation engine: gateway notification → local entity state.

Per notification:
  1. idempotency key check            → DUPLICATE (no-op)
  2. fetch canonical record           → FETCH_FAILED (key NOT recorded)
  3. resolve order / gift / subscription → NOT_FOUND (key recorded)
  4. map gateway status
  5. persist status + snapshot if it changed → PERSIST_FAILED (key NOT recorded)
  6. record idempotency key
  7. terminal success + notified flag unset → side effect
     (rejected order payment + failure flag unset → failure email)

Keys are left unrecorded only where a redelivery can succeed where this
attempt did not. Re-delivery of an unchanged status writes nothing but still
records the key; the side effect is gated by the entity's own flag, never by
the status comparison.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from sqlalchemy.orm import Session

from recon_api.billing.exceptions import (
    EntityNotFoundError,
    GatewayFetchError,
    NotificationParseError,
    PersistenceError,
)
from recon_api.billing.gateway import (
    CanonicalGatewayRecord,
    MercadoPagoClient,
    get_mercadopago_client,
)
from recon_api.billing.idempotency import (
    DatabaseIdempotencyGuard,
    IdempotencyGuard,
    InMemoryIdempotencyGuard,
    notification_key,
)
from recon_api.billing.resolver import EntityKind, EntityResolver, ResolvedEntity
from recon_api.billing.side_effects import EmailSender, SideEffectDispatcher
from recon_api.billing.status_mapper import (
    GiftPaymentStatus,
    OrderStatus,
    StatusMapper,
    SubscriptionStatus,
    load_status_mapper,
)
from recon_api.config.env import (
    get_idempotency_backend,
    get_idempotency_bounds,
    get_idempotency_ttl_hours,
    get_status_mapping_file,
)
from recon_api.context import notification_key_var
from recon_api.db.repository import EntityRepository
from recon_api.db.session import get_session_factory
from recon_api.notifications.email import build_email_service

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    PAYMENT = "payment"
    SUBSCRIPTION_EVENT = "subscription_event"
    UNSUPPORTED = "unsupported"


# Gateway "type"/"topic" values → which canonical lookup to issue
NOTIFICATION_TYPES: dict[str, NotificationKind] = {
    "payment": NotificationKind.PAYMENT,
    "subscription_preapproval": NotificationKind.SUBSCRIPTION_EVENT,
    "subscription_authorized_payment": NotificationKind.SUBSCRIPTION_EVENT,
    "preapproval": NotificationKind.SUBSCRIPTION_EVENT,
}


@dataclass(frozen=True)
class InboundNotification:
    """One webhook delivery, constructed per HTTP call."""

    kind: NotificationKind
    notification_type: str
    gateway_id: str
    action: Optional[str] = None
    raw_payload: Optional[dict] = None

    @property
    def key(self) -> str:
        return notification_key(self.notification_type, self.gateway_id)


def parse_notification(
    body: Optional[Any], query: Optional[Mapping[str, str]] = None
) -> InboundNotification:
    """Build an InboundNotification from a webhook body (+ legacy IPN query).

    Body: {"type": "payment", "action": "payment.updated", "data": {"id": "123"}}
    Legacy IPN: ?topic=payment&id=123 (or ?type=payment&data.id=123)

    Raises:
        NotificationParseError: If the type or data.id cannot be determined
    """
    query = query or {}
    payload = body if isinstance(body, dict) else {}

    notification_type = payload.get("type") or query.get("type") or query.get("topic")

    data = payload.get("data")
    gateway_id = data.get("id") if isinstance(data, dict) else None
    if gateway_id is None:
        gateway_id = query.get("data.id") or query.get("id")

    if gateway_id is None or str(gateway_id).strip() == "":
        raise NotificationParseError("Notification has no data.id")
    if not notification_type or not isinstance(notification_type, str):
        raise NotificationParseError("Notification has no type")

    notification_type = notification_type.strip()
    action = payload.get("action")
    return InboundNotification(
        kind=NOTIFICATION_TYPES.get(notification_type, NotificationKind.UNSUPPORTED),
        notification_type=notification_type,
        gateway_id=str(gateway_id).strip(),
        action=action if isinstance(action, str) else None,
        raw_payload=payload or None,
    )


class ReconciliationOutcome(str, Enum):
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    FETCH_FAILED = "fetch_failed"
    NOT_FOUND = "not_found"
    PERSIST_FAILED = "persist_failed"
    UNCHANGED = "unchanged"
    UPDATED = "updated"
    ERROR = "error"


@dataclass(frozen=True)
class ReconciliationResult:
    outcome: ReconciliationOutcome
    notification_key: str
    entity_kind: Optional[EntityKind] = None
    entity_id: Optional[int] = None
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    notified: bool = False


@dataclass(frozen=True)
class Transition:
    previous_status: str
    new_status: str
    changed: bool
    terminal_success: bool
    # Order payment refused by the gateway; drives the failure email
    payment_rejected: bool = False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReconciliationEngine:
    """Applies gateway notifications to orders, gifts and subscriptions."""

    def __init__(
        self,
        *,
        gateway: MercadoPagoClient,
        guard: IdempotencyGuard,
        session_factory: Callable[[], Session],
        email_service: EmailSender,
        mapper: Optional[StatusMapper] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.gateway = gateway
        self.guard = guard
        self.session_factory = session_factory
        self.email_service = email_service
        self.mapper = mapper or StatusMapper()
        self.clock = clock

    async def handle(self, notification: InboundNotification) -> ReconciliationResult:
        """Reconcile one notification; never raises."""
        token = notification_key_var.set(notification.key)
        try:
            return await self.reconcile(notification)
        except Exception as exc:
            logger.error(
                "RECON_UNEXPECTED_ERROR",
                extra={"error_type": type(exc).__name__},
                exc_info=True,
            )
            return ReconciliationResult(ReconciliationOutcome.ERROR, notification.key)
        finally:
            notification_key_var.reset(token)

    async def reconcile(self, notification: InboundNotification) -> ReconciliationResult:
        key = notification.key

        # Step 1: duplicate suppression (fail open)
        if self._has_processed(key):
            logger.info("RECON_ALREADY_PROCESSED", extra={"notification_type": notification.notification_type})
            return ReconciliationResult(ReconciliationOutcome.DUPLICATE, key)

        if notification.kind is NotificationKind.UNSUPPORTED:
            logger.info(
                "RECON_UNHANDLED_TYPE",
                extra={"notification_type": notification.notification_type, "action": notification.action},
            )
            self._mark_processed(key)
            return ReconciliationResult(ReconciliationOutcome.IGNORED, key)

        # Step 2: canonical record, never the payload's view
        try:
            record = await self._fetch(notification)
        except GatewayFetchError as exc:
            logger.warning(
                "RECON_GATEWAY_FETCH_FAILED",
                extra={
                    "resource": exc.resource,
                    "gateway_id": exc.gateway_id,
                    "upstream_status": exc.status_code,
                    "error_msg": str(exc),
                },
            )
            return ReconciliationResult(ReconciliationOutcome.FETCH_FAILED, key)

        db = self.session_factory()
        try:
            repository = EntityRepository(db)

            # Step 3: resolve
            try:
                resolved = EntityResolver(repository).resolve(record)
            except EntityNotFoundError as exc:
                logger.warning(
                    "RECON_ENTITY_NOT_FOUND",
                    extra={
                        "external_reference": exc.external_reference,
                        "gateway_id": exc.gateway_id,
                        "gateway_status": record.gateway_status,
                    },
                )
                self._mark_processed(key)
                return ReconciliationResult(ReconciliationOutcome.NOT_FOUND, key)

            # Steps 4-5: map + persist
            try:
                transition = self._apply(repository, resolved, record)
            except PersistenceError as exc:
                logger.error(
                    "RECON_PERSIST_FAILED",
                    extra={
                        "entity": resolved.kind.value,
                        "entity_id": resolved.entity.id,
                        "error_msg": str(exc),
                    },
                )
                return ReconciliationResult(
                    ReconciliationOutcome.PERSIST_FAILED,
                    key,
                    entity_kind=resolved.kind,
                    entity_id=resolved.entity.id,
                )

            # Step 6
            self._mark_processed(key)

            # Step 7
            notified = False
            if transition.terminal_success:
                dispatcher = SideEffectDispatcher(repository, self.email_service)
                notified = await self._dispatch(dispatcher, resolved)
            elif transition.payment_rejected:
                dispatcher = SideEffectDispatcher(repository, self.email_service)
                notified = await dispatcher.notify_order_payment_failed(
                    resolved.entity, record.status_detail
                )

            return ReconciliationResult(
                ReconciliationOutcome.UPDATED if transition.changed else ReconciliationOutcome.UNCHANGED,
                key,
                entity_kind=resolved.kind,
                entity_id=resolved.entity.id,
                previous_status=transition.previous_status,
                new_status=transition.new_status,
                notified=notified,
            )
        finally:
            db.close()

    # ── Steps ────────────────────────────────────────────────────────────────

    def _has_processed(self, key: str) -> bool:
        try:
            return self.guard.has_processed(key)
        except Exception as exc:
            logger.warning(
                "IDEMPOTENCY_GUARD_UNAVAILABLE",
                extra={"operation": "has_processed", "error_type": type(exc).__name__},
            )
            return False

    def _mark_processed(self, key: str) -> None:
        try:
            self.guard.mark_processed(key)
        except Exception as exc:
            logger.warning(
                "IDEMPOTENCY_GUARD_UNAVAILABLE",
                extra={"operation": "mark_processed", "error_type": type(exc).__name__},
            )

    async def _fetch(self, notification: InboundNotification) -> CanonicalGatewayRecord:
        if notification.kind is NotificationKind.PAYMENT:
            return await self.gateway.fetch_payment(notification.gateway_id)
        return await self.gateway.fetch_subscription(notification.gateway_id)

    def _apply(
        self, repository: EntityRepository, resolved: ResolvedEntity, record: CanonicalGatewayRecord
    ) -> Transition:
        if resolved.kind is EntityKind.ORDER:
            return self._apply_order(repository, resolved.entity, record)
        if resolved.kind is EntityKind.GIFT:
            return self._apply_gift(repository, resolved.entity, record)
        return self._apply_subscription(repository, resolved.entity, record)

    def _apply_order(self, repository, order, record) -> Transition:
        previous = order.status
        new_status = self.mapper.map_order(record.gateway_status)
        changed = new_status.value != previous

        if changed:
            repository.apply_changes(
                order,
                {
                    "status": new_status.value,
                    "gateway_payment_id": record.gateway_id,
                    "payment_details": record.snapshot(),
                },
            )
            self._log_transition(EntityKind.ORDER, order.id, previous, new_status.value, record)

        rejected = (
            new_status is OrderStatus.CANCELLED
            and (record.gateway_status or "").strip().lower() == "rejected"
        )
        return Transition(
            previous, new_status.value, changed, new_status is OrderStatus.PAID, payment_rejected=rejected
        )

    def _apply_gift(self, repository, gift, record) -> Transition:
        previous = gift.payment_status
        payment_status = self.mapper.map_gift_payment(record.gateway_status)
        gift_status = self.mapper.derive_gift_status(payment_status, gift.notified_at is not None)
        changed = payment_status.value != previous or gift_status.value != gift.status

        if changed:
            repository.apply_changes(
                gift,
                {
                    "payment_status": payment_status.value,
                    "status": gift_status.value,
                    "gateway_payment_id": record.gateway_id,
                    "payment_details": record.snapshot(),
                },
            )
            self._log_transition(EntityKind.GIFT, gift.id, previous, payment_status.value, record)

        return Transition(
            previous, payment_status.value, changed, payment_status is GiftPaymentStatus.PAID
        )

    def _apply_subscription(self, repository, subscription, record) -> Transition:
        previous = subscription.status
        new_status = self.mapper.map_subscription(record.gateway_status)
        changes: dict[str, Any] = {}

        if new_status.value != previous:
            changes["status"] = new_status.value
            changes["gateway_details"] = record.snapshot()
        if new_status is SubscriptionStatus.ACTIVE and subscription.started_at is None:
            changes["started_at"] = self.clock()

        if changes:
            repository.apply_changes(subscription, changes)
            self._log_transition(EntityKind.SUBSCRIPTION, subscription.id, previous, new_status.value, record)

        return Transition(
            previous, new_status.value, bool(changes), new_status is SubscriptionStatus.ACTIVE
        )

    @staticmethod
    def _log_transition(kind: EntityKind, entity_id: int, previous: str, new: str, record) -> None:
        logger.info(
            "RECON_STATUS_UPDATED",
            extra={
                "entity": kind.value,
                "entity_id": entity_id,
                "previous_status": previous,
                "new_status": new,
                "gateway_status": record.gateway_status,
            },
        )

    async def _dispatch(self, dispatcher: SideEffectDispatcher, resolved: ResolvedEntity) -> bool:
        if resolved.kind is EntityKind.ORDER:
            return await dispatcher.notify_order_paid(resolved.entity)
        if resolved.kind is EntityKind.GIFT:
            return await dispatcher.notify_gift_paid(resolved.entity)
        return await dispatcher.notify_subscription_activated(resolved.entity)


def build_idempotency_guard(session_factory: Callable[[], Session]) -> IdempotencyGuard:
    """Build the guard selected by IDEMPOTENCY_BACKEND."""
    if get_idempotency_backend() == "database":
        return DatabaseIdempotencyGuard(
            session_factory, ttl=timedelta(hours=get_idempotency_ttl_hours())
        )
    max_entries, evict_count = get_idempotency_bounds()
    return InMemoryIdempotencyGuard(max_entries=max_entries, evict_count=evict_count)


# Global engine instance (singleton)
_recon_engine: Optional[ReconciliationEngine] = None


def get_reconciliation_engine() -> ReconciliationEngine:
    """Get global reconciliation engine (singleton).

    Raises:
        ValueError: If gateway credentials, guard settings or the mapping file are invalid
        OSError: If STATUS_MAPPING_FILE cannot be read
    """
    global _recon_engine
    if _recon_engine is None:
        session_factory = get_session_factory()
        _recon_engine = ReconciliationEngine(
            gateway=get_mercadopago_client(),
            guard=build_idempotency_guard(session_factory),
            session_factory=session_factory,
            email_service=build_email_service(),
            mapper=load_status_mapper(get_status_mapping_file()),
        )
        logger.info(
            "RECON_ENGINE_READY",
            extra={"idempotency_backend": type(_recon_engine.guard).__name__},
        )
    return _recon_engine


def set_reconciliation_engine(engine: Optional[ReconciliationEngine]) -> None:
    """Override (or reset with None) the global engine."""
    global _recon_engine
    _recon_engine = engine
