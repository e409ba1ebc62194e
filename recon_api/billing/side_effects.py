"""One-shot side effects fired when an entity reaches a terminal status.

Gate: a persisted timestamp flag per entity and effect (``notified_at`` for
confirmations, ``failure_notified_at`` for rejected order payments),
independent of the idempotency guard. The flag is re-read right before
sending and set right after a successful send with a conditional UPDATE; the
window between the two is narrowed, not closed.

Email failures are logged and swallowed; the status transition that led here
is already committed and stays.
"""

import logging
from functools import partial
from typing import Callable, Optional, Protocol

from recon_api.billing.exceptions import PersistenceError
from recon_api.db.models import Gift, Order, Subscription
from recon_api.db.repository import Entity, EntityRepository
from recon_api.notifications.email import EmailMessage
from recon_api.notifications.templates import (
    gift_card_email,
    order_paid_email,
    order_payment_failed_email,
    subscription_active_email,
)

logger = logging.getLogger(__name__)


class EmailSender(Protocol):
    async def send_async(self, message: EmailMessage) -> bool:
        ...


class SideEffectDispatcher:
    """Sends payment/gift/subscription notifications at most once each."""

    def __init__(self, repository: EntityRepository, email_service: EmailSender):
        self.repository = repository
        self.email_service = email_service

    async def notify_order_paid(self, order: Order) -> bool:
        return await self._send_once(order, order.customer_email, order_paid_email, "order_paid")

    async def notify_order_payment_failed(self, order: Order, status_detail: Optional[str] = None) -> bool:
        return await self._send_once(
            order,
            order.customer_email,
            partial(order_payment_failed_email, status_detail=status_detail),
            "order_payment_failed",
            flag="failure_notified_at",
        )

    async def notify_gift_paid(self, gift: Gift) -> bool:
        """Send the gift card to the recipient.

        Gifts scheduled for a later date (send_immediate false) are delivered
        by the scheduler, not here.
        """
        if not gift.send_immediate:
            logger.info(
                "Gift scheduled for later delivery; skipping immediate notification",
                extra={"event": "side_effect.gift.scheduled", "gift_id": gift.id},
            )
            return False
        return await self._send_once(gift, gift.recipient_email, gift_card_email, "gift_paid")

    async def notify_subscription_activated(self, subscription: Subscription) -> bool:
        return await self._send_once(
            subscription,
            subscription.subscriber_email,
            subscription_active_email,
            "subscription_activated",
        )

    async def _send_once(
        self,
        entity: Entity,
        recipient: str | None,
        build_message: Callable[[Entity], EmailMessage],
        effect: str,
        flag: str = "notified_at",
    ) -> bool:
        log_extra = {"effect": effect, "entity": type(entity).__name__.lower(), "entity_id": entity.id}

        # Fresh read: another delivery may have sent it since we loaded the row
        self.repository.refresh(entity)
        if getattr(entity, flag) is not None:
            logger.info("SIDE_EFFECT_ALREADY_SENT", extra=log_extra)
            return False

        if not (recipient or "").strip():
            logger.warning("SIDE_EFFECT_NO_RECIPIENT", extra=log_extra)
            return False

        sent = await self.email_service.send_async(build_message(entity))
        if not sent:
            logger.error("SIDE_EFFECT_SEND_FAILED", extra=log_extra)
            return False

        try:
            recorded = self.repository.mark_notified(entity, flag=flag)
        except PersistenceError as exc:
            logger.error(
                "SIDE_EFFECT_FLAG_WRITE_FAILED",
                extra={**log_extra, "error_msg": str(exc)},
            )
            return True

        if not recorded:
            logger.warning("SIDE_EFFECT_FLAG_ALREADY_SET", extra=log_extra)
        else:
            logger.info("SIDE_EFFECT_SENT", extra=log_extra)
        return True
