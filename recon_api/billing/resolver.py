"""Resolve a canonical gateway record to the local entity it addresses.

Resolution is an ordered predicate chain; the first predicate that claims the
record decides the entity kind:

  1. external_reference starts with "gift-"   → Gift by trailing id
  2. record carries a subscription id          → Subscription by gateway id
  3. external_reference is a numeric order id  → Order by id
  4. otherwise                                 → Order by stored gateway payment id

A predicate that claims the record but finds nothing raises
EntityNotFoundError (except 3, which falls through to 4).
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Union

from recon_api.billing.exceptions import EntityNotFoundError
from recon_api.billing.gateway import CanonicalGatewayRecord
from recon_api.db.models import Gift, Order, Subscription
from recon_api.db.repository import EntityRepository

logger = logging.getLogger(__name__)

GIFT_REFERENCE_PREFIX = "gift-"


class EntityKind(str, Enum):
    ORDER = "order"
    GIFT = "gift"
    SUBSCRIPTION = "subscription"


@dataclass(frozen=True)
class ResolvedEntity:
    """Tagged result of resolution: which kind, and the loaded row."""

    kind: EntityKind
    entity: Union[Order, Gift, Subscription]


def is_gift_reference(record: CanonicalGatewayRecord) -> bool:
    return bool(record.external_reference) and record.external_reference.startswith(
        GIFT_REFERENCE_PREFIX
    )


def is_subscription_record(record: CanonicalGatewayRecord) -> bool:
    return bool(record.subscription_id)


def parse_order_reference(external_reference: Optional[str]) -> Optional[int]:
    """Return the numeric order id in an external reference, if it is one."""
    if external_reference is None:
        return None
    ref = external_reference.strip()
    if not ref.isdigit():
        return None
    return int(ref)


def parse_gift_reference(external_reference: str) -> Optional[int]:
    """Return the gift id in "gift-<id>", or None when malformed."""
    suffix = external_reference[len(GIFT_REFERENCE_PREFIX):].strip()
    if not suffix.isdigit():
        return None
    return int(suffix)


class EntityResolver:
    """Predicate-chain resolver over orders, gifts and subscriptions."""

    def __init__(self, repository: EntityRepository):
        self.repository = repository
        self._chain: list[
            tuple[Callable[[CanonicalGatewayRecord], bool], Callable[[CanonicalGatewayRecord], ResolvedEntity]]
        ] = [
            (is_gift_reference, self._resolve_gift),
            (is_subscription_record, self._resolve_subscription),
            (lambda _record: True, self._resolve_order),
        ]

    def resolve(self, record: CanonicalGatewayRecord) -> ResolvedEntity:
        """Resolve record to its local entity.

        Raises:
            EntityNotFoundError: If no local entity matches
        """
        for predicate, loader in self._chain:
            if predicate(record):
                return loader(record)
        raise EntityNotFoundError(
            "No resolution rule matched gateway record",
            external_reference=record.external_reference,
            gateway_id=record.gateway_id,
        )

    def _resolve_gift(self, record: CanonicalGatewayRecord) -> ResolvedEntity:
        gift_id = parse_gift_reference(record.external_reference or "")
        gift = self.repository.get_gift(gift_id) if gift_id is not None else None
        if gift is None:
            raise EntityNotFoundError(
                f"Gift not found for reference {record.external_reference!r}",
                external_reference=record.external_reference,
                gateway_id=record.gateway_id,
            )
        return ResolvedEntity(EntityKind.GIFT, gift)

    def _resolve_subscription(self, record: CanonicalGatewayRecord) -> ResolvedEntity:
        subscription = self.repository.get_subscription_by_gateway_id(record.subscription_id)
        if subscription is None:
            raise EntityNotFoundError(
                f"Subscription not found for gateway id {record.subscription_id!r}",
                external_reference=record.external_reference,
                gateway_id=record.gateway_id,
            )
        return ResolvedEntity(EntityKind.SUBSCRIPTION, subscription)

    def _resolve_order(self, record: CanonicalGatewayRecord) -> ResolvedEntity:
        order_id = parse_order_reference(record.external_reference)
        order = self.repository.get_order(order_id) if order_id is not None else None

        if order is None:
            order = self.repository.get_order_by_gateway_payment_id(record.gateway_id)
            if order is not None:
                logger.info(
                    "Order matched by stored gateway payment id",
                    extra={"event": "resolver.order.fallback", "order_id": order.id},
                )

        if order is None:
            raise EntityNotFoundError(
                f"Order not found for reference {record.external_reference!r}",
                external_reference=record.external_reference,
                gateway_id=record.gateway_id,
            )
        return ResolvedEntity(EntityKind.ORDER, order)
