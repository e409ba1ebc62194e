"""Gateway status vocabulary → internal status enums.

Mapping tables are plain data handed to ``StatusMapper`` at construction, so
tests (and operators, through STATUS_MAPPING_FILE) can add or override
gateway statuses without touching code. Every lookup is total: anything the
table does not know maps to ``pending``.

Default tables:

    Gateway status        Order        Gift payment   Subscription
    approved/authorized   paid         paid           active
    pending               pending      pending        pending
    in_process            processing   pending        pending
    rejected/cancelled    cancelled    failed         cancelled
    refunded/charged_back refunded     -              -
    paused                -            -              paused
"""

import logging
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional

import yaml

logger = logging.getLogger(__name__)


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class GiftPaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class GiftStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    NOTIFIED = "notified"


class SubscriptionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    FAILED = "failed"


DEFAULT_ORDER_TABLE: dict[str, OrderStatus] = {
    "approved": OrderStatus.PAID,
    "authorized": OrderStatus.PAID,
    "pending": OrderStatus.PENDING,
    "in_process": OrderStatus.PROCESSING,
    "rejected": OrderStatus.CANCELLED,
    "cancelled": OrderStatus.CANCELLED,
    "refunded": OrderStatus.REFUNDED,
    "charged_back": OrderStatus.REFUNDED,
}

DEFAULT_GIFT_TABLE: dict[str, GiftPaymentStatus] = {
    "approved": GiftPaymentStatus.PAID,
    "authorized": GiftPaymentStatus.PAID,
    "pending": GiftPaymentStatus.PENDING,
    "in_process": GiftPaymentStatus.PENDING,
    "rejected": GiftPaymentStatus.FAILED,
    "cancelled": GiftPaymentStatus.FAILED,
}

DEFAULT_SUBSCRIPTION_TABLE: dict[str, SubscriptionStatus] = {
    "approved": SubscriptionStatus.ACTIVE,
    "authorized": SubscriptionStatus.ACTIVE,
    "pending": SubscriptionStatus.PENDING,
    "in_process": SubscriptionStatus.PENDING,
    "rejected": SubscriptionStatus.CANCELLED,
    "cancelled": SubscriptionStatus.CANCELLED,
    "paused": SubscriptionStatus.PAUSED,
}


class StatusMapper:
    """Total mapping from gateway statuses to per-entity internal statuses."""

    def __init__(
        self,
        order_table: Optional[Mapping[str, OrderStatus]] = None,
        gift_table: Optional[Mapping[str, GiftPaymentStatus]] = None,
        subscription_table: Optional[Mapping[str, SubscriptionStatus]] = None,
    ):
        self.order_table = dict(DEFAULT_ORDER_TABLE if order_table is None else order_table)
        self.gift_table = dict(DEFAULT_GIFT_TABLE if gift_table is None else gift_table)
        self.subscription_table = dict(
            DEFAULT_SUBSCRIPTION_TABLE if subscription_table is None else subscription_table
        )

    @staticmethod
    def _normalize(gateway_status: Optional[str]) -> str:
        if not isinstance(gateway_status, str):
            return ""
        return gateway_status.strip().lower()

    def map_order(self, gateway_status: Optional[str]) -> OrderStatus:
        return self.order_table.get(self._normalize(gateway_status), OrderStatus.PENDING)

    def map_gift_payment(self, gateway_status: Optional[str]) -> GiftPaymentStatus:
        return self.gift_table.get(self._normalize(gateway_status), GiftPaymentStatus.PENDING)

    def map_subscription(self, gateway_status: Optional[str]) -> SubscriptionStatus:
        return self.subscription_table.get(
            self._normalize(gateway_status), SubscriptionStatus.PENDING
        )

    @staticmethod
    def derive_gift_status(payment_status: GiftPaymentStatus, already_notified: bool) -> GiftStatus:
        """Gift lifecycle status implied by its payment status.

        A gift that already reached ``notified`` stays there while paid.
        """
        if payment_status is GiftPaymentStatus.PAID:
            return GiftStatus.NOTIFIED if already_notified else GiftStatus.PAID
        return GiftStatus.PENDING


def _coerce_table(raw: object, enum_cls: type[Enum], section: str) -> dict:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError(f"Status mapping section {section!r} must be a mapping")

    table = {}
    for gateway_status, internal in raw.items():
        try:
            table[str(gateway_status).strip().lower()] = enum_cls(str(internal).strip().lower())
        except ValueError:
            allowed = sorted(member.value for member in enum_cls)
            raise ValueError(
                f"Status mapping {section}.{gateway_status}={internal!r} is not valid. "
                f"Allowed values: {allowed}."
            ) from None
    return table


def load_status_mapper(path: Optional[str] = None) -> StatusMapper:
    """Build a StatusMapper, merging optional YAML overrides onto the defaults.

    YAML layout::

        order:
          partially_refunded: refunded
        gift:
          in_mediation: pending
        subscription:
          expired: cancelled

    Raises:
        ValueError: If the file is not valid YAML or names an unknown internal status
        FileNotFoundError: If path is given but missing
    """
    if path is None:
        return StatusMapper()

    with Path(path).open(encoding="utf-8") as fh:
        try:
            data = yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Status mapping file {path} is not valid YAML: {exc}") from exc

    if not isinstance(data, dict):
        raise ValueError(f"Status mapping file {path} must contain a mapping at top level")

    order_table = {**DEFAULT_ORDER_TABLE, **_coerce_table(data.get("order"), OrderStatus, "order")}
    gift_table = {**DEFAULT_GIFT_TABLE, **_coerce_table(data.get("gift"), GiftPaymentStatus, "gift")}
    subscription_table = {
        **DEFAULT_SUBSCRIPTION_TABLE,
        **_coerce_table(data.get("subscription"), SubscriptionStatus, "subscription"),
    }

    logger.info(
        "Status mapping overrides loaded",
        extra={"event": "status_mapping.loaded", "path": str(path)},
    )
    return StatusMapper(order_table, gift_table, subscription_table)
