"""Entity repository for orders, gifts and subscriptions.

All writes commit immediately and translate SQLAlchemy failures into
``PersistenceError`` after rolling the session back, so the engine can
leave the notification key unrecorded.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional, Union

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from recon_api.billing.exceptions import PersistenceError
from recon_api.db.models import Gift, Order, Subscription

logger = logging.getLogger(__name__)

Entity = Union[Order, Gift, Subscription]


class EntityRepository:
    """Read/write access to the three reconciled entity kinds."""

    def __init__(self, db: Session):
        self.db = db

    # ── Reads ────────────────────────────────────────────────────────────────

    def get_order(self, order_id: int) -> Optional[Order]:
        return self.db.get(Order, order_id)

    def get_order_by_gateway_payment_id(self, payment_id: str) -> Optional[Order]:
        stmt = select(Order).where(Order.gateway_payment_id == payment_id).limit(1)
        return self.db.execute(stmt).scalars().first()

    def get_gift(self, gift_id: int) -> Optional[Gift]:
        return self.db.get(Gift, gift_id)

    def get_subscription_by_gateway_id(self, subscription_id: str) -> Optional[Subscription]:
        stmt = (
            select(Subscription)
            .where(Subscription.gateway_subscription_id == subscription_id)
            .limit(1)
        )
        return self.db.execute(stmt).scalars().first()

    def refresh(self, entity: Entity) -> Entity:
        """Reload an entity's columns from the database."""
        self.db.refresh(entity)
        return entity

    # ── Writes ───────────────────────────────────────────────────────────────

    def apply_changes(self, entity: Entity, changes: dict[str, Any]) -> Entity:
        """Assign column values on an entity and commit.

        Raises:
            PersistenceError: If the commit fails
        """
        for column, value in changes.items():
            setattr(entity, column, value)

        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise PersistenceError(
                f"Failed to persist {type(entity).__name__} {entity.id}: {type(exc).__name__}"
            ) from exc
        return entity

    def mark_notified(
        self, entity: Entity, now: Optional[datetime] = None, flag: str = "notified_at"
    ) -> bool:
        """Set a one-shot notification flag with a single conditional UPDATE.

        ``flag`` names the timestamp column (``notified_at`` by default,
        ``failure_notified_at`` for the order rejection email). Gifts move to
        status "notified" in the same statement. Returns False when another
        worker already set the flag.

        Raises:
            PersistenceError: If the update fails
        """
        model = type(entity)
        now = now or datetime.now(timezone.utc)
        column = getattr(model, flag)
        values: dict[str, Any] = {flag: now}
        if model is Gift and flag == "notified_at":
            values["status"] = "notified"

        stmt = (
            update(model)
            .where(model.id == entity.id, column.is_(None))
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        try:
            result = self.db.execute(stmt)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise PersistenceError(
                f"Failed to set notified flag on {model.__name__} {entity.id}: {type(exc).__name__}"
            ) from exc

        self.db.refresh(entity)
        return result.rowcount == 1
