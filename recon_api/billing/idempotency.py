"""Idempotency guard for gateway notifications.

Key: ``f"{notification_type}-{gateway_id}"`` (e.g. ``payment-123456``).

Two backends share one contract (``has_processed`` / ``mark_processed``):

  InMemoryIdempotencyGuard
    Insertion-ordered bounded set. When it grows past ``max_entries`` the
    oldest ``evict_count`` keys are dropped (FIFO, not LRU). Process-local:
    two instances can both admit the same notification.

  DatabaseIdempotencyGuard
    Row per key in ``processed_notifications`` with a UNIQUE constraint.
    ``mark_processed`` is INSERT ... ON CONFLICT DO NOTHING, so exactly one
    caller records a key even under concurrent delivery across instances.
    Rows carry a TTL; ``purge_expired`` removes them.

Callers must fail open: if the guard raises, process the notification anyway.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol, runtime_checkable

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from recon_api.db.models import ProcessedNotification

logger = logging.getLogger(__name__)


def notification_key(notification_type: str, gateway_id: str) -> str:
    return f"{notification_type}-{gateway_id}"


@runtime_checkable
class IdempotencyGuard(Protocol):
    """Minimal interface for duplicate-notification suppression."""

    def has_processed(self, key: str) -> bool:
        ...

    def mark_processed(self, key: str) -> bool:
        """Record key. Returns True if this call recorded it first."""
        ...


class InMemoryIdempotencyGuard:
    """Bounded, insertion-ordered set of processed keys."""

    def __init__(self, max_entries: int = 1000, evict_count: int = 500):
        if evict_count > max_entries:
            raise ValueError("evict_count must not exceed max_entries")
        self.max_entries = max_entries
        self.evict_count = evict_count
        # dict preserves insertion order; values unused
        self._keys: dict[str, None] = {}

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, key: str) -> bool:
        return key in self._keys

    def has_processed(self, key: str) -> bool:
        return key in self._keys

    def mark_processed(self, key: str) -> bool:
        if key in self._keys:
            return False

        self._keys[key] = None

        if len(self._keys) > self.max_entries:
            oldest = list(self._keys)[: self.evict_count]
            for old_key in oldest:
                del self._keys[old_key]
            logger.debug(
                "IDEMPOTENCY_EVICTED",
                extra={"evicted": len(oldest), "remaining": len(self._keys)},
            )
        return True


class DatabaseIdempotencyGuard:
    """Shared dedup ledger backed by ``processed_notifications``."""

    def __init__(self, session_factory: Callable[[], Session], ttl: timedelta = timedelta(hours=72)):
        self.session_factory = session_factory
        self.ttl = ttl

    @staticmethod
    def _insert_for(db: Session):
        dialect = db.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert(ProcessedNotification)
        if dialect == "sqlite":
            return sqlite_insert(ProcessedNotification)
        raise RuntimeError(f"DatabaseIdempotencyGuard does not support dialect {dialect!r}")

    def has_processed(self, key: str, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        stmt = (
            select(ProcessedNotification.id)
            .where(
                ProcessedNotification.notification_key == key,
                ProcessedNotification.expires_at > now,
            )
            .limit(1)
        )
        db = self.session_factory()
        try:
            return db.execute(stmt).first() is not None
        finally:
            db.close()

    def mark_processed(self, key: str, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        db = self.session_factory()
        try:
            # An expired row for the same key would block the insert
            db.execute(
                delete(ProcessedNotification).where(
                    ProcessedNotification.notification_key == key,
                    ProcessedNotification.expires_at <= now,
                )
            )
            stmt = (
                self._insert_for(db)
                .values(notification_key=key, first_seen_at=now, expires_at=now + self.ttl)
                .on_conflict_do_nothing(index_elements=["notification_key"])
            )
            result = db.execute(stmt)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        recorded = result.rowcount == 1
        if not recorded:
            logger.info("IDEMPOTENCY_KEY_ALREADY_RECORDED", extra={"dedup_key_prefix": key[:32]})
        return recorded

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete ledger rows whose TTL has passed. Returns rows removed."""
        now = now or datetime.now(timezone.utc)
        db = self.session_factory()
        try:
            result = db.execute(
                delete(ProcessedNotification).where(ProcessedNotification.expires_at <= now)
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info("IDEMPOTENCY_LEDGER_PURGED", extra={"purged": result.rowcount})
        return result.rowcount
