"""Database engine builder (SSOT).

- Default: NullPool (client-side pooling disabled; the managed pooler owns it)
- ENV: RECON_DB_POOL=nullpool|queuepool (default: nullpool)
- SQLite URLs always get StaticPool + check_same_thread=False so the webhook
  request thread and the background reconciliation task share one database.
"""

import logging
import os
import re

from sqlalchemy import Engine, NullPool, QueuePool, StaticPool, create_engine
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

_VALID_POOLS = frozenset({"nullpool", "queuepool"})


def _mask_password(url: str) -> str:
    """Mask password in database URL for safe logging."""
    return re.sub(r"://([^:]+):([^@]+)@", r"://\1:***@", url)


def build_engine(url: str) -> Engine:
    """Create a SQLAlchemy engine with the service's pool policy.

    Raises:
        ValueError: If RECON_DB_POOL is not a known pool mode
    """
    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        logger.info("DB_ENGINE_BUILT", extra={"db_url": _mask_password(url), "pool": "static"})
        return engine

    pool_mode = os.getenv("RECON_DB_POOL", "nullpool").strip().lower()
    if pool_mode not in _VALID_POOLS:
        raise ValueError(
            f"RECON_DB_POOL={pool_mode!r} is not valid. Allowed values: {sorted(_VALID_POOLS)}."
        )

    if pool_mode == "queuepool":
        engine = create_engine(url, poolclass=QueuePool, pool_pre_ping=True)
    else:
        engine = create_engine(url, poolclass=NullPool)

    logger.info("DB_ENGINE_BUILT", extra={"db_url": _mask_password(url), "pool": pool_mode})
    return engine


def build_sessionmaker(engine: Engine) -> sessionmaker[Session]:
    """Create session factory bound to engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)
