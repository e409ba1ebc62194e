"""Database session management.

Engine and session factory are built lazily so importing the app never
opens a connection; tests swap the factory via ``set_session_factory``.
"""

from typing import Callable, Optional

from sqlalchemy import Engine
from sqlalchemy.orm import Session

from recon_api.config.env import get_database_url
from recon_api.db.engine import build_engine, build_sessionmaker

_engine: Optional[Engine] = None
_session_factory: Optional[Callable[[], Session]] = None


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = build_engine(get_database_url())
    return _engine


def get_session_factory() -> Callable[[], Session]:
    """Get global session factory (singleton)."""
    global _session_factory
    if _session_factory is None:
        _session_factory = build_sessionmaker(get_engine())
    return _session_factory


def set_session_factory(factory: Optional[Callable[[], Session]]) -> None:
    """Override (or reset with None) the global session factory."""
    global _session_factory
    _session_factory = factory

