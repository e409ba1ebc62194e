"""Environment variable resolution utilities.

Canonical env names + fail-fast validation. Every helper reads the
environment at call time so tests can monkeypatch variables freely.
"""

import logging
import os
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_GATEWAY_BASE_URL = "https://api.mercadopago.com"
DEFAULT_GATEWAY_TIMEOUT_SECONDS = 5.0

IDEMPOTENCY_BACKENDS = frozenset({"memory", "database"})


def get_recon_env() -> str:
    """Get deployment environment name.

    Priority:
    1. RECON_ENV (canonical)
    2. Default: "local"

    Returns:
        Environment name (lowercase)
    """
    return os.getenv("RECON_ENV", "local").strip().lower()


def is_production() -> bool:
    return get_recon_env() in {"prod", "production"}


def _get_access_token(specific_var: str) -> str:
    token = os.getenv(specific_var) or os.getenv("MERCADOPAGO_ACCESS_TOKEN")
    if not token:
        raise ValueError(
            f"{specific_var} (or shared MERCADOPAGO_ACCESS_TOKEN) is required. "
            "Set it in environment configuration."
        )
    return token


def get_payment_access_token() -> str:
    """Get the bearer credential scoped for payment lookups.

    Canonical: MERCADOPAGO_ACCESS_TOKEN_TRANSPARENT
    Fallback: MERCADOPAGO_ACCESS_TOKEN

    Raises:
        ValueError: If neither env var is set
    """
    return _get_access_token("MERCADOPAGO_ACCESS_TOKEN_TRANSPARENT")


def get_subscription_access_token() -> str:
    """Get the bearer credential scoped for preapproval lookups.

    Canonical: MERCADOPAGO_ACCESS_TOKEN_SUBS
    Fallback: MERCADOPAGO_ACCESS_TOKEN

    Raises:
        ValueError: If neither env var is set
    """
    return _get_access_token("MERCADOPAGO_ACCESS_TOKEN_SUBS")


def get_gateway_base_url() -> str:
    return os.getenv("MERCADOPAGO_API_BASE_URL", DEFAULT_GATEWAY_BASE_URL).rstrip("/")


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


def get_gateway_timeout() -> float:
    """Get the per-request gateway timeout in seconds (MERCADOPAGO_TIMEOUT_SECONDS)."""
    return _get_float("MERCADOPAGO_TIMEOUT_SECONDS", DEFAULT_GATEWAY_TIMEOUT_SECONDS)


def get_idempotency_backend() -> str:
    """Get idempotency guard backend.

    Values:
    - memory: process-local bounded set (default, single instance only)
    - database: shared processed_notifications ledger (multi-instance safe)

    Raises:
        ValueError: If IDEMPOTENCY_BACKEND is not a known backend
    """
    backend = os.getenv("IDEMPOTENCY_BACKEND", "memory").strip().lower()
    if backend not in IDEMPOTENCY_BACKENDS:
        raise ValueError(
            f"IDEMPOTENCY_BACKEND={backend!r} is not valid. "
            f"Allowed values: {sorted(IDEMPOTENCY_BACKENDS)}."
        )
    return backend


def get_idempotency_bounds() -> tuple[int, int]:
    """Get (max_entries, evict_count) for the in-memory guard.

    Raises:
        ValueError: If evict_count exceeds max_entries
    """
    max_entries = _get_int("IDEMPOTENCY_MAX_ENTRIES", 1000)
    evict_count = _get_int("IDEMPOTENCY_EVICT_COUNT", 500)
    if evict_count > max_entries:
        raise ValueError(
            f"IDEMPOTENCY_EVICT_COUNT ({evict_count}) must not exceed "
            f"IDEMPOTENCY_MAX_ENTRIES ({max_entries})."
        )
    return max_entries, evict_count


def get_idempotency_ttl_hours() -> int:
    return _get_int("IDEMPOTENCY_TTL_HOURS", 72)


def get_status_mapping_file() -> Optional[str]:
    """Optional YAML file overriding the gateway status tables."""
    path = os.getenv("STATUS_MAPPING_FILE", "").strip()
    return path or None


def get_database_url() -> str:
    """Get database URL.

    Production fail-fast: DATABASE_URL is mandatory in prod/production.
    Development falls back to a local SQLite file.

    Raises:
        RuntimeError: If DATABASE_URL is missing in production
    """
    url = os.getenv("DATABASE_URL")
    if url:
        return url
    if is_production():
        raise RuntimeError(
            "DATABASE_URL environment variable is required in production (RECON_ENV=prod). "
            "Check deployment configuration and secrets injection."
        )
    return "sqlite:///./recon.db"


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def json_logs_enabled() -> bool:
    return _get_bool("RECON_JSON_LOGS", True)


def get_smtp_settings() -> Optional[dict]:
    """Get SMTP settings for outbound notifications.

    Returns None when SMTP_USER/SMTP_PASS are absent; email sending is then
    disabled with a warning rather than failing startup.
    """
    user = os.getenv("SMTP_USER")
    password = os.getenv("SMTP_PASS")
    if not user or not password:
        logger.warning(
            "SMTP not fully configured. Email sending will be disabled.",
            extra={"event": "smtp.disabled"},
        )
        return None

    return {
        "host": os.getenv("SMTP_HOST", "smtp.gmail.com"),
        "port": _get_int("SMTP_PORT", 587),
        "username": user,
        "password": password,
        "from_email": os.getenv("SMTP_FROM_EMAIL", user),
        "from_name": os.getenv("SMTP_FROM_NAME", "Marc Aromas"),
        "use_tls": _get_bool("SMTP_USE_TLS", True),
        "use_ssl": _get_bool("SMTP_USE_SSL", False),
    }
