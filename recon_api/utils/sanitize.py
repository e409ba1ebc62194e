"""Log redaction for gateway credentials and customer contact data.

Mercado Pago access tokens (``APP_USR-…`` / ``TEST-…``) and the emails of
customers, gift givers/recipients and subscribers must never reach log output.

Strings are scanned only up to MAX_SCANNED_CHARS; longer ones are either
replaced by a digest (over MAX_LOGGED_CHARS) or checked for a credential
prefix. Dict keys are redacted by name, including any ``*_email`` or
``*_token`` field.
"""

import hashlib
import re
import traceback
from typing import Any, Optional

REDACTED = "[REDACTED]"

MAX_LOGGED_CHARS = 2048
MAX_SCANNED_CHARS = 512
MAX_NESTING = 6

_SECRET_KEYS = frozenset({
    "authorization", "password", "secret", "token", "email", "phone",
    "payer", "card", "cardholder", "identification",
})
_SECRET_KEY_SUFFIXES = ("_email", "_token", "_password", "_secret")

_SECRET_TEXT = re.compile(
    r"(?:Bearer|Basic) \S+"
    r"|access_token=\S+"
    r"|APP_USR-\S+"
    r"|TEST-\d{4,}\S*"
    r"|[\w.+-]+@[\w-]+\.[\w.-]+"
)
_CREDENTIAL_PREFIXES = ("Bearer ", "Basic ", "APP_USR-")


def payload_sha256(raw: bytes) -> str:
    """Hex digest used to correlate webhook bodies without logging them."""
    return hashlib.sha256(raw).hexdigest()


def is_secret_key(key: Any) -> bool:
    if not isinstance(key, str):
        return False
    lowered = key.lower()
    return lowered in _SECRET_KEYS or lowered.endswith(_SECRET_KEY_SUFFIXES)


def redact_text(text: str) -> str:
    if len(text) > MAX_LOGGED_CHARS:
        digest = payload_sha256(text.encode("utf-8", errors="replace"))[:16]
        return f"[TRUNCATED len={len(text)} sha256={digest}]"
    if len(text) > MAX_SCANNED_CHARS:
        return REDACTED if text.startswith(_CREDENTIAL_PREFIXES) else text
    return _SECRET_TEXT.sub(REDACTED, text)


def redact_value(value: Any, depth: int = 0) -> Any:
    """Return a log-safe copy of ``value`` (dicts, lists, tuples, strings)."""
    if depth >= MAX_NESTING:
        return "[DEPTH_LIMIT]"
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, dict):
        return {
            key: REDACTED if is_secret_key(key) else redact_value(item, depth + 1)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact_value(item, depth + 1) for item in value]
    return value


def redact_exception(exc: Optional[BaseException]) -> str:
    """Traceback text for ``exc`` with secrets removed.

    Frame locals are never rendered; they may hold tokens or payer data.
    """
    if exc is None:
        return ""
    try:
        lines = traceback.TracebackException.from_exception(exc, capture_locals=False).format()
        return redact_text("".join(lines))
    except Exception:
        return "[TRACEBACK_FORMAT_ERROR]"
