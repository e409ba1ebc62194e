"""Utility functions and helpers."""

from recon_api.utils.logging import JSONFormatter, configure_json_logging
from recon_api.utils.sanitize import payload_sha256, redact_text, redact_value

__all__ = [
    "JSONFormatter",
    "configure_json_logging",
    "payload_sha256",
    "redact_text",
    "redact_value",
]
