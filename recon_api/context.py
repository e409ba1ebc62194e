"""Request context management for observability.

Context variables survive the hop from the webhook request into the
background reconciliation task, so every log line carries both ids.
"""

from contextvars import ContextVar

# Request ID - unique per inbound HTTP call
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Notification key - "<type>-<gateway id>" currently being reconciled
notification_key_var: ContextVar[str] = ContextVar("notification_key", default="")
