"""Reconciliation error taxonomy.

None of these ever reach the gateway: the webhook is acknowledged before
reconciliation starts. They only decide what gets logged and whether the
notification key is recorded as processed.
"""

from typing import Optional


class ReconciliationError(Exception):
    """Base exception for the reconciliation path."""

    pass


class NotificationParseError(ReconciliationError):
    """Webhook body is malformed or lacks data.id. Logged and dropped."""

    pass


class GatewayFetchError(ReconciliationError):
    """Gateway lookup failed (network, timeout, non-2xx, bad JSON).

    Not retried here; the gateway redelivers unacknowledged work, so the
    notification key is left unrecorded.
    """

    def __init__(self, message: str, *, resource: str, gateway_id: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.resource = resource
        self.gateway_id = gateway_id
        self.status_code = status_code


class EntityNotFoundError(ReconciliationError):
    """No local order, gift or subscription matches the gateway record."""

    def __init__(self, message: str, *, external_reference: Optional[str] = None, gateway_id: Optional[str] = None):
        super().__init__(message)
        self.external_reference = external_reference
        self.gateway_id = gateway_id


class PersistenceError(ReconciliationError):
    """Local write failed. The notification key must stay unrecorded."""

    pass
