"""Mercado Pago webhook ingress.

Acknowledge-then-process: every delivery gets ``200 text/plain "OK"`` before
any reconciliation work, including malformed JSON and bodies without
``data.id``. Reconciliation runs as a background task after the response is
sent and never raises back here.
"""

import json as _json
import logging

from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.responses import PlainTextResponse

from recon_api.billing.exceptions import NotificationParseError
from recon_api.billing.reconciliation import (
    InboundNotification,
    get_reconciliation_engine,
    parse_notification,
)
from recon_api.utils.sanitize import payload_sha256

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


async def process_notification(notification: InboundNotification, payload_hash: str) -> None:
    """Background task: run one notification through the engine."""
    try:
        engine = get_reconciliation_engine()
    except (ValueError, RuntimeError, OSError) as exc:
        logger.error(
            "WEBHOOK_PROVIDER_MISCONFIG",
            extra={
                "provider": "mercadopago",
                "payload_hash": payload_hash,
                "error_type": type(exc).__name__,
                "error_msg": str(exc),
            },
        )
        return

    result = await engine.handle(notification)
    logger.info(
        "WEBHOOK_PROCESSED",
        extra={
            "provider": "mercadopago",
            "payload_hash": payload_hash,
            "notification_key": result.notification_key,
            "outcome": result.outcome.value,
            "entity": result.entity_kind.value if result.entity_kind else None,
            "entity_id": result.entity_id,
            "notified": result.notified,
        },
    )


@router.post("/mercadopago", response_class=PlainTextResponse)
async def mercadopago_webhook(request: Request, background_tasks: BackgroundTasks):
    """Mercado Pago notification handler.

    Body: {"type": "payment", "action": "payment.updated", "data": {"id": "123"}}
    Legacy IPN: POST /webhooks/mercadopago?topic=payment&id=123
    """
    ack = PlainTextResponse("OK", status_code=200)

    # ── Step 0: Raw body ingestion ───────────────────────────────────────────
    raw_body: bytes = await request.body()
    payload_hash = payload_sha256(raw_body)

    logger.info(
        "WEBHOOK_RECEIVED",
        extra={"provider": "mercadopago", "payload_hash": payload_hash, "payload_size": len(raw_body)},
    )

    # ── Step 1: JSON parsing (empty body allowed for legacy IPN) ────────────
    body = None
    if raw_body.strip():
        try:
            body = _json.loads(raw_body)
        except (_json.JSONDecodeError, UnicodeDecodeError):
            logger.warning(
                "WEBHOOK_INVALID_JSON",
                extra={"provider": "mercadopago", "payload_hash": payload_hash},
            )
            return ack

    # ── Step 2: Notification shape ───────────────────────────────────────────
    try:
        notification = parse_notification(body, request.query_params)
    except NotificationParseError as exc:
        logger.warning(
            "WEBHOOK_INVALID_PAYLOAD",
            extra={"provider": "mercadopago", "payload_hash": payload_hash, "error_msg": str(exc)},
        )
        return ack

    # ── Step 3: Schedule reconciliation after the ack ────────────────────────
    background_tasks.add_task(process_notification, notification, payload_hash)
    return ack
