"""Customer-facing email content for payment notifications."""

from html import escape
from typing import Optional

from recon_api.db.models import Gift, Order, Subscription
from recon_api.notifications.email import EmailMessage

STORE_NAME = "Marc Aromas"


def _months(duration: int) -> str:
    return "mês" if duration == 1 else "meses"


def _format_brl(amount: Optional[float]) -> str:
    if amount is None:
        return "-"
    whole = f"{amount:,.2f}"
    # 1,234.56 -> 1.234,56
    return "R$ " + whole.replace(",", "_").replace(".", ",").replace("_", ".")


def order_paid_email(order: Order) -> EmailMessage:
    name = order.customer_name or "cliente"
    body = (
        f"Olá, {name}!\n\n"
        f"Recebemos o pagamento do seu pedido #{order.id} "
        f"({_format_brl(order.total)}).\n"
        "Já estamos preparando tudo para o envio.\n\n"
        f"Equipe {STORE_NAME}"
    )
    return EmailMessage(
        to=order.customer_email,
        subject=f"Pagamento confirmado - Pedido #{order.id}",
        body=body,
    )


def gift_card_email(gift: Gift) -> EmailMessage:
    plan = gift.plan_name or "Assinatura"
    period = f"{gift.duration} {_months(gift.duration)}"
    lines = [
        f"Olá, {gift.recipient_name}!",
        "",
        f"{gift.giver_name} presenteou você com {period} do plano {plan}.",
    ]
    if gift.message:
        lines += ["", f"Mensagem: \"{gift.message}\""]
    lines += ["", f"Equipe {STORE_NAME}"]

    html_message = (
        f"<blockquote>{escape(gift.message)}</blockquote>" if gift.message else ""
    )
    html_body = (
        f"<h1>Você recebeu um presente!</h1>"
        f"<p>Olá, {escape(gift.recipient_name)}!</p>"
        f"<p>{escape(gift.giver_name)} presenteou você com "
        f"<strong>{escape(period)}</strong> do plano <strong>{escape(plan)}</strong>.</p>"
        f"{html_message}"
        f"<p>Equipe {STORE_NAME}</p>"
    )
    return EmailMessage(
        to=gift.recipient_email,
        subject=f"Você recebeu um presente especial de {gift.giver_name}!",
        body="\n".join(lines),
        html_body=html_body,
    )


def subscription_active_email(subscription: Subscription) -> EmailMessage:
    name = subscription.subscriber_name or "assinante"
    plan = subscription.plan_name or "sua assinatura"
    body = (
        f"Olá, {name}!\n\n"
        f"Sua assinatura {plan} está ativa. A primeira caixa será preparada em breve.\n\n"
        f"Equipe {STORE_NAME}"
    )
    return EmailMessage(
        to=subscription.subscriber_email,
        subject=f"Bem-vindo(a)! Sua assinatura {STORE_NAME} está ativa",
        body=body,
    )


# Gateway status_detail codes worth spelling out to the customer
_REJECTION_REASONS = {
    "cc_rejected_insufficient_amount": "Saldo ou limite insuficiente",
    "cc_rejected_bad_filled_security_code": "Código de segurança inválido",
    "cc_rejected_bad_filled_date": "Data de validade inválida",
    "cc_rejected_call_for_authorize": "Pagamento não autorizado pelo emissor do cartão",
    "cc_rejected_high_risk": "Pagamento recusado por análise de segurança",
}


def order_payment_failed_email(order: Order, status_detail: Optional[str] = None) -> EmailMessage:
    name = order.customer_name or "cliente"
    detail = (status_detail or "").strip()
    reason = _REJECTION_REASONS.get(detail, detail or "Pagamento recusado")
    body = (
        f"Olá, {name}!\n\n"
        f"Não conseguimos confirmar o pagamento do seu pedido #{order.id} "
        f"({_format_brl(order.total)}).\n"
        f"Motivo: {reason}\n\n"
        "Você pode tentar novamente com outro meio de pagamento.\n\n"
        f"Equipe {STORE_NAME}"
    )
    return EmailMessage(
        to=order.customer_email,
        subject=f"Problema no pagamento - Pedido #{order.id}",
        body=body,
    )
