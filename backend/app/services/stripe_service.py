"""決済ゲートウェイ (Stripe Checkout)

Checkout Session を1回払い (mode=payment) で作成し、Webhook受信時は
Session を再取得して決済状態を正規化する。Webhook本文の状態は信用しない。
"""
from dataclasses import dataclass
from typing import Optional

import stripe

from app.core.config import settings
from app.core.errors import GatewayError
from app.core.logging import get_logger
from app.services.plan_catalog import get_plan

logger = get_logger(__name__)

# 正規化後の決済状態
GATEWAY_APPROVED = "approved"
GATEWAY_PENDING = "pending"
GATEWAY_REJECTED = "rejected"
GATEWAY_CANCELLED = "cancelled"

# 受信対象のWebhookイベント
HANDLED_EVENT_TYPES = (
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "checkout.session.async_payment_failed",
    "checkout.session.expired",
)


@dataclass
class GatewayPayment:
    """ゲートウェイから再取得した決済の正規化表現"""
    id: str
    status: str
    external_reference: Optional[str] = None
    status_detail: Optional[str] = None
    payment_intent_id: Optional[str] = None
    payment_method: Optional[str] = None
    amount: Optional[int] = None


def _init_stripe():
    stripe.api_key = settings.STRIPE_SECRET_KEY


def _normalize_status(session, intent, event_type: Optional[str]) -> tuple[str, Optional[str]]:
    """Checkout Session / PaymentIntent の状態 → (approved|pending|rejected|cancelled, 詳細)"""
    payment_status = getattr(session, "payment_status", None)
    session_status = getattr(session, "status", None)
    intent_status = getattr(intent, "status", None) if intent is not None else None

    if payment_status in ("paid", "no_payment_required"):
        return GATEWAY_APPROVED, payment_status
    if session_status == "expired":
        return GATEWAY_CANCELLED, "session_expired"
    if intent_status == "canceled":
        return GATEWAY_CANCELLED, getattr(intent, "cancellation_reason", None) or "canceled"

    last_error = getattr(intent, "last_payment_error", None) if intent is not None else None
    if intent_status == "requires_payment_method" and last_error is not None:
        detail = getattr(last_error, "decline_code", None) or getattr(last_error, "code", None)
        return GATEWAY_REJECTED, detail or "payment_failed"
    if event_type == "checkout.session.async_payment_failed":
        return GATEWAY_REJECTED, "async_payment_failed"
    return GATEWAY_PENDING, payment_status


class StripeGateway:
    """Stripe Checkout を用いた決済ゲートウェイ"""

    def __init__(self, currency: str = None):
        self.currency = (currency or settings.CURRENCY).lower()

    def create_checkout(self, payment, subscription, tenant) -> tuple[str, str]:
        """決済用 Checkout Session を作成し (session_id, url) を返す"""
        _init_stripe()
        plan = get_plan(payment.plan_type)
        cycle_label = "年額" if payment.billing_cycle == "YEARLY" else "月額"
        metadata = {
            "payment_id": str(payment.id),
            "subscription_id": str(subscription.id),
            "tenant_id": str(subscription.tenant_id),
            "kind": payment.kind,
        }
        params = {
            "mode": "payment",
            "line_items": [{
                "price_data": {
                    "currency": payment.currency or self.currency,
                    "unit_amount": payment.amount,
                    "product_data": {"name": f"{plan['name']} ({cycle_label})"},
                },
                "quantity": 1,
            }],
            "client_reference_id": str(payment.id),
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
            "success_url": f"{settings.SITE_URL}/billing/complete?payment_id={payment.id}",
            "cancel_url": f"{settings.SITE_URL}/billing?payment_id={payment.id}",
        }
        if tenant is not None and getattr(tenant, "email", None):
            params["customer_email"] = tenant.email

        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as e:
            logger.error(f"Checkout Session作成失敗: payment_id={payment.id}, error={e}")
            raise GatewayError("決済ページの作成に失敗しました")

        logger.info(f"Checkout Session作成: payment_id={payment.id}, session={session.id}")
        return session.id, session.url

    def fetch_payment(self, session_id: str, event_type: str = None) -> GatewayPayment:
        """Checkout Session を再取得して正規化した決済状態を返す"""
        _init_stripe()
        try:
            session = stripe.checkout.Session.retrieve(session_id, expand=["payment_intent"])
        except stripe.StripeError as e:
            logger.error(f"Checkout Session取得失敗: session={session_id}, error={e}")
            raise GatewayError("決済情報の取得に失敗しました")

        intent = getattr(session, "payment_intent", None)
        if isinstance(intent, str):
            intent_id, intent = intent, None
        else:
            intent_id = getattr(intent, "id", None) if intent is not None else None

        status, detail = _normalize_status(session, intent, event_type)
        metadata = getattr(session, "metadata", None)
        external_reference = getattr(session, "client_reference_id", None)
        if not external_reference and metadata is not None:
            external_reference = getattr(metadata, "payment_id", None)

        payment_method = None
        if intent is not None:
            types = getattr(intent, "payment_method_types", None) or []
            payment_method = types[0] if types else None

        return GatewayPayment(
            id=session.id,
            status=status,
            external_reference=external_reference,
            status_detail=detail,
            payment_intent_id=intent_id,
            payment_method=payment_method,
            amount=getattr(session, "amount_total", None),
        )

    def expire_checkout(self, session_id: Optional[str]) -> bool:
        """未完了の Checkout Session を失効させる (失敗してもログのみ)"""
        if not session_id:
            return False
        _init_stripe()
        try:
            stripe.checkout.Session.expire(session_id)
            logger.info(f"Checkout Session失効: session={session_id}")
            return True
        except stripe.StripeError as e:
            logger.warning(f"Checkout Session失効失敗: session={session_id}, error={e}")
            return False

    def construct_event(self, payload: bytes, sig_header: str):
        """Webhook イベントを構築・署名検証"""
        return stripe.Webhook.construct_event(payload, sig_header, settings.STRIPE_WEBHOOK_SECRET)


_gateway: Optional[StripeGateway] = None


def get_payment_gateway() -> StripeGateway:
    """FastAPI依存性 / スケジューラ用のゲートウェイ取得"""
    global _gateway
    if _gateway is None:
        _gateway = StripeGateway()
    return _gateway
