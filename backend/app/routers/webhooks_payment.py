"""決済ゲートウェイ Webhook ルーター"""
from fastapi import APIRouter, Depends, HTTPException, Request

from app.core.database import SessionLocal
from app.core.logging import get_logger
from app.core.rate_limit import limiter, WEBHOOK_RATE_LIMIT
from app.services.payment_reconciler import on_gateway_event
from app.services.stripe_service import HANDLED_EVENT_TYPES, get_payment_gateway

logger = get_logger(__name__)

router = APIRouter(tags=["webhooks"])


def get_session_factory():
    """Webhook処理用のセッションファクトリ (リクエストごとに独立したセッション)"""
    return SessionLocal


def _event_object_id(event) -> str | None:
    """data.object.id (Stripe形式) または data.id"""
    data = event["data"]
    try:
        return data["object"]["id"]
    except (KeyError, TypeError):
        pass
    try:
        return data["id"]
    except (KeyError, TypeError):
        return None


@router.post("/api/payment-webhook")
@limiter.limit(WEBHOOK_RATE_LIMIT)
async def payment_webhook(
    request: Request,
    gateway=Depends(get_payment_gateway),
    session_factory=Depends(get_session_factory),
):
    """決済Webhook

    照合結果 (適用・失敗・保留・重複・不整合) に関わらず200を返す。
    ゲートウェイ障害やDB障害で処理できなかった場合は500を返し、ゲートウェイの再送に任せる。
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    try:
        event = gateway.construct_event(payload, sig_header)
    except Exception as e:
        logger.error(f"決済Webhook署名検証失敗: {e}")
        raise HTTPException(status_code=401, detail="Invalid signature")

    event_id = event["id"]
    event_type = event["type"]

    if event_type not in HANDLED_EVENT_TYPES:
        logger.info(f"未処理の決済イベント: {event_type}")
        return {"received": True}

    object_id = _event_object_id(event)
    if not object_id:
        logger.warning(f"決済Webhook: 対象IDなし ({event_id}, {event_type})")
        return {"received": True}

    # ゲートウェイから最新状態を再取得して照合
    db = session_factory()
    try:
        outcome = on_gateway_event(db, gateway, event_type, object_id, event_id)
    except Exception as e:
        logger.error(f"決済Webhook処理エラー: {event_id} ({event_type}) - {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Webhook processing failed")
    finally:
        db.close()

    logger.info(f"決済Webhook処理完了: {event_id} ({event_type}) object={object_id} → {outcome}")
    return {"received": True}
