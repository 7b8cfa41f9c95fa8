"""購読APIのレート制限 (slowapi)

プラン変更系はチェックアウト作成を伴うため、クライアントごとに低めの上限を設ける。
"""
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.requests import Request
from starlette.responses import JSONResponse

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)


def get_client_ip(request: Request) -> str:
    """制限のキー: リバースプロキシ配下では X-Forwarded-For の先頭"""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return get_remote_address(request)


limiter = Limiter(
    key_func=get_client_ip,
    default_limits=["100/minute"],
    storage_uri=settings.RATE_LIMIT_STORAGE_URI,
)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning(f"レート制限超過: {request.method} {request.url.path} client={get_client_ip(request)} ({exc.detail})")
    return JSONResponse(
        status_code=429,
        content={
            "detail": "リクエスト回数が上限を超えました。しばらく待ってから再度お試しください。",
            "retry_after": exc.detail,
        },
    )


# エンドポイント別の上限
CHANGE_PLAN_RATE_LIMIT = "10/minute"      # プラン変更: 決済ページを都度作成する
CANCEL_RATE_LIMIT = "3/minute"            # 解約: 即時にフリープランへ戻すため連打を防ぐ
RENEWAL_PAYMENT_RATE_LIMIT = "5/minute"   # 更新決済の作成
WEBHOOK_RATE_LIMIT = "120/minute"         # 決済Webhook: ゲートウェイの一斉再送を受けられる値
