from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from app.core.config import settings
from app.core.database import SessionLocal
from app.core.errors import SubscriptionError
from app.core.logging import setup_logging, get_logger
from app.core.rate_limit import limiter, rate_limit_exceeded_handler
from app.core.redis import get_sync_redis
from app.routers import health, subscriptions, plans, webhooks_payment
from app.scheduler.validation_scheduler import ValidationScheduler, set_validation_scheduler
from app.services.notification_service import get_notifier
from app.services.stripe_service import get_payment_gateway

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """アプリケーションライフサイクル管理 (購読検証スケジューラの起動・停止)"""
    setup_logging(debug=settings.DEBUG)
    logger.info("アプリケーション起動")

    scheduler = None
    if settings.SCHEDULER_ENABLED:
        scheduler = ValidationScheduler(
            SessionLocal,
            get_notifier(),
            get_payment_gateway(),
            redis_client=get_sync_redis(),
        )
        scheduler.start()
        set_validation_scheduler(scheduler)

    yield

    if scheduler is not None:
        scheduler.stop()
        set_validation_scheduler(None)
    logger.info("アプリケーション終了")


app = FastAPI(
    title=settings.SITE_NAME,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.DEBUG else None,
    redoc_url="/api/redoc" if settings.DEBUG else None,
)

# レート制限設定
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


@app.exception_handler(SubscriptionError)
async def subscription_error_handler(request: Request, exc: SubscriptionError):
    if exc.status_code >= 500:
        logger.error(f"購読処理エラー: {request.url.path} - {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# --- バリデーションエラー日本語化 ---
_FIELD_JA = {
    "newPlanType": "プラン",
    "new_plan_type": "プラン",
    "subscriptionId": "購読ID",
    "subscription_id": "購読ID",
    "billingCycle": "請求サイクル",
    "billing_cycle": "請求サイクル",
    "reason": "解約理由",
    "page": "ページ",
    "limit": "件数",
    "payment_id": "決済ID",
}


def _translate_error(err: dict) -> str:
    t = err.get("type", "")
    ctx = err.get("ctx", {})
    loc = err.get("loc", [])
    field = str(loc[-1]) if loc else ""
    fj = _FIELD_JA.get(field, field)

    if t == "missing":
        return f"{fj}は必須です"
    if t in ("int_parsing", "int_type"):
        return f"{fj}は数値で入力してください"
    if t == "greater_than_equal":
        return f"{fj}は{ctx.get('ge', '')}以上の値を入力してください"
    if t == "less_than_equal":
        return f"{fj}は{ctx.get('le', '')}以下の値を入力してください"
    if t == "string_type":
        return f"{fj}は文字列で入力してください"
    return f"{fj}: 入力値が不正です"


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    messages = [_translate_error(e) for e in exc.errors()]
    return JSONResponse(status_code=422, content={"detail": "、".join(messages)})


# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ルーター登録
app.include_router(health.router)
app.include_router(subscriptions.router)
app.include_router(plans.router)
app.include_router(webhooks_payment.router)
