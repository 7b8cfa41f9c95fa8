from fastapi import APIRouter
from app.core.config import settings
from app.core.database import check_db_connection
from app.core.redis import check_redis_connection, get_scheduler_heartbeat
from app.scheduler.validation_scheduler import get_validation_scheduler

router = APIRouter()


@router.get("/health")
@router.get("/api/health")
async def health_check():
    """ヘルスチェックエンドポイント"""
    db_ok = check_db_connection()
    redis_ok = await check_redis_connection()

    scheduler = get_validation_scheduler()
    if scheduler is not None:
        scheduler_status = scheduler.status()
    else:
        # 別プロセス運用時はRedisのハートビートで確認
        scheduler_status = {
            "running": None,
            "enabled_in_process": settings.SCHEDULER_ENABLED,
            "last_run_at": await get_scheduler_heartbeat() if redis_ok else None,
        }

    status = "ok" if (db_ok and redis_ok) else "degraded"

    return {
        "status": status,
        "db": "connected" if db_ok else "disconnected",
        "redis": "connected" if redis_ok else "disconnected",
        "scheduler": scheduler_status,
    }
