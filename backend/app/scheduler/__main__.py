"""Scheduler エントリポイント: python -m app.scheduler で起動

Webプロセスとは別に購読検証スイープを動かす場合に使う (Web側は SCHEDULER_ENABLED=false)。
"""
import signal
import sys
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from app.core.config import settings
from app.core.database import SessionLocal
from app.core.logging import setup_logging, get_logger
from app.core.redis import get_sync_redis
from app.scheduler.validation_scheduler import INITIAL_JOB_ID, JOB_ID, ValidationScheduler
from app.services.notification_service import get_notifier
from app.services.stripe_service import get_payment_gateway

setup_logging(settings.DEBUG)
logger = get_logger("scheduler")

scheduler = BlockingScheduler(timezone="UTC")
validation = ValidationScheduler(
    SessionLocal,
    get_notifier(),
    get_payment_gateway(),
    redis_client=get_sync_redis(),
    scheduler=scheduler,
)


def signal_handler(sig, frame):
    logger.info("Scheduler停止シグナル受信")
    scheduler.shutdown(wait=False)
    sys.exit(0)


signal.signal(signal.SIGTERM, signal_handler)
signal.signal(signal.SIGINT, signal_handler)


def main():
    logger.info("Scheduler起動")

    # N時間ごと: 購読検証
    scheduler.add_job(
        validation.run_once,
        IntervalTrigger(hours=settings.SCHEDULER_INTERVAL_HOURS),
        id=JOB_ID,
        max_instances=1,
        coalesce=True,
    )

    # 起動直後に1回
    scheduler.add_job(
        validation.run_once,
        DateTrigger(run_date=datetime.now(timezone.utc) + timedelta(seconds=settings.SCHEDULER_INITIAL_DELAY_SECONDS)),
        id=INITIAL_JOB_ID,
        max_instances=1,
    )

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler終了")


if __name__ == "__main__":
    main()
