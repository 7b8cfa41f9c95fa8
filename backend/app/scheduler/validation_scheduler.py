"""購読検証スケジューラ (APScheduler BackgroundScheduler)

起動直後に1回、その後 SCHEDULER_INTERVAL_HOURS ごとに run_all_validations を実行する。
プロセスのライフサイクル管理側が start() / stop() を呼ぶ。
"""
import json
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from app.core.config import settings
from app.core.logging import get_logger
from app.services.subscription_validation_service import run_all_validations

logger = get_logger(__name__)

JOB_ID = "subscription_validation"
INITIAL_JOB_ID = "subscription_validation_initial"
HEARTBEAT_KEY = "scheduler:heartbeat"
SUMMARY_KEY = "scheduler:last_summary"


class ValidationScheduler:
    def __init__(self, session_factory, notifier, gateway, redis_client=None, scheduler=None):
        self.session_factory = session_factory
        self.notifier = notifier
        self.gateway = gateway
        self.redis_client = redis_client
        self.scheduler = scheduler or BackgroundScheduler(timezone="UTC")
        self.interval_hours = settings.SCHEDULER_INTERVAL_HOURS
        self.initial_delay_seconds = settings.SCHEDULER_INITIAL_DELAY_SECONDS
        self.last_run_at: Optional[datetime] = None
        self.last_summary: Optional[dict] = None
        self.run_count = 0
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return bool(self.scheduler.running)

    def start(self):
        """定期ジョブと起動直後の1回分を登録して開始"""
        if self.running:
            logger.warning("スケジューラは既に起動しています")
            return
        self.scheduler.add_job(
            self.run_once,
            IntervalTrigger(hours=self.interval_hours),
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.run_once,
            DateTrigger(run_date=datetime.now(timezone.utc) + timedelta(seconds=self.initial_delay_seconds)),
            id=INITIAL_JOB_ID,
            max_instances=1,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(f"購読検証スケジューラ起動: {self.interval_hours}時間ごと (初回 {self.initial_delay_seconds}秒後)")

    def stop(self, wait: bool = True):
        """タイマーを止め、実行中のスイープは完了を待つ"""
        if not self.running:
            return
        self.scheduler.shutdown(wait=wait)
        logger.info("購読検証スケジューラ停止")

    def run_once(self, now: datetime = None) -> Optional[dict]:
        """全スイープを1回実行 (同時実行はしない)"""
        if not self._lock.acquire(blocking=False):
            logger.info("前回の購読検証が実行中のためスキップ")
            return None
        try:
            logger.info("購読検証開始")
            summary = run_all_validations(self.session_factory, self.notifier, self.gateway, now=now)
            self.last_run_at = datetime.now(timezone.utc)
            self.last_summary = summary
            self.run_count += 1
            self._write_heartbeat()
            return summary
        except Exception as e:
            logger.error(f"購読検証エラー: {e}", exc_info=True)
            return None
        finally:
            self._lock.release()

    def status(self) -> dict:
        next_run = None
        if self.running:
            job = self.scheduler.get_job(JOB_ID)
            if job is not None and job.next_run_time is not None:
                next_run = job.next_run_time.isoformat()
        return {
            "running": self.running,
            "interval_hours": self.interval_hours,
            "run_count": self.run_count,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "next_run_at": next_run,
            "last_summary": self.last_summary,
        }

    def _write_heartbeat(self):
        """Redisにハートビートと直近のサマリーを書き込む (失敗してもログのみ)"""
        if self.redis_client is None:
            return
        try:
            ttl = int(self.interval_hours * 3600 * 2)
            self.redis_client.set(HEARTBEAT_KEY, self.last_run_at.isoformat(), ex=ttl)
            self.redis_client.set(SUMMARY_KEY, json.dumps(self.last_summary, default=str), ex=ttl)
        except Exception as e:
            logger.warning(f"スケジューラのハートビート書き込み失敗: {e}")


_scheduler: Optional[ValidationScheduler] = None


def get_validation_scheduler() -> Optional[ValidationScheduler]:
    return _scheduler


def set_validation_scheduler(scheduler: Optional[ValidationScheduler]):
    global _scheduler
    _scheduler = scheduler
