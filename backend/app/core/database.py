from typing import Callable, TypeVar

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker, DeclarativeBase
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import settings
from app.core.errors import ConcurrentMutationConflict
from app.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

engine = create_engine(
    settings.DATABASE_URL,
    pool_size=10,
    max_overflow=20,
    pool_recycle=3600,
    pool_pre_ping=True,
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    pass


def get_db():
    """FastAPI依存関数: DBセッション取得"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def run_in_transaction(db: Session, work: Callable[[], T], max_retries: int = None) -> T:
    """work() を1トランザクションで実行してコミットする

    購読行のバージョン競合 (StaleDataError) はロールバック後に最新行を読み直して再実行する。
    work() は毎回DBから読み直す前提で書くこと。それ以外の例外はロールバックして再送出。
    """
    retries = settings.CONCURRENCY_MAX_RETRIES if max_retries is None else max_retries
    attempt = 0
    while True:
        try:
            result = work()
            db.commit()
            return result
        except StaleDataError:
            db.rollback()
            attempt += 1
            if attempt > retries:
                logger.error(f"楽観ロック競合: リトライ上限到達 ({retries}回)")
                raise ConcurrentMutationConflict("購読が同時に更新されました。再度お試しください")
            logger.warning(f"楽観ロック競合: 再実行 {attempt}/{retries}")
        except Exception:
            db.rollback()
            raise


def check_db_connection() -> bool:
    """DB接続チェック"""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False
