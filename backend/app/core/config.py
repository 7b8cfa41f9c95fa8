from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """アプリケーション設定"""

    # データベース
    DATABASE_URL: str = "mysql+pymysql://billing:billingpassword@db:3306/plan_billing?charset=utf8mb4"

    # Redis
    REDIS_URL: str = "redis://redis:6379/0"
    # レート制限カウンタの保存先 (複数ワーカー構成では REDIS_URL と同じ Redis を指定)
    RATE_LIMIT_STORAGE_URI: str = "memory://"

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""

    # Resend
    RESEND_API_KEY: str = ""
    RESEND_FROM_EMAIL: str = "noreply@example.com"

    # サービス設定
    SITE_URL: str = "http://localhost:8000"
    SITE_NAME: str = "Plan Billing"
    ALLOWED_ORIGINS: str = "http://localhost:8000,http://localhost:3000"

    # 課金 (単一通貨・ゼロ小数通貨前提)
    CURRENCY: str = "jpy"
    YEARLY_DISCOUNT_PERCENT: int = 10

    # セッション
    SESSION_TIMEOUT_MINUTES: int = 60

    # スケジューラ
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_INTERVAL_HOURS: int = 6
    SCHEDULER_INITIAL_DELAY_SECONDS: int = 5
    RENEWAL_WARNING_DAYS: int = 7
    RENEWAL_URGENT_DAYS: int = 3
    FAILED_PAYMENT_LOOKBACK_HOURS: int = 24

    # 楽観ロック競合時のリトライ回数
    CONCURRENCY_MAX_RETRIES: int = 3

    # 環境
    ENV: str = "development"
    DEBUG: bool = True

    @property
    def allowed_origins_list(self) -> list[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
