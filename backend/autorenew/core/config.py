from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """アプリケーション設定"""

    # データベース
    DATABASE_URL: str = "mysql+pymysql://autorenew:autorenew@db:3306/autorenew?charset=utf8mb4"

    # Redis (プラン変更・解約ロック等の一時状態)
    REDIS_URL: str = "redis://redis:6379/0"
    REDIS_MAX_CONNECTIONS: int = 20

    # エグゼキュータ認証 (X-Executor-Token)
    EXECUTOR_TOKEN: str = ""

    # プラン変更スケジュールのリトライ設定
    PLAN_CHANGE_MAX_RETRIES: int = 10
    PLAN_CHANGE_BASE_DELAY_SECONDS: int = 60
    PLAN_CHANGE_MAX_DELAY_SECONDS: int = 6 * 60 * 60
    PLAN_CHANGE_OVERDUE_MAX_DELAY_SECONDS: int = 15 * 60
    PLAN_CHANGE_MIN_DELAY_SECONDS: int = 30
    PLAN_CHANGE_ALERT_ATTEMPTS: str = "1,3,5"

    # アラート Webhook
    ALERT_WEBHOOK_URL: str = ""
    ALERT_WEBHOOK_TOKEN: str = ""
    ALERT_WEBHOOK_TIMEOUT_SECONDS: float = 5.0

    # 課金対象フィード
    DUE_BATCH_LIMIT: int = 100
    DUE_BATCH_MAX_LIMIT: int = 500

    # クライアントAPIのレート制限 (複数プロセス構成では redis://... を指定)
    RATE_LIMIT_STORAGE_URI: str = "memory://"
    TRUST_FORWARDED_FOR: bool = False

    # サービス設定
    SITE_NAME: str = "Auto Renew Service"
    ALLOWED_ORIGINS: str = "http://localhost:8000,http://localhost:3000"

    # 環境
    ENV: str = "development"
    DEBUG: bool = True

    @property
    def allowed_origins_list(self) -> list[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]

    @property
    def alert_attempts_list(self) -> list[int]:
        """アラート対象の試行回数 (正の整数のみ、昇順)"""
        attempts = set()
        for raw in self.PLAN_CHANGE_ALERT_ATTEMPTS.split(","):
            raw = raw.strip()
            if raw.isdigit() and int(raw) > 0:
                attempts.add(int(raw))
        return sorted(attempts)

    @property
    def is_development(self) -> bool:
        return self.ENV == "development"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
