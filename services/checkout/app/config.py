"""
Checkout Service — 設定

環境変数から一度だけ読み込み、以降は不変の Settings として扱う。
テストでは Settings を直接組み立てて注入する。
"""

import os
from dataclasses import dataclass


def _flag(value: str | None, default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite+aiosqlite:///./checkout.db"
    redis_url: str = "redis://localhost:6379"

    razorpay_key_id: str | None = None
    razorpay_key_secret: str | None = None
    razorpay_api_url: str = "https://api.razorpay.com/v1"
    gateway_timeout: float = 30.0

    currency: str = "INR"
    store_name: str = "Rajesh Renewed"

    smtp_host: str | None = None
    smtp_port: int | None = None
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_from: str | None = None

    create_schema: bool = True
    notification_worker: bool = True
    log_level: str = "INFO"

    @property
    def email_configured(self) -> bool:
        # ユーザー名だけ設定されてパスワードが無い場合は未設定扱い
        return bool(
            self.smtp_host
            and self.smtp_port
            and self.smtp_from
            and (self.smtp_user is None or self.smtp_password)
        )


def load_settings() -> Settings:
    """環境変数から Settings を構築する。"""
    env = os.environ
    smtp_port = env.get("SMTP_PORT")
    return Settings(
        database_url=env.get("DATABASE_URL", Settings.database_url),
        redis_url=env.get("REDIS_URL", Settings.redis_url),
        razorpay_key_id=env.get("RAZORPAY_KEY_ID") or None,
        razorpay_key_secret=env.get("RAZORPAY_KEY_SECRET") or None,
        razorpay_api_url=env.get("RAZORPAY_API_URL", Settings.razorpay_api_url),
        gateway_timeout=float(env.get("GATEWAY_TIMEOUT", Settings.gateway_timeout)),
        currency=env.get("STORE_CURRENCY", Settings.currency),
        store_name=env.get("STORE_NAME", Settings.store_name),
        smtp_host=env.get("SMTP_HOST") or None,
        smtp_port=int(smtp_port) if smtp_port else None,
        smtp_user=env.get("SMTP_USER") or None,
        smtp_password=env.get("SMTP_PASS") or None,
        smtp_from=env.get("SMTP_FROM") or None,
        create_schema=_flag(env.get("CREATE_SCHEMA"), True),
        notification_worker=_flag(env.get("NOTIFICATION_WORKER"), True),
        log_level=env.get("LOG_LEVEL", Settings.log_level).upper(),
    )
