import os
from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # 数据库配置
    POSTGRES_USER: str = os.getenv("POSTGRES_USER", "postgres")
    POSTGRES_PASSWORD: str = os.getenv("POSTGRES_PASSWORD", "123456")
    POSTGRES_HOST: str = os.getenv("POSTGRES_HOST", "localhost")
    POSTGRES_PORT: int = int(os.getenv("POSTGRES_PORT", "5432"))
    POSTGRES_DB: str = os.getenv("POSTGRES_DB", "mydb")
    # 完整连接串（优先级高于上面的分项配置，测试环境可指向 SQLite）
    DATABASE_URL: Optional[str] = os.getenv("DATABASE_URL")

    # Redis 配置
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_DB: int = int(os.getenv("REDIS_DB", "0"))

    # 预占配置
    RESERVATION_TTL_MINUTES: int = 15
    MAX_ACTIVE_RESERVATIONS_PER_OWNER: int = 10
    OPTIMISTIC_RETRY_LIMIT: int = 5
    CLEANUP_BATCH_SIZE: int = 500

    # 展示缓存配置（仅供商品展示，不参与预占判断）
    STOCK_CACHE_TTL_SECONDS: int = 300
    STOCK_UPDATE_TTL_SECONDS: int = 60

    # Webhook 配置
    WEBHOOK_SECRET: str = os.getenv("WOOCOMMERCE_WEBHOOK_SECRET", "")
    WEBHOOK_SIGNATURE_HEADER: str = "X-WC-Webhook-Signature"
    WEBHOOK_TOPIC_HEADER: str = "X-WC-Webhook-Topic"
    WEBHOOK_SIGNATURE_FORMATS: List[str] = ["base64"]
    WEBHOOK_DEDUPE_RETENTION_HOURS: int = 72
    WEBHOOK_TIMEOUT_SECONDS: int = 10

    # 内部接口令牌（定时任务触发、人工调整库存）
    INTERNAL_API_TOKEN: str = os.getenv("INTERNAL_API_TOKEN", "")

    # 远端电商后台查询 API（WooCommerce REST）
    COMMERCE_API_URL: str = os.getenv("COMMERCE_API_URL", "")
    COMMERCE_CONSUMER_KEY: str = os.getenv("COMMERCE_CONSUMER_KEY", "")
    COMMERCE_CONSUMER_SECRET: str = os.getenv("COMMERCE_CONSUMER_SECRET", "")
    COMMERCE_API_TIMEOUT_SECONDS: int = 5

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg://"
            f"{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/"
            f"{self.POSTGRES_DB}"
        )

    @property
    def redis_url(self) -> str:
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"


settings = Settings()
