## app/core/config.py

from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Settings for the application
    """

    model_config = SettingsConfigDict(
        env_file=".env", extra="ignore", case_sensitive=False
    )

    environment: str = "development"
    allowed_cors_urls: str = "http://localhost:3000"

    redis_host: str = "localhost"
    redis_port: str = "6379"
    redis_username: Optional[str] = None
    redis_password: Optional[str] = None

    db_host: str = "localhost"
    db_user: str = "tuition"
    db_password: str = ""
    db_database: str = "tuition"
    db_port: int = 3306

    # Full URL override, used by tests and local sqlite runs
    database_url: Optional[str] = None

    log_level: str = "INFO"
    log_json: bool = False
    log_file: Optional[str] = None

    # === Billing policy (integer amounts in the smallest currency unit) ===
    payment_min_amount: int = 1_000
    payment_max_amount: int = 500_000_000
    overpayment_threshold: int = 0
    allowed_payment_methods: str = "cash,bank_transfer,card"

    default_sibling_percent: int = 5
    low_tuition_ratio: float = 0.5
    tuition_adjustment_tolerance: int = 1_000

    concurrency_max_retries: int = 3

    recompute_batch_size: int = 100
    recompute_max_attempts: int = 5

    @property
    def async_db_url(self) -> str:
        """
        Async database URL
        """
        if self.database_url:
            return self.database_url
        return f"mysql+asyncmy://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_database}"

    @property
    def payment_methods(self) -> List[str]:
        """
        Accepted payment methods
        """
        return [m.strip().lower() for m in self.allowed_payment_methods.split(",") if m.strip()]

    @property
    def redis_url(self) -> str:
        """
        Redis connection URL
        """
        if self.redis_username and self.redis_password:
            return f"redis://{self.redis_username}:{self.redis_password}@{self.redis_host}:{self.redis_port}"
        elif self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}"
        else:
            return f"redis://{self.redis_host}:{self.redis_port}"

    @property
    def celery_broker(self) -> str:
        """
        Celery broker URL
        """
        return f"{self.redis_url}/1"

    @property
    def celery_backend(self) -> str:
        """
        Celery backend URL
        """
        return f"{self.redis_url}/2"


settings = Settings()
