from pydantic_settings import BaseSettings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


class Settings(BaseSettings):
    database_url: str | None = None  # Postgres store when set, in-memory otherwise
    redis_url: str | None = None  # Redis delivery queue when set, in-memory otherwise
    log_level: str = "INFO"

    worker_concurrency: int = 10  # max concurrent deliveries (semaphore limit)
    worker_in_process: bool = True  # run the delivery worker inside the API process
    worker_poll_timeout: float = 5.0

    webhook_timeout_seconds: float = 30.0  # per delivery attempt
    webhook_max_attempts: int = 5  # after this many failed attempts, move to DLQ
    webhook_backoff_base_seconds: float = 1.0
    webhook_backoff_max_seconds: float = 900.0
    webhook_user_agent: str = "Orderflow-Webhook/1.0"

    order_lock_timeout_seconds: float = 5.0  # wait for the per-order lock before PersistenceConflict

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
