"""Settings via pydantic-settings with PROSPECTOR_ env prefix.

Credentials and DB connection fields use validation_alias to read the same
unprefixed env vars (DATABASE_URL, DB_PASSWORD, OPENAI_API_KEY, ...) that the
deployment's docker-compose file uses, so a single .env drives both.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PROSPECTOR_", env_file=".env", extra="ignore")

    # DB connection -- DATABASE_URL wins over the discrete fields when set
    database_url: str = Field("", validation_alias="DATABASE_URL")
    db_host: str = Field("localhost", validation_alias="DB_HOST")
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("prospector", validation_alias="DB_USER")
    db_password: str = Field("prospector_dev_password", validation_alias="DB_PASSWORD")
    db_name: str = Field("prospector", validation_alias="DB_NAME")

    db_pool_size: int = 10
    db_max_overflow: int = 5
    auto_create_schema: bool = True
    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000

    # Assistant run API
    openai_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    openai_base_url: str = "https://api.openai.com/v1"
    assistant_id: str = ""  # created on startup when empty
    assistant_name: str = "Lead Generation Partner"
    assistant_model: str = "gpt-4-turbo-preview"
    run_poll_interval: float = 1.0  # seconds between run status checks
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 60  # seconds

    # Queues
    queue_poll_interval: float = 1.0  # seconds
    research_consumer_enabled: bool = True
    email_consumer_enabled: bool = True
    email_webhook_url: str = ""

    # Scheduler
    scheduler_enabled: bool = True  # False: tasks are tracked but timers never armed
    seed_default_tasks: bool = True
    schedule_model: str = "gpt-4o-mini"  # natural language -> cron fallback

    # Event bus
    event_bus_enabled: bool = True

    # Web tools
    google_search_api_key: str = Field("", validation_alias="GOOGLE_SEARCH_API_KEY")
    google_search_engine_id: str = Field("", validation_alias="GOOGLE_SEARCH_ENGINE_ID")
    web_search_daily_limit: int = 100  # Custom Search free tier
    web_fetch_max_chars: int = 10000
    web_fetch_timeout: float = 15.0  # wall-clock ceiling for a page fetch

    @model_validator(mode="after")
    def _validate_intervals(self) -> "Settings":
        for name in ("run_poll_interval", "queue_poll_interval", "web_fetch_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        return self

    @property
    def db_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"
