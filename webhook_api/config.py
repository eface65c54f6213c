import os
from typing import Optional


DEFAULT_DATABASE_URL = "sqlite:////data/app.db"


class Settings:
    def __init__(
        self,
        database_url: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        log_level: Optional[str] = None,
    ) -> None:
        raw_url = database_url if database_url is not None else os.getenv("DATABASE_URL")
        self.DATABASE_URL: str = (raw_url or DEFAULT_DATABASE_URL).strip()

        raw_secret = webhook_secret if webhook_secret is not None else os.getenv("WEBHOOK_SECRET")
        raw_secret = (raw_secret or "").strip()
        # empty secret counts as not configured
        self.WEBHOOK_SECRET: str | None = raw_secret or None

        raw_level = (log_level or os.getenv("LOG_LEVEL") or "INFO").upper()
        self.LOG_LEVEL: str = "DEBUG" if raw_level == "DEBUG" else "INFO"


settings = Settings()
