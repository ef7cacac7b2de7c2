from __future__ import annotations

import hashlib
import logging
import os
from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    secret_key: str = Field(default="CHANGE_ME", alias="SECRET_KEY")
    algorithm: str = Field(default="HS256", alias="ALGORITHM")
    token_ttl_minutes: int = Field(default=60 * 24 * 7, alias="TOKEN_TTL_MINUTES")

    database_url: str = Field(default="sqlite+aiosqlite:///./app.db", alias="DATABASE_URL")
    origin: str = Field(default="", alias="ORIGIN")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    heartbeat_interval_sec: float = Field(default=30.0, alias="HEARTBEAT_INTERVAL_SEC")
    event_queue_size: int = Field(default=100, alias="EVENT_QUEUE_SIZE")
    target_score: Optional[int] = Field(default=None, alias="TARGET_SCORE")

    class Config:
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True

    def allowed_origins(self) -> List[str]:
        """
        Splits ORIGIN by commas, dropping blanks.
        Example: "https://cards.example.com, https://www.cards.example.com"
        """
        extra = [x.strip() for x in self.origin.split(",") if x.strip()]
        return ["http://localhost:3000"] + extra

    def masked_secret(self) -> str:
        if not self.secret_key:
            return "<empty>"
        if len(self.secret_key) <= 4:
            return "***"
        return f"{self.secret_key[:2]}***{self.secret_key[-2:]}"

    def log_status(self) -> None:
        env_name = os.getenv("ENV", "unknown")
        secret_hash = hashlib.sha256(self.secret_key.encode()).hexdigest()[:8]
        logger.info(
            "Settings: secret_key=%s (hash=%s), database=%s, target_score=%s, env=%s",
            self.masked_secret(),
            secret_hash,
            self.database_url.split("://", 1)[0],
            self.target_score,
            env_name,
        )


@lru_cache()
def get_settings() -> Settings:
    settings = Settings()
    settings.log_status()
    return settings


settings = get_settings()
