from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


logger = logging.getLogger(__name__)

MIN_REFERRAL_CODE_LENGTH = 4


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = Field(default="trustme-ledger", alias="APP_NAME")
    data_file: Path = Field(default=Path("data/mockdb.json"), alias="DATA_FILE")
    persist_timeout: float = Field(default=5.0, alias="PERSIST_TIMEOUT")
    persist_retries: int = Field(default=2, alias="PERSIST_RETRIES")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    referral_code_length: int = Field(default=6, alias="REFERRAL_CODE_LENGTH")
    derive_referral_codes: bool = Field(default=False, alias="DERIVE_REFERRAL_CODES")
    transactions_limit: int = Field(default=100, alias="TRANSACTIONS_LIMIT")
    visitor_cookie: str = Field(default="tm_uid", alias="VISITOR_COOKIE")
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=3000, alias="PORT")

    @model_validator(mode="after")
    def _clamp_limits(self) -> "Settings":
        if self.referral_code_length < MIN_REFERRAL_CODE_LENGTH:
            logger.warning(
                "REFERRAL_CODE_LENGTH=%s is too short; using %s.",
                self.referral_code_length,
                MIN_REFERRAL_CODE_LENGTH,
            )
            object.__setattr__(self, "referral_code_length", MIN_REFERRAL_CODE_LENGTH)
        if self.persist_retries < 0:
            object.__setattr__(self, "persist_retries", 0)
        if self.persist_timeout <= 0:
            logger.warning("PERSIST_TIMEOUT must be positive; falling back to 5 seconds.")
            object.__setattr__(self, "persist_timeout", 5.0)
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
