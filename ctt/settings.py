# -*- coding: utf-8 -*-
"""
Application settings

Values come from the environment (``CTT_`` prefix) or a ``.env`` file.
"""

import os

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Local data
    DATA_DIR: str = os.path.join(os.path.expanduser("~"), "Documents", "CTT")
    DB_FILENAME: str = "data.db"

    # Sync
    SYNC_INTERVAL_SECONDS: int = 15
    SYNC_MAX_BACKOFF_SECONDS: int = 300
    REMOTE_TIMEOUT_SECONDS: int = 10
    REMOTE_STATEMENT_TIMEOUT_MS: int = 15000
    PUSH_BATCH_SIZE: int = 100
    PULL_OVERLAP_SECONDS: int = 30

    # Admin API (JWT)
    SECRET_KEY: str = "ctt-admin-secret-change-this"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # Server
    HOST: str = "127.0.0.1"
    PORT: int = 3847
    LOG_LEVEL: str = "INFO"

    class Config:
        env_prefix = "CTT_"
        env_file = ".env"

    @property
    def db_path(self) -> str:
        return os.path.join(self.DATA_DIR, self.DB_FILENAME)


settings = Settings()
