from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field

DATA_DIR = Path(__file__).parent / "data"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else default


def _resolve_db_path() -> Path:
    override = os.getenv("APEX_DB_PATH", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return DATA_DIR / "apex.db"


class Settings(BaseModel):
    database_path: Path = Field(default_factory=_resolve_db_path)
    cookie_name: str = Field(default_factory=lambda: os.getenv("APEX_COOKIE_NAME", "apx"))
    session_ttl_seconds: int = Field(default_factory=lambda: _env_int("APEX_SESSION_TTL", 60 * 60 * 24 * 7))
    deal_page_size: int = Field(default_factory=lambda: _env_int("APEX_DEAL_PAGE_SIZE", 100))

    @property
    def database_url(self) -> str:
        return f"sqlite:///{self.database_path}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
