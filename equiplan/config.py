from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field
from rich.console import Console
from rich.logging import RichHandler

DATA_DIR = Path(__file__).parent / "data"


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _resolve_db_path() -> Path:
    override = _env("EQUIPLAN_DB_PATH")
    if override:
        return Path(override).expanduser().resolve()
    return DATA_DIR / "equiplan.db"


class Settings(BaseModel):
    database_path: Path = Field(default_factory=_resolve_db_path)
    database_url: str = Field(default_factory=lambda: _env("EQUIPLAN_DATABASE_URL"))
    host: str = Field(default_factory=lambda: _env("EQUIPLAN_HOST", "127.0.0.1"))
    port: int = Field(default_factory=lambda: int(_env("EQUIPLAN_PORT", "8002")))
    log_level: str = Field(default_factory=lambda: _env("EQUIPLAN_LOG_LEVEL", "INFO").upper())
    mcp_user_id: str = Field(default_factory=lambda: _env("EQUIPLAN_USER_ID"))

    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.database_path}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str | None = None, *, stderr: bool = False) -> None:
    """Install a RichHandler on the root logger.

    Pass ``stderr=True`` when stdout carries a protocol stream (MCP stdio).
    """
    level_name = (level or get_settings().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=stderr), show_time=False, show_path=False)],
        force=True,
    )
