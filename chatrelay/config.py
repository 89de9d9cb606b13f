"""Pydantic settings loaded from .env, with conf.json overlay."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent

# ---------------------------------------------------------------------------
# conf.json: runtime config (separate from .env secrets)
# ---------------------------------------------------------------------------


def get_chatrelay_dir() -> Path:
    """Resolve the chatrelay data directory. CHATRELAY_DIR env var or ~/.config/chatrelay."""
    d = os.environ.get("CHATRELAY_DIR", "")
    return Path(d).expanduser() if d else Path.home() / ".config" / "chatrelay"


class ChatRelayConfig(BaseModel):
    storage_dir: str = ""
    log_level: str = ""
    log_file: str = ""
    default_model: str = ""
    title_model: str = ""
    first_token_timeout_seconds: float | None = None
    storage_max_retries: int | None = None
    cors_allow_all_origins: bool | None = None  # None = use Settings default


_logger = logging.getLogger(__name__)


def load_conf() -> ChatRelayConfig:
    """Load conf.json from the chatrelay data directory."""
    conf_path = get_chatrelay_dir() / "conf.json"
    if conf_path.exists():
        try:
            return ChatRelayConfig.model_validate_json(conf_path.read_text())
        except Exception:
            _logger.warning("Failed to parse %s, using defaults", conf_path, exc_info=True)
    return ChatRelayConfig()


def save_conf(config: ChatRelayConfig) -> None:
    """Save conf.json to the chatrelay data directory."""
    data_dir = get_chatrelay_dir()
    data_dir.mkdir(parents=True, exist_ok=True)
    (data_dir / "conf.json").write_text(config.model_dump_json(indent=2))


# ---------------------------------------------------------------------------
# Bootstrap: load .env, load conf.json
# ---------------------------------------------------------------------------

_env_file = BASE_DIR.parent / ".env"
load_dotenv(_env_file)
_conf = load_conf()

# ---------------------------------------------------------------------------
# Settings (pydantic-settings): .env / env vars override conf.json defaults
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    DEBUG: bool = False

    # Process-wide provider credentials; per-request headers take precedence.
    OPENAI_API_KEY: str = ""
    ANTHROPIC_API_KEY: str = ""
    GOOGLE_GENERATIVE_AI_API_KEY: str = ""

    CHAT_STORAGE_DIR: str = _conf.storage_dir or str(get_chatrelay_dir() / "conversations")

    DEFAULT_MODEL: str = _conf.default_model or "gpt-4o"
    TITLE_MODEL: str = _conf.title_model or "gpt-4o-mini"

    FIRST_TOKEN_TIMEOUT_SECONDS: float = (
        _conf.first_token_timeout_seconds if _conf.first_token_timeout_seconds is not None else 60.0
    )
    STORAGE_MAX_RETRIES: int = (
        _conf.storage_max_retries if _conf.storage_max_retries is not None else 3
    )
    STORAGE_RETRY_DELAY_SECONDS: float = 0.5

    CORS_ALLOW_ALL_ORIGINS: bool = (
        _conf.cors_allow_all_origins if _conf.cors_allow_all_origins is not None else True
    )

    LOG_LEVEL: str = _conf.log_level or "INFO"
    LOG_FILE: str = _conf.log_file or ""
    LOG_MAX_BYTES: int = 10_485_760
    LOG_BACKUP_COUNT: int = 5

    model_config = SettingsConfigDict(
        env_file=str(BASE_DIR.parent / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()
