"""User-facing application settings stored as settings.json in the data dir."""

from __future__ import annotations

import logging
from pathlib import Path

from chatrelay.config import get_chatrelay_dir
from chatrelay.schemas.settings import (
    ApiConfigOut,
    AppSettings,
    AppSettingsOut,
    AppSettingsUpdate,
)

logger = logging.getLogger(__name__)


def settings_path() -> Path:
    return get_chatrelay_dir() / "settings.json"


def load_app_settings() -> AppSettings:
    """Load settings.json, writing the static defaults on first load."""
    path = settings_path()
    if path.exists():
        try:
            return AppSettings.model_validate_json(path.read_text(encoding="utf-8"))
        except Exception:
            logger.warning("Failed to parse %s, using defaults", path, exc_info=True)
            return AppSettings()
    app_settings = AppSettings()
    save_app_settings(app_settings)
    return app_settings


def save_app_settings(app_settings: AppSettings) -> None:
    path = settings_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(app_settings.model_dump_json(by_alias=True, indent=2), encoding="utf-8")


def apply_update(current: AppSettings, update: AppSettingsUpdate) -> AppSettings:
    """Merge a partial update; theme and api_config merge field by field."""
    changes = update.model_dump(exclude_unset=True, exclude_none=True)
    merged: dict = {}
    if "global_system_prompt" in changes:
        merged["global_system_prompt"] = changes["global_system_prompt"]
    if "preset_prompts" in changes:
        merged["preset_prompts"] = list(update.preset_prompts or [])
    if "theme" in changes:
        merged["theme"] = current.theme.model_copy(update=changes["theme"])
    if "api_config" in changes:
        keys = {k: v.strip() for k, v in changes["api_config"].items()}
        merged["api_config"] = current.api_config.model_copy(update=keys)
    return current.model_copy(update=merged)


def to_public(app_settings: AppSettings) -> AppSettingsOut:
    api = app_settings.api_config
    return AppSettingsOut(
        global_system_prompt=app_settings.global_system_prompt,
        theme=app_settings.theme,
        preset_prompts=app_settings.preset_prompts,
        api_config=ApiConfigOut(
            openai_configured=bool(api.openai_api_key),
            anthropic_configured=bool(api.anthropic_api_key),
            google_configured=bool(api.google_api_key),
        ),
    )
