"""Settings API: global prompt, theme, presets and provider keys."""

from __future__ import annotations

import logging

from fastapi import APIRouter

from chatrelay.schemas.settings import AppSettingsOut, AppSettingsUpdate
from chatrelay.services.app_settings import apply_update, load_app_settings, save_app_settings, to_public

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/", response_model=AppSettingsOut)
def get_settings():
    """Current settings; provider keys are reported as configured or not."""
    return to_public(load_app_settings())


@router.patch("/", response_model=AppSettingsOut)
def update_settings(payload: AppSettingsUpdate):
    updated = apply_update(load_app_settings(), payload)
    save_app_settings(updated)
    logger.info("Updated settings: %s", ", ".join(sorted(payload.model_fields_set)) or "nothing")
    return to_public(updated)
