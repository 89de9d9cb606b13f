"""Application settings schemas (global prompt, theme, presets, credentials)."""

from __future__ import annotations

from typing import Literal

from pydantic import Field

from chatrelay.schemas.conversation import CamelModel

ThemeMode = Literal["light", "dark"]
FontSize = Literal["small", "medium", "large"]


class ThemeConfig(CamelModel):
    mode: ThemeMode = "light"
    primary_color: str = "#667eea"
    font_size: FontSize = "medium"


class PresetPrompt(CamelModel):
    id: str
    name: str
    prompt: str
    icon: str = ""


class ApiConfig(CamelModel):
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    google_api_key: str = ""


DEFAULT_PRESET_PROMPTS = [
    PresetPrompt(
        id="translator",
        name="Translator",
        prompt="You are a professional translator, fluent in Chinese and English.",
        icon="🌐",
    ),
    PresetPrompt(
        id="coder",
        name="Code Expert",
        prompt="You are a senior software engineer who excels at code review and optimisation.",
        icon="💻",
    ),
    PresetPrompt(
        id="writer",
        name="Writing Assistant",
        prompt="You are a professional writing assistant who polishes and drafts prose.",
        icon="✍️",
    ),
]


class AppSettings(CamelModel):
    global_system_prompt: str = "You are a helpful AI assistant."
    theme: ThemeConfig = Field(default_factory=ThemeConfig)
    preset_prompts: list[PresetPrompt] = Field(
        default_factory=lambda: [p.model_copy() for p in DEFAULT_PRESET_PROMPTS]
    )
    api_config: ApiConfig = Field(default_factory=ApiConfig)

    def request_credentials(self) -> dict[str, str]:
        """Per-request credential headers for the keys the user has filled in."""
        headers: dict[str, str] = {}
        if self.api_config.openai_api_key:
            headers["x-openai-api-key"] = self.api_config.openai_api_key
        if self.api_config.anthropic_api_key:
            headers["x-anthropic-api-key"] = self.api_config.anthropic_api_key
        if self.api_config.google_api_key:
            headers["x-google-api-key"] = self.api_config.google_api_key
        return headers


class ApiConfigOut(CamelModel):
    """Credential presence only; key values are never sent back."""

    openai_configured: bool
    anthropic_configured: bool
    google_configured: bool


class AppSettingsOut(CamelModel):
    global_system_prompt: str
    theme: ThemeConfig
    preset_prompts: list[PresetPrompt]
    api_config: ApiConfigOut


class ThemeUpdate(CamelModel):
    mode: ThemeMode | None = None
    primary_color: str | None = None
    font_size: FontSize | None = None


class ApiConfigUpdate(CamelModel):
    openai_api_key: str | None = None
    anthropic_api_key: str | None = None
    google_api_key: str | None = None


class AppSettingsUpdate(CamelModel):
    """PATCH body — all fields optional."""

    global_system_prompt: str | None = None
    theme: ThemeUpdate | None = None
    preset_prompts: list[PresetPrompt] | None = None
    api_config: ApiConfigUpdate | None = None
