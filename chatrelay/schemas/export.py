"""Export API schemas."""

from __future__ import annotations

from typing import Literal

from chatrelay.schemas.conversation import CamelModel, Conversation

ExportFormat = Literal["markdown", "json", "pdf"]


class ExportRequest(CamelModel):
    conversation: Conversation
    format: ExportFormat
