"""File-backed conversation storage: one JSON document per conversation."""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path

from pydantic import ValidationError

from chatrelay.schemas.conversation import Conversation
from chatrelay.services.errors import BadRequest, ConversationNotFound, StorageFailure

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]{0,199}$")


class ConversationRepository:
    """Read/write/delete ``{id}.json`` files under *storage_dir*.

    Dates are written as ISO-8601 strings and parsed back into datetimes.
    A document that cannot be parsed is skipped by ``list()`` with a warning.
    """

    def __init__(self, storage_dir: Path | str):
        self.storage_dir = Path(storage_dir)

    def _ensure_dir(self) -> None:
        try:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageFailure(f"Cannot create storage directory: {exc.strerror}") from exc

    @staticmethod
    def is_safe_id(conversation_id: str) -> bool:
        return bool(conversation_id) and bool(_SAFE_ID.match(conversation_id)) and ".." not in conversation_id

    def _path(self, conversation_id: str) -> Path:
        if not self.is_safe_id(conversation_id):
            raise BadRequest("Invalid conversation ID")
        return self.storage_dir / f"{conversation_id}.json"

    def _read(self, path: Path) -> Conversation:
        conversation = Conversation.model_validate_json(path.read_text(encoding="utf-8"))
        # a document we could never write back is treated like a corrupt one
        if not self.is_safe_id(conversation.id):
            raise ValueError(f"unusable conversation id {conversation.id!r}")
        return conversation

    def list(self) -> list[Conversation]:
        """All readable conversations, most recently updated first."""
        self._ensure_dir()
        conversations: list[Conversation] = []
        try:
            paths = sorted(p for p in self.storage_dir.glob("*.json") if not p.name.startswith("."))
        except OSError as exc:
            raise StorageFailure(f"Cannot list storage directory: {exc.strerror}") from exc
        for path in paths:
            try:
                conversations.append(self._read(path))
            except (OSError, ValueError, ValidationError):
                logger.warning("Skipping unreadable conversation file %s", path.name, exc_info=True)
        conversations.sort(key=lambda c: c.updated_at, reverse=True)
        return conversations

    def get(self, conversation_id: str) -> Conversation | None:
        path = self._path(conversation_id)
        if not path.exists():
            return None
        try:
            return self._read(path)
        except (ValueError, ValidationError):
            logger.warning("Conversation file %s is corrupt", path.name, exc_info=True)
            return None
        except OSError as exc:
            raise StorageFailure(f"Cannot read conversation: {exc.strerror}") from exc

    def exists(self, conversation_id: str) -> bool:
        return self._path(conversation_id).exists()

    def put(self, conversation: Conversation) -> None:
        """Full-document overwrite, via temp file + rename so readers never see a partial file."""
        path = self._path(conversation.id)
        self._ensure_dir()
        content = json.dumps(conversation.to_json_dict(), ensure_ascii=False, indent=2)
        tmp_name = None
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self.storage_dir, prefix=".tmp-", suffix=".json")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_name, path)
            tmp_name = None
        except OSError as exc:
            raise StorageFailure(f"Cannot write conversation: {exc.strerror}") from exc
        finally:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)

    def delete(self, conversation_id: str) -> None:
        path = self._path(conversation_id)
        try:
            path.unlink()
        except FileNotFoundError:
            raise ConversationNotFound() from None
        except OSError as exc:
            raise StorageFailure(f"Cannot delete conversation: {exc.strerror}") from exc


def get_repository() -> ConversationRepository:
    """FastAPI dependency: repository rooted at the configured storage dir."""
    from chatrelay.config import settings

    return ConversationRepository(settings.CHAT_STORAGE_DIR)
