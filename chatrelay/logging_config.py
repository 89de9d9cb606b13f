"""Logging for the chat server and the conversation engine.

``setup_logging(role)`` is called once at startup. Every record then carries a
``[Role][Conv ...][Turn ...][LEVEL]`` prefix taken from the two ContextVars
below, which the chat route and the engine set for the duration of a turn.
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from contextvars import ContextVar
from pathlib import Path

conversation_id_var: ContextVar[str] = ContextVar("conversation_id_var", default="")
turn_id_var: ContextVar[str] = ContextVar("turn_id_var", default="")

_STREAM_HANDLER = "_chatrelay_stream"
_FILE_HANDLER = "_chatrelay_file"

# SDK loggers echo request bodies (and so credentials) at DEBUG
_QUIET_LOGGERS = ("httpx", "httpcore", "urllib3", "openai", "anthropic", "google_genai")


class ContextFilter(logging.Filter):
    """Copies the role and the current conversation/turn ids onto the record."""

    def __init__(self, role: str) -> None:
        super().__init__()
        self.role = role

    def filter(self, record: logging.LogRecord) -> bool:
        record.role = self.role  # type: ignore[attr-defined]
        record.conversation_id = conversation_id_var.get()  # type: ignore[attr-defined]
        record.turn_id = turn_id_var.get()  # type: ignore[attr-defined]
        return True


class ContextFormatter(logging.Formatter):
    """``2026-02-17 14:30:01 [Engine][Conv conv_171][Turn msg_1718][INFO] name:line - msg``"""

    def __init__(self, datefmt: str | None = "%Y-%m-%d %H:%M:%S") -> None:
        super().__init__("%(asctime)s %(context)s %(name)s:%(lineno)d - %(message)s", datefmt=datefmt)

    @staticmethod
    def context_prefix(record: logging.LogRecord) -> str:
        tags = [
            getattr(record, "role", ""),
            "Conv " + record.conversation_id[:8] if getattr(record, "conversation_id", "") else "",
            "Turn " + record.turn_id[:8] if getattr(record, "turn_id", "") else "",
            record.levelname,
        ]
        return "".join(f"[{tag}]" for tag in tags if tag)

    def format(self, record: logging.LogRecord) -> str:
        record.context = self.context_prefix(record)  # type: ignore[attr-defined]
        return super().format(record)


def _install(root: logging.Logger, handler: logging.Handler, name: str, role: str) -> None:
    handler.name = name
    handler.addFilter(ContextFilter(role))
    handler.setFormatter(ContextFormatter())
    root.addHandler(handler)


def setup_logging(role: str) -> None:
    """Attach the chatrelay handlers to the root logger; later calls are no-ops."""
    from chatrelay.config import settings

    root = logging.getLogger()
    if any(getattr(h, "name", None) == _STREAM_HANDLER for h in root.handlers):
        return
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    _install(root, logging.StreamHandler(sys.stderr), _STREAM_HANDLER, role)
    if settings.LOG_FILE:
        log_path = Path(settings.LOG_FILE)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        rotating = logging.handlers.RotatingFileHandler(
            log_path, maxBytes=settings.LOG_MAX_BYTES, backupCount=settings.LOG_BACKUP_COUNT, encoding="utf-8"
        )
        _install(root, rotating, _FILE_HANDLER, role)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    # uvicorn installs its own handlers; route it through ours instead
    if role.lower() == "server":
        for name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
            uvicorn_logger = logging.getLogger(name)
            uvicorn_logger.handlers.clear()
            uvicorn_logger.propagate = True
