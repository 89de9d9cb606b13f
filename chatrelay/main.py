"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chatrelay.api import api_router
from chatrelay.config import settings
from chatrelay.services.errors import BadRequest, ChatError

try:
    __version__ = (Path(__file__).resolve().parent.parent / "VERSION").read_text().strip()
except Exception:  # pragma: no cover
    from chatrelay import __version__

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Configure unified logging before anything else
    from chatrelay.logging_config import setup_logging
    setup_logging("Server")

    try:
        Path(settings.CHAT_STORAGE_DIR).mkdir(parents=True, exist_ok=True)
        logger.info("Conversation storage: %s", settings.CHAT_STORAGE_DIR)
    except OSError:
        logger.exception("Failed to create conversation storage directory")

    configured = [
        name for name, key in (
            ("openai", settings.OPENAI_API_KEY),
            ("anthropic", settings.ANTHROPIC_API_KEY),
            ("google", settings.GOOGLE_GENERATIVE_AI_API_KEY),
        ) if key
    ]
    logger.info("Process-wide provider keys: %s", ", ".join(configured) or "none")

    yield


app = FastAPI(title="Chat Relay API", version=__version__, lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.CORS_ALLOW_ALL_ORIGINS else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition", "X-Filename", "X-Chat-Stream"],
)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    return JSONResponse(exc.to_payload(), status_code=exc.status)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    detail = "Invalid request body"
    if errors:
        location = ".".join(str(p) for p in errors[0].get("loc", ()) if p != "body")
        detail = f"Invalid request field '{location}': {errors[0].get('msg', 'invalid value')}"
    return JSONResponse(BadRequest(detail).to_payload(), status_code=400)


# API routes
app.include_router(api_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("chatrelay.main:app", host="0.0.0.0", port=8000, reload=True, log_config=None)
