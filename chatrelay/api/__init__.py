"""FastAPI router aggregation."""

from fastapi import APIRouter

from chatrelay.api.chat import router as chat_router
from chatrelay.api.conversations import router as conversations_router
from chatrelay.api.export import router as export_router
from chatrelay.api.settings import router as settings_router
from chatrelay.api.titles import router as titles_router

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(chat_router, tags=["chat"])
api_router.include_router(titles_router, tags=["titles"])
api_router.include_router(conversations_router, prefix="/conversations", tags=["conversations"])
api_router.include_router(export_router, prefix="/export", tags=["export"])
api_router.include_router(settings_router, prefix="/settings", tags=["settings"])
