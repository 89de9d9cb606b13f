"""Title generation endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Request

from chatrelay.schemas.chat import TitleOut, TitleRequest
from chatrelay.services.providers import credentials_from_headers
from chatrelay.services.titles import generate_title, title_credential

router = APIRouter()


@router.post("/generate-title/", response_model=TitleOut)
async def generate_title_endpoint(payload: TitleRequest, request: Request):
    """Always 200 for a well-formed body; failures fall back to a local title."""
    credential = title_credential(credentials_from_headers(request.headers))
    return TitleOut(title=await generate_title(payload.message, credential))
