"""Conversation storage API: one JSON document per conversation."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from chatrelay.schemas.conversation import Conversation
from chatrelay.services.errors import ConversationNotFound
from chatrelay.services.storage import ConversationRepository, get_repository

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/", response_model=list[Conversation])
def list_conversations(repository: ConversationRepository = Depends(get_repository)):
    return repository.list()


@router.get("/{conversation_id}/", response_model=Conversation)
def get_conversation(conversation_id: str, repository: ConversationRepository = Depends(get_repository)):
    conversation = repository.get(conversation_id)
    if conversation is None:
        raise ConversationNotFound()
    return conversation


@router.post("/", response_model=Conversation)
def save_conversation(payload: Conversation, repository: ConversationRepository = Depends(get_repository)):
    """Full-document overwrite keyed by ``payload.id``."""
    repository.put(payload)
    logger.info("Saved conversation %s (%d messages)", payload.id, len(payload.messages))
    return payload


@router.delete("/{conversation_id}/", status_code=204)
def delete_conversation(conversation_id: str, repository: ConversationRepository = Depends(get_repository)):
    repository.delete(conversation_id)
    logger.info("Deleted conversation %s", conversation_id)
