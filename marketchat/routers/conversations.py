from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from marketchat.config import get_settings
from marketchat.schemas.conversation import (
    Conversation,
    InboxPage,
    Message,
    MessagePage,
    SendMessageRequest,
    StartConversationRequest,
    UnreadStatus,
)
from marketchat.services.chat_service import ChatService
from marketchat.utils.dependencies import get_chat_service, get_current_actor


router = APIRouter(prefix="/conversations", tags=["chat"])


def _inbox_limit(limit: Optional[int] = Query(None, ge=1, le=100)) -> int:
    return limit or get_settings().INBOX_PAGE_SIZE


def _history_limit(limit: Optional[int] = Query(None, ge=1, le=200)) -> int:
    return limit or get_settings().HISTORY_PAGE_SIZE


@router.post("", response_model=Conversation)
async def start_conversation(body: StartConversationRequest, actor_id: str = Depends(get_current_actor), service: ChatService = Depends(get_chat_service)):
    return await service.start_conversation_for_listing(actor_id, body.listing_id, other_id=body.other_actor_id)


@router.get("", response_model=InboxPage)
async def list_conversations(limit: int = Depends(_inbox_limit), cursor: Optional[str] = None, actor_id: str = Depends(get_current_actor), service: ChatService = Depends(get_chat_service)):
    return await service.list_inbox(actor_id, limit=limit, cursor=cursor)


@router.get("/unread", response_model=UnreadStatus)
async def unread_status(actor_id: str = Depends(get_current_actor), service: ChatService = Depends(get_chat_service)):
    return UnreadStatus(has_unread=await service.has_any_unread(actor_id))


@router.get("/{conversation_id}", response_model=Conversation)
async def get_conversation(conversation_id: str, actor_id: str = Depends(get_current_actor), service: ChatService = Depends(get_chat_service)):
    return await service.get_conversation(conversation_id, actor_id)


@router.get("/{conversation_id}/messages", response_model=MessagePage)
async def list_messages(conversation_id: str, limit: int = Depends(_history_limit), cursor: Optional[str] = None, actor_id: str = Depends(get_current_actor), service: ChatService = Depends(get_chat_service)):
    return await service.get_history(conversation_id, actor_id, limit=limit, cursor=cursor)


@router.post("/{conversation_id}/messages", response_model=Message, status_code=status.HTTP_201_CREATED)
async def send_message(conversation_id: str, body: SendMessageRequest, actor_id: str = Depends(get_current_actor), service: ChatService = Depends(get_chat_service)):
    return await service.send_message(conversation_id, actor_id, body.text)


@router.post("/{conversation_id}/read", response_model=Conversation)
async def mark_read(conversation_id: str, actor_id: str = Depends(get_current_actor), service: ChatService = Depends(get_chat_service)):
    return await service.mark_read(conversation_id, actor_id)


@router.delete("/{conversation_id}")
async def hide_conversation(conversation_id: str, actor_id: str = Depends(get_current_actor), service: ChatService = Depends(get_chat_service)):
    purged = await service.hide_conversation(conversation_id, actor_id)
    return {"purged": purged}
