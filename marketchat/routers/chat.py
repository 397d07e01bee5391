import asyncio
import json
import logging
from contextlib import suppress
from typing import Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from marketchat.errors import ChatError, NotFoundError
from marketchat.services.chat_service import ChatService
from marketchat.services.subscriptions import InboxWatcher, ThreadWatcher, Subscription
from marketchat.utils.dependencies import get_chat_service, get_inbox_watcher, get_thread_watcher
from marketchat.utils.security import InvalidTokenError, decode_access_token


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ws", tags=["chat"])


async def _authenticate(websocket: WebSocket) -> Optional[str]:
    # browsers cannot set headers on a WebSocket; token comes as ?token=...
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4401)
        return None
    try:
        return decode_access_token(token)["sub"]
    except InvalidTokenError:
        await websocket.close(code=4401)
        return None


async def _pump(websocket: WebSocket, subscription: Subscription) -> None:
    try:
        async for update in subscription:
            await websocket.send_json(update.model_dump(mode="json", by_alias=True))
    except ChatError as exc:
        # the stream is gone; the client resubscribes after a 4503
        logger.warning("Live stream failed: %s", exc.message)
        await subscription.cancel()
        await _error(websocket, exc.message)
        await websocket.close(code=4404 if isinstance(exc, NotFoundError) else 4503)


async def _error(websocket: WebSocket, detail: str) -> None:
    await websocket.send_json({"type": "error", "detail": detail})


@router.websocket("/inbox")
async def inbox_socket(websocket: WebSocket, watcher: InboxWatcher = Depends(get_inbox_watcher)):
    actor_id = await _authenticate(websocket)
    if actor_id is None:
        return
    await websocket.accept()
    subscription = watcher.watch(actor_id)
    await subscription.start()
    pump = asyncio.create_task(_pump(websocket, subscription))
    try:
        while True:
            data = await websocket.receive_text()
            try:
                msg = json.loads(data)
            except ValueError:
                msg = None
            if not isinstance(msg, dict):
                await _error(websocket, "Invalid frame")
                continue
            if msg.get("type") == "resync":
                try:
                    snapshot = await subscription.snapshot()
                except ChatError as exc:
                    await _error(websocket, exc.message)
                    continue
                await websocket.send_json(snapshot.model_dump(mode="json", by_alias=True))
    except WebSocketDisconnect:
        logger.debug("Inbox socket for %s closed", actor_id)
    finally:
        await subscription.cancel()
        pump.cancel()
        with suppress(asyncio.CancelledError):
            await pump


@router.websocket("/conversations/{conversation_id}")
async def conversation_socket(
    websocket: WebSocket,
    conversation_id: str,
    watcher: ThreadWatcher = Depends(get_thread_watcher),
    service: ChatService = Depends(get_chat_service),
):
    actor_id = await _authenticate(websocket)
    if actor_id is None:
        return
    await websocket.accept()
    subscription = watcher.watch(conversation_id, actor_id)
    await subscription.start()
    pump = asyncio.create_task(_pump(websocket, subscription))
    try:
        while True:
            data = await websocket.receive_text()
            try:
                msg = json.loads(data)
            except ValueError:
                msg = None
            if not isinstance(msg, dict):
                await _error(websocket, "Invalid frame")
                continue
            # Expect {"type": "message", "text": str} or {"type": "read"}
            try:
                if msg.get("type") == "message":
                    message = await service.send_message(conversation_id, actor_id, msg.get("text", ""))
                    await websocket.send_json({"type": "ack", "messageId": message.id})
                elif msg.get("type") == "read":
                    await service.mark_read(conversation_id, actor_id)
                else:
                    await _error(websocket, "Unknown frame type")
            except ChatError as exc:
                await _error(websocket, exc.message)
    except WebSocketDisconnect:
        logger.debug("Conversation socket %s for %s closed", conversation_id, actor_id)
    finally:
        await subscription.cancel()
        pump.cancel()
        with suppress(asyncio.CancelledError):
            await pump
