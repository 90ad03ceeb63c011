import json
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError as PydanticValidationError

from . import events
from .ws_manager import chat_room, manager
from ..core.config import get_settings
from ..core.errors import ChatError, ForbiddenError, ValidationError
from ..core.timeutil import utcnow
from ..controllers import memberships_controller, messages_controller, users_controller
from ..db import schemas
from ..db.database import SessionLocal
from ..deps.auth import resolve_user

ws_router = APIRouter()
logger = logging.getLogger(__name__)


@dataclass
class SocketSession:
    websocket: WebSocket
    user_id: int
    username: str
    display_name: Optional[str] = None

    @property
    def user(self) -> dict:
        return {"id": self.user_id, "username": self.username, "displayName": self.display_name}


def _run(fn, *args):
    # one short-lived session per operation, the socket itself holds none
    db = SessionLocal()
    try:
        return fn(db, *args)
    finally:
        db.close()


async def _db_call(fn, *args):
    return await run_in_threadpool(_run, fn, *args)


def _dump(out) -> dict:
    return out.model_dump(mode="json", by_alias=True)


# ==== blocking work, runs in the threadpool ====

def _authenticate(db, token):
    user = resolve_user(db, token)
    return {
        "id": user.id,
        "username": user.username,
        "display_name": user.display_name,
        "chat_ids": memberships_controller.active_chat_ids(db, user.id),
    }


def _is_member(db, user_id, chat_id):
    return memberships_controller.get_active_membership(db, chat_id, user_id) is not None


def _send(db, user_id, chat_id, body):
    msg, created = messages_controller.send_message(db, chat_id, user_id, body)
    member_ids = memberships_controller.active_member_ids(db, chat_id) if created else []
    return _dump(messages_controller.to_message_out(msg)), created, member_ids


def _edit(db, user_id, chat_id, message_id, content):
    msg = messages_controller.edit_message(db, chat_id, message_id, user_id, content)
    return _dump(messages_controller.to_message_out(msg))


def _delete(db, user_id, chat_id, message_id):
    msg = messages_controller.delete_message(db, chat_id, message_id, user_id)
    return _dump(messages_controller.to_message_out(msg))


def _mark_read(db, user_id, chat_id):
    return messages_controller.mark_read(db, chat_id, user_id).last_read_at


def _set_status(db, user_id, new_status):
    users_controller.set_status(db, user_id, new_status)


# ==== payload helpers ====

def _int_field(data: dict, camel: str, snake: str) -> int:
    value = data.get(camel, data.get(snake))
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{camel} is required")


def _chat_id(data: dict) -> int:
    return _int_field(data, "chatId", "chat_id")


def _message_id(data: dict) -> int:
    return _int_field(data, "messageId", "message_id")


# ==== event handlers ====

async def handle_join_chat(s: SocketSession, data: dict):
    chat_id = _chat_id(data)
    # membership is re-read on every join, never taken from the connect-time snapshot
    if not await _db_call(_is_member, s.user_id, chat_id):
        raise ForbiddenError("Not authorized to join this chat")
    room = chat_room(chat_id)
    manager.subscribe_room(s.websocket, s.user_id, room)
    await manager.send_personal(s.websocket, {"v": 1, "type": "chat-joined", "chatId": chat_id, "room": room})
    await manager.broadcast_room(room, {
        "v": 1, "type": "user-joined-chat", "chatId": chat_id, "userId": s.user_id, "user": s.user, "timestamp": utcnow(),
    }, exclude=s.websocket)


async def handle_leave_chat(s: SocketSession, data: dict):
    chat_id = _chat_id(data)
    room = chat_room(chat_id)
    manager.unsubscribe_room(s.websocket, room)
    await manager.send_personal(s.websocket, {"v": 1, "type": "chat-left", "chatId": chat_id, "room": room})
    await manager.broadcast_room(room, {
        "v": 1, "type": "user-left-chat", "chatId": chat_id, "userId": s.user_id, "user": s.user, "timestamp": utcnow(),
    })


async def handle_send_message(s: SocketSession, data: dict):
    chat_id = _chat_id(data)
    body = schemas.MessageCreate.model_validate(data)
    message, created, member_ids = await _db_call(_send, s.user_id, chat_id, body)
    if not created:
        # a retried send, only the sender hears about it again
        await manager.send_personal(s.websocket, {"v": 1, "type": "message-sent", "chatId": chat_id, "message": message})
        return
    await events.publish_new_message(chat_id, message)
    events.notify_offline_members(chat_id, member_ids, s.user_id, message["id"])


async def handle_edit_message(s: SocketSession, data: dict):
    chat_id = _chat_id(data)
    content = data.get("content", data.get("newContent"))
    message = await _db_call(_edit, s.user_id, chat_id, _message_id(data), content)
    await events.publish_message_edited(chat_id, message)


async def handle_delete_message(s: SocketSession, data: dict):
    chat_id = _chat_id(data)
    message = await _db_call(_delete, s.user_id, chat_id, _message_id(data))
    await events.publish_message_deleted(chat_id, message)


async def _typing(s: SocketSession, data: dict, event: str):
    chat_id = _chat_id(data)
    room = chat_room(chat_id)
    if not manager.in_room(s.websocket, room):
        raise ForbiddenError("Join the chat room first")
    await manager.broadcast_room(room, {
        "v": 1, "type": event, "chatId": chat_id, "userId": s.user_id, "user": s.user,
    }, exclude=s.websocket)


async def handle_typing_start(s: SocketSession, data: dict):
    await _typing(s, data, "user-typing-start")


async def handle_typing_stop(s: SocketSession, data: dict):
    await _typing(s, data, "user-typing-stop")


async def handle_mark_read(s: SocketSession, data: dict):
    chat_id = _chat_id(data)
    read_at = await _db_call(_mark_read, s.user_id, chat_id)
    await events.publish_read(chat_id, s.user_id, read_at, exclude=s.websocket)


async def handle_status_change(s: SocketSession, data: dict):
    new_status = data.get("status")
    await _db_call(_set_status, s.user_id, new_status)
    await events.publish_status(s.user_id, new_status)


HANDLERS = {
    "join-chat": handle_join_chat,
    "leave-chat": handle_leave_chat,
    "send-message": handle_send_message,
    "edit-message": handle_edit_message,
    "delete-message": handle_delete_message,
    "typing-start": handle_typing_start,
    "typing-stop": handle_typing_stop,
    "mark-messages-read": handle_mark_read,
    "user-status-change": handle_status_change,
}


async def _dispatch(s: SocketSession, raw: str):
    try:
        data = json.loads(raw)
    except ValueError:
        data = None
    if not isinstance(data, dict):
        await manager.send_personal(s.websocket, {"v": 1, "type": "error", "message": "Invalid payload"})
        return
    t = data.get("type")
    handler = HANDLERS.get(t)
    if handler is None:
        await manager.send_personal(s.websocket, {"v": 1, "type": "error", "event": t, "message": "Unknown event"})
        logger.warning(f"WS unknown event type={t!r} user_id={s.user_id}")
        return
    try:
        await handler(s, data)
    except ChatError as exc:
        logger.warning(f"WS {t} refused user_id={s.user_id}: {exc.message}")
        await manager.send_personal(s.websocket, {"v": 1, "type": "error", "event": t, "message": exc.message})
    except PydanticValidationError:
        await manager.send_personal(s.websocket, {"v": 1, "type": "error", "event": t, "message": "Invalid payload"})
    except Exception:
        logger.exception(f"WS {t} failed user_id={s.user_id}")
        await manager.send_personal(s.websocket, {"v": 1, "type": "error", "event": t, "message": f"Failed to process {t}"})


async def _go_offline(user_id: int):
    try:
        await _db_call(_set_status, user_id, "offline")
        if manager.is_online(user_id):
            # reconnected while the write was in flight
            await _db_call(_set_status, user_id, "online")
            return
        await events.publish_status(user_id, "offline")
    except Exception:
        logger.exception(f"Presence offline flip failed user_id={user_id}")


def _token_from(websocket: WebSocket) -> Optional[str]:
    token = websocket.query_params.get("token")
    if token:
        return token
    header = websocket.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return None


@ws_router.websocket("/ws")
async def websocket_gateway(websocket: WebSocket):
    try:
        info = await _db_call(_authenticate, _token_from(websocket))
    except ChatError as exc:
        logger.warning(f"WS handshake rejected: {exc.message}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await websocket.accept()
    s = SocketSession(websocket=websocket, user_id=info["id"], username=info["username"], display_name=info["display_name"])

    resumed = manager.cancel_offline(s.user_id)
    first = manager.register_user_socket(s.user_id, websocket)
    # room set is a snapshot, later changes arrive through join-chat or REST membership events
    for chat_id in info["chat_ids"]:
        manager.subscribe_room(websocket, s.user_id, chat_room(chat_id))
    try:
        if first and not resumed:
            await _db_call(_set_status, s.user_id, "online")
            await events.publish_status(s.user_id, "online")
        await manager.send_personal(websocket, {
            "v": 1,
            "type": "connected",
            "userId": s.user_id,
            "chatIds": info["chat_ids"],
            "onlineUserIds": manager.online_user_ids(),
        })
        while True:
            raw = await websocket.receive_text()
            await _dispatch(s, raw)
    except WebSocketDisconnect:
        pass
    finally:
        if manager.unregister_user_socket(s.user_id, websocket):
            manager.schedule_offline(s.user_id, get_settings().PRESENCE_GRACE_SECONDS, _go_offline)
