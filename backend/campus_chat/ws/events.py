"""Outgoing realtime events, shared by the REST routes and the socket handlers."""
import logging
from typing import Iterable, Optional

from fastapi import WebSocket

from ..core.timeutil import utcnow
from .ws_manager import chat_room, manager

logger = logging.getLogger(__name__)


async def publish_new_message(chat_id: int, message: dict):
    await manager.broadcast_room(chat_room(chat_id), {
        "v": 1,
        "type": "new-message",
        "chatId": chat_id,
        "message": message,
        "timestamp": utcnow(),
    })


async def publish_message_edited(chat_id: int, message: dict):
    await manager.broadcast_room(chat_room(chat_id), {
        "v": 1,
        "type": "message-edited",
        "chatId": chat_id,
        "messageId": message["id"],
        "message": message,
    })


async def publish_message_deleted(chat_id: int, message: dict):
    await manager.broadcast_room(chat_room(chat_id), {
        "v": 1,
        "type": "message-deleted",
        "chatId": chat_id,
        "messageId": message["id"],
        "deletedAt": message.get("deletedAt"),
    })


async def publish_membership_change(chat_id: int, user_id: int, action: str, member_count: int, notice: Optional[dict] = None):
    """Keep open sockets' rooms in step with a membership change, then tell the room."""
    room = chat_room(chat_id)
    if action == "joined":
        manager.add_user_to_room(user_id, room)
    await manager.broadcast_room(room, {
        "v": 1,
        "type": "membership-changed",
        "chatId": chat_id,
        "userId": user_id,
        "action": action,
        "memberCount": member_count,
    })
    if notice is not None:
        await publish_new_message(chat_id, notice)
    if action in ("left", "removed"):
        manager.remove_user_from_room(user_id, room)


async def publish_read(chat_id: int, user_id: int, read_at, exclude: Optional[WebSocket] = None):
    await manager.broadcast_room(chat_room(chat_id), {
        "v": 1,
        "type": "messages-read",
        "chatId": chat_id,
        "userId": user_id,
        "readAt": read_at,
    }, exclude=exclude)
    # the reader's other tabs reset their unread badge
    await manager.notify_user(user_id, {"v": 1, "type": "unread-update", "chatId": chat_id, "unreadCount": 0})


async def publish_status(user_id: int, status: str):
    await manager.broadcast_all({
        "v": 1,
        "type": "user-status-changed",
        "userId": user_id,
        "status": status,
        "timestamp": utcnow(),
    }, exclude_user_id=user_id)


def notify_offline_members(chat_id: int, member_ids: Iterable[int], sender_id: int, message_id: int):
    """Hook for push/email delivery to members without an open socket.

    Delivery channels are not wired up; the hook records who would be notified
    so they can catch up through the history endpoint.
    """
    offline = manager.offline_user_ids(uid for uid in member_ids if uid != sender_id)
    if offline:
        logger.info(f"Would notify offline_members={len(offline)} chat_id={chat_id} message_id={message_id}")
    return offline
