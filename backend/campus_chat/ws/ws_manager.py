"""In-process registry of open sockets, chat rooms and pending presence flips.

Everything here is a cache: it starts empty, is filled as sockets connect and
is never consulted to decide chat membership, which always comes from the
database.
"""
import asyncio
import datetime
import json
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)


def chat_room(chat_id) -> str:
    return f"chat-{chat_id}"


def _json_default(value):
    if isinstance(value, (datetime.datetime, datetime.date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def dumps(payload: dict) -> str:
    return json.dumps(payload, default=_json_default)


class ConnectionManager:
    def __init__(self):
        self.reset()

    def reset(self):
        # user id -> open sockets (one per tab/device)
        self.user_sockets: Dict[int, List[WebSocket]] = {}
        self._ws_to_user_id: Dict[WebSocket, int] = {}
        # room name -> subscribed sockets, and the reverse map
        self.room_sockets: Dict[str, List[WebSocket]] = {}
        self.socket_rooms: Dict[WebSocket, Set[str]] = {}
        # user id -> pending "go offline" task, plus the tasks already inside their callback
        self._offline_tasks: Dict[int, asyncio.Task] = {}
        self._offline_running: Set[asyncio.Task] = set()

    # ==== connections ====
    def register_user_socket(self, user_id: int, websocket: WebSocket) -> bool:
        """Track a socket. Returns True when this is the user's first open socket."""
        self.cancel_offline(user_id)
        first = not self.user_sockets.get(user_id)
        self.user_sockets.setdefault(user_id, []).append(websocket)
        self._ws_to_user_id[websocket] = user_id
        self.socket_rooms.setdefault(websocket, set())
        logger.info(f"WS connect user_id={user_id} sockets={len(self.user_sockets[user_id])}")
        return first

    def unregister_user_socket(self, user_id: int, websocket: WebSocket) -> bool:
        """Forget a socket. Returns True when the user has no sockets left."""
        sockets = self.user_sockets.get(user_id, [])
        if websocket in sockets:
            sockets.remove(websocket)
        if not sockets:
            self.user_sockets.pop(user_id, None)
        for room in list(self.socket_rooms.get(websocket, set())):
            self.unsubscribe_room(websocket, room)
        self.socket_rooms.pop(websocket, None)
        self._ws_to_user_id.pop(websocket, None)
        logger.info(f"WS disconnect user_id={user_id} sockets={len(sockets)}")
        return user_id not in self.user_sockets

    def is_online(self, user_id: int) -> bool:
        return bool(self.user_sockets.get(user_id))

    def online_user_ids(self) -> List[int]:
        return list(self.user_sockets.keys())

    def offline_user_ids(self, user_ids: Iterable[int]) -> List[int]:
        return [uid for uid in user_ids if not self.is_online(uid)]

    # ==== rooms ====
    def subscribe_room(self, websocket: WebSocket, user_id: int, room: str):
        subs = self.room_sockets.setdefault(room, [])
        if websocket not in subs:
            subs.append(websocket)
        self.socket_rooms.setdefault(websocket, set()).add(room)
        self._ws_to_user_id[websocket] = user_id
        logger.debug(f"WS subscribe user_id={user_id} room={room} subs={len(subs)}")

    def unsubscribe_room(self, websocket: WebSocket, room: str):
        subs = self.room_sockets.get(room)
        if subs and websocket in subs:
            subs.remove(websocket)
            if not subs:
                del self.room_sockets[room]
        if websocket in self.socket_rooms:
            self.socket_rooms[websocket].discard(room)

    def in_room(self, websocket: WebSocket, room: str) -> bool:
        return websocket in self.room_sockets.get(room, [])

    def add_user_to_room(self, user_id: int, room: str):
        for ws in list(self.user_sockets.get(user_id, [])):
            self.subscribe_room(ws, user_id, room)

    def remove_user_from_room(self, user_id: int, room: str):
        for ws in list(self.user_sockets.get(user_id, [])):
            self.unsubscribe_room(ws, room)

    # ==== sending ====
    async def _send(self, websocket: WebSocket, message: str) -> bool:
        try:
            await websocket.send_text(message)
            return True
        except Exception:
            # Broken socket, its own receive loop will unregister it
            logger.debug("WS send failed, dropping frame", exc_info=True)
            return False

    async def send_personal(self, websocket: WebSocket, payload: dict):
        await self._send(websocket, dumps(payload))

    async def broadcast_room(self, room: str, payload: dict, exclude: Optional[WebSocket] = None):
        message = dumps(payload)
        targets = [ws for ws in list(self.room_sockets.get(room, [])) if ws is not exclude]
        sent = 0
        for ws in targets:
            if await self._send(ws, message):
                sent += 1
        logger.debug(f"Broadcast room={room} type={payload.get('type')} sent_to={sent}")

    async def notify_user(self, user_id: int, payload: dict):
        message = dumps(payload)
        for ws in list(self.user_sockets.get(user_id, [])):
            await self._send(ws, message)

    async def broadcast_all(self, payload: dict, exclude_user_id: Optional[int] = None):
        message = dumps(payload)
        total = 0
        for uid, sockets in list(self.user_sockets.items()):
            if uid == exclude_user_id:
                continue
            for ws in list(sockets):
                if await self._send(ws, message):
                    total += 1
        logger.debug(f"BroadcastAll type={payload.get('type')} sent_to={total}")

    # ==== presence grace window ====
    def schedule_offline(self, user_id: int, delay: float, callback: Callable[[int], Awaitable[None]]):
        """Run ``callback(user_id)`` after ``delay`` seconds unless the user reconnects first."""
        self.cancel_offline(user_id)

        async def _later():
            try:
                await asyncio.sleep(delay)
                if self.is_online(user_id):
                    return
                self._offline_running.add(task)
                await callback(user_id)
            finally:
                self._offline_running.discard(task)
                if self._offline_tasks.get(user_id) is task:
                    del self._offline_tasks[user_id]

        task = asyncio.get_running_loop().create_task(_later())
        self._offline_tasks[user_id] = task
        return task

    def cancel_offline(self, user_id: int) -> bool:
        """Drop a pending flip. Returns False when none was pending or its callback already runs.

        A running callback is left to finish, it re-checks ``is_online`` after its write.
        """
        task = self._offline_tasks.get(user_id)
        if task is None or task in self._offline_running:
            return False
        del self._offline_tasks[user_id]
        task.cancel()
        logger.debug(f"Presence offline flip cancelled user_id={user_id}")
        return True

    def has_pending_offline(self, user_id: int) -> bool:
        return user_id in self._offline_tasks


manager = ConnectionManager()
