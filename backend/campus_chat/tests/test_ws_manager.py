import asyncio
import json

from campus_chat.ws.ws_manager import ConnectionManager, chat_room


class FakeSocket:
    def __init__(self, broken: bool = False):
        self.sent = []
        self.broken = broken

    async def send_text(self, text: str):
        if self.broken:
            raise RuntimeError("socket closed")
        self.sent.append(json.loads(text))


def test_register_tracks_first_and_last_socket():
    mgr = ConnectionManager()
    tab1, tab2 = FakeSocket(), FakeSocket()
    assert mgr.register_user_socket(1, tab1) is True
    assert mgr.register_user_socket(1, tab2) is False
    assert mgr.is_online(1)
    assert mgr.unregister_user_socket(1, tab1) is False
    assert mgr.unregister_user_socket(1, tab2) is True
    assert not mgr.is_online(1)
    assert mgr.offline_user_ids([1, 2]) == [1, 2]


def test_room_broadcast_skips_excluded_and_broken_sockets():
    mgr = ConnectionManager()
    a, b, dead = FakeSocket(), FakeSocket(), FakeSocket(broken=True)
    room = chat_room(7)
    for uid, ws in ((1, a), (2, b), (3, dead)):
        mgr.register_user_socket(uid, ws)
        mgr.subscribe_room(ws, uid, room)

    asyncio.run(mgr.broadcast_room(room, {"type": "new-message", "chatId": 7}, exclude=a))
    assert a.sent == []
    assert b.sent == [{"type": "new-message", "chatId": 7}]


def test_unregister_drops_room_subscriptions():
    mgr = ConnectionManager()
    ws = FakeSocket()
    mgr.register_user_socket(1, ws)
    mgr.add_user_to_room(1, chat_room(1))
    assert mgr.in_room(ws, chat_room(1))
    mgr.unregister_user_socket(1, ws)
    assert chat_room(1) not in mgr.room_sockets


def test_offline_fires_after_grace_window():
    mgr = ConnectionManager()
    fired = []

    async def go_offline(user_id):
        fired.append(user_id)

    async def scenario():
        ws = FakeSocket()
        mgr.register_user_socket(5, ws)
        mgr.unregister_user_socket(5, ws)
        mgr.schedule_offline(5, 0.01, go_offline)
        assert mgr.has_pending_offline(5)
        await asyncio.sleep(0.05)

    asyncio.run(scenario())
    assert fired == [5]
    assert not mgr.has_pending_offline(5)


def test_reconnect_within_grace_cancels_offline():
    mgr = ConnectionManager()
    fired = []

    async def go_offline(user_id):
        fired.append(user_id)

    async def scenario():
        ws = FakeSocket()
        mgr.register_user_socket(5, ws)
        mgr.unregister_user_socket(5, ws)
        mgr.schedule_offline(5, 0.05, go_offline)
        await asyncio.sleep(0.01)
        assert mgr.cancel_offline(5) is True
        mgr.register_user_socket(5, FakeSocket())
        await asyncio.sleep(0.08)

    asyncio.run(scenario())
    assert fired == []
    assert mgr.is_online(5)


def test_broadcast_all_excludes_the_subject():
    mgr = ConnectionManager()
    a, b = FakeSocket(), FakeSocket()
    mgr.register_user_socket(1, a)
    mgr.register_user_socket(2, b)
    asyncio.run(mgr.broadcast_all({"type": "user-status-changed", "userId": 1}, exclude_user_id=1))
    assert a.sent == []
    assert b.sent[0]["userId"] == 1


def test_reconnect_during_running_flip_leaves_it_to_finish():
    mgr = ConnectionManager()
    events = []

    async def scenario():
        entered, release = asyncio.Event(), asyncio.Event()

        async def go_offline(user_id):
            entered.set()
            await release.wait()
            events.append(("offline-written", mgr.is_online(user_id)))

        ws = FakeSocket()
        mgr.register_user_socket(5, ws)
        mgr.unregister_user_socket(5, ws)
        task = mgr.schedule_offline(5, 0, go_offline)
        await entered.wait()

        # the callback already runs, a reconnect must not cancel it halfway
        assert mgr.cancel_offline(5) is False
        mgr.register_user_socket(5, FakeSocket())
        release.set()
        await task
        assert not task.cancelled()

    asyncio.run(scenario())
    assert events == [("offline-written", True)]
    assert not mgr.has_pending_offline(5)


def test_new_flip_after_running_one_is_cancellable():
    mgr = ConnectionManager()
    fired = []

    async def scenario():
        entered, release = asyncio.Event(), asyncio.Event()

        async def slow(user_id):
            entered.set()
            await release.wait()

        async def record(user_id):
            fired.append(user_id)

        mgr.schedule_offline(5, 0, slow)
        await entered.wait()
        mgr.schedule_offline(5, 0.05, record)
        release.set()
        await asyncio.sleep(0)
        assert mgr.cancel_offline(5) is True
        await asyncio.sleep(0.08)

    asyncio.run(scenario())
    assert fired == []
