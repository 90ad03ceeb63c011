import datetime
import os

import pytest

from campus_chat.controllers import attachments_controller, memberships_controller, messages_controller
from campus_chat.core.config import get_settings
from campus_chat.core.errors import ExpiredError, ForbiddenError, NotFoundError, RateLimitError, ValidationError
from campus_chat.core.timeutil import utcnow
from campus_chat.db import models, schemas
from campus_chat.db.models.message import REDACTED_CONTENT


@pytest.fixture
def room(db, make_user, make_chat):
    alice, bob = make_user("alice"), make_user("bob")
    chat = make_chat(alice)
    memberships_controller.join_chat(db, chat.id, bob.id)
    return chat, alice, bob


def _send(db, chat, user, content="hello", **kwargs):
    msg, _ = messages_controller.send_message(db, chat.id, user.id, schemas.MessageCreate(content=content, **kwargs))
    return msg


def _age(db, msg, minutes, seconds=0):
    msg.created_at = utcnow() - datetime.timedelta(minutes=minutes, seconds=seconds)
    db.commit()


def test_send_sets_fields(db, room):
    chat, alice, _ = room
    msg = _send(db, chat, alice, "First post")
    assert msg.message_type == "text"
    assert msg.sender_id == alice.id
    assert msg.is_edited is False and msg.is_deleted is False
    db.expire_all()
    assert db.get(models.Chat, chat.id).last_message_at is not None


def test_blank_and_oversized_content_rejected(db, room):
    chat, alice, _ = room
    with pytest.raises(ValidationError):
        _send(db, chat, alice, "   ")
    with pytest.raises(ValidationError):
        _send(db, chat, alice, "x" * 2001)


def test_non_member_cannot_send(db, room, make_user):
    chat, _, _ = room
    eve = make_user("eve")
    with pytest.raises(ForbiddenError):
        _send(db, chat, eve)


def test_muted_member_cannot_send(db, room):
    chat, alice, bob = room
    memberships_controller.update_member(db, chat.id, alice.id, bob.id, schemas.MemberUpdate(is_muted=True))
    with pytest.raises(ForbiddenError):
        _send(db, chat, bob)


def test_announcements_are_staff_only(db, room):
    chat, alice, bob = room
    with pytest.raises(ForbiddenError):
        _send(db, chat, bob, "Exam moved", message_type="announcement")
    assert _send(db, chat, alice, "Exam moved", message_type="announcement").message_type == "announcement"


def test_created_at_strictly_increases(db, room):
    chat, alice, bob = room
    msgs = [_send(db, chat, u, f"m{i}") for i, u in enumerate([alice, bob, alice, bob, alice])]
    stamps = [m.created_at for m in msgs]
    assert all(a < b for a, b in zip(stamps, stamps[1:]))


def test_client_message_id_makes_send_idempotent(db, room):
    chat, alice, _ = room
    body = schemas.MessageCreate(content="hi", client_message_id="tmp-1")
    first, created = messages_controller.send_message(db, chat.id, alice.id, body)
    assert created is True
    again, created = messages_controller.send_message(db, chat.id, alice.id, body)
    assert created is False
    assert again.id == first.id
    assert db.query(models.Message).filter(models.Message.client_message_id == "tmp-1").count() == 1


def test_reply_must_target_same_chat(db, room, make_chat):
    chat, alice, bob = room
    other = make_chat(alice, name="Housing board", category="Housing")
    foreign = _send(db, other, alice, "elsewhere")
    with pytest.raises(ValidationError):
        _send(db, chat, bob, "re", reply_to_id=foreign.id)

    target = _send(db, chat, alice, "question")
    reply = _send(db, chat, bob, "answer", reply_to_id=target.id)
    out = messages_controller.to_message_out(reply)
    assert out.reply_to.id == target.id
    assert out.reply_to.content == "question"


def test_edit_within_window(db, room):
    chat, alice, _ = room
    msg = _send(db, chat, alice, "draft")
    _age(db, msg, 14, 50)
    edited = messages_controller.edit_message(db, chat.id, msg.id, alice.id, "final")
    assert edited.content == "final"
    assert edited.is_edited is True
    assert edited.edited_at is not None


def test_edit_at_window_boundary_expires(db, room):
    chat, alice, _ = room
    msg = _send(db, chat, alice, "draft")
    _age(db, msg, 15)
    with pytest.raises(ExpiredError):
        messages_controller.edit_message(db, chat.id, msg.id, alice.id, "too late")


def test_only_sender_edits(db, room):
    chat, alice, bob = room
    msg = _send(db, chat, alice, "mine")
    with pytest.raises(ForbiddenError):
        messages_controller.edit_message(db, chat.id, msg.id, bob.id, "hijack")
    # admins do not get to edit either
    reply = _send(db, chat, bob, "bob's")
    with pytest.raises(ForbiddenError):
        messages_controller.edit_message(db, chat.id, reply.id, alice.id, "hijack")


def test_delete_redacts_and_keeps_slot(db, room):
    chat, alice, bob = room
    before = _send(db, chat, alice, "one")
    victim = _send(db, chat, bob, "secret")
    after = _send(db, chat, alice, "three")

    deleted = messages_controller.delete_message(db, chat.id, victim.id, bob.id)
    assert deleted.is_deleted is True
    assert deleted.content == REDACTED_CONTENT

    page = messages_controller.list_messages(db, chat.id, alice.id)
    ids = [m.id for m in page["messages"]]
    assert ids.index(before.id) < ids.index(victim.id) < ids.index(after.id)
    slot = next(m for m in page["messages"] if m.id == victim.id)
    assert slot.is_deleted and slot.content == REDACTED_CONTENT

    # terminal: no edit, no second delete
    with pytest.raises(NotFoundError):
        messages_controller.edit_message(db, chat.id, victim.id, bob.id, "back")
    with pytest.raises(NotFoundError):
        messages_controller.delete_message(db, chat.id, victim.id, bob.id)


def test_delete_by_staff_or_sender_only(db, room, make_user):
    chat, alice, bob = room
    carol = make_user("carol")
    memberships_controller.join_chat(db, chat.id, carol.id)
    msg = _send(db, chat, bob, "spam")
    with pytest.raises(ForbiddenError):
        messages_controller.delete_message(db, chat.id, msg.id, carol.id)
    assert messages_controller.delete_message(db, chat.id, msg.id, alice.id).is_deleted


def test_reply_preview_of_deleted_message(db, room):
    chat, alice, bob = room
    target = _send(db, chat, alice, "original")
    reply = _send(db, chat, bob, "re", reply_to_id=target.id)
    messages_controller.delete_message(db, chat.id, target.id, alice.id)
    db.expire_all()
    out = messages_controller.to_message_out(messages_controller.get_message(db, chat.id, reply.id))
    assert out.reply_to.is_deleted is True
    assert out.reply_to.content == REDACTED_CONTENT


def test_pagination_walks_history_without_gaps(db, make_user, make_chat):
    alice = make_user("alice")
    chat = make_chat(alice)
    sent = [_send(db, chat, alice, f"msg {i}").id for i in range(7)]

    seen = []
    page = messages_controller.list_messages(db, chat.id, alice.id, limit=3)
    seen = [m.id for m in page["messages"]] + seen
    while page["has_more"]:
        page = messages_controller.list_messages(db, chat.id, alice.id, limit=3, before=page["oldest_message_id"])
        seen = [m.id for m in page["messages"]] + seen
    assert seen == sent


def test_pagination_rejects_foreign_cursor(db, room, make_chat):
    chat, alice, _ = room
    other = make_chat(alice, name="Other chat")
    foreign = _send(db, other, alice, "x")
    with pytest.raises(ValidationError):
        messages_controller.list_messages(db, chat.id, alice.id, before=foreign.id)


def test_history_is_members_only(db, room, make_user):
    chat, _, _ = room
    eve = make_user("eve")
    with pytest.raises(ForbiddenError):
        messages_controller.list_messages(db, chat.id, eve.id)


def test_unread_count_and_mark_read(db, room):
    chat, alice, bob = room
    _send(db, chat, alice, "a")
    _send(db, chat, alice, "b")
    _send(db, chat, bob, "own messages do not count")
    bob_membership = memberships_controller.get_active_membership(db, chat.id, bob.id)
    assert messages_controller.unread_count(db, bob_membership) == 2

    messages_controller.mark_read(db, chat.id, bob.id)
    bob_membership = memberships_controller.get_active_membership(db, chat.id, bob.id)
    assert messages_controller.unread_count(db, bob_membership) == 0


def test_retried_send_after_leaving_is_refused(db, room):
    chat, _, bob = room
    _send(db, chat, bob, "hi", client_message_id="tmp-2")
    memberships_controller.leave_chat(db, chat.id, bob.id)
    with pytest.raises(ForbiddenError):
        _send(db, chat, bob, "hi", client_message_id="tmp-2")


def test_send_rate_limit_per_sender(db, room, monkeypatch):
    chat, alice, bob = room
    monkeypatch.setattr(get_settings(), "MESSAGE_RATE_LIMIT", 3)
    for i in range(3):
        _send(db, chat, alice, f"burst {i}")
    with pytest.raises(RateLimitError) as info:
        _send(db, chat, alice, "one too many")
    assert info.value.status_code == 429
    assert info.value.headers["X-RateLimit-Limit"] == "3"
    assert int(info.value.headers["Retry-After"]) >= 1
    # other senders have their own budget
    _send(db, chat, bob, "still fine")
    # replays do not spend the budget
    first, _ = messages_controller.send_message(db, chat.id, bob.id, schemas.MessageCreate(content="x", client_message_id="r-1"))
    for _ in range(3):
        again, created = messages_controller.send_message(db, chat.id, bob.id, schemas.MessageCreate(content="x", client_message_id="r-1"))
        assert not created and again.id == first.id


def _blobs():
    return set(os.listdir(attachments_controller.files_dir()))


def test_rejected_file_writes_nothing(db, room):
    chat, alice, _ = room
    before = _blobs()
    files = [
        attachments_controller.IncomingFile("notes.txt", "text/plain", b"fine"),
        attachments_controller.IncomingFile("tool.exe", "application/x-msdownload", b"MZ"),
    ]
    with pytest.raises(ValidationError):
        messages_controller.send_message(db, chat.id, alice.id, schemas.MessageCreate(content="files"), files=files)
    assert _blobs() == before
    assert db.query(models.Attachment).count() == 0


def test_failed_send_removes_written_blobs(db, room, monkeypatch):
    chat, alice, _ = room
    before = _blobs()

    def broken(message_type, attachments):
        raise RuntimeError("boom")

    monkeypatch.setattr(attachments_controller, "derive_message_type", broken)
    files = [attachments_controller.IncomingFile("a.png", "image/png", b"\x89PNG")]
    with pytest.raises(RuntimeError):
        messages_controller.send_message(db, chat.id, alice.id, schemas.MessageCreate(content="pic"), files=files)
    assert _blobs() == before
    assert db.query(models.Attachment).count() == 0
