"""Message store: sending, editing, soft deletes, cursor pagination, read cursors.

REST routes and the websocket gateway both go through these functions, the
gateway only broadcasts what they return.
"""
import datetime
import logging
from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload, selectinload
from typing import List, Optional, Tuple

from ..core.config import get_settings
from ..core.errors import ExpiredError, ForbiddenError, NotFoundError, RateLimitError, ValidationError
from ..core.rate_limit import default_rate_limiter
from ..core.timeutil import as_utc, utcnow
from ..db import models, schemas
from ..db.models.chat_member import STAFF_ROLES
from ..db.models.message import REDACTED_CONTENT
from . import attachments_controller

logger = logging.getLogger(__name__)

ONE_TICK = datetime.timedelta(microseconds=1)


def _active_membership(db: Session, chat_id: int, user_id: int):
    return (
        db.query(models.ChatMember)
        .filter(
            models.ChatMember.chat_id == chat_id,
            models.ChatMember.user_id == user_id,
            models.ChatMember.is_active.is_(True),
        )
        .first()
    )


def _validate_content(content: Optional[str]) -> str:
    max_len = get_settings().MESSAGE_MAX_LENGTH
    if content is None or not content.strip():
        raise ValidationError("Message content is required")
    if len(content) > max_len:
        raise ValidationError(f"Message content must be between 1 and {max_len} characters")
    return content


def _next_timestamp(chat: models.Chat) -> datetime.datetime:
    # created_at strictly increases within a chat so (created_at, id) cursors never tie
    now = utcnow()
    last = as_utc(chat.last_message_at)
    if last is not None and now <= last:
        now = last + ONE_TICK
    chat.last_message_at = now
    return now


def add_system_message(db: Session, chat: models.Chat, user_id: int, content: str) -> models.Message:
    """Record a membership event inside the caller's transaction."""
    msg = models.Message(
        chat_id=chat.id,
        sender_id=user_id,
        content=content,
        message_type="system",
        created_at=_next_timestamp(chat),
    )
    db.add(msg)
    db.flush()
    return msg


def get_message(db: Session, chat_id: int, message_id: int):
    return (
        db.query(models.Message)
        .filter(models.Message.id == message_id, models.Message.chat_id == chat_id)
        .first()
    )


def _find_by_client_id(db: Session, chat_id: int, sender_id: int, client_message_id: str):
    return (
        db.query(models.Message)
        .filter(
            models.Message.chat_id == chat_id,
            models.Message.sender_id == sender_id,
            models.Message.client_message_id == client_message_id,
        )
        .first()
    )


def send_message(
    db: Session,
    chat_id: int,
    sender_id: int,
    body: schemas.MessageCreate,
    files: Optional[List[attachments_controller.IncomingFile]] = None,
) -> Tuple[models.Message, bool]:
    """Store a message. Returns ``(message, created)``.

    ``created`` is False when ``client_message_id`` matched an earlier send by
    the same member; that message comes back unchanged and nothing is written.
    """
    content = _validate_content(body.content)
    files = files or []
    for f in files:
        attachments_controller.validate_file(f)
    stored = []
    try:
        membership = _active_membership(db, chat_id, sender_id)
        if not membership:
            raise ForbiddenError("Not a member of this chat")
        if body.client_message_id:
            existing = _find_by_client_id(db, chat_id, sender_id, body.client_message_id)
            if existing:
                return existing, False
        if membership.is_muted:
            raise ForbiddenError("You are muted in this chat")
        _check_rate(sender_id)
        chat = db.query(models.Chat).filter(models.Chat.id == chat_id).with_for_update().first()
        if not chat.is_active:
            raise ValidationError("Chat is not active")
        if body.message_type == "announcement" and membership.role not in STAFF_ROLES:
            raise ForbiddenError("Only admins and moderators can post announcements")
        if body.reply_to_id is not None and not get_message(db, chat_id, body.reply_to_id):
            raise ValidationError("Reply message not found")

        attachments = attachments_controller.claim_pending(db, sender_id, body.attachment_ids)
        for f in files:
            rec = attachments_controller.store_file(db, sender_id, f)
            stored.append(rec.stored_path)
            attachments.append(rec)

        msg = models.Message(
            chat_id=chat_id,
            sender_id=sender_id,
            content=content,
            message_type=attachments_controller.derive_message_type(body.message_type, attachments),
            reply_to_id=body.reply_to_id,
            client_message_id=body.client_message_id,
            created_at=_next_timestamp(chat),
        )
        db.add(msg)
        db.flush()
        for att in attachments:
            att.message_id = msg.id
        db.commit()
    except IntegrityError:
        db.rollback()
        attachments_controller.discard_files(stored)
        # A concurrent retry with the same client_message_id won the insert
        existing = body.client_message_id and _find_by_client_id(db, chat_id, sender_id, body.client_message_id)
        if existing:
            return existing, False
        raise
    except Exception:
        db.rollback()
        attachments_controller.discard_files(stored)
        raise
    db.refresh(msg)
    logger.info(f"Message sent id={msg.id} chat_id={chat_id} sender_id={sender_id} type={msg.message_type}")
    return msg, True


def _check_rate(sender_id: int) -> None:
    settings = get_settings()
    result = default_rate_limiter.allow(
        key=f"rl:messages:{sender_id}",
        limit=settings.MESSAGE_RATE_LIMIT,
        window_seconds=settings.MESSAGE_RATE_WINDOW_SECONDS,
    )
    if not result.allowed:
        logger.warning(f"Message rate limit hit sender_id={sender_id} retry_after={result.retry_after_seconds}s")
        raise RateLimitError(
            f"Rate limit exceeded. Maximum {settings.MESSAGE_RATE_LIMIT} messages per "
            f"{settings.MESSAGE_RATE_WINDOW_SECONDS} seconds.",
            limit=settings.MESSAGE_RATE_LIMIT,
            retry_after_seconds=result.retry_after_seconds,
        )


def edit_message(db: Session, chat_id: int, message_id: int, editor_id: int, content: str) -> models.Message:
    msg = get_message(db, chat_id, message_id)
    if not msg or msg.is_deleted:
        raise NotFoundError("Message not found")
    if msg.sender_id != editor_id or msg.message_type == "system":
        raise ForbiddenError("Not authorized to edit this message")
    window = datetime.timedelta(minutes=get_settings().MESSAGE_EDIT_WINDOW_MINUTES)
    now = utcnow()
    if now - as_utc(msg.created_at) >= window:
        raise ExpiredError("Message is too old to edit")
    msg.content = _validate_content(content)
    msg.is_edited = True
    msg.edited_at = now
    db.commit()
    db.refresh(msg)
    logger.info(f"Message edited id={msg.id} chat_id={chat_id} by user_id={editor_id}")
    return msg


def delete_message(db: Session, chat_id: int, message_id: int, actor_id: int) -> models.Message:
    msg = get_message(db, chat_id, message_id)
    if not msg or msg.is_deleted:
        raise NotFoundError("Message not found")
    if msg.sender_id != actor_id:
        membership = _active_membership(db, chat_id, actor_id)
        if not membership or membership.role not in STAFF_ROLES:
            raise ForbiddenError("Not authorized to delete this message")
    msg.content = REDACTED_CONTENT
    msg.is_deleted = True
    msg.deleted_at = utcnow()
    db.commit()
    db.refresh(msg)
    logger.info(f"Message deleted id={msg.id} chat_id={chat_id} by user_id={actor_id}")
    return msg


def _advance_read_cursor(membership: models.ChatMember) -> None:
    now = utcnow()
    current = as_utc(membership.last_read_at)
    if current is None or now > current:
        membership.last_read_at = now


def mark_read(db: Session, chat_id: int, user_id: int) -> models.ChatMember:
    membership = _active_membership(db, chat_id, user_id)
    if not membership:
        raise ForbiddenError("Not a member of this chat")
    _advance_read_cursor(membership)
    db.commit()
    db.refresh(membership)
    return membership


def list_messages(db: Session, chat_id: int, requester_id: int, limit: Optional[int] = None, before: Optional[int] = None):
    """Page backwards through a chat's history.

    ``before`` is the id of the oldest message the client already holds. The
    page comes back oldest first; deleted messages keep their slot with
    redacted content. Fetching a page marks the chat read.
    """
    settings = get_settings()
    membership = _active_membership(db, chat_id, requester_id)
    if not membership:
        raise ForbiddenError("Not a member of this chat")
    if limit is None:
        limit = settings.MESSAGES_PAGE_SIZE
    limit = max(1, min(int(limit), settings.MESSAGES_MAX_PAGE_SIZE))

    q = (
        db.query(models.Message)
        .options(
            joinedload(models.Message.sender),
            joinedload(models.Message.reply_to).joinedload(models.Message.sender),
            selectinload(models.Message.attachments),
        )
        .filter(models.Message.chat_id == chat_id)
    )
    if before is not None:
        cursor = get_message(db, chat_id, before)
        if not cursor:
            raise ValidationError("Invalid cursor")
        q = q.filter(
            or_(
                models.Message.created_at < cursor.created_at,
                and_(models.Message.created_at == cursor.created_at, models.Message.id < cursor.id),
            )
        )
    rows = q.order_by(models.Message.created_at.desc(), models.Message.id.desc()).limit(limit + 1).all()
    has_more = len(rows) > limit
    page = list(reversed(rows[:limit]))

    messages = [to_message_out(m) for m in page]
    _advance_read_cursor(membership)
    db.commit()
    return {
        "messages": messages,
        "has_more": has_more,
        "oldest_message_id": page[0].id if page else None,
        "newest_message_id": page[-1].id if page else None,
    }


def unread_count(db: Session, membership: models.ChatMember) -> int:
    q = db.query(models.Message).filter(
        models.Message.chat_id == membership.chat_id,
        models.Message.sender_id != membership.user_id,
        models.Message.is_deleted.is_(False),
    )
    if membership.last_read_at is not None:
        q = q.filter(models.Message.created_at > membership.last_read_at)
    return q.count()


def last_message(db: Session, chat_id: int):
    return (
        db.query(models.Message)
        .filter(models.Message.chat_id == chat_id)
        .order_by(models.Message.created_at.desc(), models.Message.id.desc())
        .first()
    )


def _sender_out(user: models.User) -> schemas.UserBasic:
    return schemas.UserBasic(id=user.id, username=user.username, display_name=user.display_name, avatar=user.avatar)


def to_message_out(m: models.Message) -> schemas.MessageOut:
    reply = None
    if m.reply_to is not None:
        target = m.reply_to
        reply = schemas.ReplyPreview(
            id=target.id,
            content=target.content,
            message_type=target.message_type,
            sender_name=target.sender.name if target.sender else None,
            is_deleted=target.is_deleted,
        )
    attachments = []
    if not m.is_deleted:
        attachments = [
            schemas.AttachmentOut(id=a.id, filename=a.filename, url=a.url, mime_type=a.mime_type, size_bytes=a.size_bytes)
            for a in m.attachments
        ]
    return schemas.MessageOut(
        id=m.id,
        chat_id=m.chat_id,
        content=REDACTED_CONTENT if m.is_deleted else m.content,
        message_type=m.message_type,
        sender=_sender_out(m.sender),
        reply_to_id=m.reply_to_id,
        reply_to=reply,
        attachments=attachments,
        client_message_id=m.client_message_id,
        is_edited=m.is_edited,
        edited_at=as_utc(m.edited_at),
        is_deleted=m.is_deleted,
        deleted_at=as_utc(m.deleted_at),
        created_at=as_utc(m.created_at),
    )
