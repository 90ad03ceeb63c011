"""Chat membership: creating chats, joining, leaving and role changes.

Every operation that changes the set of active members adjusts
``Chat.member_count`` in the same transaction. The chat row is locked with
``SELECT ... FOR UPDATE`` while membership rows are read, seats are claimed
with a conditional ``UPDATE`` that cannot overshoot ``member_limit``, and the
``(chat_id, user_id)`` unique constraint rejects a racing duplicate insert.
Membership rows only change state through conditional ``UPDATE`` statements
(``WHERE is_active = ...``), and an admin is only deactivated or demoted while
another active admin exists, checked inside the same statement. Databases
without row locks (SQLite) still serialize those writes.
"""
import logging
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased
from typing import List, Optional, Tuple

from ..core.config import get_settings
from ..core.errors import CapacityError, ConflictError, ForbiddenError, NotFoundError
from ..core.timeutil import utcnow
from ..db import models, schemas
from ..db.models.chat_member import STAFF_ROLES
from . import messages_controller
from .users_controller import get_user

logger = logging.getLogger(__name__)


def get_chat(db: Session, chat_id: int, lock: bool = False):
    q = db.query(models.Chat).filter(models.Chat.id == chat_id)
    if lock:
        q = q.with_for_update()
    return q.first()


def get_membership(db: Session, chat_id: int, user_id: int, lock: bool = False):
    q = db.query(models.ChatMember).filter(
        models.ChatMember.chat_id == chat_id,
        models.ChatMember.user_id == user_id,
    )
    if lock:
        q = q.with_for_update()
    return q.first()


def get_active_membership(db: Session, chat_id: int, user_id: int):
    m = get_membership(db, chat_id, user_id)
    return m if m and m.is_active else None


def require_membership(db: Session, chat_id: int, user_id: int) -> models.ChatMember:
    m = get_active_membership(db, chat_id, user_id)
    if not m:
        raise ForbiddenError("Not a member of this chat")
    return m


def active_chat_ids(db: Session, user_id: int) -> List[int]:
    rows = (
        db.query(models.ChatMember.chat_id)
        .join(models.Chat, models.Chat.id == models.ChatMember.chat_id)
        .filter(
            models.ChatMember.user_id == user_id,
            models.ChatMember.is_active.is_(True),
            models.Chat.is_active.is_(True),
        )
        .all()
    )
    return [r.chat_id for r in rows]


def active_member_ids(db: Session, chat_id: int) -> List[int]:
    rows = (
        db.query(models.ChatMember.user_id)
        .filter(models.ChatMember.chat_id == chat_id, models.ChatMember.is_active.is_(True))
        .all()
    )
    return [r.user_id for r in rows]


def count_active_admins(db: Session, chat_id: int) -> int:
    return (
        db.query(models.ChatMember)
        .filter(
            models.ChatMember.chat_id == chat_id,
            models.ChatMember.role == "admin",
            models.ChatMember.is_active.is_(True),
        )
        .count()
    )


def create_chat(db: Session, data: schemas.ChatCreate, creator_id: int) -> models.Chat:
    member_limit = data.member_limit or get_settings().DEFAULT_MEMBER_LIMIT
    chat = models.Chat(
        name=data.name,
        description=data.description,
        category=data.category,
        university=data.university,
        semester=data.semester,
        year=data.year,
        is_private=data.is_private,
        member_limit=member_limit,
        member_count=1,
        created_by=creator_id,
    )
    db.add(chat)
    db.flush()
    db.add(models.ChatMember(chat_id=chat.id, user_id=creator_id, role="admin", last_read_at=utcnow()))
    db.commit()
    db.refresh(chat)
    logger.info(f"Chat created id={chat.id} name={chat.name!r} by user_id={creator_id}")
    return chat


def _claim_seat(db: Session, chat_id: int) -> None:
    # Atomic check-and-increment, two racing joins cannot both take the last seat
    updated = (
        db.query(models.Chat)
        .filter(models.Chat.id == chat_id, models.Chat.member_count < models.Chat.member_limit)
        .update({models.Chat.member_count: models.Chat.member_count + 1}, synchronize_session=False)
    )
    if updated == 0:
        raise CapacityError("Chat is full")


def _release_seat(db: Session, chat_id: int) -> None:
    (
        db.query(models.Chat)
        .filter(models.Chat.id == chat_id, models.Chat.member_count > 0)
        .update({models.Chat.member_count: models.Chat.member_count - 1}, synchronize_session=False)
    )


def _reactivate(db: Session, membership: models.ChatMember, now) -> None:
    # only one of two racing rejoins flips the dormant row
    updated = (
        db.query(models.ChatMember)
        .filter(models.ChatMember.id == membership.id, models.ChatMember.is_active.is_(False))
        .update(
            {
                models.ChatMember.is_active: True,
                models.ChatMember.role: "member",
                models.ChatMember.is_muted: False,
                models.ChatMember.joined_at: now,
                models.ChatMember.last_read_at: now,
            },
            synchronize_session=False,
        )
    )
    if updated == 0:
        raise ConflictError("Already a member of this chat")
    db.refresh(membership)


def _activate(db: Session, chat: models.Chat, user: models.User) -> Tuple[models.ChatMember, models.Message]:
    existing = get_membership(db, chat.id, user.id, lock=True)
    if existing and existing.is_active:
        raise ConflictError("Already a member of this chat")
    now = utcnow()
    if existing:
        _reactivate(db, existing, now)
        _claim_seat(db, chat.id)
        membership = existing
    else:
        _claim_seat(db, chat.id)
        membership = models.ChatMember(chat_id=chat.id, user_id=user.id, role="member", joined_at=now, last_read_at=now)
        db.add(membership)
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            raise ConflictError("Already a member of this chat")
    notice = messages_controller.add_system_message(db, chat, user.id, f"{user.name} joined the chat")
    return membership, notice


def _finish(db: Session, membership: models.ChatMember, notice: Optional[models.Message]):
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("Membership changed concurrently, retry")
    db.refresh(membership)
    if notice is not None:
        db.refresh(notice)
    return membership, notice


def join_chat(db: Session, chat_id: int, user_id: int):
    """Join a public chat. Returns ``(membership, system_message)``."""
    try:
        chat = get_chat(db, chat_id, lock=True)
        if not chat or not chat.is_active:
            raise NotFoundError("Chat not found")
        if chat.is_private:
            raise ForbiddenError("Cannot join private chat without invitation")
        if chat.member_count >= chat.member_limit:
            raise CapacityError("Chat is full")
        user = get_user(db, user_id)
        if not user:
            raise NotFoundError("User not found")
        membership, notice = _activate(db, chat, user)
    except Exception:
        db.rollback()
        raise
    result = _finish(db, membership, notice)
    logger.info(f"User user_id={user_id} joined chat_id={chat_id}")
    return result


def add_member(db: Session, chat_id: int, actor_id: int, user_id: int):
    """Admins and moderators bring a user in, the only way into a private chat."""
    try:
        chat = get_chat(db, chat_id, lock=True)
        if not chat or not chat.is_active:
            raise NotFoundError("Chat not found")
        actor = get_active_membership(db, chat_id, actor_id)
        if not actor or actor.role not in STAFF_ROLES:
            raise ForbiddenError("Only admins and moderators can add members")
        user = get_user(db, user_id)
        if not user or not user.is_active:
            raise NotFoundError("User not found")
        if chat.member_count >= chat.member_limit:
            raise CapacityError("Chat is full")
        membership, notice = _activate(db, chat, user)
    except Exception:
        db.rollback()
        raise
    result = _finish(db, membership, notice)
    logger.info(f"User user_id={user_id} added to chat_id={chat_id} by user_id={actor_id}")
    return result


def _another_admin(chat_id: int, member_id: int):
    others = aliased(models.ChatMember)
    return (
        select(func.count(others.id))
        .where(
            others.chat_id == chat_id,
            others.id != member_id,
            others.role == "admin",
            others.is_active.is_(True),
        )
        .scalar_subquery()
        > 0
    )


def _deactivate(db: Session, chat: models.Chat, membership: models.ChatMember, notice_text: str):
    if membership.role == "admin" and count_active_admins(db, chat.id) <= 1:
        raise ForbiddenError("Cannot leave chat as the only admin. Transfer admin rights first.")
    # the admin rule is re-checked by the write itself, two admins leaving together cannot both pass
    updated = (
        db.query(models.ChatMember)
        .filter(
            models.ChatMember.id == membership.id,
            models.ChatMember.is_active.is_(True),
            or_(models.ChatMember.role != "admin", _another_admin(chat.id, membership.id)),
        )
        .update({models.ChatMember.is_active: False}, synchronize_session=False)
    )
    db.refresh(membership)
    if updated == 0:
        if not membership.is_active:
            raise NotFoundError("Not a member of this chat")
        raise ForbiddenError("Cannot leave chat as the only admin. Transfer admin rights first.")
    _release_seat(db, chat.id)
    return messages_controller.add_system_message(db, chat, membership.user_id, notice_text)


def leave_chat(db: Session, chat_id: int, user_id: int):
    """Leave a chat. Returns ``(membership, system_message)``."""
    try:
        chat = get_chat(db, chat_id, lock=True)
        membership = get_membership(db, chat_id, user_id, lock=True) if chat else None
        if not membership or not membership.is_active:
            raise NotFoundError("Not a member of this chat")
        notice = _deactivate(db, chat, membership, f"{membership.user.name} left the chat")
    except Exception:
        db.rollback()
        raise
    result = _finish(db, membership, notice)
    logger.info(f"User user_id={user_id} left chat_id={chat_id}")
    return result


def remove_member(db: Session, chat_id: int, actor_id: int, user_id: int):
    try:
        chat = get_chat(db, chat_id, lock=True)
        if not chat:
            raise NotFoundError("Chat not found")
        actor = get_active_membership(db, chat_id, actor_id)
        if not actor or actor.role not in STAFF_ROLES:
            raise ForbiddenError("Only admins and moderators can remove members")
        membership = get_membership(db, chat_id, user_id, lock=True)
        if not membership or not membership.is_active:
            raise NotFoundError("Not a member of this chat")
        if actor.role != "admin" and membership.role != "member":
            raise ForbiddenError("Moderators can only remove plain members")
        notice = _deactivate(db, chat, membership, f"{membership.user.name} was removed from the chat")
    except Exception:
        db.rollback()
        raise
    result = _finish(db, membership, notice)
    logger.info(f"User user_id={user_id} removed from chat_id={chat_id} by user_id={actor_id}")
    return result


def _demote_admin(db: Session, chat_id: int, membership: models.ChatMember, role: str) -> None:
    updated = (
        db.query(models.ChatMember)
        .filter(
            models.ChatMember.id == membership.id,
            models.ChatMember.role == "admin",
            models.ChatMember.is_active.is_(True),
            _another_admin(chat_id, membership.id),
        )
        .update({models.ChatMember.role: role}, synchronize_session=False)
    )
    if updated == 0:
        raise ForbiddenError("Cannot demote the only admin")
    db.refresh(membership)


def update_member(db: Session, chat_id: int, actor_id: int, user_id: int, data: schemas.MemberUpdate) -> models.ChatMember:
    """Change a member's role (admins only) or mute flag (admins and moderators)."""
    try:
        chat = get_chat(db, chat_id, lock=True)
        if not chat:
            raise NotFoundError("Chat not found")
        actor = get_active_membership(db, chat_id, actor_id)
        if not actor or actor.role not in STAFF_ROLES:
            raise ForbiddenError("Not permitted")
        membership = get_membership(db, chat_id, user_id, lock=True)
        if not membership or not membership.is_active:
            raise NotFoundError("Not a member of this chat")
        if data.role is not None and data.role != membership.role:
            if actor.role != "admin":
                raise ForbiddenError("Only admins can change roles")
            if membership.role == "admin":
                _demote_admin(db, chat_id, membership, data.role)
            else:
                membership.role = data.role
        if data.is_muted is not None:
            if actor.role != "admin" and membership.role != "member":
                raise ForbiddenError("Moderators can only mute plain members")
            membership.is_muted = data.is_muted
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(membership)
    logger.info(f"Membership updated chat_id={chat_id} user_id={user_id} role={membership.role} muted={membership.is_muted}")
    return membership
