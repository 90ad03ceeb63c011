import math
from sqlalchemy import func, select
from sqlalchemy.orm import Session, joinedload
from typing import Optional

from ..core.errors import NotFoundError
from ..db import models, schemas
from . import messages_controller
from .memberships_controller import require_membership


def _pagination(page: int, limit: int, total: int) -> schemas.Pagination:
    return schemas.Pagination(
        current_page=page,
        total_pages=math.ceil(total / limit) if limit else 0,
        total_items=total,
        items_per_page=limit,
    )


def _user_basic(u: models.User) -> schemas.UserBasic:
    return schemas.UserBasic(id=u.id, username=u.username, display_name=u.display_name, avatar=u.avatar)


def chat_out(chat: models.Chat) -> schemas.ChatOut:
    return schemas.ChatOut.model_validate(chat)


def get_chats_for_user(db: Session, user_id: int, page: int = 1, limit: int = 20) -> schemas.ChatListOut:
    q = (
        db.query(models.ChatMember)
        .join(models.Chat, models.Chat.id == models.ChatMember.chat_id)
        .options(joinedload(models.ChatMember.chat).joinedload(models.Chat.creator))
        .filter(models.ChatMember.user_id == user_id, models.ChatMember.is_active.is_(True))
    )
    total = q.count()
    memberships = (
        q.order_by(func.coalesce(models.Chat.last_message_at, models.Chat.created_at).desc(), models.Chat.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    chats = []
    for m in memberships:
        last = messages_controller.last_message(db, m.chat_id)
        summary = schemas.ChatSummaryOut(
            **chat_out(m.chat).model_dump(),
            membership=schemas.MembershipOut.model_validate(m),
            last_message=messages_controller.to_message_out(last) if last else None,
            unread_count=messages_controller.unread_count(db, m),
        )
        chats.append(summary)
    return schemas.ChatListOut(chats=chats, pagination=_pagination(page, limit, total))


def discover_chats(
    db: Session,
    user_id: int,
    page: int = 1,
    limit: int = 20,
    category: Optional[str] = None,
    university: Optional[str] = None,
    semester: Optional[str] = None,
    year: Optional[str] = None,
    q: Optional[str] = None,
) -> schemas.DiscoverOut:
    joined = select(models.ChatMember.chat_id).where(
        models.ChatMember.user_id == user_id, models.ChatMember.is_active.is_(True)
    )
    query = (
        db.query(models.Chat)
        .options(joinedload(models.Chat.creator))
        .filter(
            models.Chat.is_active.is_(True),
            models.Chat.is_private.is_(False),
            models.Chat.id.notin_(joined),
        )
    )
    if category:
        query = query.filter(models.Chat.category == category)
    if university:
        query = query.filter(models.Chat.university == university)
    if semester:
        query = query.filter(models.Chat.semester == semester)
    if year:
        query = query.filter(models.Chat.year == year)
    if q:
        pattern = f"%{q}%"
        query = query.filter(models.Chat.name.ilike(pattern) | models.Chat.description.ilike(pattern))
    total = query.count()
    rows = (
        query.order_by(models.Chat.member_count.desc(), models.Chat.created_at.desc(), models.Chat.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return schemas.DiscoverOut(chats=[chat_out(c) for c in rows], pagination=_pagination(page, limit, total))


def get_chat_detail(db: Session, chat_id: int, user_id: int) -> schemas.ChatDetailOut:
    chat = db.query(models.Chat).filter(models.Chat.id == chat_id).first()
    if not chat:
        raise NotFoundError("Chat not found")
    membership = require_membership(db, chat_id, user_id)
    members = (
        db.query(models.ChatMember)
        .options(joinedload(models.ChatMember.user))
        .filter(models.ChatMember.chat_id == chat_id, models.ChatMember.is_active.is_(True))
        .order_by(models.ChatMember.joined_at.asc(), models.ChatMember.id.asc())
        .all()
    )
    return schemas.ChatDetailOut(
        **chat_out(chat).model_dump(),
        members=[
            schemas.MemberOut(user=_user_basic(m.user), role=m.role, joined_at=m.joined_at, is_muted=m.is_muted)
            for m in members
        ],
        user_membership=schemas.MembershipOut.model_validate(membership),
    )


def unread_counts(db: Session, user_id: int):
    memberships = (
        db.query(models.ChatMember)
        .filter(models.ChatMember.user_id == user_id, models.ChatMember.is_active.is_(True))
        .all()
    )
    return [
        schemas.UnreadCountOut(chat_id=m.chat_id, unread_count=messages_controller.unread_count(db, m))
        for m in memberships
    ]
