from fastapi import APIRouter, Depends, Query, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session
from typing import List, Optional

from ..controllers import chats_controller, memberships_controller, messages_controller
from ..db import schemas
from ..deps.db import get_db
from ..deps.auth import get_current_user
from ..ws import events

router = APIRouter(prefix="/chats", tags=["chats"])


def _membership_change(db: Session, fn, *args):
    membership, notice = fn(db, *args)
    chat = memberships_controller.get_chat(db, membership.chat_id)
    notice_out = messages_controller.to_message_out(notice).model_dump(mode="json", by_alias=True) if notice else None
    return schemas.MembershipOut.model_validate(membership), chat.member_count, notice_out


@router.get("", response_model=schemas.ChatListOut)
def get_user_chats(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user),
):
    return chats_controller.get_chats_for_user(db, current_user.id, page=page, limit=limit)


@router.get("/discover", response_model=schemas.DiscoverOut)
def discover_chats(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    category: Optional[schemas.ChatCategory] = None,
    university: Optional[str] = None,
    semester: Optional[schemas.Semester] = None,
    year: Optional[str] = Query(None, pattern=r"^\d{4}$"),
    q: Optional[str] = Query(None, max_length=100),
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user),
):
    return chats_controller.discover_chats(
        db, current_user.id, page=page, limit=limit,
        category=category, university=university, semester=semester, year=year, q=q,
    )


@router.get("/unread-counts", response_model=List[schemas.UnreadCountOut])
def get_unread_counts(db: Session = Depends(get_db), current_user=Depends(get_current_user)):
    return chats_controller.unread_counts(db, current_user.id)


@router.post("", response_model=schemas.ChatOut, status_code=status.HTTP_201_CREATED)
def create_chat(body: schemas.ChatCreate, db: Session = Depends(get_db), current_user=Depends(get_current_user)):
    chat = memberships_controller.create_chat(db, body, creator_id=current_user.id)
    return chats_controller.chat_out(chat)


@router.get("/{chat_id}", response_model=schemas.ChatDetailOut)
def get_chat(chat_id: int, db: Session = Depends(get_db), current_user=Depends(get_current_user)):
    return chats_controller.get_chat_detail(db, chat_id, current_user.id)


@router.post("/{chat_id}/join", response_model=schemas.MembershipOut)
async def join_chat(chat_id: int, db: Session = Depends(get_db), current_user=Depends(get_current_user)):
    out, count, notice = await run_in_threadpool(
        _membership_change, db, memberships_controller.join_chat, chat_id, current_user.id
    )
    await events.publish_membership_change(chat_id, current_user.id, "joined", count, notice)
    return out


@router.post("/{chat_id}/leave", response_model=schemas.MembershipOut)
async def leave_chat(chat_id: int, db: Session = Depends(get_db), current_user=Depends(get_current_user)):
    out, count, notice = await run_in_threadpool(
        _membership_change, db, memberships_controller.leave_chat, chat_id, current_user.id
    )
    await events.publish_membership_change(chat_id, current_user.id, "left", count, notice)
    return out


@router.post("/{chat_id}/members", response_model=schemas.MembershipOut, status_code=status.HTTP_201_CREATED)
async def add_chat_member(chat_id: int, body: schemas.AddMemberRequest, db: Session = Depends(get_db), current_user=Depends(get_current_user)):
    out, count, notice = await run_in_threadpool(
        _membership_change, db, memberships_controller.add_member, chat_id, current_user.id, body.user_id
    )
    await events.publish_membership_change(chat_id, body.user_id, "joined", count, notice)
    return out


@router.patch("/{chat_id}/members/{user_id}", response_model=schemas.MembershipOut)
def update_chat_member(chat_id: int, user_id: int, body: schemas.MemberUpdate, db: Session = Depends(get_db), current_user=Depends(get_current_user)):
    membership = memberships_controller.update_member(db, chat_id, current_user.id, user_id, body)
    return schemas.MembershipOut.model_validate(membership)


@router.delete("/{chat_id}/members/{user_id}", response_model=schemas.MembershipOut)
async def remove_chat_member(chat_id: int, user_id: int, db: Session = Depends(get_db), current_user=Depends(get_current_user)):
    out, count, notice = await run_in_threadpool(
        _membership_change, db, memberships_controller.remove_member, chat_id, current_user.id, user_id
    )
    await events.publish_membership_change(chat_id, user_id, "removed", count, notice)
    return out
