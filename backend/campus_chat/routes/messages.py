import json

from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session
from typing import List, Optional

from ..controllers import attachments_controller, memberships_controller, messages_controller
from ..core.errors import ValidationError
from ..db import schemas
from ..deps.db import get_db
from ..deps.auth import get_current_user
from ..ws import events

router = APIRouter(prefix="/chats/{chat_id}/messages", tags=["messages"])

# multipart field name -> MessageCreate field
FORM_FIELDS = {
    "content": "content",
    "messageType": "message_type",
    "replyToId": "reply_to_id",
    "clientMessageId": "client_message_id",
}


def _dump(out: schemas.MessageOut) -> dict:
    return out.model_dump(mode="json", by_alias=True)


async def _read_message_body(request: Request):
    """Accept either a JSON body or a multipart form carrying ``files`` parts."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("multipart/form-data"):
        form = await request.form()
        data = {}
        for key, field in FORM_FIELDS.items():
            value = form.get(key)
            if value is None:
                value = form.get(field)
            if value not in (None, ""):
                data[field] = value
        data["attachment_ids"] = [int(v) for v in form.getlist("attachmentIds") if str(v).isdigit()]
        files: List[attachments_controller.IncomingFile] = []
        for part in form.getlist("files"):
            if isinstance(part, str):
                continue
            files.append(attachments_controller.IncomingFile(
                filename=part.filename or "file",
                mime_type=part.content_type or "application/octet-stream",
                data=await part.read(),
            ))
        return schemas.MessageCreate.model_validate(data), files
    try:
        payload = await request.json()
    except json.JSONDecodeError:
        raise ValidationError("Invalid JSON body")
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON body")
    return schemas.MessageCreate.model_validate(payload), []


def _send(db: Session, chat_id: int, user_id: int, body: schemas.MessageCreate, files):
    msg, created = messages_controller.send_message(db, chat_id, user_id, body, files=files)
    out = messages_controller.to_message_out(msg)
    member_ids = memberships_controller.active_member_ids(db, chat_id) if created else []
    return out, created, member_ids


def _edit(db: Session, chat_id: int, message_id: int, user_id: int, content: str):
    return messages_controller.to_message_out(messages_controller.edit_message(db, chat_id, message_id, user_id, content))


def _delete(db: Session, chat_id: int, message_id: int, user_id: int):
    return messages_controller.to_message_out(messages_controller.delete_message(db, chat_id, message_id, user_id))


@router.get("", response_model=schemas.MessagePageOut)
def get_messages(
    chat_id: int,
    limit: Optional[int] = Query(None, ge=1),
    before: Optional[int] = None,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user),
):
    return messages_controller.list_messages(db, chat_id, current_user.id, limit=limit, before=before)


@router.post("", response_model=schemas.MessageOut, status_code=status.HTTP_201_CREATED)
async def send_message(
    chat_id: int,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user),
):
    body, files = await _read_message_body(request)
    out, created, member_ids = await run_in_threadpool(_send, db, chat_id, current_user.id, body, files)
    if not created:
        # retried send, the room already has this message
        response.status_code = status.HTTP_200_OK
        return out
    await events.publish_new_message(chat_id, _dump(out))
    events.notify_offline_members(chat_id, member_ids, current_user.id, out.id)
    return out


@router.put("/{message_id}", response_model=schemas.MessageOut)
async def edit_message(chat_id: int, message_id: int, body: schemas.MessageUpdate, db: Session = Depends(get_db), current_user=Depends(get_current_user)):
    out = await run_in_threadpool(_edit, db, chat_id, message_id, current_user.id, body.content)
    await events.publish_message_edited(chat_id, _dump(out))
    return out


@router.delete("/{message_id}", response_model=schemas.MessageOut)
async def delete_message(chat_id: int, message_id: int, db: Session = Depends(get_db), current_user=Depends(get_current_user)):
    out = await run_in_threadpool(_delete, db, chat_id, message_id, current_user.id)
    await events.publish_message_deleted(chat_id, _dump(out))
    return out


@router.post("/mark-read", response_model=schemas.ReadStateOut)
async def mark_messages_read(chat_id: int, db: Session = Depends(get_db), current_user=Depends(get_current_user)):
    membership = await run_in_threadpool(messages_controller.mark_read, db, chat_id, current_user.id)
    await events.publish_read(chat_id, current_user.id, membership.last_read_at)
    return schemas.ReadStateOut(chat_id=chat_id, last_read_at=membership.last_read_at)
