import logging
import os
import uuid
from dataclasses import dataclass
from sqlalchemy.orm import Session
from typing import List

from ..core.config import get_settings
from ..core.errors import ForbiddenError, NotFoundError, ValidationError
from ..db import models

logger = logging.getLogger(__name__)

ALLOWED_PREFIXES = ("image/", "video/")
ALLOWED_SPECIFIC = {
    "application/pdf",
    # Word
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    # Excel
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    # PowerPoint
    "application/vnd.ms-powerpoint",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    # Archives
    "application/zip",
    "application/x-zip-compressed",
    "application/x-7z-compressed",
    "application/x-tar",
    "application/gzip",
    "text/plain",
}


@dataclass
class IncomingFile:
    filename: str
    mime_type: str
    data: bytes


def files_dir() -> str:
    base = get_settings().FILES_DIR
    os.makedirs(base, exist_ok=True)
    return base


def validate_file(f: IncomingFile) -> None:
    max_bytes = get_settings().FILES_MAX_MB * 1024 * 1024
    if len(f.data) <= 0 or len(f.data) > max_bytes:
        raise ValidationError("File too large or empty")
    ok = f.mime_type.startswith(ALLOWED_PREFIXES) or f.mime_type in ALLOWED_SPECIFIC
    if not ok:
        raise ValidationError("Unsupported file type")


def store_file(db: Session, uploader_id: int, f: IncomingFile) -> models.Attachment:
    """Write the blob to disk and add an unlinked attachment row (flushed, not committed)."""
    validate_file(f)
    uid = uuid.uuid4().hex
    path = os.path.join(files_dir(), uid)
    with open(path, "wb") as fh:
        fh.write(f.data)
    rec = models.Attachment(
        filename=f.filename or f"file-{uid}",
        stored_path=uid,
        mime_type=f.mime_type,
        size_bytes=len(f.data),
        uploaded_by=uploader_id,
    )
    db.add(rec)
    try:
        db.flush()
    except Exception:
        discard_files([uid])
        raise
    logger.info(f"Stored attachment id={rec.id} size={rec.size_bytes} mime={rec.mime_type}")
    return rec


def discard_files(stored_paths: List[str]) -> None:
    """Remove blobs written by a transaction that did not commit."""
    for name in stored_paths:
        path = os.path.join(files_dir(), name)
        if os.path.exists(path):
            os.remove(path)
            logger.info(f"Discarded orphan blob {name}")


def upload(db: Session, uploader_id: int, f: IncomingFile) -> models.Attachment:
    rec = store_file(db, uploader_id, f)
    stored_path = rec.stored_path
    try:
        db.commit()
    except Exception:
        db.rollback()
        discard_files([stored_path])
        raise
    db.refresh(rec)
    return rec


def claim_pending(db: Session, uploader_id: int, attachment_ids: List[int]) -> List[models.Attachment]:
    """Attachments referenced by id must belong to the sender and not be linked to a message yet."""
    if not attachment_ids:
        return []
    ids = set(attachment_ids)
    recs = db.query(models.Attachment).filter(models.Attachment.id.in_(ids)).all()
    if len(recs) != len(ids):
        raise ValidationError("Attachment not found")
    for rec in recs:
        if rec.uploaded_by != uploader_id or rec.message_id is not None:
            raise ValidationError("Attachment not available")
    return recs


def derive_message_type(message_type: str, attachments: List[models.Attachment]) -> str:
    if message_type != "text" or not attachments:
        return message_type
    if all(a.mime_type.startswith("image/") for a in attachments):
        return "image"
    return "file"


def get_for_download(db: Session, attachment_id: int, user_id: int):
    att = db.get(models.Attachment, attachment_id)
    if not att:
        raise NotFoundError("File not found")
    if att.message_id is None:
        if att.uploaded_by != user_id:
            raise NotFoundError("File not found")
    else:
        msg = att.message
        if msg.is_deleted:
            raise NotFoundError("File not found")
        member = (
            db.query(models.ChatMember)
            .filter(
                models.ChatMember.chat_id == msg.chat_id,
                models.ChatMember.user_id == user_id,
                models.ChatMember.is_active.is_(True),
            )
            .first()
        )
        if not member:
            raise ForbiddenError("Not a member of this chat")
    full = os.path.join(files_dir(), att.stored_path)
    if not os.path.exists(full):
        raise NotFoundError("Missing blob")
    return att, full
