from urllib.parse import quote

from fastapi import APIRouter, Depends, File, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from ..controllers import attachments_controller
from ..db import schemas
from ..deps.db import get_db
from ..deps.auth import get_current_user

router = APIRouter()


@router.post("/files/upload", response_model=schemas.AttachmentOut, status_code=status.HTTP_201_CREATED)
async def upload_file(file: UploadFile = File(...), db: Session = Depends(get_db), current_user=Depends(get_current_user)):
    data = await file.read()
    incoming = attachments_controller.IncomingFile(
        filename=file.filename or "file",
        mime_type=file.content_type or "application/octet-stream",
        data=data,
    )
    rec = await run_in_threadpool(attachments_controller.upload, db, current_user.id, incoming)
    return schemas.AttachmentOut(id=rec.id, filename=rec.filename, url=rec.url, mime_type=rec.mime_type, size_bytes=rec.size_bytes)


@router.get("/files/{file_id}")
def serve_file(file_id: int, db: Session = Depends(get_db), current_user=Depends(get_current_user)):
    att, full = attachments_controller.get_for_download(db, file_id, current_user.id)

    def iterator():
        with open(full, "rb") as f:
            while True:
                chunk = f.read(8192)
                if not chunk:
                    break
                yield chunk

    resp = StreamingResponse(iterator(), media_type=att.mime_type)
    # ASCII fallback plus RFC 5987 filename* for non-ASCII names
    safe_ascii = (att.filename or "file").encode("ascii", "ignore").decode("ascii") or "file"
    resp.headers["Content-Disposition"] = (
        f"attachment; filename=\"{safe_ascii}\"; filename*=UTF-8''{quote(att.filename or 'file')}"
    )
    return resp
