# routers/attachments.py — Issue attachments: upload, download, delete
# Metadata lives in the database, bytes in the blob store. Uploads and
# deletes touch both; a failed blob removal is logged and does not block the
# metadata delete.
import logging
import unicodedata
from typing import Optional, List
from urllib.parse import quote

from fastapi import APIRouter, Depends, Query, Request, Response, UploadFile, File
from pydantic import BaseModel
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from audit import record_audit
from auth import get_current_user
from config import Settings, get_settings
from database import get_db_session
from errors import NotFoundError, InvalidInputError
from models import Attachment, Issue, User, AuditEventType, isoformat_utc, utcnow
from permissions import can_upload_attachment, can_delete_attachment, require
from routers.issues import get_issue_or_404
from storage import LocalBlobStore, get_blob_store

router = APIRouter(prefix="/api/v1", tags=["Attachments"])
logger = logging.getLogger("bugboard.attachments")


# --- Schemas ---

class AttachmentOut(BaseModel):
    id: int
    issue_id: int
    uploader_id: Optional[int] = None
    filename: str
    content_type: str
    size: int
    uploaded_at: str


# --- Helpers ---

def _attachment_to_out(a: Attachment) -> AttachmentOut:
    return AttachmentOut(
        id=a.id,
        issue_id=a.issue_id,
        uploader_id=a.uploader_id,
        filename=a.filename,
        content_type=a.content_type,
        size=a.size or 0,
        uploaded_at=isoformat_utc(a.uploaded_at) or "",
    )


async def _get_attachment_or_404(db: AsyncSession, attachment_id: int) -> Attachment:
    attachment = await db.get(Attachment, attachment_id)
    if not attachment:
        raise NotFoundError(f"Attachment {attachment_id} not found")
    return attachment


def content_disposition(filename: str) -> str:
    """Latin-1 safe header: ASCII fallback plus an RFC 5987 UTF-8 filename*"""
    name = "".join(ch for ch in filename if ch not in "\r\n")
    fallback = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii")
    fallback = "".join(ch for ch in fallback if ch not in '"\\' and ch.isprintable()).strip()
    return f"attachment; filename=\"{fallback or 'download'}\"; filename*=UTF-8''{quote(name, safe='')}"


def normalise_content_type(declared: Optional[str]) -> str:
    # "image/png; charset=binary" -> "image/png"
    return (declared or "").split(";", 1)[0].strip().lower()


def validate_upload(
    filename: Optional[str], content_type: Optional[str], size: int, settings: Settings
) -> str:
    """Check name, size and declared type; returns the normalised content type."""
    if not filename or not filename.strip():
        raise InvalidInputError("Filename is required")
    if size <= 0:
        raise InvalidInputError("File is empty")
    if size > settings.max_attachment_bytes:
        raise InvalidInputError(
            f"File exceeds the maximum size of {settings.max_attachment_bytes} bytes"
        )
    normalised = normalise_content_type(content_type)
    if not normalised:
        raise InvalidInputError("Content type is required")
    if normalised not in settings.allowed_content_types:
        raise InvalidInputError(f"Content type not allowed: {normalised}")
    return normalised


# --- Issue-scoped endpoints ---

@router.post("/issues/{issue_id}/attachments", response_model=AttachmentOut, status_code=201)
async def upload_attachment(
    issue_id: int,
    request: Request,
    file: UploadFile = File(...),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    blobs: LocalBlobStore = Depends(get_blob_store),
    settings: Settings = Depends(get_settings),
):
    """Upload a file to an issue"""
    issue = await get_issue_or_404(db, issue_id)
    require(can_upload_attachment(user, issue), "Archived issues only accept attachments from an admin")

    # Read one byte past the limit so oversized files are detected without buffering them whole
    data = await file.read(settings.max_attachment_bytes + 1)
    content_type = validate_upload(file.filename, file.content_type, len(data), settings)

    locator = await blobs.put(data)
    attachment = Attachment(
        uploader_id=user.id,
        filename=file.filename.strip(),
        content_type=content_type,
        size=len(data),
        storage_key=locator,
        uploaded_at=utcnow(),
    )
    issue.attachments.append(attachment)
    try:
        await db.flush()
        record_audit(
            db, AuditEventType.ATTACHMENT_UPLOADED, user, "attachment", attachment.id,
            {"issue_id": issue.id, "filename": attachment.filename, "size": attachment.size},
            request,
        )
        await db.commit()
    except Exception:
        # Keep blob and metadata consistent: no orphaned bytes
        await db.rollback()
        try:
            await blobs.delete(locator)
        except (OSError, NotFoundError) as cleanup_exc:
            logger.warning(f"Could not remove blob {locator} after failed upload: {cleanup_exc}")
        raise

    return _attachment_to_out(attachment)


@router.get("/issues/{issue_id}/attachments", response_model=List[AttachmentOut])
async def list_issue_attachments(
    issue_id: int,
    order: str = Query(default="uploaded", pattern="^(uploaded|size)$"),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Attachments of an issue, by upload order or by size (largest first)"""
    await get_issue_or_404(db, issue_id)
    stmt = select(Attachment).where(Attachment.issue_id == issue_id)
    if order == "size":
        stmt = stmt.order_by(Attachment.size.desc(), Attachment.id)
    else:
        stmt = stmt.order_by(Attachment.id)
    result = await db.execute(stmt)
    return [_attachment_to_out(a) for a in result.scalars().all()]


@router.get("/issues/{issue_id}/attachments/count")
async def count_issue_attachments(
    issue_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Number of attachments on an issue"""
    await get_issue_or_404(db, issue_id)
    result = await db.execute(
        select(func.count(Attachment.id)).where(Attachment.issue_id == issue_id)
    )
    return {"issue_id": issue_id, "count": result.scalar() or 0}


@router.get("/issues/{issue_id}/attachments/total-size")
async def total_attachment_size(
    issue_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Sum of attachment sizes on an issue, in bytes"""
    await get_issue_or_404(db, issue_id)
    result = await db.execute(
        select(func.coalesce(func.sum(Attachment.size), 0)).where(Attachment.issue_id == issue_id)
    )
    return {"issue_id": issue_id, "total_size": int(result.scalar() or 0)}


# --- Attachment endpoints ---

@router.get("/attachments/{attachment_id}", response_model=AttachmentOut)
async def get_attachment(
    attachment_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Attachment metadata"""
    return _attachment_to_out(await _get_attachment_or_404(db, attachment_id))


@router.get("/attachments/{attachment_id}/download")
async def download_attachment(
    attachment_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    blobs: LocalBlobStore = Depends(get_blob_store),
):
    """Attachment bytes with their declared content type"""
    attachment = await _get_attachment_or_404(db, attachment_id)
    data = await blobs.get(attachment.storage_key)
    return Response(
        content=data,
        media_type=attachment.content_type,
        headers={"Content-Disposition": content_disposition(attachment.filename)},
    )


@router.delete("/attachments/{attachment_id}")
async def delete_attachment(
    attachment_id: int,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    blobs: LocalBlobStore = Depends(get_blob_store),
):
    """Delete an attachment (uploader, issue creator or admin)"""
    attachment = await _get_attachment_or_404(db, attachment_id)
    issue = await db.get(Issue, attachment.issue_id)
    require(can_delete_attachment(user, attachment, issue), "Cannot delete this attachment")

    try:
        await blobs.delete(attachment.storage_key)
    except (OSError, NotFoundError) as exc:
        logger.warning(f"Could not delete blob of attachment {attachment.id}, removing metadata anyway: {exc}")

    issue.attachments.remove(attachment)
    record_audit(
        db, AuditEventType.ATTACHMENT_DELETED, user, "attachment", attachment_id,
        {"issue_id": issue.id, "filename": attachment.filename}, request,
    )
    await db.commit()
    return {"attachment_id": attachment_id, "status": "deleted"}
