"""
InternTrack - File Upload Service
Validates an upload, writes the blob, then writes the metadata row.

The two writes cannot share a transaction, so the upload runs as a saga: if the
metadata write fails after the blob landed, the blob is deleted again. A blob
that survives a failed compensation is picked up by reconcile_orphans().
"""

import os
import uuid
import logging
from datetime import timedelta
from pathlib import PurePosixPath
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from errors import ConstraintViolation, NotFound, TooLarge, UpstreamFailure
from models import FileUpload, MAX_UPLOAD_BYTES, Task, utcnow
from policies import authorize, can_create_file, can_read_file, can_read_task
from storage import LocalBlobStore

logger = logging.getLogger("interntrack.uploads")

ORPHAN_BLOB_GRACE_MINUTES = int(os.getenv("ORPHAN_BLOB_GRACE_MINUTES", "60"))

ALLOWED_MIME_PREFIXES = ("image/",)
ALLOWED_MIME_TYPES = {
    "application/pdf",
    "text/plain",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}
ALLOWED_EXTENSIONS = {".pdf", ".txt", ".doc", ".docx"}


def check_size(size: int) -> None:
    if size > MAX_UPLOAD_BYTES:
        raise TooLarge()


def check_file_type(original_name: str, mime_type: Optional[str]) -> None:
    mime_type = (mime_type or "").lower()
    extension = PurePosixPath(original_name).suffix.lower()
    if (
        mime_type.startswith(ALLOWED_MIME_PREFIXES)
        or mime_type in ALLOWED_MIME_TYPES
        or extension in ALLOWED_EXTENSIONS
    ):
        return
    raise ConstraintViolation("File type not allowed. Please upload images, PDFs, or documents.")


def storage_filename(original_name: str) -> str:
    extension = PurePosixPath(original_name).suffix.lower()
    return f"{uuid.uuid4()}{extension}"


async def _load_task(db: AsyncSession, task_id: str) -> Task:
    task = (await db.execute(select(Task).where(Task.id == task_id))).scalar_one_or_none()
    if not task:
        raise NotFound("Task not found")
    return task


async def _compensate(store: LocalBlobStore, path: str) -> None:
    try:
        await store.delete(path)
        logger.warning(f"Metadata write failed; removed blob {path}")
    except UpstreamFailure:
        logger.error(f"Metadata write failed and blob {path} could not be removed; left for reconcile")


async def create_upload(
    db: AsyncSession,
    store: LocalBlobStore,
    actor,
    original_name: str,
    mime_type: Optional[str],
    data: bytes,
    task_id: Optional[str] = None,
    uploaded_by: Optional[str] = None,
) -> FileUpload:
    uploader_id = uploaded_by or actor.id
    authorize(can_create_file(actor, uploader_id), "You can only upload files as yourself")

    original_name = os.path.basename(original_name or "").strip()
    if not original_name:
        raise ConstraintViolation("File name is required")
    check_size(len(data))
    check_file_type(original_name, mime_type)

    if task_id:
        task = await _load_task(db, task_id)
        authorize(can_read_task(actor, task), "You do not have access to this task")

    filename = storage_filename(original_name)
    path = f"{uploader_id}/{filename}"
    await store.put(path, data)

    record = FileUpload(
        filename=filename,
        original_name=original_name,
        file_path=path,
        file_size=len(data),
        mime_type=mime_type or "application/octet-stream",
        uploaded_by=uploader_id,
        task_id=task_id or None,
    )
    db.add(record)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        await _compensate(store, path)
        raise ConstraintViolation("Upload record violates a data constraint")
    except DBAPIError:
        await db.rollback()
        await _compensate(store, path)
        raise UpstreamFailure("Database is unavailable")
    except Exception:
        await db.rollback()
        await _compensate(store, path)
        raise

    await db.refresh(record)
    logger.info(f"Stored upload {record.id} ({record.file_size} bytes) at {path}")
    return record


async def get_readable_upload(db: AsyncSession, actor, upload_id: str) -> FileUpload:
    record = (await db.execute(
        select(FileUpload).where(FileUpload.id == upload_id)
    )).scalar_one_or_none()
    if not record:
        raise NotFound("File not found")

    task = None
    if record.task_id and record.uploaded_by != actor.id:
        task = (await db.execute(select(Task).where(Task.id == record.task_id))).scalar_one_or_none()
    authorize(can_read_file(actor, record, task), "You do not have access to this file")
    return record


async def reconcile_orphans(
    db: AsyncSession,
    store: LocalBlobStore,
    grace: Optional[timedelta] = None,
) -> List[str]:
    """Delete blobs with no metadata row that are older than the grace period"""
    grace = grace if grace is not None else timedelta(minutes=ORPHAN_BLOB_GRACE_MINUTES)
    cutoff = utcnow() - grace

    blobs = await store.list_blobs()
    known = set((await db.execute(select(FileUpload.file_path))).scalars().all())

    removed = []
    for blob in blobs:
        if blob.path in known or blob.modified_at > cutoff:
            continue
        if await store.delete(blob.path):
            removed.append(blob.path)

    logger.info(f"Reconcile removed {len(removed)} orphaned blob(s) of {len(blobs)} scanned")
    return removed
