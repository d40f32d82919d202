# routers/files.py — Task attachments backed by the blob store
import re
from urllib.parse import quote
from typing import Optional, List

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi.responses import Response
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import uploads
from auth import get_current_user, require_role, CurrentUser
from database import get_db_session
from errors import TooLarge
from models import FileUpload, MAX_UPLOAD_BYTES, UserRole
from policies import file_visibility_clause
from storage import LocalBlobStore, get_blob_store

router = APIRouter(prefix="/api/v1/files", tags=["Files"])


# --- Schemas ---

class FileOut(BaseModel):
    id: str
    filename: str
    original_name: str
    file_path: str
    file_size: int
    mime_type: str
    uploaded_by: str
    task_id: Optional[str] = None
    created_at: str


def _content_disposition(original_name: str) -> str:
    """attachment header with an ASCII fallback name and the RFC 5987 UTF-8 form"""
    fallback = original_name.encode("ascii", "ignore").decode("ascii")
    fallback = re.sub(r'[\x00-\x1f\x7f"\\]', "", fallback).strip() or "download"
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(original_name, safe='')}"


def _file_to_out(f: FileUpload) -> FileOut:
    return FileOut(
        id=f.id,
        filename=f.filename,
        original_name=f.original_name,
        file_path=f.file_path,
        file_size=f.file_size or 0,
        mime_type=f.mime_type,
        uploaded_by=f.uploaded_by,
        task_id=f.task_id,
        created_at=f.created_at.isoformat() if f.created_at else "",
    )


# --- Endpoints ---

@router.post("", response_model=FileOut, status_code=201)
async def upload_file(
    file: UploadFile = File(...),
    task_id: Optional[str] = Form(default=None),
    uploaded_by: Optional[str] = Form(default=None),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    store: LocalBlobStore = Depends(get_blob_store),
):
    """Upload an attachment (max 5 MiB), optionally linked to a task"""
    # Read one byte past the cap so oversize bodies are rejected without buffering them whole
    data = await file.read(MAX_UPLOAD_BYTES + 1)
    if len(data) > MAX_UPLOAD_BYTES:
        raise TooLarge()

    record = await uploads.create_upload(
        db,
        store,
        user,
        original_name=file.filename or "",
        mime_type=file.content_type,
        data=data,
        task_id=task_id,
        uploaded_by=uploaded_by,
    )
    return _file_to_out(record)


@router.get("", response_model=List[FileOut])
async def list_files(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    task_id: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    """List uploads the caller may read, newest first"""
    stmt = (
        select(FileUpload)
        .where(file_visibility_clause(user))
        .order_by(FileUpload.created_at.desc())
        .offset(offset)
        .limit(limit)
    )
    if task_id:
        stmt = stmt.where(FileUpload.task_id == task_id)
    result = await db.execute(stmt)
    return [_file_to_out(f) for f in result.scalars().all()]


@router.post("/reconcile")
async def reconcile_blobs(
    user: CurrentUser = Depends(require_role(UserRole.ADMIN)),
    db: AsyncSession = Depends(get_db_session),
    store: LocalBlobStore = Depends(get_blob_store),
):
    """Remove stored blobs that have no upload record"""
    removed = await uploads.reconcile_orphans(db, store)
    return {"removed": len(removed), "paths": removed}


@router.get("/{file_id}", response_model=FileOut)
async def get_file(
    file_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    record = await uploads.get_readable_upload(db, user, file_id)
    return _file_to_out(record)


@router.get("/{file_id}/content")
async def get_file_content(
    file_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    store: LocalBlobStore = Depends(get_blob_store),
):
    """Download the stored bytes"""
    record = await uploads.get_readable_upload(db, user, file_id)
    data = await store.get(record.file_path)
    return Response(
        content=data,
        media_type=record.mime_type,
        headers={"Content-Disposition": _content_disposition(record.original_name)},
    )
