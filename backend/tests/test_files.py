# tests/test_files.py — Upload saga, access rules and blob reconciliation
import os
import time
from datetime import timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select

import uploads
from errors import ConstraintViolation
from models import FileUpload, MAX_UPLOAD_BYTES, Task, TaskStatus
from routers.files import _content_disposition
from tests.conftest import as_actor, get_auth_headers


def _blob_files(store):
    if not store.root.exists():
        return []
    return [p for p in store.root.rglob("*") if p.is_file()]


async def _upload(client, user, name="notes.txt", content=b"hello world", mime="text/plain", task_id=None):
    data = {"task_id": task_id} if task_id else {}
    return await client.post(
        "/api/v1/files",
        files={"file": (name, content, mime)},
        data=data,
        headers=get_auth_headers(user),
    )


async def _task_for(db_session, creator, assignee) -> Task:
    task = Task(title="Design review", points=10, status=TaskStatus.PENDING,
                assignee_id=assignee.id, created_by=creator.id)
    db_session.add(task)
    await db_session.commit()
    return task


@pytest.mark.asyncio
class TestUpload:
    async def test_upload_and_download(self, client: AsyncClient, blob_store, intern_user):
        res = await _upload(client, intern_user)
        assert res.status_code == 201, res.text
        data = res.json()
        assert data["original_name"] == "notes.txt"
        assert data["file_size"] == 11
        assert data["uploaded_by"] == intern_user.id
        assert data["file_path"].startswith(f"{intern_user.id}/")
        assert len(_blob_files(blob_store)) == 1

        res = await client.get(f"/api/v1/files/{data['id']}/content", headers=get_auth_headers(intern_user))
        assert res.status_code == 200
        assert res.content == b"hello world"
        assert res.headers["content-type"].startswith("text/plain")

    async def test_oversized_upload_writes_nothing(self, client: AsyncClient, db_session, blob_store, intern_user):
        res = await _upload(client, intern_user, name="big.pdf", content=b"x" * (6 * 1024 * 1024), mime="application/pdf")
        assert res.status_code == 413
        assert res.json()["error"] == "too_large"
        assert _blob_files(blob_store) == []
        count = (await db_session.execute(select(func.count(FileUpload.id)))).scalar()
        assert count == 0

    async def test_download_keeps_non_latin_filename(self, client: AsyncClient, intern_user):
        res = await _upload(client, intern_user, name="отчёт.pdf", content=b"%PDF-1.4", mime="application/pdf")
        assert res.status_code == 201

        res = await client.get(f"/api/v1/files/{res.json()['id']}/content", headers=get_auth_headers(intern_user))
        assert res.status_code == 200
        assert res.content == b"%PDF-1.4"
        disposition = res.headers["content-disposition"]
        assert disposition.startswith('attachment; filename=".pdf"')
        assert "filename*=UTF-8''%D0%BE%D1%82%D1%87%D1%91%D1%82.pdf" in disposition

    async def test_exactly_at_limit_is_accepted(self, client: AsyncClient, intern_user):
        res = await _upload(client, intern_user, name="edge.pdf", content=b"x" * MAX_UPLOAD_BYTES, mime="application/pdf")
        assert res.status_code == 201

    async def test_disallowed_type(self, client: AsyncClient, blob_store, intern_user):
        res = await _upload(client, intern_user, name="tool.exe", content=b"MZ", mime="application/x-msdownload")
        assert res.status_code == 400
        assert "File type not allowed" in res.json()["detail"]
        assert _blob_files(blob_store) == []

    async def test_image_types_allowed(self, client: AsyncClient, intern_user):
        res = await _upload(client, intern_user, name="shot.png", content=b"\x89PNG", mime="image/png")
        assert res.status_code == 201

    async def test_cannot_upload_as_someone_else(self, client: AsyncClient, intern_user, employee_user):
        res = await client.post(
            "/api/v1/files",
            files={"file": ("notes.txt", b"hi", "text/plain")},
            data={"uploaded_by": employee_user.id},
            headers=get_auth_headers(intern_user),
        )
        assert res.status_code == 403

    async def test_upload_to_missing_task(self, client: AsyncClient, intern_user):
        res = await _upload(client, intern_user, task_id="no-such-task")
        assert res.status_code == 404


@pytest.mark.asyncio
class TestAccess:
    async def test_task_assignee_can_read_attachment(self, client: AsyncClient, db_session, employee_user, intern_user, other_intern):
        task = await _task_for(db_session, employee_user, intern_user)
        res = await _upload(client, employee_user, name="brief.pdf", content=b"%PDF", mime="application/pdf", task_id=task.id)
        assert res.status_code == 201
        file_id = res.json()["id"]

        res = await client.get(f"/api/v1/files/{file_id}", headers=get_auth_headers(intern_user))
        assert res.status_code == 200

        res = await client.get(f"/api/v1/files/{file_id}", headers=get_auth_headers(other_intern))
        assert res.status_code == 403

        res = await client.get("/api/v1/files", headers=get_auth_headers(intern_user))
        assert [f["id"] for f in res.json()] == [file_id]

        res = await client.get("/api/v1/files", headers=get_auth_headers(other_intern))
        assert res.json() == []

    async def test_unknown_file(self, client: AsyncClient, intern_user):
        res = await client.get("/api/v1/files/missing", headers=get_auth_headers(intern_user))
        assert res.status_code == 404


@pytest.mark.asyncio
class TestSagaCompensation:
    async def test_failed_metadata_write_removes_blob(self, db_session, blob_store, intern_user, monkeypatch):
        # Occupy the storage path so the metadata insert hits the unique constraint
        monkeypatch.setattr(uploads, "storage_filename", lambda original_name: "fixed.txt")
        db_session.add(FileUpload(
            filename="fixed.txt",
            original_name="earlier.txt",
            file_path=f"{intern_user.id}/fixed.txt",
            file_size=1,
            mime_type="text/plain",
            uploaded_by=intern_user.id,
        ))
        await db_session.commit()

        with pytest.raises(ConstraintViolation):
            await uploads.create_upload(
                db_session, blob_store, as_actor(intern_user),
                original_name="notes.txt", mime_type="text/plain", data=b"payload",
            )
        assert _blob_files(blob_store) == []

    async def test_unexpected_failure_still_compensates(self, db_session, blob_store, intern_user, monkeypatch):
        async def broken_commit():
            raise RuntimeError("connection reset")

        monkeypatch.setattr(db_session, "commit", broken_commit)
        with pytest.raises(RuntimeError):
            await uploads.create_upload(
                db_session, blob_store, as_actor(intern_user),
                original_name="notes.txt", mime_type="text/plain", data=b"payload",
            )
        assert _blob_files(blob_store) == []


@pytest.mark.asyncio
class TestReconcile:
    async def test_removes_only_old_orphans(self, db_session, blob_store, intern_user):
        kept = await uploads.create_upload(
            db_session, blob_store, as_actor(intern_user),
            original_name="kept.txt", mime_type="text/plain", data=b"keep me",
        )
        await blob_store.put("stray/old.bin", b"orphan")
        await blob_store.put("stray/fresh.bin", b"in flight")

        two_hours_ago = time.time() - 2 * 3600
        for path in (kept.file_path, "stray/old.bin"):
            os.utime(blob_store.root / path, (two_hours_ago, two_hours_ago))

        removed = await uploads.reconcile_orphans(db_session, blob_store, grace=timedelta(minutes=60))
        assert removed == ["stray/old.bin"]
        remaining = {p.relative_to(blob_store.root).as_posix() for p in _blob_files(blob_store)}
        assert remaining == {kept.file_path, "stray/fresh.bin"}

    async def test_reconcile_endpoint_is_admin_only(self, client: AsyncClient, intern_user, admin_user):
        res = await client.post("/api/v1/files/reconcile", headers=get_auth_headers(intern_user))
        assert res.status_code == 403

        res = await client.post("/api/v1/files/reconcile", headers=get_auth_headers(admin_user))
        assert res.status_code == 200
        assert res.json()["removed"] == 0


def test_content_disposition_strips_header_breaking_characters():
    header = _content_disposition('bad"name\r\n.txt')
    assert header.startswith('attachment; filename="badname.txt"')
    assert "\r" not in header and "\n" not in header
    assert header.endswith("filename*=UTF-8''bad%22name%0D%0A.txt")
