# tests/test_tasks.py — Task router tests: permissions, lifecycle, points
from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient
from sqlalchemy import select, update

from models import Profile
from tests.conftest import get_auth_headers


async def _points(db_session, user_id: str) -> int:
    return (await db_session.execute(
        select(Profile.points).where(Profile.user_id == user_id)
    )).scalar_one()


async def _create_task(client, creator, assignee=None, **overrides):
    body = {"title": "Write onboarding notes", "points": 10}
    if assignee is not None:
        body["assignee_id"] = assignee.id
    body.update(overrides)
    res = await client.post("/api/v1/tasks", json=body, headers=get_auth_headers(creator))
    assert res.status_code == 201, res.text
    return res.json()


async def _move(client, actor, task_id: str, status: str):
    return await client.post(
        f"/api/v1/tasks/{task_id}/status",
        json={"status": status},
        headers=get_auth_headers(actor),
    )


@pytest.mark.asyncio
class TestTaskCreation:
    async def test_employee_creates_task(self, client: AsyncClient, employee_user, intern_user):
        task = await _create_task(client, employee_user, intern_user, priority="high", description="Read the wiki")
        assert task["status"] == "pending"
        assert task["priority"] == "high"
        assert task["points"] == 10
        assert task["assignee_id"] == intern_user.id
        assert task["assignee_name"] == "Ivy Intern"
        assert task["created_by"] == employee_user.id
        assert task["completed_at"] is None

    async def test_intern_cannot_create_task(self, client: AsyncClient, intern_user):
        res = await client.post(
            "/api/v1/tasks",
            json={"title": "Self-assigned", "points": 10},
            headers=get_auth_headers(intern_user),
        )
        assert res.status_code == 403
        assert res.json()["error"] == "forbidden"

    async def test_blank_title_rejected(self, client: AsyncClient, employee_user):
        res = await client.post(
            "/api/v1/tasks",
            json={"title": "   ", "points": 10},
            headers=get_auth_headers(employee_user),
        )
        assert res.status_code == 422
        assert res.json()["error"] == "constraint_violation"

    async def test_non_positive_points_rejected(self, client: AsyncClient, employee_user):
        res = await client.post(
            "/api/v1/tasks",
            json={"title": "Free work", "points": 0},
            headers=get_auth_headers(employee_user),
        )
        assert res.status_code == 422

    async def test_unknown_assignee_rejected(self, client: AsyncClient, employee_user):
        res = await client.post(
            "/api/v1/tasks",
            json={"title": "Ghost task", "assignee_id": "nobody"},
            headers=get_auth_headers(employee_user),
        )
        assert res.status_code == 404

    async def test_empty_assignee_rejected(self, client: AsyncClient, employee_user):
        res = await client.post(
            "/api/v1/tasks",
            json={"title": "Blank assignee", "assignee_id": ""},
            headers=get_auth_headers(employee_user),
        )
        assert res.status_code == 404
        assert res.json()["detail"] == "Assignee not found"


@pytest.mark.asyncio
class TestTaskVisibility:
    async def test_intern_sees_only_assigned_tasks(self, client: AsyncClient, employee_user, intern_user, other_intern):
        mine = await _create_task(client, employee_user, intern_user, title="Mine")
        await _create_task(client, employee_user, other_intern, title="Theirs")

        res = await client.get("/api/v1/tasks", headers=get_auth_headers(intern_user))
        assert res.status_code == 200
        assert [t["id"] for t in res.json()] == [mine["id"]]

    async def test_staff_sees_all_tasks(self, client: AsyncClient, employee_user, admin_user, intern_user, other_intern):
        await _create_task(client, employee_user, intern_user)
        await _create_task(client, employee_user, other_intern)

        res = await client.get("/api/v1/tasks", headers=get_auth_headers(admin_user))
        assert res.status_code == 200
        assert len(res.json()) == 2

    async def test_intern_cannot_read_foreign_task(self, client: AsyncClient, employee_user, intern_user, other_intern):
        task = await _create_task(client, employee_user, other_intern)
        res = await client.get(f"/api/v1/tasks/{task['id']}", headers=get_auth_headers(intern_user))
        assert res.status_code == 403

    async def test_filter_by_status(self, client: AsyncClient, employee_user, intern_user):
        task = await _create_task(client, employee_user, intern_user)
        await _create_task(client, employee_user, intern_user, title="Still pending")
        await _move(client, intern_user, task["id"], "in_progress")

        res = await client.get("/api/v1/tasks?status=in_progress", headers=get_auth_headers(employee_user))
        assert [t["id"] for t in res.json()] == [task["id"]]

    async def test_stats(self, client: AsyncClient, employee_user, intern_user):
        task = await _create_task(client, employee_user, intern_user)
        await _create_task(client, employee_user, intern_user)
        await _move(client, intern_user, task["id"], "in_progress")
        await _move(client, intern_user, task["id"], "completed")

        res = await client.get("/api/v1/tasks/stats", headers=get_auth_headers(intern_user))
        assert res.status_code == 200
        data = res.json()
        assert data["total"] == 2
        assert data["by_status"]["completed"] == 1
        assert data["by_status"]["pending"] == 1
        assert data["active"] == 1
        assert data["completion_rate"] == 50.0


@pytest.mark.asyncio
class TestStatusLifecycle:
    async def test_assignee_starts_task(self, client: AsyncClient, employee_user, intern_user):
        task = await _create_task(client, employee_user, intern_user)
        res = await _move(client, intern_user, task["id"], "in_progress")
        assert res.status_code == 200
        data = res.json()
        assert data["changed"] is True
        assert data["previous_status"] == "pending"
        assert data["task"]["status"] == "in_progress"
        assert data["points_effect"] is None

    async def test_completion_credits_points_once(self, client: AsyncClient, db_session, employee_user, intern_user):
        task = await _create_task(client, employee_user, intern_user)
        await _move(client, intern_user, task["id"], "in_progress")

        res = await _move(client, intern_user, task["id"], "completed")
        assert res.status_code == 200
        data = res.json()
        assert data["task"]["status"] == "completed"
        assert data["task"]["completed_at"] is not None
        assert data["points_effect"] == {"kind": "credit", "amount": 10, "user_id": intern_user.id}
        assert await _points(db_session, intern_user.id) == 10

        res = await _move(client, intern_user, task["id"], "completed")
        assert res.status_code == 200
        assert res.json()["changed"] is False
        assert res.json()["points_effect"] is None
        assert await _points(db_session, intern_user.id) == 10

    async def test_skipping_in_progress_is_invalid(self, client: AsyncClient, employee_user, intern_user):
        task = await _create_task(client, employee_user, intern_user)
        res = await _move(client, intern_user, task["id"], "completed")
        assert res.status_code == 409
        assert res.json()["error"] == "invalid_transition"

    async def test_completed_task_cannot_reopen(self, client: AsyncClient, employee_user, intern_user):
        task = await _create_task(client, employee_user, intern_user)
        await _move(client, intern_user, task["id"], "in_progress")
        await _move(client, intern_user, task["id"], "completed")

        res = await _move(client, employee_user, task["id"], "in_progress")
        assert res.status_code == 409

    async def test_actors_cannot_mark_overdue(self, client: AsyncClient, employee_user, admin_user, intern_user):
        task = await _create_task(client, employee_user, intern_user)
        res = await _move(client, admin_user, task["id"], "overdue")
        assert res.status_code == 409

    async def test_non_assignee_intern_cannot_change_status(self, client: AsyncClient, employee_user, intern_user, other_intern):
        task = await _create_task(client, employee_user, intern_user)
        res = await _move(client, other_intern, task["id"], "in_progress")
        assert res.status_code == 403

    async def test_employee_can_move_any_task(self, client: AsyncClient, employee_user, intern_user):
        task = await _create_task(client, employee_user, intern_user)
        res = await _move(client, employee_user, task["id"], "in_progress")
        assert res.status_code == 200

    async def test_unknown_status_rejected(self, client: AsyncClient, employee_user, intern_user):
        task = await _create_task(client, employee_user, intern_user)
        res = await _move(client, intern_user, task["id"], "archived")
        assert res.status_code == 422

    async def test_missing_task(self, client: AsyncClient, intern_user):
        res = await _move(client, intern_user, "no-such-task", "in_progress")
        assert res.status_code == 404


@pytest.mark.asyncio
class TestOverdueSweep:
    async def test_sweep_debits_and_floors_at_zero(self, client: AsyncClient, db_session, employee_user, admin_user, intern_user):
        past = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
        task = await _create_task(client, employee_user, intern_user, points=20, due_date=past)
        await db_session.execute(update(Profile).where(Profile.user_id == intern_user.id).values(points=3))
        await db_session.commit()

        res = await client.post("/api/v1/tasks/overdue-sweep", headers=get_auth_headers(admin_user))
        assert res.status_code == 200
        assert res.json()["task_ids"] == [task["id"]]
        assert await _points(db_session, intern_user.id) == 0

        res = await client.get(f"/api/v1/tasks/{task['id']}", headers=get_auth_headers(intern_user))
        assert res.json()["status"] == "overdue"

        # A second sweep finds nothing new to penalise
        res = await client.post("/api/v1/tasks/overdue-sweep", headers=get_auth_headers(admin_user))
        assert res.json()["marked"] == 0

    async def test_sweep_skips_future_and_completed(self, client: AsyncClient, employee_user, admin_user, intern_user):
        future = (datetime.now(timezone.utc) + timedelta(days=3)).isoformat()
        past = (datetime.now(timezone.utc) - timedelta(days=3)).isoformat()
        await _create_task(client, employee_user, intern_user, due_date=future)
        done = await _create_task(client, employee_user, intern_user, due_date=past)
        await _move(client, intern_user, done["id"], "in_progress")
        await _move(client, intern_user, done["id"], "completed")

        res = await client.post("/api/v1/tasks/overdue-sweep", headers=get_auth_headers(admin_user))
        assert res.json()["marked"] == 0

    async def test_sweep_is_admin_only(self, client: AsyncClient, employee_user):
        res = await client.post("/api/v1/tasks/overdue-sweep", headers=get_auth_headers(employee_user))
        assert res.status_code == 403


@pytest.mark.asyncio
class TestTaskEdits:
    async def test_employee_edits_fields(self, client: AsyncClient, employee_user, intern_user, other_intern):
        task = await _create_task(client, employee_user, intern_user)
        res = await client.patch(
            f"/api/v1/tasks/{task['id']}",
            json={"title": "  Renamed  ", "assignee_id": other_intern.id},
            headers=get_auth_headers(employee_user),
        )
        assert res.status_code == 200
        assert res.json()["title"] == "Renamed"
        assert res.json()["assignee_id"] == other_intern.id

    async def test_empty_assignee_patch_rejected(self, client: AsyncClient, employee_user, intern_user):
        task = await _create_task(client, employee_user, intern_user)
        res = await client.patch(
            f"/api/v1/tasks/{task['id']}",
            json={"assignee_id": ""},
            headers=get_auth_headers(employee_user),
        )
        assert res.status_code == 404

    async def test_status_cannot_be_patched(self, client: AsyncClient, employee_user, intern_user):
        task = await _create_task(client, employee_user, intern_user)
        res = await client.patch(
            f"/api/v1/tasks/{task['id']}",
            json={"status": "completed"},
            headers=get_auth_headers(employee_user),
        )
        assert res.status_code == 422

    async def test_title_cannot_be_cleared(self, client: AsyncClient, employee_user, intern_user):
        task = await _create_task(client, employee_user, intern_user)
        res = await client.patch(
            f"/api/v1/tasks/{task['id']}",
            json={"title": None},
            headers=get_auth_headers(employee_user),
        )
        assert res.status_code == 400

    async def test_intern_cannot_edit(self, client: AsyncClient, employee_user, intern_user):
        task = await _create_task(client, employee_user, intern_user)
        res = await client.patch(
            f"/api/v1/tasks/{task['id']}",
            json={"title": "Mine now"},
            headers=get_auth_headers(intern_user),
        )
        assert res.status_code == 403

    async def test_only_admin_deletes(self, client: AsyncClient, employee_user, admin_user, intern_user):
        task = await _create_task(client, employee_user, intern_user)

        res = await client.delete(f"/api/v1/tasks/{task['id']}", headers=get_auth_headers(employee_user))
        assert res.status_code == 403

        res = await client.delete(f"/api/v1/tasks/{task['id']}", headers=get_auth_headers(admin_user))
        assert res.status_code == 200

        res = await client.get(f"/api/v1/tasks/{task['id']}", headers=get_auth_headers(admin_user))
        assert res.status_code == 404
