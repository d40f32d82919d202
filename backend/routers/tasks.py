# routers/tasks.py — Task management with status lifecycle and points
from datetime import datetime
from typing import Annotated, Optional, List

from fastapi import APIRouter, Depends, Query
from pydantic import AfterValidator, BaseModel, ConfigDict, Field, StringConstraints
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

import task_lifecycle
from auth import get_current_user, require_role, CurrentUser
from database import get_db_session
from errors import ConstraintViolation, NotFound
from models import Profile, Task, TaskPriority, TaskStatus, UserRole
from policies import (
    authorize, can_create_task, can_delete_task, can_read_task,
    can_update_task, task_visibility_clause,
)

router = APIRouter(prefix="/api/v1/tasks", tags=["Tasks"])


# ============================================================
# SCHEMAS
# ============================================================

def _clean_title(v: str) -> str:
    v = v.strip()
    if not v:
        raise ValueError("Title must not be empty")
    return v


TaskTitle = Annotated[str, StringConstraints(min_length=1, max_length=500), AfterValidator(_clean_title)]


class TaskCreate(BaseModel):
    title: TaskTitle
    description: Optional[str] = None
    priority: TaskPriority = TaskPriority.MEDIUM
    points: int = Field(default=10, gt=0, le=10000)
    due_date: Optional[datetime] = None
    assignee_id: Optional[str] = None


class TaskUpdate(BaseModel):
    """Field edits. Status moves through /status; points are fixed at creation."""
    model_config = ConfigDict(extra="forbid")

    title: Optional[TaskTitle] = None
    description: Optional[str] = None
    priority: Optional[TaskPriority] = None
    due_date: Optional[datetime] = None
    assignee_id: Optional[str] = None


class StatusChange(BaseModel):
    status: TaskStatus


class TaskOut(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    status: str
    priority: str
    points: int
    due_date: Optional[str] = None
    assignee_id: Optional[str] = None
    assignee_name: Optional[str] = None
    created_by: Optional[str] = None
    creator_name: Optional[str] = None
    completed_at: Optional[str] = None
    created_at: str
    updated_at: str


class LedgerOut(BaseModel):
    kind: str
    amount: int
    user_id: str


class TransitionOut(BaseModel):
    task: TaskOut
    previous_status: str
    changed: bool
    points_effect: Optional[LedgerOut] = None


class TaskStats(BaseModel):
    total: int
    by_status: dict
    active: int
    completion_rate: float


# ============================================================
# HELPERS
# ============================================================

def _ts(dt) -> Optional[str]:
    if dt is None:
        return None
    return dt.isoformat() if isinstance(dt, datetime) else str(dt)


def _name(profile: Optional[Profile]) -> Optional[str]:
    if profile is None:
        return None
    return profile.full_name or profile.email


def _task_to_out(task: Task) -> TaskOut:
    return TaskOut(
        id=task.id,
        title=task.title,
        description=task.description,
        status=TaskStatus(task.status).value,
        priority=TaskPriority(task.priority).value,
        points=task.points,
        due_date=_ts(task.due_date),
        assignee_id=task.assignee_id,
        assignee_name=_name(task.assignee),
        created_by=task.created_by,
        creator_name=_name(task.creator),
        completed_at=_ts(task.completed_at),
        created_at=_ts(task.created_at) or "",
        updated_at=_ts(task.updated_at) or "",
    )


async def _load_task(db: AsyncSession, task_id: str) -> Task:
    stmt = (
        select(Task)
        .where(Task.id == task_id)
        .options(selectinload(Task.assignee), selectinload(Task.creator))
        .execution_options(populate_existing=True)
    )
    task = (await db.execute(stmt)).scalar_one_or_none()
    if not task:
        raise NotFound("Task not found")
    return task


async def _ensure_profile_exists(db: AsyncSession, user_id: str) -> None:
    stmt = select(Profile.id).where(Profile.user_id == user_id)
    if (await db.execute(stmt)).scalar_one_or_none() is None:
        raise NotFound("Assignee not found")


# ============================================================
# ENDPOINTS
# ============================================================

@router.get("", response_model=List[TaskOut])
async def list_tasks(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    status: Optional[TaskStatus] = None,
    assignee_id: Optional[str] = None,
    mine: bool = Query(default=False, description="Only tasks assigned to the caller"),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    """List the tasks the caller may see, newest first"""
    stmt = (
        select(Task)
        .where(task_visibility_clause(user))
        .options(selectinload(Task.assignee), selectinload(Task.creator))
        .order_by(Task.created_at.desc())
        .offset(offset)
        .limit(limit)
    )
    if status:
        stmt = stmt.where(Task.status == status)
    if assignee_id:
        stmt = stmt.where(Task.assignee_id == assignee_id)
    if mine:
        stmt = stmt.where(Task.assignee_id == user.id)

    result = await db.execute(stmt)
    return [_task_to_out(t) for t in result.scalars().all()]


@router.get("/stats", response_model=TaskStats)
async def task_stats(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Status breakdown and completion rate over the caller's visible tasks"""
    stmt = (
        select(Task.status, func.count(Task.id))
        .where(task_visibility_clause(user))
        .group_by(Task.status)
    )
    rows = (await db.execute(stmt)).all()
    by_status = {s.value: 0 for s in TaskStatus}
    for status, count in rows:
        by_status[TaskStatus(status).value] = count

    total = sum(by_status.values())
    completed = by_status[TaskStatus.COMPLETED.value]
    return TaskStats(
        total=total,
        by_status=by_status,
        active=by_status[TaskStatus.PENDING.value] + by_status[TaskStatus.IN_PROGRESS.value],
        completion_rate=round(completed / total * 100, 1) if total else 0.0,
    )


@router.post("/overdue-sweep")
async def run_overdue_sweep(
    user: CurrentUser = Depends(require_role(UserRole.ADMIN)),
    db: AsyncSession = Depends(get_db_session),
):
    """Mark open tasks past their due date as overdue and apply the penalty"""
    results = await task_lifecycle.sweep_overdue(db)
    return {
        "marked": len(results),
        "task_ids": [r.task.id for r in results],
    }


@router.post("", response_model=TaskOut, status_code=201)
async def create_task(
    data: TaskCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a task (employees and admins)"""
    authorize(can_create_task(user), "Only employees and admins can create tasks")
    if data.assignee_id is not None:
        await _ensure_profile_exists(db, data.assignee_id)

    task = Task(
        title=data.title,
        description=data.description,
        priority=data.priority,
        points=data.points,
        due_date=data.due_date,
        assignee_id=data.assignee_id,
        created_by=user.id,
        status=TaskStatus.PENDING,
    )
    db.add(task)
    await db.commit()
    return _task_to_out(await _load_task(db, task.id))


@router.get("/{task_id}", response_model=TaskOut)
async def get_task(
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    task = await _load_task(db, task_id)
    authorize(can_read_task(user, task), "You do not have access to this task")
    return _task_to_out(task)


@router.patch("/{task_id}", response_model=TaskOut)
async def update_task(
    task_id: str,
    data: TaskUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Edit task fields (employees and admins)"""
    task = await _load_task(db, task_id)
    authorize(can_update_task(user, task), "Only employees and admins can edit tasks")

    changes = data.model_dump(exclude_unset=True)
    for field in ("title", "priority"):
        if field in changes and changes[field] is None:
            raise ConstraintViolation(f"{field} cannot be cleared")
    if changes.get("assignee_id") is not None:
        await _ensure_profile_exists(db, changes["assignee_id"])

    for field, value in changes.items():
        setattr(task, field, value)

    await db.commit()
    return _task_to_out(await _load_task(db, task_id))


@router.post("/{task_id}/status", response_model=TransitionOut)
async def change_status(
    task_id: str,
    data: StatusChange,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Move a task along pending → in_progress → completed"""
    result = await task_lifecycle.transition_task(db, user, task_id, data.status)
    task = await _load_task(db, task_id)
    return TransitionOut(
        task=_task_to_out(task),
        previous_status=TaskStatus(result.previous_status).value,
        changed=result.applied,
        points_effect=LedgerOut(**result.ledger.to_dict()) if result.ledger else None,
    )


@router.delete("/{task_id}")
async def delete_task(
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Delete a task (admins only)"""
    task = await _load_task(db, task_id)
    authorize(can_delete_task(user, task), "Only admins can delete tasks")
    await db.delete(task)
    await db.commit()
    return {"status": "deleted", "task_id": task_id}
