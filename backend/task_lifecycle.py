"""
InternTrack - Task Status Lifecycle
State machine for task status plus the transactional service that applies a
transition and its points ledger effect.

    pending ──> in_progress ──> completed
       │             │
       └─────┬───────┘
             v
          overdue        (system-only, fired by the overdue sweep)

Re-applying the current status is a no-op. Nothing leaves completed or overdue.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

import points_ledger
from errors import ConstraintViolation, InvalidTransition, NotFound
from models import Task, TaskStatus, utcnow
from points_ledger import LedgerEffect
from policies import authorize, can_read_task, can_transition_task

logger = logging.getLogger("interntrack.tasks")

ACTOR_TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.COMPLETED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.OVERDUE: frozenset(),
}

SYSTEM_TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.OVERDUE}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.OVERDUE}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.OVERDUE: frozenset(),
}

OVERDUE_CANDIDATES = (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)


class StaleStatus(Exception):
    """The task's stored status changed between read and write"""


@dataclass
class TransitionResult:
    task: Task
    previous_status: TaskStatus
    applied: bool
    ledger: Optional[LedgerEffect] = None


def allowed_targets(current: TaskStatus, system: bool = False) -> FrozenSet[TaskStatus]:
    table = SYSTEM_TRANSITIONS if system else ACTOR_TRANSITIONS
    return table[TaskStatus(current)]


def check_transition(current: TaskStatus, target: TaskStatus, system: bool = False) -> None:
    """Raise InvalidTransition unless target is a legal successor of current"""
    current, target = TaskStatus(current), TaskStatus(target)
    if target not in allowed_targets(current, system):
        raise InvalidTransition(
            f"Cannot move a task from {current.value} to {target.value}"
        )


async def get_task(db: AsyncSession, task_id: str) -> Task:
    stmt = select(Task).where(Task.id == task_id).execution_options(populate_existing=True)
    task = (await db.execute(stmt)).scalar_one_or_none()
    if not task:
        raise NotFound("Task not found")
    return task


async def record_transition(
    db: AsyncSession,
    task_id: str,
    expected: TaskStatus,
    target: TaskStatus,
    now: Optional[datetime] = None,
) -> Optional[LedgerEffect]:
    """Compare-and-set the status, then apply the ledger effect in the same transaction.

    Returns the ledger effect (or None when there was none). Raises
    StaleStatus when the stored status no longer equals ``expected``; the
    caller decides whether that is a no-op or an error. Does not commit.
    """
    now = now or utcnow()
    stmt = (
        update(Task)
        .where(Task.id == task_id, Task.status == expected)
        .values(
            status=target,
            completed_at=now if target == TaskStatus.COMPLETED else None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    if result.rowcount != 1:
        raise StaleStatus(task_id)

    # Read assignee and points after the write so they come from the same transaction
    row = (await db.execute(
        select(Task.assignee_id, Task.points).where(Task.id == task_id)
    )).one()
    return await points_ledger.apply_status_change(
        db, expected, target, row.points, row.assignee_id,
    )


async def _apply(
    db: AsyncSession,
    task: Task,
    target: TaskStatus,
    now: Optional[datetime] = None,
) -> TransitionResult:
    previous = TaskStatus(task.status)
    try:
        effect = await record_transition(db, task.id, previous, target, now)
        await db.commit()
    except StaleStatus:
        await db.rollback()
        await db.refresh(task)
        if task.status == target:
            # Another request already made this exact change
            return TransitionResult(task=task, previous_status=target, applied=False)
        raise InvalidTransition(
            f"Task status changed to {TaskStatus(task.status).value} while updating; reload and retry"
        )
    except IntegrityError:
        await db.rollback()
        raise ConstraintViolation("Status change violates a task constraint")
    except Exception:
        await db.rollback()
        raise

    await db.refresh(task)
    logger.info(f"Task {task.id}: {previous.value} → {target.value}")
    return TransitionResult(task=task, previous_status=previous, applied=True, ledger=effect)


async def transition_task(db: AsyncSession, actor, task_id: str, target) -> TransitionResult:
    """Actor-initiated status change (assignee, employee or admin)"""
    target = TaskStatus(target)
    task = await get_task(db, task_id)
    authorize(can_read_task(actor, task), "You do not have access to this task")
    authorize(
        can_transition_task(actor, task),
        "Only the assignee, employees or admins can change this task's status",
    )

    if task.status == target:
        return TransitionResult(task=task, previous_status=target, applied=False)
    check_transition(task.status, target)
    return await _apply(db, task, target)


async def mark_overdue(db: AsyncSession, task_id: str, now: Optional[datetime] = None) -> TransitionResult:
    """System-triggered move into overdue; debits the assignee"""
    task = await get_task(db, task_id)
    if task.status == TaskStatus.OVERDUE:
        return TransitionResult(task=task, previous_status=TaskStatus.OVERDUE, applied=False)
    check_transition(task.status, TaskStatus.OVERDUE, system=True)
    return await _apply(db, task, TaskStatus.OVERDUE, now)


async def sweep_overdue(db: AsyncSession, now: Optional[datetime] = None) -> List[TransitionResult]:
    """Mark every open task whose due date has passed as overdue, one transaction per task"""
    now = now or utcnow()
    stmt = select(Task.id).where(
        Task.status.in_(OVERDUE_CANDIDATES),
        Task.due_date.isnot(None),
        Task.due_date < now,
    )
    task_ids = (await db.execute(stmt)).scalars().all()

    results = []
    for task_id in task_ids:
        try:
            result = await mark_overdue(db, task_id, now)
        except (InvalidTransition, NotFound) as e:
            # Completed or deleted since the candidate query ran
            logger.info(f"Overdue sweep skipped {task_id}: {e.message}")
            continue
        if result.applied:
            results.append(result)

    logger.info(f"Overdue sweep marked {len(results)} of {len(task_ids)} candidate task(s)")
    return results
