# policies.py — Authorization predicates
#
# Every rule exists twice: as a pure predicate over (actor, resource) used at
# service entry points, and as a SQLAlchemy clause that narrows list queries to
# the rows the same predicate would allow. Keep the two forms in step.

from typing import Optional

from sqlalchemy import or_, select, true

from errors import Forbidden
from models import ChatMessage, FileUpload, Task, UserRole

STAFF_ROLES = frozenset({UserRole.EMPLOYEE, UserRole.ADMIN})


def is_staff(actor) -> bool:
    return UserRole(actor.role) in STAFF_ROLES


def is_admin(actor) -> bool:
    return UserRole(actor.role) == UserRole.ADMIN


def authorize(allowed: bool, message: str = None) -> None:
    """Raise Forbidden unless the predicate held"""
    if not allowed:
        raise Forbidden(message)


# ============================================================
# PROFILES
# ============================================================

def can_read_profile(actor, profile) -> bool:
    return True


def can_write_profile(actor, profile_user_id: str) -> bool:
    return actor.id == profile_user_id


# ============================================================
# TASKS
# ============================================================

def can_read_task(actor, task) -> bool:
    return (
        task.assignee_id == actor.id
        or task.created_by == actor.id
        or is_staff(actor)
    )


def can_create_task(actor) -> bool:
    return is_staff(actor)


def can_update_task(actor, task) -> bool:
    return is_staff(actor)


def can_transition_task(actor, task) -> bool:
    """Who may request a status change; which change is legal is task_lifecycle's call"""
    return is_staff(actor) or (task.assignee_id is not None and task.assignee_id == actor.id)


def can_delete_task(actor, task) -> bool:
    return is_admin(actor)


def task_visibility_clause(actor):
    if is_staff(actor):
        return true()
    return or_(Task.assignee_id == actor.id, Task.created_by == actor.id)


# ============================================================
# CHAT
# ============================================================

def can_read_message(actor, message) -> bool:
    return actor.id in (message.sender_id, message.receiver_id)


def can_send_message(actor, sender_id: str) -> bool:
    return actor.id == sender_id


def message_visibility_clause(actor):
    return or_(ChatMessage.sender_id == actor.id, ChatMessage.receiver_id == actor.id)


# ============================================================
# FILE UPLOADS
# ============================================================

def can_read_file(actor, upload, task: Optional[Task] = None) -> bool:
    if upload.uploaded_by == actor.id:
        return True
    return (
        task is not None
        and upload.task_id == task.id
        and task.assignee_id is not None
        and task.assignee_id == actor.id
    )


def can_create_file(actor, uploader_id: str) -> bool:
    return actor.id == uploader_id


def file_visibility_clause(actor):
    assigned_tasks = select(Task.id).where(Task.assignee_id == actor.id)
    return or_(
        FileUpload.uploaded_by == actor.id,
        FileUpload.task_id.in_(assigned_tasks),
    )
