# models.py — Database models for InternTrack
# - String UUID primary keys
# - 3-tier role system (intern, employee, admin)
# - Enum columns store their lowercase values so CHECK constraints can name them
# - Points and completion invariants enforced by CHECK constraints

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean, Integer,
    Enum as SQLEnum, ForeignKey, Text, Index, CheckConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


def _enum(enum_cls, name: str) -> SQLEnum:
    return SQLEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


# ============================================================
# ENUMS
# ============================================================

class UserRole(str, PyEnum):
    INTERN = "intern"
    EMPLOYEE = "employee"
    ADMIN = "admin"


class TaskStatus(str, PyEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    OVERDUE = "overdue"


class TaskPriority(str, PyEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# ============================================================
# IDENTITIES
# ============================================================

class User(Base):
    """Authentication identity. Profiles hang off this by user_id."""
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    password_hash = Column(String, nullable=False)
    user_metadata = Column(JSON, nullable=False, default=dict)  # full_name, role, department from sign-up
    is_active = Column(Boolean, default=True, index=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class RevokedToken(Base):
    __tablename__ = "revoked_tokens"

    id = Column(String, primary_key=True, default=new_uuid)
    jti = Column(String, unique=True, nullable=False, index=True)  # JWT ID
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    revoked_at = Column(DateTime(timezone=True), default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)  # When the token would have expired


# ============================================================
# PROFILES
# ============================================================

class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String, primary_key=True, default=new_uuid)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False, index=True)
    email = Column(String, nullable=False)
    full_name = Column(String, nullable=True)
    role = Column(_enum(UserRole, "user_role"), default=UserRole.INTERN, nullable=False, index=True)
    department = Column(String, nullable=True)
    bio = Column(Text, nullable=True)
    avatar_url = Column(String, nullable=True)
    points = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("points >= 0", name="ck_profile_points_non_negative"),
        Index("idx_profile_role_points", "role", "points"),
    )


# ============================================================
# TASKS
# ============================================================

class Task(Base):
    """Assignable unit of work. Status changes go through task_lifecycle."""
    __tablename__ = "tasks"

    id = Column(String, primary_key=True, default=new_uuid)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(_enum(TaskStatus, "task_status"), default=TaskStatus.PENDING, nullable=False, index=True)
    priority = Column(_enum(TaskPriority, "task_priority"), default=TaskPriority.MEDIUM, nullable=False)
    points = Column(Integer, default=10, nullable=False)
    due_date = Column(DateTime(timezone=True), nullable=True)
    assignee_id = Column(String, ForeignKey("profiles.user_id", ondelete="SET NULL"), nullable=True, index=True)
    created_by = Column(String, ForeignKey("profiles.user_id", ondelete="SET NULL"), nullable=True, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    assignee = relationship("Profile", foreign_keys=[assignee_id])
    creator = relationship("Profile", foreign_keys=[created_by])

    __table_args__ = (
        CheckConstraint("points > 0", name="ck_task_points_positive"),
        CheckConstraint("length(trim(title)) > 0", name="ck_task_title_not_empty"),
        CheckConstraint(
            "(status = 'completed' AND completed_at IS NOT NULL) OR "
            "(status <> 'completed' AND completed_at IS NULL)",
            name="ck_task_completed_at_matches_status",
        ),
        Index("idx_task_status_due", "status", "due_date"),
    )


# ============================================================
# CHAT
# ============================================================

class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id = Column(String, primary_key=True, default=new_uuid)
    content = Column(Text, nullable=False)
    sender_id = Column(String, ForeignKey("profiles.user_id", ondelete="CASCADE"), nullable=False, index=True)
    receiver_id = Column(String, ForeignKey("profiles.user_id", ondelete="CASCADE"), nullable=False, index=True)
    read_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    sender = relationship("Profile", foreign_keys=[sender_id])

    __table_args__ = (
        CheckConstraint("length(trim(content)) > 0", name="ck_message_content_not_empty"),
        Index("idx_message_pair_time", "sender_id", "receiver_id", "created_at"),
    )


# ============================================================
# FILE UPLOADS
# ============================================================

MAX_UPLOAD_BYTES = 5 * 1024 * 1024


class FileUpload(Base):
    """Metadata for a blob written to the upload store"""
    __tablename__ = "file_uploads"

    id = Column(String, primary_key=True, default=new_uuid)
    filename = Column(String, nullable=False)  # generated storage name
    original_name = Column(String, nullable=False)
    file_path = Column(String, nullable=False, unique=True)  # <uploader_id>/<filename>
    file_size = Column(Integer, nullable=False)
    mime_type = Column(String, nullable=False)
    uploaded_by = Column(String, ForeignKey("profiles.user_id", ondelete="CASCADE"), nullable=False, index=True)
    task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        CheckConstraint(f"file_size >= 0 AND file_size <= {MAX_UPLOAD_BYTES}", name="ck_upload_size_ceiling"),
    )
