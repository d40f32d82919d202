# routers/chat.py — Direct messaging over interval polling
# Clients re-fetch a conversation every CHAT_POLL_INTERVAL_SECONDS. Ordering is
# by creation timestamp only; a fetch by the receiver stamps read_at once.
import os
import logging
from datetime import datetime
from typing import Annotated, Optional, List

from fastapi import APIRouter, Depends, Query
from pydantic import AfterValidator, BaseModel, Field
from sqlalchemy import select, func, and_, or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from auth import get_current_user, CurrentUser
from database import get_db_session
from errors import NotFound
from models import ChatMessage, Profile, utcnow
from policies import authorize, can_read_message, can_send_message, message_visibility_clause
from routers.profiles import ProfileOut, profile_to_out

logger = logging.getLogger("interntrack.chat")

router = APIRouter(prefix="/api/v1/chat", tags=["Chat"])

CHAT_POLL_INTERVAL_SECONDS = int(os.getenv("CHAT_POLL_INTERVAL_SECONDS", "3"))


# --- Schemas ---

def _not_blank(v: str) -> str:
    if not v.strip():
        raise ValueError("Message must not be empty")
    return v


class MessageCreate(BaseModel):
    receiver_id: str
    content: Annotated[str, Field(min_length=1, max_length=5000), AfterValidator(_not_blank)]
    sender_id: Optional[str] = None


class MessageOut(BaseModel):
    id: str
    content: str
    sender_id: str
    sender_name: Optional[str] = None
    receiver_id: str
    read_at: Optional[str] = None
    is_read: bool
    created_at: str


def _message_out(m: ChatMessage, read_at: Optional[datetime] = None) -> MessageOut:
    read_at = m.read_at or read_at
    sender_name = None
    if "sender" in m.__dict__ and m.sender is not None:
        sender_name = m.sender.full_name or m.sender.email
    return MessageOut(
        id=m.id,
        content=m.content,
        sender_id=m.sender_id,
        sender_name=sender_name,
        receiver_id=m.receiver_id,
        read_at=read_at.isoformat() if read_at else None,
        is_read=read_at is not None,
        created_at=m.created_at.isoformat() if m.created_at else "",
    )


# ============================================================
# POLLING CONTRACT
# ============================================================

@router.get("/config")
async def chat_config(user: CurrentUser = Depends(get_current_user)):
    return {"poll_interval_seconds": CHAT_POLL_INTERVAL_SECONDS, "ordering": "created_at"}


@router.get("/contacts", response_model=List[ProfileOut])
async def list_contacts(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Everyone the caller can message"""
    stmt = (
        select(Profile)
        .where(Profile.user_id != user.id)
        .order_by(Profile.full_name.asc(), Profile.email.asc())
    )
    result = await db.execute(stmt)
    return [profile_to_out(p) for p in result.scalars().all()]


@router.get("/unread")
async def unread_counts(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    stmt = (
        select(ChatMessage.sender_id, func.count(ChatMessage.id))
        .where(ChatMessage.receiver_id == user.id, ChatMessage.read_at.is_(None))
        .group_by(ChatMessage.sender_id)
    )
    rows = (await db.execute(stmt)).all()
    by_sender = {sender_id: count for sender_id, count in rows}
    return {"total": sum(by_sender.values()), "by_sender": by_sender}


# ============================================================
# CONVERSATIONS
# ============================================================

@router.get("/conversations/{other_user_id}", response_model=List[MessageOut])
async def get_conversation(
    other_user_id: str,
    since: Optional[datetime] = Query(
        default=None,
        description="Cursor: created_at of the last message seen. Pages forward, oldest first.",
    ),
    after_id: Optional[str] = Query(
        default=None,
        description="Id of the last message seen; breaks ties with messages sharing the since timestamp",
    ),
    limit: int = Query(default=200, ge=1, le=500),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Messages between the caller and another user in (created_at, id) order.

    Without a cursor the newest ``limit`` messages are returned. With ``since``
    the next ``limit`` messages after the cursor are returned. Only incoming
    messages present in the response are stamped read.
    """
    pair = or_(
        and_(ChatMessage.sender_id == user.id, ChatMessage.receiver_id == other_user_id),
        and_(ChatMessage.sender_id == other_user_id, ChatMessage.receiver_id == user.id),
    )
    stmt = (
        select(ChatMessage)
        .where(message_visibility_clause(user), pair)
        .options(selectinload(ChatMessage.sender))
        .limit(limit)
    )
    if since:
        if after_id:
            stmt = stmt.where(or_(
                ChatMessage.created_at > since,
                and_(ChatMessage.created_at == since, ChatMessage.id > after_id),
            ))
        else:
            stmt = stmt.where(ChatMessage.created_at > since)
        stmt = stmt.order_by(ChatMessage.created_at.asc(), ChatMessage.id.asc())
        messages = list((await db.execute(stmt)).scalars().all())
    else:
        stmt = stmt.order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())
        messages = list(reversed((await db.execute(stmt)).scalars().all()))

    now = utcnow()
    unread_ids = [m.id for m in messages if m.receiver_id == user.id and m.read_at is None]
    if unread_ids:
        await db.execute(
            update(ChatMessage)
            .where(ChatMessage.id.in_(unread_ids), ChatMessage.read_at.is_(None))
            .values(read_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    return [
        _message_out(m, read_at=now if m.id in unread_ids else None)
        for m in messages
    ]


@router.get("/messages/{message_id}", response_model=MessageOut)
async def get_message(
    message_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    stmt = select(ChatMessage).where(ChatMessage.id == message_id).options(selectinload(ChatMessage.sender))
    message = (await db.execute(stmt)).scalar_one_or_none()
    if not message:
        raise NotFound("Message not found")
    authorize(can_read_message(user, message), "You do not have access to this message")
    return _message_out(message)


@router.post("/messages", response_model=MessageOut, status_code=201)
async def send_message(
    data: MessageCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    sender_id = data.sender_id or user.id
    authorize(can_send_message(user, sender_id), "You can only send messages as yourself")

    receiver = (await db.execute(
        select(Profile.id).where(Profile.user_id == data.receiver_id)
    )).scalar_one_or_none()
    if receiver is None:
        raise NotFound("Recipient not found")
    if data.receiver_id == sender_id:
        logger.warning(f"Self-addressed message from {sender_id}")

    message = ChatMessage(content=data.content, sender_id=sender_id, receiver_id=data.receiver_id)
    db.add(message)
    await db.commit()

    stmt = select(ChatMessage).where(ChatMessage.id == message.id).options(selectinload(ChatMessage.sender))
    message = (await db.execute(stmt)).scalar_one()
    return _message_out(message)
