# routers/profiles.py — Profile directory, leaderboard and self-edit
from typing import Optional, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from database import get_db_session
from errors import NotFound
from models import Profile, UserRole
from policies import authorize, can_read_profile, can_write_profile

router = APIRouter(prefix="/api/v1/profiles", tags=["Profiles"])


# --- Schemas ---

class ProfileOut(BaseModel):
    id: str
    user_id: str
    email: str
    full_name: Optional[str] = None
    role: str
    department: Optional[str] = None
    bio: Optional[str] = None
    avatar_url: Optional[str] = None
    points: int
    created_at: str
    updated_at: str


class ProfileUpdate(BaseModel):
    """Self-editable fields. Role and points are deliberately absent."""
    full_name: Optional[str] = Field(default=None, max_length=200)
    department: Optional[str] = Field(default=None, max_length=100)
    bio: Optional[str] = Field(default=None, max_length=2000)
    avatar_url: Optional[str] = Field(default=None, max_length=500)


# --- Helpers ---

def profile_to_out(p: Profile) -> ProfileOut:
    return ProfileOut(
        id=p.id,
        user_id=p.user_id,
        email=p.email,
        full_name=p.full_name,
        role=p.role.value if isinstance(p.role, UserRole) else p.role,
        department=p.department,
        bio=p.bio,
        avatar_url=p.avatar_url,
        points=p.points or 0,
        created_at=p.created_at.isoformat() if p.created_at else "",
        updated_at=p.updated_at.isoformat() if p.updated_at else "",
    )


async def _get_profile(db: AsyncSession, user_id: str) -> Profile:
    stmt = select(Profile).where(Profile.user_id == user_id).execution_options(populate_existing=True)
    profile = (await db.execute(stmt)).scalar_one_or_none()
    if not profile:
        raise NotFound("Profile not found")
    return profile


# --- Endpoints ---

@router.get("", response_model=List[ProfileOut])
async def list_profiles(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    role: Optional[UserRole] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    """List profiles, highest points first"""
    stmt = (
        select(Profile)
        .order_by(Profile.points.desc(), Profile.created_at.asc())
        .offset(offset)
        .limit(limit)
    )
    if role:
        stmt = stmt.where(Profile.role == role)
    result = await db.execute(stmt)
    return [profile_to_out(p) for p in result.scalars().all() if can_read_profile(user, p)]


@router.get("/leaderboard", response_model=List[ProfileOut])
async def leaderboard(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    limit: int = Query(default=5, ge=1, le=50),
):
    """Top interns ranked by points earned from completed tasks"""
    stmt = (
        select(Profile)
        .where(Profile.role == UserRole.INTERN)
        .order_by(Profile.points.desc(), Profile.created_at.asc())
        .limit(limit)
    )
    result = await db.execute(stmt)
    return [profile_to_out(p) for p in result.scalars().all()]


@router.get("/me", response_model=ProfileOut)
async def get_my_profile(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    return profile_to_out(await _get_profile(db, user.id))


@router.patch("/me", response_model=ProfileOut)
async def update_my_profile(
    data: ProfileUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Update the caller's own profile fields"""
    profile = await _get_profile(db, user.id)
    authorize(can_write_profile(user, profile.user_id), "You can only edit your own profile")

    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(profile, field, value)

    await db.commit()
    await db.refresh(profile)
    return profile_to_out(profile)


@router.get("/{user_id}", response_model=ProfileOut)
async def get_profile(
    user_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    profile = await _get_profile(db, user_id)
    authorize(can_read_profile(user, profile))
    return profile_to_out(profile)
