# routers/auth.py — Authentication endpoints with token revocation
from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    AuthService, UserRegister, UserLogin, TokenResponse, RefreshRequest,
    ACCESS_TOKEN_EXPIRE_MINUTES, get_current_user, CurrentUser,
)
from database import get_db_session
from errors import Unauthenticated
from models import User, Profile

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])


def _build_token_response(user_obj: User, profile: Profile) -> TokenResponse:
    """Build token response from identity + profile rows"""
    token_data = {"sub": user_obj.id, "email": user_obj.email}
    return TokenResponse(
        access_token=AuthService.create_access_token(token_data),
        refresh_token=AuthService.create_refresh_token(token_data),
        expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user={
            "id": user_obj.id,
            "email": user_obj.email,
            "full_name": profile.full_name,
            "role": profile.role.value,
            "department": profile.department,
            "points": profile.points,
        },
    )


@router.post("/register", response_model=TokenResponse)
async def register(
    user_data: UserRegister,
    db: AsyncSession = Depends(get_db_session),
):
    """Register a new account; the profile is provisioned from the sign-up metadata"""
    user = await AuthService.register_user(user_data, db)
    profile = await AuthService.ensure_profile(user, db)
    return _build_token_response(user, profile)


@router.post("/login", response_model=TokenResponse)
async def login(
    credentials: UserLogin,
    db: AsyncSession = Depends(get_db_session),
):
    """Authenticate and receive tokens"""
    user = await AuthService.authenticate_user(credentials.email, credentials.password, db)
    if not user:
        raise Unauthenticated("Invalid credentials")
    profile = await AuthService.ensure_profile(user, db)
    return _build_token_response(user, profile)


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(
    refresh_req: RefreshRequest,
    db: AsyncSession = Depends(get_db_session),
):
    """Refresh access token using a refresh token"""
    payload = AuthService.verify_token(refresh_req.refresh_token)

    if payload.get("type") != "refresh":
        raise Unauthenticated("Invalid token type. Expected refresh token.")

    jti = payload.get("jti")
    if jti and await AuthService.is_token_revoked(jti, db):
        raise Unauthenticated("Refresh token has been revoked")

    stmt = select(User).where(User.id == payload.get("sub"))
    user = (await db.execute(stmt)).scalar_one_or_none()
    if not user or not user.is_active:
        raise Unauthenticated("User not found or inactive")

    profile = await AuthService.ensure_profile(user, db)
    return _build_token_response(user, profile)


@router.post("/logout")
async def logout(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Logout and revoke the presented access token"""
    if user.token_jti and user.token_expires_at:
        await AuthService.revoke_token(user.token_jti, user.id, user.token_expires_at, db)
    return {"status": "logged_out", "message": "Session terminated"}


@router.get("/me")
async def get_current_user_info(user: CurrentUser = Depends(get_current_user)):
    """Get current authenticated identity and role"""
    return {
        "id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "role": user.role.value,
        "department": user.department,
    }
