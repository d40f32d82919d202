# auth.py — Authentication for InternTrack
# Features:
# - JWT access/refresh tokens with JTI for revocation
# - 3-role model (intern, employee, admin) resolved from the caller's profile
# - Profile auto-provisioning from sign-up metadata on first authenticated request
# - Password policy enforcement
# - Brute force protection

import os
import uuid
import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
from collections import defaultdict

import bcrypt
from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr, Field, field_validator
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session
from errors import Unauthenticated, Forbidden, AlreadyExists
from models import User, Profile, RevokedToken, UserRole

logger = logging.getLogger("interntrack.auth")

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY or len(SECRET_KEY) < 32:
    SECRET_KEY = secrets.token_urlsafe(64)
    logger.warning(
        "⚠️  JWT_SECRET_KEY not set or insecure. Generated ephemeral key. "
        "Set JWT_SECRET_KEY in production!"
    )

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))
REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "7"))
ALLOW_ADMIN_SIGNUP = os.getenv("ALLOW_ADMIN_SIGNUP", "false").lower() == "true"
MIN_PASSWORD_LENGTH = 8
MAX_LOGIN_ATTEMPTS = 5
LOGIN_LOCKOUT_MINUTES = 15

security = HTTPBearer(auto_error=False)

# In-memory brute force tracker, per process
_login_attempts: Dict[str, list] = defaultdict(list)


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

class UserRegister(BaseModel):
    email: EmailStr
    password: str
    full_name: Optional[str] = Field(default=None, max_length=200)
    role: UserRole = UserRole.INTERN
    department: Optional[str] = Field(default=None, max_length=100)

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        if len(v) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        if not any(c.isdigit() for c in v):
            raise ValueError("Password must contain at least one digit")
        return v


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: Dict[str, Any]


class CurrentUser(BaseModel):
    """The authenticated actor every service call is authorized against"""
    id: str
    email: str
    full_name: Optional[str] = None
    role: UserRole
    department: Optional[str] = None
    token_jti: Optional[str] = None
    token_expires_at: Optional[datetime] = None


class RefreshRequest(BaseModel):
    refresh_token: str


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Credential, token and profile-provisioning operations"""

    @staticmethod
    def hash_password(password: str) -> str:
        salt = bcrypt.gensalt(rounds=12)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify_password(password: str, password_hash: str) -> bool:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))

    @staticmethod
    def _create_token(data: Dict[str, Any], token_type: str, expires_delta: timedelta) -> str:
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        to_encode.update({
            "exp": now + expires_delta,
            "iat": now,
            "type": token_type,
            "jti": str(uuid.uuid4()),
        })
        return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        delta = expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
        return AuthService._create_token(data, "access", delta)

    @staticmethod
    def create_refresh_token(data: Dict[str, Any]) -> str:
        return AuthService._create_token(data, "refresh", timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS))

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            raise Unauthenticated("Token expired")
        except JWTError:
            raise Unauthenticated("Invalid token")

    @staticmethod
    def _check_brute_force(email: str) -> None:
        """Check if login attempts exceed threshold"""
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=LOGIN_LOCKOUT_MINUTES)
        _login_attempts[email] = [t for t in _login_attempts[email] if t > cutoff]
        if len(_login_attempts[email]) >= MAX_LOGIN_ATTEMPTS:
            raise HTTPException(
                status_code=429,
                detail=f"Too many login attempts. Try again in {LOGIN_LOCKOUT_MINUTES} minutes.",
            )

    @staticmethod
    def _record_failed_attempt(email: str) -> None:
        _login_attempts[email].append(datetime.now(timezone.utc))

    @staticmethod
    def _clear_attempts(email: str) -> None:
        _login_attempts.pop(email, None)

    @staticmethod
    def signup_role(requested: UserRole) -> UserRole:
        """Admin cannot be self-assigned unless ALLOW_ADMIN_SIGNUP is set"""
        if requested == UserRole.ADMIN and not ALLOW_ADMIN_SIGNUP:
            logger.warning("Sign-up requested admin role; downgraded to intern")
            return UserRole.INTERN
        return requested

    @staticmethod
    async def register_user(user_data: UserRegister, db: AsyncSession) -> User:
        stmt = select(User).where(User.email == user_data.email)
        result = await db.execute(stmt)
        if result.scalar_one_or_none():
            raise AlreadyExists("User already exists")

        new_user = User(
            email=user_data.email,
            password_hash=AuthService.hash_password(user_data.password),
            user_metadata={
                "full_name": user_data.full_name,
                "role": AuthService.signup_role(user_data.role).value,
                "department": user_data.department,
            },
            is_active=True,
        )
        db.add(new_user)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise AlreadyExists("User already exists")
        await db.refresh(new_user)
        logger.info(f"Registered identity {new_user.id}")
        return new_user

    @staticmethod
    async def authenticate_user(email: str, password: str, db: AsyncSession) -> Optional[User]:
        AuthService._check_brute_force(email)

        stmt = select(User).where(User.email == email)
        result = await db.execute(stmt)
        user = result.scalar_one_or_none()

        if not user or not AuthService.verify_password(password, user.password_hash):
            AuthService._record_failed_attempt(email)
            return None

        if not user.is_active:
            return None

        AuthService._clear_attempts(email)

        user.last_login_at = datetime.now(timezone.utc)
        db.add(user)
        await db.commit()
        return user

    @staticmethod
    async def ensure_profile(user: User, db: AsyncSession) -> Profile:
        """Return the identity's profile, creating it from sign-up metadata if absent"""
        stmt = select(Profile).where(Profile.user_id == user.id)
        profile = (await db.execute(stmt)).scalar_one_or_none()
        if profile:
            return profile

        meta = user.user_metadata or {}
        try:
            role = UserRole(meta.get("role") or UserRole.INTERN.value)
        except ValueError:
            role = UserRole.INTERN

        profile = Profile(
            user_id=user.id,
            email=user.email,
            full_name=meta.get("full_name"),
            role=AuthService.signup_role(role),
            department=meta.get("department"),
            points=0,
        )
        db.add(profile)
        try:
            await db.commit()
        except IntegrityError:
            # A concurrent first request provisioned it
            await db.rollback()
            return (await db.execute(stmt)).scalar_one()
        await db.refresh(profile)
        logger.info(f"Provisioned {profile.role.value} profile for {user.id}")
        return profile

    @staticmethod
    async def is_token_revoked(jti: str, db: AsyncSession) -> bool:
        stmt = select(RevokedToken).where(RevokedToken.jti == jti)
        result = await db.execute(stmt)
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def revoke_token(jti: str, user_id: str, expires_at: datetime, db: AsyncSession) -> None:
        if await AuthService.is_token_revoked(jti, db):
            return
        db.add(RevokedToken(jti=jti, user_id=user_id, expires_at=expires_at))
        await db.commit()


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db_session),
) -> CurrentUser:
    if credentials is None:
        raise Unauthenticated()

    payload = AuthService.verify_token(credentials.credentials)

    if payload.get("type") != "access":
        raise Unauthenticated("Invalid token type")

    jti = payload.get("jti")
    if jti and await AuthService.is_token_revoked(jti, db):
        raise Unauthenticated("Token has been revoked")

    user_id = payload.get("sub")
    if not user_id:
        raise Unauthenticated("Invalid token")

    user = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if not user or not user.is_active:
        raise Unauthenticated("User not found or inactive")

    profile = await AuthService.ensure_profile(user, db)

    exp = payload.get("exp")
    return CurrentUser(
        id=user.id,
        email=user.email,
        full_name=profile.full_name,
        role=profile.role,
        department=profile.department,
        token_jti=jti,
        token_expires_at=datetime.fromtimestamp(exp, tz=timezone.utc) if exp else None,
    )


def require_role(*roles: UserRole):
    """Dependency factory: require user to have one of the specified roles"""
    async def _check(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role not in roles:
            raise Forbidden("Insufficient role privileges")
        return user
    return _check
