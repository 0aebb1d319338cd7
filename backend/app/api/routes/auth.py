"""
Authentication routes with secure session management.

Uses JWT tokens stored in httpOnly cookies with CSRF protection, plus
HTTP Basic (email/password) for API clients. Every protected route gets
the caller as an explicit Identity.
"""
import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Depends, Response, Request, Cookie
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from pydantic import BaseModel
from jose import jwt, JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.config import settings
from app.core.security import Identity, verify_password
from app.db import get_db
from app.db.models import User

logger = logging.getLogger(__name__)
router = APIRouter()
security = HTTPBasic(auto_error=False)

# Cookie settings
COOKIE_NAME = "session_token"
CSRF_COOKIE_NAME = "csrf_token"
CSRF_HEADER_NAME = "X-CSRF-Token"
COOKIE_MAX_AGE = settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60  # seconds

# JWT settings
JWT_ALGORITHM = "HS256"


class MembershipInfo(BaseModel):
    organizationId: uuid.UUID
    role: str


class UserInfo(BaseModel):
    id: uuid.UUID
    email: str
    name: Optional[str] = None
    platformRole: str
    memberships: List[MembershipInfo] = []


class LoginRequest(BaseModel):
    email: str
    password: str


def _create_access_token(user_id: uuid.UUID) -> str:
    """Create JWT access token"""
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    payload = {
        "sub": str(user_id),
        # Use numeric timestamps for compatibility across JWT libs
        "exp": int(expire.timestamp()),
        "iat": int(now.timestamp()),
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=JWT_ALGORITHM)


def _verify_token(token: str) -> Optional[uuid.UUID]:
    """Verify JWT token and return the user id if valid"""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[JWT_ALGORITHM])
        return uuid.UUID(payload.get("sub"))
    except (JWTError, TypeError, ValueError):
        return None


def _generate_csrf_token() -> str:
    """Generate a random CSRF token"""
    return secrets.token_urlsafe(32)


async def _authenticate(db: AsyncSession, email: str, password: str) -> Optional[User]:
    """Look up the user by email and check the password hash"""
    user = await db.scalar(select(User).where(User.email == email.strip().lower()))
    if user is None or not verify_password(password, user.password_hash):
        return None
    return user


def _get_cookie_settings() -> dict:
    """Get cookie settings based on environment"""
    is_prod = settings.ENV == "prod"
    return {
        "httponly": True,
        "secure": is_prod,  # HTTPS only in production
        "samesite": "lax",  # Protects against CSRF for most cases
        "max_age": COOKIE_MAX_AGE,
    }


async def identity_from_token(db: AsyncSession, token: Optional[str]) -> Optional[Identity]:
    """Resolve a session cookie value to an Identity (None when invalid)"""
    if not token:
        return None
    user_id = _verify_token(token)
    if user_id is None:
        return None
    user = await db.get(User, user_id)
    return Identity.from_user(user) if user else None


async def verify_session(
    request: Request,
    session_token: Optional[str] = Cookie(default=None, alias=COOKIE_NAME),
    credentials: Optional[HTTPBasicCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> Identity:
    """
    Verify user session via cookie JWT or Basic Auth header.

    Priority:
    1. Cookie-based JWT session (preferred, secure)
    2. Basic Auth header (fallback for API clients)

    Also verifies CSRF token for state-changing requests (POST/PUT/PATCH/DELETE).
    """
    identity = await identity_from_token(db, session_token)
    cookie_session = identity is not None

    # Fallback to Basic Auth for API clients
    if identity is None and credentials:
        user = await _authenticate(db, credentials.username, credentials.password)
        if user is not None:
            identity = Identity.from_user(user)

    if identity is None:
        # Avoid triggering browser Basic-Auth prompts for cookie-based UI flows.
        # Only advertise Basic auth challenge when the client actually attempted it.
        headers = {"WWW-Authenticate": "Basic"} if credentials else None
        raise HTTPException(
            status_code=401,
            detail="Unauthorized",
            headers=headers,
        )

    # CSRF check for state-changing methods (when using cookies)
    if cookie_session and request.method in ("POST", "PUT", "PATCH", "DELETE"):
        csrf_cookie = request.cookies.get(CSRF_COOKIE_NAME)
        csrf_header = request.headers.get(CSRF_HEADER_NAME)

        if not request.url.path.endswith(("/login", "/logout", "/me")):
            if not csrf_cookie or not csrf_header or not secrets.compare_digest(csrf_cookie, csrf_header):
                raise HTTPException(
                    status_code=403,
                    detail="CSRF token missing or invalid"
                )

    return identity


def _set_csrf_cookie(response: Response, csrf_token: str) -> None:
    """CSRF cookie stays readable by JS so the UI can echo it in X-CSRF-Token"""
    cookie_settings = _get_cookie_settings()
    cookie_settings["httponly"] = False
    response.set_cookie(key=CSRF_COOKIE_NAME, value=csrf_token, **cookie_settings)


# Dependency to protect routes - supports both cookie and Basic Auth
require_session = Depends(verify_session)


@router.post("/login")
async def login(request: LoginRequest, response: Response, db: AsyncSession = Depends(get_db)):
    """
    Check email/password and open a cookie session.

    Sets the httpOnly session_token JWT and the JS-readable csrf_token.
    """
    user = await _authenticate(db, request.email, request.password)
    if user is None:
        logger.info(f"Failed login for {request.email}")
        raise HTTPException(status_code=401, detail="Invalid credentials")

    csrf_token = _generate_csrf_token()
    response.set_cookie(key=COOKIE_NAME, value=_create_access_token(user.id), **_get_cookie_settings())
    _set_csrf_cookie(response, csrf_token)

    return {
        "message": "Login successful",
        "userId": str(user.id),
        "csrf_token": csrf_token,  # Also return in body for initial setup
    }


@router.post("/logout")
async def logout(response: Response):
    response.delete_cookie(COOKIE_NAME)
    response.delete_cookie(CSRF_COOKIE_NAME)
    return {"message": "Logged out"}


@router.get("/me", response_model=UserInfo)
async def get_current_user(
    identity: Identity = Depends(verify_session),
    db: AsyncSession = Depends(get_db),
):
    """Caller profile with organization memberships"""
    user = await db.scalar(
        select(User).options(selectinload(User.memberships)).where(User.id == identity.user_id)
    )
    return UserInfo(
        id=user.id,
        email=user.email,
        name=user.name,
        platformRole=identity.platform_role.value,
        memberships=[
            MembershipInfo(organizationId=m.organization_id, role=m.role.value)
            for m in user.memberships
        ],
    )


@router.get("/csrf-token")
async def get_csrf_token(response: Response, _: Identity = Depends(verify_session)):
    """Rotate the CSRF token of the current session"""
    csrf_token = _generate_csrf_token()
    _set_csrf_cookie(response, csrf_token)
    return {"csrf_token": csrf_token}
