"""
services/auth/router.py
Email/password and Google sign-in.
Implements: Register/Login/Google → JWT issue → Refresh → Logout, plus profile.
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

import httpx
from authlib.jose.errors import JoseError
from fastapi import APIRouter, Cookie, Depends, HTTPException, Request, Response, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from services.provider.router import index_provider
from shared.middleware.auth import TokenData, get_current_user, get_token_data
from shared.models.models import (
    PriceUnit,
    RefreshToken,
    ServiceProvider,
    ServiceType,
    User,
    UserRole,
    as_utc,
)
from shared.schemas.schemas import (
    AuthResponse,
    GoogleAuthRequest,
    LoginRequest,
    MessageResponse,
    RegisterRequest,
    TokenResponse,
    UserResponse,
    UserUpdateRequest,
)
from shared.utils.security import (
    create_access_token,
    create_refresh_token,
    get_token_remaining_ttl,
    hash_password,
    hash_token,
    verify_google_id_token,
    verify_password,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])

REFRESH_COOKIE_PATH = "/api/auth/refresh"


# ── Helpers ───────────────────────────────────────────────────

async def _issue_tokens(
    user: User,
    db: AsyncSession,
    response: Response,
    request: Optional[Request] = None,
) -> str:
    """
    Issue access token + refresh token.
    Refresh token stored as httpOnly cookie and its hash persisted in DB.
    """
    access_token, _ = create_access_token(
        user_id=str(user.id),
        role=user.role.value,
        email=user.email,
    )

    raw_refresh, hashed_refresh = create_refresh_token()
    db.add(RefreshToken(
        user_id=user.id,
        token_hash=hashed_refresh,
        expires_at=datetime.now(timezone.utc) + timedelta(days=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS),
        user_agent=request.headers.get("User-Agent", "")[:500] if request else None,
    ))

    response.set_cookie(
        key="refresh_token",
        value=raw_refresh,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        max_age=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS * 86400,
        path=REFRESH_COOKIE_PATH,
    )
    return access_token


def _auth_response(user: User, access_token: str) -> AuthResponse:
    return AuthResponse(
        access_token=access_token,
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=UserResponse.model_validate(user),
    )


# ── Google Sign-In ────────────────────────────────────────────

GOOGLE_CERTS_CACHE_KEY = "google:certs"


async def fetch_google_certs() -> dict:
    """Google's current ID-token signing keys (JWKS)."""
    async with httpx.AsyncClient(timeout=10) as client:
        resp = await client.get(settings.GOOGLE_CERTS_URL)
        resp.raise_for_status()
        return resp.json()


async def _google_claims(credential: str, redis) -> dict:
    """Verified claims of a Google ID token. Signing keys are cached in Redis."""
    if not settings.GOOGLE_CLIENT_ID:
        raise HTTPException(status_code=503, detail="Google sign-in is not configured")

    cache = RedisCache(redis)
    certs = await cache.get(GOOGLE_CERTS_CACHE_KEY)
    if not certs:
        try:
            certs = await fetch_google_certs()
        except httpx.HTTPError as e:
            logger.error(f"Could not fetch Google signing keys: {e}")
            raise HTTPException(status_code=503, detail="Google sign-in is temporarily unavailable")
        await cache.set(GOOGLE_CERTS_CACHE_KEY, certs, ttl=settings.GOOGLE_CERTS_CACHE_TTL)

    try:
        return verify_google_id_token(credential, certs)
    except JoseError as e:
        logger.warning(f"Rejected Google credential: {e}")
        raise HTTPException(status_code=401, detail="Invalid Google credential")


# ── Register / Login ──────────────────────────────────────────

@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(
    data: RegisterRequest,
    response: Response,
    request: Request,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Create a user or helper account.
    Helpers must also provide service, location, experience and price_per_hour;
    a ServiceProvider profile is created for them (unverified).
    """
    if data.role == UserRole.HELPER and (
        not data.service
        or not data.location
        or data.experience is None
        or data.price_per_hour is None
    ):
        raise HTTPException(
            status_code=400,
            detail="Service type, location, experience, and pricing are required for helpers",
        )

    email = data.email.lower()
    existing = await db.execute(select(User).where(User.email == email))
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=400, detail="User already exists")

    latitude = data.latitude if data.latitude is not None else settings.DEFAULT_LATITUDE
    longitude = data.longitude if data.longitude is not None else settings.DEFAULT_LONGITUDE

    user = User(
        name=data.name.strip(),
        email=email,
        password_hash=hash_password(data.password),
        phone=data.phone,
        role=UserRole(data.role),
        address=data.address or data.location,
        latitude=latitude,
        longitude=longitude,
        coins_earned=settings.WELCOME_COINS,
        total_bookings=0,
        completed_bookings=0,
        is_active=True,
        last_login=datetime.now(timezone.utc),
    )
    db.add(user)
    await db.flush()

    provider = None
    if data.role == UserRole.HELPER:
        provider = ServiceProvider(
            user_id=user.id,
            business_name=user.name,
            service_type=ServiceType(data.service),
            base_price=Decimal(str(data.price_per_hour)),
            price_unit=PriceUnit.HOUR,
            address=data.location,
            latitude=latitude,
            longitude=longitude,
            experience_years=data.experience,
            contact_phone=data.phone,
            contact_email=email,
            rating_avg=4.5,
            rating_count=0,
            is_verified=False,
        )
        db.add(provider)
        logger.info(f"Helper registered: {user.id} ({data.service})")

    access_token = await _issue_tokens(user, db, response, request)
    await db.commit()
    if provider:
        await index_provider(redis, provider)
    return _auth_response(user, access_token)


@router.post("/login", response_model=AuthResponse)
async def login(
    data: LoginRequest,
    response: Response,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(User).where(User.email == data.email.lower()))
    user = result.scalar_one_or_none()

    if not user or not user.password_hash or not verify_password(data.password, user.password_hash):
        raise HTTPException(status_code=400, detail="Invalid credentials")
    if not user.is_active:
        raise HTTPException(status_code=400, detail="Account is deactivated. Please contact support.")

    user.last_login = datetime.now(timezone.utc)
    access_token = await _issue_tokens(user, db, response, request)
    await db.commit()
    return _auth_response(user, access_token)


@router.post("/google", response_model=AuthResponse)
async def google_auth(
    data: GoogleAuthRequest,
    response: Response,
    request: Request,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Sign in with a Google ID token obtained by the frontend.
    The token is verified before any account is read or written; the
    profile comes from its claims. Creates the account on first sign-in
    with the welcome coin bonus.
    """
    claims = await _google_claims(data.credential, redis)
    google_id = claims["sub"]
    email = claims["email"].lower()
    picture = claims.get("picture")

    result = await db.execute(select(User).where(User.google_id == google_id))
    user = result.scalar_one_or_none()
    if not user:
        result = await db.execute(select(User).where(User.email == email))
        user = result.scalar_one_or_none()
        if user and user.google_id:
            raise HTTPException(status_code=401, detail="Google account does not match this user")
        if user and user.role == UserRole.ADMIN:
            raise HTTPException(status_code=403, detail="Admin accounts must sign in with a password")

    if not user:
        user = User(
            name=claims.get("name") or email.split("@")[0],
            email=email,
            google_id=google_id,
            avatar_url=picture,
            role=UserRole.USER,
            latitude=settings.DEFAULT_LATITUDE,
            longitude=settings.DEFAULT_LONGITUDE,
            coins_earned=settings.WELCOME_COINS,
            total_bookings=0,
            completed_bookings=0,
            is_active=True,
        )
        db.add(user)
        await db.flush()
        logger.info(f"New Google user created: {user.id}")
    elif not user.google_id:
        user.google_id = google_id
        user.avatar_url = picture or user.avatar_url

    if not user.is_active:
        raise HTTPException(status_code=400, detail="Account is deactivated. Please contact support.")

    user.last_login = datetime.now(timezone.utc)
    access_token = await _issue_tokens(user, db, response, request)
    await db.commit()
    return _auth_response(user, access_token)


# ── Token Refresh / Logout ────────────────────────────────────

@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(
    response: Response,
    request: Request,
    refresh_token_cookie: Optional[str] = Cookie(None, alias="refresh_token"),
    db: AsyncSession = Depends(get_db),
):
    """
    Rotate refresh token and issue a new access token.
    The old refresh token is revoked (rotation prevents replay).
    """
    if not refresh_token_cookie:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Refresh token missing")

    result = await db.execute(
        select(RefreshToken).where(
            RefreshToken.token_hash == hash_token(refresh_token_cookie),
            RefreshToken.is_revoked == False,
        )
    )
    db_token = result.scalar_one_or_none()
    if not db_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or revoked refresh token",
        )
    if as_utc(db_token.expires_at) < datetime.now(timezone.utc):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Refresh token expired")

    result = await db.execute(select(User).where(User.id == db_token.user_id))
    user = result.scalar_one_or_none()
    if not user or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")

    db_token.is_revoked = True
    access_token = await _issue_tokens(user, db, response, request)
    await db.commit()

    return TokenResponse(
        access_token=access_token,
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )


@router.post("/logout", response_model=MessageResponse)
async def logout(
    response: Response,
    token_data: TokenData = Depends(get_token_data),
    refresh_token_cookie: Optional[str] = Cookie(None, alias="refresh_token"),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Deny-list the access token in Redis and revoke the refresh token."""
    ttl = get_token_remaining_ttl({"exp": token_data.exp})
    if ttl > 0:
        await RedisCache(redis).revoke_token(token_data.jti, ttl)

    if refresh_token_cookie:
        result = await db.execute(
            select(RefreshToken).where(RefreshToken.token_hash == hash_token(refresh_token_cookie))
        )
        db_token = result.scalar_one_or_none()
        if db_token:
            db_token.is_revoked = True

    response.delete_cookie(key="refresh_token", path=REFRESH_COOKIE_PATH)
    await db.commit()
    return MessageResponse(message="Logged out successfully")


# ── Profile ───────────────────────────────────────────────────

@router.get("/profile", response_model=UserResponse)
async def get_profile(current_user: User = Depends(get_current_user)):
    """Returns the authenticated user's profile."""
    return UserResponse.model_validate(current_user)


@router.put("/profile", response_model=UserResponse)
async def update_profile(
    data: UserUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Update name, phone, location text and coordinates. Empty body is a no-op."""
    updates = data.model_dump(exclude_none=True)
    if "location" in updates:
        current_user.address = updates.pop("location")
    for field, value in updates.items():
        setattr(current_user, field, value)

    await db.commit()
    await db.refresh(current_user)
    return UserResponse.model_validate(current_user)
