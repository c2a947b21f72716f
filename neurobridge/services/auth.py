# services/auth.py
"""Access/refresh token sessions.

Access tokens are short-lived HS256 JWTs whose subject is the user id.
Refresh tokens are opaque random strings. Every issued pair is stored as a
``UserToken`` row, so logout and rotation revoke tokens server-side.
"""
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import jwt
from fastapi_users import exceptions as fu_exceptions
from fastapi_users.jwt import decode_jwt, generate_jwt
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from neurobridge.database import async_session_maker
from neurobridge.errors import ConflictError, InputError, InvalidCredentialsError, NotFoundError
from neurobridge.models import User, UserToken, as_utc, utcnow
from neurobridge.request_context import RequestData, set_request_data
from neurobridge.schemas import UserCreate
from neurobridge.settings.config import settings
from neurobridge.users import SECRET, user_manager_for

logger = logging.getLogger(__name__)

TOKEN_AUDIENCE = ["neurobridge:auth"]


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    user_id: uuid.UUID
    access_expires_in: int
    refresh_expires_at: datetime


def _reject(cause: str, *args) -> InvalidCredentialsError:
    detail = cause % args if args else cause
    logger.info("Auth rejected: %s", detail)
    return InvalidCredentialsError(cause=detail)


def _mint(user_id: uuid.UUID, now: datetime) -> TokenPair:
    access_seconds = int(settings.ACCESS_TTL.total_seconds())
    access = generate_jwt(
        {
            "sub": str(user_id),
            "aud": TOKEN_AUDIENCE,
            "iat": int(now.timestamp()),
            # unique per mint even within the same second
            "jti": uuid.uuid4().hex,
        },
        SECRET,
        lifetime_seconds=access_seconds,
    )
    return TokenPair(
        access_token=access,
        refresh_token=secrets.token_urlsafe(32),
        user_id=user_id,
        access_expires_in=access_seconds,
        refresh_expires_at=now + settings.REFRESH_TTL,
    )


def _token_row(pair: TokenPair) -> UserToken:
    return UserToken(
        id=uuid.uuid4(),
        user_id=pair.user_id,
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_at=pair.refresh_expires_at,
    )


async def register(db: AsyncSession, email: str, password: str, *,
                   first_name: Optional[str] = None, last_name: Optional[str] = None) -> User:
    manager = user_manager_for(db)
    try:
        user_create = UserCreate(
            email=(email or "").strip().lower(),
            password=password or "",
            first_name=(first_name or "").strip() or None,
            last_name=(last_name or "").strip() or None,
        )
        return await manager.create(user_create, safe=True)
    except fu_exceptions.UserAlreadyExists:
        raise ConflictError("email already registered")
    except fu_exceptions.InvalidPasswordException as e:
        raise InputError(str(e.reason))


async def login(email: str, password: str, *, session_maker=async_session_maker) -> TokenPair:
    async with session_maker() as db:
        manager = user_manager_for(db)
        try:
            user = await manager.get_by_email((email or "").strip())
        except fu_exceptions.UserNotExists:
            raise _reject("unknown email %s", email)
        if not user.is_active or user.deleted_at is not None:
            raise _reject("inactive user %s", user.id)
        verified, updated_hash = manager.password_helper.verify_and_update(password or "", user.hashed_password)
        if not verified:
            raise _reject("bad password for user %s", user.id)
        if updated_hash:
            user.hashed_password = updated_hash

        now = utcnow()
        # lazily reap this user's sessions that are past even the refresh grace
        await db.execute(
            delete(UserToken).where(
                UserToken.user_id == user.id,
                UserToken.expires_at < now - settings.REFRESH_GRACE,
            )
        )
        pair = _mint(user.id, now)
        db.add(_token_row(pair))
        await db.commit()
    logger.info("User %s logged in", pair.user_id)
    return pair


async def refresh(refresh_token: str, *, session_maker=async_session_maker) -> TokenPair:
    """Rotate a refresh token: the presented pair is revoked, a new one issued."""
    token = (refresh_token or "").strip()
    if not token:
        raise _reject("empty refresh token")
    async with session_maker() as db:
        row = (await db.execute(
            select(UserToken).where(UserToken.refresh_token == token).with_for_update()
        )).scalars().first()
        if row is None:
            raise _reject("refresh token not found")

        now = utcnow()
        if as_utc(row.expires_at) + settings.REFRESH_GRACE < now:
            await db.delete(row)
            await db.commit()
            raise _reject("refresh token expired for user %s", row.user_id)

        user = await db.get(User, row.user_id)
        if user is None or not user.is_active or user.deleted_at is not None:
            await db.delete(row)
            await db.commit()
            raise _reject("refresh for inactive user %s", row.user_id)

        pair = _mint(row.user_id, now)
        db.add(_token_row(pair))
        await db.delete(row)
        await db.commit()
    return pair


async def logout(access_token: str, *, session_maker=async_session_maker) -> None:
    token = (access_token or "").strip()
    if not token:
        return
    async with session_maker() as db:
        await db.execute(delete(UserToken).where(UserToken.access_token == token))
        await db.commit()


async def set_context_from_token(access_token: Optional[str], *,
                                 session_maker=async_session_maker) -> Optional[RequestData]:
    """Resolve a bearer token and attach the identity to the request context.

    No token means an anonymous request and leaves the context alone. A token
    that fails verification, or whose row was logged out, is an error.
    """
    token = (access_token or "").strip()
    if not token:
        return None
    try:
        claims = decode_jwt(token, SECRET, TOKEN_AUDIENCE)
        user_id = uuid.UUID(str(claims.get("sub")))
    except jwt.PyJWTError as e:
        raise _reject("invalid access token: %s", e)
    except ValueError:
        raise _reject("access token has a malformed subject")

    async with session_maker() as db:
        row = (await db.execute(select(UserToken).where(UserToken.access_token == token))).scalars().first()
    if row is None:
        raise _reject("access token for user %s was revoked", user_id)
    if row.user_id != user_id:
        raise _reject("access token subject does not match its session")

    rd = RequestData(user_id=user_id, session_id=row.id, access_token=token, refresh_token=row.refresh_token)
    set_request_data(rd)
    return rd


async def revoke_all_for_user(db: AsyncSession, user_id: uuid.UUID) -> None:
    await db.execute(delete(UserToken).where(UserToken.user_id == user_id))


async def get_active_user(db: AsyncSession, user_id: uuid.UUID) -> User:
    user = await db.get(User, user_id)
    if user is None or user.deleted_at is not None:
        raise NotFoundError("user not found")
    return user


async def update_profile(db: AsyncSession, user_id: uuid.UUID, *, first_name: Optional[str] = None,
                         last_name: Optional[str] = None) -> User:
    user = await get_active_user(db, user_id)
    if first_name is not None:
        user.first_name = first_name.strip() or None
    if last_name is not None:
        user.last_name = last_name.strip() or None
    user.updated_at = utcnow()
    await db.commit()
    return user


async def soft_delete_user(db: AsyncSession, user_id: uuid.UUID) -> None:
    user = await get_active_user(db, user_id)
    user.deleted_at = utcnow()
    user.is_active = False
    await revoke_all_for_user(db, user_id)
    await db.commit()
    logger.info("User %s soft-deleted", user_id)
