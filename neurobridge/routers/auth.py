from __future__ import annotations

from fastapi import APIRouter, Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from neurobridge.database import get_db
from neurobridge.request_context import RequestData
from neurobridge.schemas import (
    LoginRequest,
    PrefsUpdate,
    ProfileUpdate,
    RefreshRequest,
    RegisterRequest,
    TokenResponse,
    UserRead,
)
from neurobridge.services import auth, personalization
from neurobridge.utils import bearer_token, require_authenticated_user


router = APIRouter()


def _tokens(pair: auth.TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=pair.access_expires_in,
    )


@router.post("/api/register", response_model=UserRead, status_code=201)
async def register(body: RegisterRequest, db: AsyncSession = Depends(get_db)):
    return await auth.register(
        db, body.email, body.password, first_name=body.first_name, last_name=body.last_name
    )


@router.post("/api/login", response_model=TokenResponse)
async def login(body: LoginRequest):
    return _tokens(await auth.login(body.email, body.password))


@router.post("/api/refresh", response_model=TokenResponse)
async def refresh(body: RefreshRequest):
    return _tokens(await auth.refresh(body.refresh_token))


@router.post("/api/logout")
async def logout(authorization: str | None = Header(default=None)):
    await auth.logout(bearer_token(authorization))
    return {"ok": True}


@router.get("/api/me", response_model=UserRead)
async def me(rd: RequestData = Depends(require_authenticated_user), db: AsyncSession = Depends(get_db)):
    return await auth.get_active_user(db, rd.user_id)


@router.patch("/api/me", response_model=UserRead)
async def update_me(
    body: ProfileUpdate,
    rd: RequestData = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    return await auth.update_profile(db, rd.user_id, first_name=body.first_name, last_name=body.last_name)


@router.delete("/api/me")
async def delete_me(rd: RequestData = Depends(require_authenticated_user), db: AsyncSession = Depends(get_db)):
    await auth.soft_delete_user(db, rd.user_id)
    return {"ok": True}


@router.get("/api/me/personalization")
async def get_personalization(
    rd: RequestData = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    return {"prefs": await personalization.get_prefs(db, rd.user_id)}


@router.patch("/api/me/personalization")
async def update_personalization(
    body: PrefsUpdate,
    rd: RequestData = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    return {"prefs": await personalization.update_prefs(db, rd.user_id, body.prefs)}
