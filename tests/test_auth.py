import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select

from neurobridge.errors import ConflictError, InputError, InvalidCredentialsError, NotFoundError
from neurobridge.models import UserToken, utcnow
from neurobridge.request_context import get_request_data
from neurobridge.services import auth

PASSWORD = "correct horse battery"


async def _register(session_maker, email="ada@example.com", password=PASSWORD):
    async with session_maker() as db:
        return await auth.register(db, email, password, first_name=" Ada ", last_name="Lovelace")


async def _token_row(session_maker, refresh_token):
    async with session_maker() as db:
        return (await db.execute(select(UserToken).where(UserToken.refresh_token == refresh_token))).scalars().first()


async def _age_refresh_token(session_maker, refresh_token, by):
    async with session_maker() as db:
        row = (await db.execute(select(UserToken).where(UserToken.refresh_token == refresh_token))).scalars().one()
        row.expires_at = utcnow() - by
        await db.commit()


@pytest.mark.asyncio
async def test_register_creates_user(session_maker):
    user = await _register(session_maker)

    assert user.email == "ada@example.com"
    assert user.first_name == "Ada"
    assert user.is_superuser is False
    assert user.hashed_password != PASSWORD


@pytest.mark.asyncio
async def test_register_rejects_duplicates_and_weak_passwords(session_maker):
    await _register(session_maker)
    with pytest.raises(ConflictError):
        await _register(session_maker)
    with pytest.raises(InputError):
        await _register(session_maker, email="bob@example.com", password="short")
    with pytest.raises(InputError):
        await _register(session_maker, email="carol@example.com", password="carol-is-great")


@pytest.mark.asyncio
async def test_login_issues_a_stored_token_pair(session_maker):
    user = await _register(session_maker)

    pair = await auth.login("ada@example.com", PASSWORD)

    assert pair.user_id == user.id
    assert pair.access_expires_in > 0
    row = await _token_row(session_maker, pair.refresh_token)
    assert row.access_token == pair.access_token
    assert row.user_id == user.id


@pytest.mark.asyncio
async def test_login_failures_are_neutral(session_maker):
    await _register(session_maker)

    with pytest.raises(InvalidCredentialsError) as bad_password:
        await auth.login("ada@example.com", "wrong password!")
    with pytest.raises(InvalidCredentialsError) as unknown:
        await auth.login("nobody@example.com", PASSWORD)

    assert bad_password.value.message == unknown.value.message == "invalid credentials"
    assert "bad password" in bad_password.value.cause
    assert "unknown email" in unknown.value.cause


@pytest.mark.asyncio
async def test_refresh_rotates_both_tokens(session_maker):
    await _register(session_maker)
    first = await auth.login("ada@example.com", PASSWORD)

    second = await auth.refresh(first.refresh_token)

    assert second.refresh_token != first.refresh_token
    assert second.access_token != first.access_token
    assert await _token_row(session_maker, first.refresh_token) is None
    with pytest.raises(InvalidCredentialsError):
        await auth.refresh(first.refresh_token)
    # the old access token went with its row
    with pytest.raises(InvalidCredentialsError):
        await auth.set_context_from_token(first.access_token)


@pytest.mark.asyncio
async def test_refresh_within_grace_succeeds(session_maker):
    await _register(session_maker)
    pair = await auth.login("ada@example.com", PASSWORD)
    await _age_refresh_token(session_maker, pair.refresh_token, timedelta(minutes=3))

    rotated = await auth.refresh(pair.refresh_token)

    assert rotated.refresh_token != pair.refresh_token


@pytest.mark.asyncio
async def test_refresh_past_grace_fails_and_deletes_row(session_maker):
    await _register(session_maker)
    pair = await auth.login("ada@example.com", PASSWORD)
    await _age_refresh_token(session_maker, pair.refresh_token, timedelta(minutes=6))

    with pytest.raises(InvalidCredentialsError) as exc:
        await auth.refresh(pair.refresh_token)

    assert "expired" in exc.value.cause
    assert await _token_row(session_maker, pair.refresh_token) is None


@pytest.mark.asyncio
async def test_login_reaps_only_long_expired_sessions(session_maker):
    await _register(session_maker)
    stale = await auth.login("ada@example.com", PASSWORD)
    recent = await auth.login("ada@example.com", PASSWORD)
    await _age_refresh_token(session_maker, stale.refresh_token, timedelta(hours=1))
    await _age_refresh_token(session_maker, recent.refresh_token, timedelta(minutes=1))

    await auth.login("ada@example.com", PASSWORD)

    assert await _token_row(session_maker, stale.refresh_token) is None
    assert await _token_row(session_maker, recent.refresh_token) is not None


@pytest.mark.asyncio
async def test_set_context_from_token(session_maker):
    user = await _register(session_maker)
    pair = await auth.login("ada@example.com", PASSWORD)

    assert await auth.set_context_from_token(None) is None
    rd = await auth.set_context_from_token(pair.access_token)

    row = await _token_row(session_maker, pair.refresh_token)
    assert rd.user_id == user.id
    assert rd.session_id == row.id
    assert rd.refresh_token == pair.refresh_token
    assert get_request_data() == rd


@pytest.mark.asyncio
async def test_set_context_rejects_garbage_tokens():
    with pytest.raises(InvalidCredentialsError):
        await auth.set_context_from_token("not.a.jwt")


@pytest.mark.asyncio
async def test_logout_is_idempotent(session_maker):
    await _register(session_maker)
    pair = await auth.login("ada@example.com", PASSWORD)

    await auth.logout(pair.access_token)
    await auth.logout(pair.access_token)
    await auth.logout("")

    with pytest.raises(InvalidCredentialsError):
        await auth.set_context_from_token(pair.access_token)


@pytest.mark.asyncio
async def test_soft_delete_revokes_sessions_and_blocks_login(session_maker):
    user = await _register(session_maker)
    pair = await auth.login("ada@example.com", PASSWORD)

    async with session_maker() as db:
        await auth.soft_delete_user(db, user.id)
    async with session_maker() as db:
        with pytest.raises(NotFoundError):
            await auth.get_active_user(db, user.id)

    assert await _token_row(session_maker, pair.refresh_token) is None
    with pytest.raises(InvalidCredentialsError):
        await auth.login("ada@example.com", PASSWORD)


@pytest.mark.asyncio
async def test_update_profile(session_maker):
    user = await _register(session_maker)
    async with session_maker() as db:
        updated = await auth.update_profile(db, user.id, first_name="Augusta", last_name="  ")

    assert (updated.first_name, updated.last_name) == ("Augusta", None)
    async with session_maker() as db:
        with pytest.raises(NotFoundError):
            await auth.update_profile(db, uuid.uuid4(), first_name="x")
