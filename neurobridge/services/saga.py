# services/saga.py
"""Compensation ledger for multi-stage builds.

Each root job gets one saga. Workers append the side effects they perform
outside the database (staged blobs, for now) as actions; if the build is
abandoned the actions are undone newest-first.
"""
import logging
import uuid
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from neurobridge.database import async_session_maker
from neurobridge.errors import InputError, NotFoundError
from neurobridge.models import SagaAction, SagaRun, SagaStatus, utcnow
from neurobridge.storage import CATEGORY_MATERIAL, get_bucket

logger = logging.getLogger(__name__)

ACTION_STORAGE_DELETE_KEY = "storage_delete_key"
ACTION_STORAGE_DELETE_PREFIX = "storage_delete_prefix"


async def _get_by_root_job(db: AsyncSession, root_job_id: uuid.UUID) -> Optional[SagaRun]:
    q = select(SagaRun).where(SagaRun.root_job_id == root_job_id)
    return (await db.execute(q)).scalars().first()


async def create_or_get_saga(db: AsyncSession, owner_user_id: uuid.UUID, root_job_id: uuid.UUID) -> SagaRun:
    if owner_user_id is None or root_job_id is None:
        raise InputError("saga needs an owner and a root job")
    existing = await _get_by_root_job(db, root_job_id)
    if existing:
        return existing
    try:
        async with db.begin_nested():
            saga = SagaRun(id=uuid.uuid4(), owner_user_id=owner_user_id, root_job_id=root_job_id,
                           status=SagaStatus.running.value)
            db.add(saga)
        return saga
    except IntegrityError:
        found = await _get_by_root_job(db, root_job_id)
        if found is None:
            raise
        return found


async def _lock_saga(db: AsyncSession, saga_id: uuid.UUID) -> SagaRun:
    await db.flush()
    q = select(SagaRun).where(SagaRun.id == saga_id).with_for_update().execution_options(populate_existing=True)
    saga = (await db.execute(q)).scalars().first()
    if saga is None:
        raise NotFoundError("saga not found")
    return saga


async def append_action(db: AsyncSession, saga_id: uuid.UUID, kind: str, payload: dict[str, Any]) -> SagaAction:
    if not (kind or "").strip():
        raise InputError("missing saga action kind")
    await _lock_saga(db, saga_id)
    last = (await db.execute(select(func.max(SagaAction.seq)).where(SagaAction.saga_id == saga_id))).scalar()
    action = SagaAction(id=uuid.uuid4(), saga_id=saga_id, seq=int(last or 0) + 1, kind=kind,
                        payload=dict(payload or {}), status="pending")
    db.add(action)
    await db.flush()
    return action


async def mark_saga_status(db: AsyncSession, saga_id: uuid.UUID, status: str) -> None:
    try:
        new_status = SagaStatus(status).value
    except ValueError:
        raise InputError(f"unknown saga status {status!r}")
    saga = await _lock_saga(db, saga_id)
    saga.status = new_status
    saga.updated_at = utcnow()
    await db.flush()


async def _apply_compensation(action: SagaAction, bucket) -> None:
    p = action.payload or {}
    category = p.get("category") or CATEGORY_MATERIAL
    if action.kind == ACTION_STORAGE_DELETE_KEY:
        await bucket.delete_file(category, p["key"])
    elif action.kind == ACTION_STORAGE_DELETE_PREFIX:
        await bucket.delete_prefix(category, p["prefix"])
    else:
        raise ValueError(f"unknown saga action kind {action.kind!r}")


async def compensate(saga_id: uuid.UUID, *, bucket=None, session_maker=async_session_maker) -> int:
    """Undo every action not yet undone, newest-first. Returns how many succeeded.

    Actions that failed on an earlier pass are retried.
    """
    bucket = bucket or get_bucket()
    async with session_maker() as db:
        saga = await _lock_saga(db, saga_id)
        saga.status = SagaStatus.compensating.value
        await db.commit()

        actions = (await db.execute(
            select(SagaAction)
            .where(SagaAction.saga_id == saga_id, SagaAction.status != "done")
            .order_by(SagaAction.seq.desc())
        )).scalars().all()

        done = failed = 0
        for a in actions:
            try:
                await _apply_compensation(a, bucket)
                a.status = "done"
                done += 1
            except Exception as e:
                a.status = "failed"
                a.error = str(e)
                failed += 1
                logger.warning("Saga %s action %s (%s) failed to compensate: %s", saga_id, a.seq, a.kind, e)
            a.updated_at = utcnow()

        saga.status = SagaStatus.failed.value if failed else SagaStatus.compensated.value
        saga.updated_at = utcnow()
        await db.commit()
        logger.info("Saga %s compensated: %s done, %s failed", saga_id, done, failed)
        return done
