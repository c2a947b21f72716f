# services/jobs.py
"""Durable job rows and their hand-off to the workflow engine.

``enqueue`` is a plain insert in the caller's transaction. ``dispatch`` runs
only after that transaction has committed, so the engine never sees a job
that could still roll back. A committed-but-undispatched job stays
``queued`` and is picked up by ``reconcile_undispatched``.
"""
import logging
import uuid
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from neurobridge.database import async_session_maker
from neurobridge.errors import ConflictError, DispatchError, InputError, NotFoundError
from neurobridge.models import TERMINAL_JOB_STATUSES, JobRun, JobStatus, SagaStatus, utcnow
from neurobridge.request_context import require_request_data
from neurobridge.services.saga import compensate, create_or_get_saga, mark_saga_status
from neurobridge.settings.config import settings
from neurobridge.workflow_engine import get_workflow_engine

logger = logging.getLogger(__name__)

JOB_LEARNING_BUILD = "learning_build"
JOB_CHAT_RESPOND = "chat_respond"
JOB_COURSE_BUILD = "course_build"

RESTARTABLE_STATUSES = {JobStatus.failed.value, JobStatus.cancelled.value}


async def enqueue(db: AsyncSession, user_id: uuid.UUID, job_type: str, entity_type: Optional[str],
                  entity_id: Optional[uuid.UUID], payload: Optional[dict[str, Any]] = None) -> JobRun:
    if user_id is None:
        raise InputError("missing user id")
    if not (job_type or "").strip():
        raise InputError("missing job type")
    now = utcnow()
    job = JobRun(
        id=uuid.uuid4(),
        owner_user_id=user_id,
        job_type=job_type.strip(),
        entity_type=entity_type,
        entity_id=entity_id,
        status=JobStatus.queued.value,
        stage="queued",
        progress=0,
        attempts=0,
        message="Queued",
        error="",
        payload=dict(payload or {}),
        result={},
        created_at=now,
        updated_at=now,
    )
    db.add(job)
    await db.flush()
    return job


async def dispatch(job_id: uuid.UUID, *, engine=None, session_maker=async_session_maker) -> JobRun:
    """Hand a committed job to the workflow engine and mark it dispatched.

    Must not be called inside the transaction that created the job. Jobs that
    are no longer ``queued`` are returned untouched.
    """
    engine = engine or get_workflow_engine()

    async with session_maker() as db:
        job = await db.get(JobRun, job_id)
        if job is None:
            raise NotFoundError("job not found")
        if job.status != JobStatus.queued.value:
            return job
        saga = await create_or_get_saga(db, job.owner_user_id, job.id)
        job.saga_id = saga.id
        job_type, payload = job.job_type, dict(job.payload or {})
        await db.commit()

    try:
        await engine.dispatch(job_id, job_type, payload)
    except Exception as e:
        logger.warning("Dispatch of job %s (%s) failed: %s", job_id, job_type, e)
        async with session_maker() as db:
            job = await db.get(JobRun, job_id)
            if job is not None and job.status == JobStatus.queued.value:
                now = utcnow()
                job.error = str(e)[:2000]
                job.last_error_at = now
                # pushes the reconciler's next attempt out by one threshold
                job.updated_at = now
                await db.commit()
        raise DispatchError(job_id) from e

    async with session_maker() as db:
        now = utcnow()
        await db.execute(
            update(JobRun)
            .where(JobRun.id == job_id, JobRun.status == JobStatus.queued.value)
            .values(status=JobStatus.dispatched.value, message="Dispatched", error="",
                    dispatched_at=now, updated_at=now)
        )
        await db.commit()
        job = await db.get(JobRun, job_id)
    logger.info("Dispatched job %s (%s)", job_id, job_type)
    return job


async def get_run_by_id(db: AsyncSession, job_id: uuid.UUID) -> JobRun:
    """Owner-scoped lookup for the authenticated request user."""
    rd = require_request_data()
    job = await db.get(JobRun, job_id)
    if not job or job.owner_user_id != rd.user_id:
        raise NotFoundError("job not found")
    return job


async def get_latest_run_for_entity(db: AsyncSession, entity_type: str, entity_id: uuid.UUID,
                                    job_type: Optional[str] = None) -> Optional[JobRun]:
    rd = require_request_data()
    q = select(JobRun).where(
        JobRun.owner_user_id == rd.user_id,
        JobRun.entity_type == entity_type,
        JobRun.entity_id == entity_id,
    )
    if job_type:
        q = q.where(JobRun.job_type == job_type)
    q = q.order_by(JobRun.created_at.desc()).limit(1)
    return (await db.execute(q)).scalars().first()


async def get_latest_run_for_course(db: AsyncSession, course_id: uuid.UUID) -> JobRun:
    job = await get_latest_run_for_entity(db, "course", course_id, JOB_COURSE_BUILD)
    if job is None:
        raise NotFoundError("course run not found")
    return job


async def _lock_owned_job(db: AsyncSession, job_id: uuid.UUID, user_id: uuid.UUID) -> JobRun:
    q = select(JobRun).where(JobRun.id == job_id).with_for_update().execution_options(populate_existing=True)
    job = (await db.execute(q)).scalars().first()
    if not job or job.owner_user_id != user_id:
        raise NotFoundError("job not found")
    return job


def _child_job_ids(result: Optional[dict]) -> list[uuid.UUID]:
    ids = []
    stages = (result or {}).get("stages")
    if not isinstance(stages, dict):
        return ids
    for st in stages.values():
        raw = st.get("child_job_id") if isinstance(st, dict) else None
        try:
            ids.append(uuid.UUID(str(raw)))
        except (TypeError, ValueError):
            continue
    return ids


async def cancel_run_for_request_user(job_id: uuid.UUID, *, engine=None,
                                      session_maker=async_session_maker) -> JobRun:
    rd = require_request_data()
    engine = engine or get_workflow_engine()

    async with session_maker() as db:
        job = await _lock_owned_job(db, job_id, rd.user_id)
        if job.status in TERMINAL_JOB_STATUSES:
            return job
        now = utcnow()
        job.status = JobStatus.cancelled.value
        job.stage = "cancelled"
        job.message = "Canceled"
        job.updated_at = now

        child_ids = _child_job_ids(job.result)
        if child_ids:
            await db.execute(
                update(JobRun)
                .where(
                    JobRun.id.in_(child_ids),
                    JobRun.owner_user_id == rd.user_id,
                    JobRun.status.not_in(TERMINAL_JOB_STATUSES),
                )
                .values(status=JobStatus.cancelled.value, stage="cancelled", message="Canceled", updated_at=now)
            )
        saga_id = job.saga_id
        await db.commit()

    # the rows are authoritative; engine and storage cleanup are best-effort
    try:
        await engine.cancel(job_id)
    except Exception as e:
        logger.warning("Workflow engine cancel for job %s failed: %s", job_id, e)
    if saga_id:
        try:
            await compensate(saga_id, session_maker=session_maker)
        except Exception as e:
            logger.warning("Compensation for saga %s failed: %s", saga_id, e)
    return job


def _reset_stages(result: Optional[dict]) -> dict:
    out = dict(result or {})
    stages = out.get("stages")
    if isinstance(stages, dict):
        reset = {}
        for name, st in stages.items():
            if isinstance(st, dict) and st.get("status") != JobStatus.succeeded.value:
                st = {k: v for k, v in st.items() if k not in {"child_job_id", "error", "started_at", "finished_at"}}
                st["status"] = "pending"
            reset[name] = st
        out["stages"] = reset
    return out


async def restart_run_for_request_user(job_id: uuid.UUID, *, engine=None,
                                       session_maker=async_session_maker) -> JobRun:
    """Requeue a failed or cancelled run, keeping succeeded stages, and dispatch it."""
    rd = require_request_data()
    async with session_maker() as db:
        job = await _lock_owned_job(db, job_id, rd.user_id)
        if job.status not in RESTARTABLE_STATUSES:
            raise ConflictError(f"job in status {job.status} cannot be restarted")
        job.status = JobStatus.queued.value
        job.stage = "queued"
        job.progress = 0
        job.message = "Queued"
        job.error = ""
        job.last_error_at = None
        job.dispatched_at = None
        job.attempts = int(job.attempts or 0) + 1
        job.result = _reset_stages(job.result)
        job.updated_at = utcnow()
        if job.saga_id:
            # the restarted run records new side effects on the same saga
            await mark_saga_status(db, job.saga_id, SagaStatus.running.value)
        await db.commit()

    try:
        return await dispatch(job_id, engine=engine, session_maker=session_maker)
    except DispatchError as e:
        e.result = job
        raise


async def reconcile_undispatched(*, older_than: Optional[timedelta] = None, limit: Optional[int] = None,
                                 engine=None, session_maker=async_session_maker) -> int:
    """Re-dispatch queued jobs that have sat untouched longer than ``older_than``."""
    older_than = older_than if older_than is not None else settings.DISPATCH_RECONCILE_AFTER
    limit = limit or settings.DISPATCH_RECONCILE_BATCH
    cutoff = utcnow() - older_than

    async with session_maker() as db:
        ids = (await db.execute(
            select(JobRun.id)
            .where(JobRun.status == JobStatus.queued.value, JobRun.updated_at < cutoff)
            .order_by(JobRun.updated_at.asc())
            .limit(limit)
        )).scalars().all()

    dispatched = 0
    for job_id in ids:
        try:
            await dispatch(job_id, engine=engine, session_maker=session_maker)
            dispatched += 1
        except DispatchError:
            continue
    if ids:
        logger.info("Dispatch reconciler: %s of %s stale queued jobs dispatched", dispatched, len(ids))
    return dispatched
