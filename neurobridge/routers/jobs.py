from __future__ import annotations

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from neurobridge.database import get_db
from neurobridge.errors import DispatchError
from neurobridge.request_context import RequestData
from neurobridge.schemas import JobRead
from neurobridge.services import jobs
from neurobridge.utils import require_authenticated_user

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/api/jobs/latest", response_model=JobRead)
async def latest_job(
    entity_type: str = Query(...),
    entity_id: uuid.UUID = Query(...),
    job_type: Optional[str] = None,
    rd: RequestData = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    job = await jobs.get_latest_run_for_entity(db, entity_type, entity_id, job_type)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.get("/api/courses/{course_id}/job", response_model=JobRead)
async def latest_course_job(
    course_id: uuid.UUID,
    rd: RequestData = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    return await jobs.get_latest_run_for_course(db, course_id)


@router.get("/api/jobs/{job_id}", response_model=JobRead)
async def get_job(
    job_id: uuid.UUID,
    rd: RequestData = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    return await jobs.get_run_by_id(db, job_id)


@router.post("/api/jobs/{job_id}/cancel", response_model=JobRead)
async def cancel_job(job_id: uuid.UUID, rd: RequestData = Depends(require_authenticated_user)):
    return await jobs.cancel_run_for_request_user(job_id)


@router.post("/api/jobs/{job_id}/restart", response_model=JobRead)
async def restart_job(job_id: uuid.UUID, rd: RequestData = Depends(require_authenticated_user)):
    try:
        return await jobs.restart_run_for_request_user(job_id)
    except DispatchError as e:
        if e.result is None:
            raise
        logger.warning("Restarted job %s but dispatch failed: %s", job_id, e)
        return e.result
