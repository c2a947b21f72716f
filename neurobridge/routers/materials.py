from __future__ import annotations

import logging
import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from neurobridge.database import get_db
from neurobridge.errors import DispatchError
from neurobridge.request_context import RequestData
from neurobridge.schemas import MaterialFileRead, PathRead, UploadResponse
from neurobridge.services.files import delete_material_files, get_user_material_files, list_user_material_files
from neurobridge.services.material import UploadedMaterial
from neurobridge.services.path_bootstrap import get_path_for_user, list_paths_for_user
from neurobridge.services.workflow import upload_materials_and_start_learning_build_with_chat
from neurobridge.settings.config import settings
from neurobridge.storage import get_bucket
from neurobridge.utils import require_authenticated_user

router = APIRouter()
logger = logging.getLogger(__name__)


def _build_response(build, dispatched: bool) -> UploadResponse:
    return UploadResponse(
        material_set_id=build.material_set.id,
        path_id=build.path_id,
        thread_id=build.thread.id,
        job_id=build.job.id,
        dispatched=dispatched,
    )


@router.post("/api/material-sets/upload", response_model=UploadResponse, status_code=201)
async def upload_material_set(
    prompt: Optional[str] = Form(None),
    message: Optional[str] = Form(None),
    files: List[UploadFile] = File(default=[]),
    rd: RequestData = Depends(require_authenticated_user),
):
    text = (prompt if prompt is not None else message) or ""
    if len(text) > settings.MAX_PROMPT_CHARS:
        raise HTTPException(status_code=400, detail=f"prompt longer than {settings.MAX_PROMPT_CHARS} characters")

    uploaded = [
        UploadedMaterial(
            original_name=f.filename or "upload",
            mime_type=f.content_type,
            size_bytes=int(f.size or 0),
            stream=f.file,
        )
        for f in files
        if f is not None and f.filename
    ]
    try:
        build = await upload_materials_and_start_learning_build_with_chat(rd.user_id, uploaded, text)
    except DispatchError as e:
        if e.result is None:
            raise
        # committed; the reconciler will hand the job over later
        logger.warning("Upload for user %s saved but not dispatched: %s", rd.user_id, e)
        return _build_response(e.result, dispatched=False)
    finally:
        for f in files:
            await f.close()
    return _build_response(build, dispatched=True)


@router.get("/api/material-files", response_model=List[MaterialFileRead])
async def list_material_files(
    material_set_id: Optional[uuid.UUID] = None,
    rd: RequestData = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    return await list_user_material_files(db, rd.user_id, material_set_id)


@router.delete("/api/material-files/{file_id}")
async def delete_material_file(
    file_id: uuid.UUID,
    rd: RequestData = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    rows = await get_user_material_files(db, rd.user_id, [file_id])
    if not rows:
        raise HTTPException(status_code=404, detail="File not found")
    removed = await delete_material_files(db, get_bucket(), rows)
    await db.commit()
    return {"ok": True, "deleted": removed}


@router.get("/api/paths", response_model=List[PathRead])
async def list_paths(rd: RequestData = Depends(require_authenticated_user), db: AsyncSession = Depends(get_db)):
    return await list_paths_for_user(db, rd.user_id)


@router.get("/api/paths/{path_id}", response_model=PathRead)
async def get_path(
    path_id: uuid.UUID,
    rd: RequestData = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    p = await get_path_for_user(db, rd.user_id, path_id)
    if not p:
        raise HTTPException(status_code=404, detail="Path not found")
    return p
