# services/material.py
import logging
import uuid
from dataclasses import dataclass
from typing import BinaryIO, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from neurobridge.database import async_session_maker
from neurobridge.errors import InputError, InvariantError
from neurobridge.models import MaterialFile, MaterialFileStatus, MaterialSet, MaterialSetStatus, utcnow
from neurobridge.services.files import (
    discard_uploaded_blobs,
    forget_uploaded_blobs,
    material_storage_key,
    upload_material_file,
)
from neurobridge.storage import get_bucket

logger = logging.getLogger(__name__)


@dataclass
class UploadedMaterial:
    original_name: str
    mime_type: Optional[str]
    size_bytes: int
    stream: Optional[BinaryIO]


async def create_material_set(db: AsyncSession, user_id: uuid.UUID, title: Optional[str] = None) -> MaterialSet:
    if user_id is None:
        raise InputError("missing user id")
    ms = MaterialSet(id=uuid.uuid4(), user_id=user_id, title=title, status=MaterialSetStatus.pending.value)
    db.add(ms)
    await db.flush()
    return ms


async def add_material_files(db: AsyncSession, material_set_id: uuid.UUID,
                             inputs: Sequence[UploadedMaterial]) -> list[MaterialFile]:
    if material_set_id is None:
        raise InputError("missing material set id")
    rows: list[MaterialFile] = []
    for inp in inputs or []:
        fid = uuid.uuid4()
        rows.append(MaterialFile(
            id=fid,
            material_set_id=material_set_id,
            original_name=(inp.original_name or "").strip() or "upload",
            mime_type=inp.mime_type or "application/octet-stream",
            size_bytes=max(int(inp.size_bytes or 0), 0),
            storage_key=material_storage_key(material_set_id, fid),
            status=MaterialFileStatus.pending_upload.value,
        ))
    if rows:
        db.add_all(rows)
        await db.flush()
    return rows


async def _upload_into(db: AsyncSession, bucket, user_id: uuid.UUID,
                       files: Sequence[UploadedMaterial]) -> tuple[MaterialSet, list[MaterialFile]]:
    ms = await create_material_set(db, user_id)
    # rows first: a crash mid-upload leaves a pointer, never an untracked blob
    rows = await add_material_files(db, ms.id, files)
    if len(rows) != len(files):
        raise InvariantError(f"created {len(rows)} material rows for {len(files)} uploads")
    if not rows:
        return ms, rows

    ms.status = MaterialSetStatus.uploading.value
    try:
        for mf, f in zip(rows, files):
            await upload_material_file(db, bucket, mf, f.stream)
    except Exception:
        ms.status = MaterialSetStatus.failed.value
        ms.updated_at = utcnow()
        await db.flush()
        raise
    ms.status = MaterialSetStatus.uploaded.value
    ms.updated_at = utcnow()
    await db.flush()
    return ms, rows


async def upload_material_files(db: Optional[AsyncSession], user_id: uuid.UUID,
                                files: Sequence[UploadedMaterial], *, bucket=None,
                                session_maker=async_session_maker) -> tuple[MaterialSet, list[MaterialFile]]:
    """Create a material set, its file rows, and upload every file.

    With a caller-supplied session everything happens inside the caller's
    transaction. With ``db=None`` the call owns its transaction: it commits on
    success, and on failure rolls back and deletes whatever it uploaded.
    """
    bucket = bucket or get_bucket()
    if db is not None:
        return await _upload_into(db, bucket, user_id, files)

    async with session_maker() as own:
        try:
            result = await _upload_into(own, bucket, user_id, files)
            await own.commit()
        except BaseException:
            await own.rollback()
            await discard_uploaded_blobs(own, bucket)
            raise
        forget_uploaded_blobs(own)
        return result
