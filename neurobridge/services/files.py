# services/files.py
import logging
import uuid
from typing import BinaryIO, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from neurobridge.errors import InvariantError, TransientError
from neurobridge.models import MaterialFile, MaterialFileStatus, MaterialSet, utcnow
from neurobridge.storage import CATEGORY_MATERIAL

logger = logging.getLogger(__name__)

# session.info key listing blobs written during the session's current transaction
UPLOADED_KEYS = "uploaded_blob_keys"


def material_storage_key(material_set_id: uuid.UUID, material_file_id: uuid.UUID) -> str:
    return f"materials/{material_set_id}/{material_file_id}"


def uploaded_keys(db: AsyncSession) -> list[str]:
    return list(db.info.get(UPLOADED_KEYS) or [])


def forget_uploaded_blobs(db: AsyncSession) -> None:
    """Call after commit: the rows now point at these blobs."""
    db.info.pop(UPLOADED_KEYS, None)


async def discard_uploaded_blobs(db: AsyncSession, bucket) -> None:
    """Delete blobs uploaded in a transaction that is being rolled back."""
    for key in db.info.pop(UPLOADED_KEYS, None) or []:
        try:
            await bucket.delete_file(CATEGORY_MATERIAL, key)
        except Exception:
            logger.warning("Failed to delete orphaned blob %s", key, exc_info=True)


async def upload_material_file(db: AsyncSession, bucket, mf: MaterialFile, stream: Optional[BinaryIO]) -> MaterialFile:
    """Stream one file to storage under its deterministic key.

    The row must already exist (flushed); its status is updated through ``db``
    so the outcome commits or rolls back with the caller's transaction.
    """
    if mf is None or mf.id is None or mf.material_set_id is None:
        raise InvariantError("material file is missing its id or material set id")
    if stream is None:
        raise InvariantError(f"no stream supplied for material file {mf.id}")

    key = material_storage_key(mf.material_set_id, mf.id)
    if mf.storage_key != key:
        mf.storage_key = key
        await db.flush()

    db.info.setdefault(UPLOADED_KEYS, []).append(key)
    try:
        written = await bucket.upload_file(CATEGORY_MATERIAL, key, stream, content_type=mf.mime_type)
    except Exception as e:
        mf.status = MaterialFileStatus.upload_failed.value
        mf.updated_at = utcnow()
        await db.flush()
        raise TransientError(f"upload failed for material file {mf.id}", cause=str(e)) from e

    mf.status = MaterialFileStatus.uploaded.value
    mf.file_url = bucket.get_public_url(CATEGORY_MATERIAL, key)
    if written and not mf.size_bytes:
        mf.size_bytes = written
    mf.updated_at = utcnow()
    await db.flush()
    return mf


async def delete_material_files(db: AsyncSession, bucket, files: Iterable[MaterialFile]) -> int:
    count = 0
    for mf in files:
        if mf is None:
            continue
        if mf.storage_key:
            await bucket.delete_file(CATEGORY_MATERIAL, mf.storage_key)
        mf.deleted_at = utcnow()
        count += 1
    await db.flush()
    return count


async def list_user_material_files(db: AsyncSession, user_id: uuid.UUID,
                                   material_set_id: Optional[uuid.UUID] = None) -> list[MaterialFile]:
    q = (
        select(MaterialFile)
        .join(MaterialSet, MaterialSet.id == MaterialFile.material_set_id)
        .where(MaterialSet.user_id == user_id, MaterialFile.deleted_at.is_(None))
        .order_by(MaterialFile.created_at.desc())
    )
    if material_set_id is not None:
        q = q.where(MaterialFile.material_set_id == material_set_id)
    return list((await db.execute(q)).scalars().all())


async def get_user_material_files(db: AsyncSession, user_id: uuid.UUID,
                                  file_ids: Iterable[uuid.UUID]) -> list[MaterialFile]:
    ids = list(file_ids)
    if not ids:
        return []
    q = (
        select(MaterialFile)
        .join(MaterialSet, MaterialSet.id == MaterialFile.material_set_id)
        .where(MaterialSet.user_id == user_id, MaterialFile.id.in_(ids), MaterialFile.deleted_at.is_(None))
    )
    return list((await db.execute(q)).scalars().all())
