# services/path_bootstrap.py
import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from neurobridge.database import async_session_maker
from neurobridge.errors import ConflictError, InputError
from neurobridge.models import Path, PathStatus, UserLibraryIndex, utcnow

logger = logging.getLogger(__name__)

PLACEHOLDER_TITLE = "Generating path…"


async def _lock_index_row(db: AsyncSession, user_id: uuid.UUID, material_set_id: uuid.UUID) -> Optional[UserLibraryIndex]:
    await db.flush()
    q = (
        select(UserLibraryIndex)
        .where(UserLibraryIndex.user_id == user_id, UserLibraryIndex.material_set_id == material_set_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return (await db.execute(q)).scalars().first()


async def _ensure_path(db: AsyncSession, user_id: uuid.UUID, material_set_id: uuid.UUID) -> uuid.UUID:
    row = await _lock_index_row(db, user_id, material_set_id)
    if row is None:
        # Nothing to lock yet: claim the pair with an insert. A concurrent caller
        # that got there first makes this hit the unique constraint; its row is
        # then visible (and locked) on the re-read.
        try:
            async with db.begin_nested():
                db.add(UserLibraryIndex(id=uuid.uuid4(), user_id=user_id, material_set_id=material_set_id))
        except IntegrityError:
            logger.info("Library index for user %s set %s claimed concurrently", user_id, material_set_id)
        row = await _lock_index_row(db, user_id, material_set_id)
        if row is None:
            raise ConflictError("library index row disappeared while ensuring path")

    if row.path_id:
        return row.path_id

    path = Path(
        id=uuid.uuid4(),
        user_id=user_id,
        title=PLACEHOLDER_TITLE,
        description="",
        status=PathStatus.draft.value,
        meta={"material_set_id": str(material_set_id)},
    )
    db.add(path)
    await db.flush()

    row.path_id = path.id
    row.updated_at = utcnow()
    await db.flush()
    logger.info("Created path %s for user %s material set %s", path.id, user_id, material_set_id)
    return path.id


async def ensure_path(db: Optional[AsyncSession], user_id: uuid.UUID, material_set_id: uuid.UUID, *,
                      session_maker=async_session_maker) -> uuid.UUID:
    """Return the one canonical path for (user, material set), creating it if needed."""
    if user_id is None:
        raise InputError("missing user id")
    if material_set_id is None:
        raise InputError("missing material set id")
    if db is not None:
        return await _ensure_path(db, user_id, material_set_id)

    async with session_maker() as own:
        path_id = await _ensure_path(own, user_id, material_set_id)
        await own.commit()
        return path_id


async def get_path_for_user(db: AsyncSession, user_id: uuid.UUID, path_id: uuid.UUID) -> Optional[Path]:
    p = await db.get(Path, path_id)
    if not p or p.user_id != user_id:
        return None
    return p


async def list_paths_for_user(db: AsyncSession, user_id: uuid.UUID) -> list[Path]:
    q = select(Path).where(Path.user_id == user_id).order_by(Path.created_at.desc())
    return list((await db.execute(q)).scalars().all())
