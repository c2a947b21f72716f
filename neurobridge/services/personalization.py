# services/personalization.py
import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from neurobridge.models import UserPersonalizationPrefs, utcnow
from neurobridge.services.gaze import get_gaze_service


async def get_prefs_row(db: AsyncSession, user_id: uuid.UUID) -> UserPersonalizationPrefs | None:
    return (await db.execute(
        select(UserPersonalizationPrefs).where(UserPersonalizationPrefs.user_id == user_id)
    )).scalars().first()


async def get_prefs(db: AsyncSession, user_id: uuid.UUID) -> dict[str, Any]:
    row = await get_prefs_row(db, user_id)
    return dict(row.prefs or {}) if row else {}


async def update_prefs(db: AsyncSession, user_id: uuid.UUID, patch: dict[str, Any]) -> dict[str, Any]:
    """Shallow-merge ``patch`` into the user's prefs; ``None`` values remove keys."""
    row = await get_prefs_row(db, user_id)
    if row is None:
        row = UserPersonalizationPrefs(id=uuid.uuid4(), user_id=user_id, prefs={})
        db.add(row)
    merged = dict(row.prefs or {})
    for k, v in (patch or {}).items():
        if v is None:
            merged.pop(k, None)
        else:
            merged[k] = v
    row.prefs = merged
    row.updated_at = utcnow()
    await db.commit()
    # consent may have flipped; don't serve a stale answer for two minutes
    get_gaze_service().invalidate_consent(user_id)
    return merged
