# services/chat.py
import logging
import uuid
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from neurobridge.errors import InputError, NotFoundError, PermissionDeniedError
from neurobridge.models import ChatMessage, ChatRole, ChatThread, utcnow

logger = logging.getLogger(__name__)

DEFAULT_THREAD_TITLE = "New chat"
MAX_MESSAGES_PAGE = 500

# columns update_thread_fields may touch
_UPDATABLE_THREAD_FIELDS = {"title", "status", "path_id", "job_id", "meta", "last_viewed_at", "last_message_at", "deleted_at"}


async def create_thread(db: AsyncSession, user_id: uuid.UUID, *, title: str = DEFAULT_THREAD_TITLE,
                        path_id: Optional[uuid.UUID] = None, job_id: Optional[uuid.UUID] = None,
                        metadata: Optional[dict[str, Any]] = None) -> ChatThread:
    if user_id is None:
        raise InputError("missing user id")
    now = utcnow()
    t = ChatThread(
        id=uuid.uuid4(),
        user_id=user_id,
        path_id=path_id,
        job_id=job_id,
        title=(title or "").strip() or DEFAULT_THREAD_TITLE,
        status="active",
        meta=dict(metadata or {}),
        next_seq=0,
        last_message_at=now,
        created_at=now,
        updated_at=now,
    )
    db.add(t)
    await db.flush()
    return t


async def _lock_thread(db: AsyncSession, thread_id: uuid.UUID) -> Optional[ChatThread]:
    # pending edits would be clobbered by populate_existing
    await db.flush()
    q = (
        select(ChatThread)
        .where(ChatThread.id == thread_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return (await db.execute(q)).scalars().first()


async def append_message(db: AsyncSession, thread_id: uuid.UUID, user_id: uuid.UUID, role: str, content: str, *,
                         metadata: Optional[dict[str, Any]] = None, status: str = "sent") -> ChatMessage:
    """Write the next message of a thread.

    The thread row is locked for the rest of the caller's transaction, so
    concurrent writers take turns on ``next_seq`` and seqs stay gap-free.
    """
    if role not in {r.value for r in ChatRole}:
        raise InputError(f"invalid chat role {role!r}")
    t = await _lock_thread(db, thread_id)
    if t is None:
        raise NotFoundError("thread not found")
    if t.user_id != user_id:
        raise PermissionDeniedError("thread belongs to another user")

    now = utcnow()
    seq = int(t.next_seq or 0) + 1
    m = ChatMessage(
        id=uuid.uuid4(),
        thread_id=t.id,
        user_id=user_id,
        seq=seq,
        role=role,
        status=status,
        content=content or "",
        meta=dict(metadata or {}),
        created_at=now,
        updated_at=now,
    )
    db.add(m)
    t.next_seq = seq
    t.last_message_at = now
    t.updated_at = now
    await db.flush()
    return m


async def update_thread_fields(db: AsyncSession, thread_id: uuid.UUID, fields: dict[str, Any]) -> ChatThread:
    unknown = set(fields) - _UPDATABLE_THREAD_FIELDS
    if unknown:
        raise InputError(f"cannot update thread fields: {', '.join(sorted(unknown))}")
    t = await db.get(ChatThread, thread_id)
    if t is None:
        raise NotFoundError("thread not found")
    for k, v in fields.items():
        setattr(t, k, v)
    t.updated_at = utcnow()
    await db.flush()
    return t


async def get_thread_for_user(db: AsyncSession, user_id: uuid.UUID, thread_id: uuid.UUID) -> ChatThread:
    t = await db.get(ChatThread, thread_id)
    if not t or t.user_id != user_id or t.deleted_at is not None:
        raise NotFoundError("thread not found")
    return t


async def list_threads_for_user(db: AsyncSession, user_id: uuid.UUID, limit: int = 50) -> list[ChatThread]:
    q = (
        select(ChatThread)
        .where(ChatThread.user_id == user_id, ChatThread.deleted_at.is_(None))
        .order_by(ChatThread.last_message_at.desc())
        .limit(max(1, min(limit, 200)))
    )
    return list((await db.execute(q)).scalars().all())


async def list_messages(db: AsyncSession, user_id: uuid.UUID, thread_id: uuid.UUID, *,
                        limit: int = 50, before_seq: Optional[int] = None) -> list[ChatMessage]:
    """Newest page first from the database, returned in ascending seq order."""
    await get_thread_for_user(db, user_id, thread_id)
    limit = max(1, min(int(limit or 50), MAX_MESSAGES_PAGE))
    q = select(ChatMessage).where(ChatMessage.thread_id == thread_id)
    if before_seq is not None:
        q = q.where(ChatMessage.seq < before_seq)
    q = q.order_by(ChatMessage.seq.desc()).limit(limit)
    rows = list((await db.execute(q)).scalars().all())
    rows.reverse()
    return rows
