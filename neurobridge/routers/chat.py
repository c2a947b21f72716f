from __future__ import annotations

import logging
import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from neurobridge.database import get_db
from neurobridge.errors import DispatchError
from neurobridge.models import utcnow
from neurobridge.request_context import RequestData
from neurobridge.schemas import MessageCreate, MessageRead, SendMessageResponse, ThreadCreate, ThreadRead
from neurobridge.services import chat
from neurobridge.services.path_bootstrap import get_path_for_user
from neurobridge.services.workflow import send_chat_message
from neurobridge.utils import require_authenticated_user

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/api/chat/threads", response_model=List[ThreadRead])
async def list_threads(
    limit: int = Query(50, ge=1, le=200),
    rd: RequestData = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    return await chat.list_threads_for_user(db, rd.user_id, limit=limit)


@router.post("/api/chat/threads", response_model=ThreadRead, status_code=201)
async def create_thread(
    body: ThreadCreate,
    rd: RequestData = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    if body.path_id is not None and not await get_path_for_user(db, rd.user_id, body.path_id):
        raise HTTPException(status_code=404, detail="Path not found")
    t = await chat.create_thread(db, rd.user_id, title=body.title or chat.DEFAULT_THREAD_TITLE, path_id=body.path_id)
    await db.commit()
    return t


@router.get("/api/chat/threads/{thread_id}", response_model=ThreadRead)
async def get_thread(
    thread_id: uuid.UUID,
    rd: RequestData = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    return await chat.get_thread_for_user(db, rd.user_id, thread_id)


@router.post("/api/chat/threads/{thread_id}/viewed", response_model=ThreadRead)
async def mark_thread_viewed(
    thread_id: uuid.UUID,
    rd: RequestData = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    await chat.get_thread_for_user(db, rd.user_id, thread_id)
    t = await chat.update_thread_fields(db, thread_id, {"last_viewed_at": utcnow()})
    await db.commit()
    return t


@router.delete("/api/chat/threads/{thread_id}")
async def delete_thread(
    thread_id: uuid.UUID,
    rd: RequestData = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    await chat.get_thread_for_user(db, rd.user_id, thread_id)
    await chat.update_thread_fields(db, thread_id, {"deleted_at": utcnow()})
    await db.commit()
    return {"ok": True}


@router.get("/api/chat/threads/{thread_id}/messages", response_model=List[MessageRead])
async def list_messages(
    thread_id: uuid.UUID,
    limit: int = Query(50, ge=1, le=500),
    before_seq: Optional[int] = Query(None, ge=1),
    rd: RequestData = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    return await chat.list_messages(db, rd.user_id, thread_id, limit=limit, before_seq=before_seq)


@router.post("/api/chat/threads/{thread_id}/messages", response_model=SendMessageResponse, status_code=201)
async def send_message(
    thread_id: uuid.UUID,
    body: MessageCreate,
    rd: RequestData = Depends(require_authenticated_user),
):
    try:
        turn = await send_chat_message(rd.user_id, thread_id, body.content)
    except DispatchError as e:
        if e.result is None:
            raise
        logger.warning("Chat message in thread %s saved but not dispatched: %s", thread_id, e)
        turn = e.result
    return SendMessageResponse(
        thread=ThreadRead.model_validate(turn.thread),
        user_message=MessageRead.model_validate(turn.user_message),
        assistant_message=MessageRead.model_validate(turn.assistant_message),
        job_id=turn.job.id,
    )
