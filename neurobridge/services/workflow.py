# services/workflow.py
"""Upload materials and start a learning build, as one unit of work.

Everything up to the commit (material rows and blobs, the path, the chat
thread and its messages, the job row and the backlinks) happens in a single
transaction. If it aborts, the rows roll back and the blobs uploaded in that
attempt are deleted. Only after the commit is the job handed to the
workflow engine.
"""
import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from neurobridge.database import async_session_maker
from neurobridge.errors import DispatchError, InputError, NotAuthenticatedError, NotFoundError
from neurobridge.models import ChatMessage, ChatRole, ChatThread, JobRun, MaterialFile, MaterialSet, Path, utcnow
from neurobridge.services.chat import append_message, create_thread, get_thread_for_user
from neurobridge.services.files import discard_uploaded_blobs, forget_uploaded_blobs
from neurobridge.services.jobs import JOB_CHAT_RESPOND, JOB_LEARNING_BUILD, dispatch, enqueue
from neurobridge.services.material import UploadedMaterial, create_material_set, upload_material_files
from neurobridge.services.path_bootstrap import ensure_path
from neurobridge.storage import get_bucket

logger = logging.getLogger(__name__)

THREAD_TITLE = "New chat"


@dataclass
class LearningBuild:
    material_set: MaterialSet
    path_id: uuid.UUID
    thread: ChatThread
    job: JobRun
    files: list[MaterialFile] = field(default_factory=list)
    dispatched: bool = False


async def _persist_build(db: AsyncSession, bucket, user_id: uuid.UUID,
                         uploaded: Sequence[UploadedMaterial], prompt: str) -> LearningBuild:
    if uploaded:
        material_set, files = await upload_material_files(db, user_id, uploaded, bucket=bucket)
    else:
        # prompt-only: the set is filled later by the web-resources seeding stage
        material_set, files = await create_material_set(db, user_id), []
    set_id = material_set.id

    path_id = await ensure_path(db, user_id, set_id)

    thread = await create_thread(
        db, user_id,
        title=THREAD_TITLE,
        path_id=path_id,
        metadata={"material_set_id": str(set_id), "path_id": str(path_id), "kind": "path_build"},
    )

    if prompt:
        await append_message(db, thread.id, user_id, ChatRole.user.value, prompt,
                             metadata={"material_set_id": str(set_id), "path_id": str(path_id)})

    payload = {"material_set_id": str(set_id), "path_id": str(path_id), "thread_id": str(thread.id)}
    if prompt:
        payload["prompt"] = prompt
    job = await enqueue(db, user_id, JOB_LEARNING_BUILD, "material_set", set_id, payload)

    path = await db.get(Path, path_id)
    if path is None:
        raise NotFoundError("path not found")
    now = utcnow()
    path.job_id = job.id
    path.updated_at = now
    thread.job_id = job.id
    thread.updated_at = now
    await db.flush()

    await append_message(
        db, thread.id, user_id, ChatRole.assistant.value, "",
        metadata={
            "kind": "path_generation",
            "material_set_id": str(set_id),
            "path_id": str(path_id),
            "job_id": str(job.id),
        },
        status="pending",
    )
    return LearningBuild(material_set=material_set, path_id=path_id, thread=thread, job=job, files=files)


async def upload_materials_and_start_learning_build_with_chat(
    user_id: Optional[uuid.UUID],
    uploaded: Optional[Sequence[UploadedMaterial]],
    prompt: Optional[str],
    *,
    bucket=None,
    engine=None,
    session_maker=async_session_maker,
) -> LearningBuild:
    """Persist materials, path, thread and job atomically, then dispatch the job.

    Raises ``DispatchError`` (with ``.result`` set to the committed
    ``LearningBuild``) when everything was saved but the engine could not be
    reached; the reconciler retries those jobs.
    """
    if user_id is None:
        raise NotAuthenticatedError("not authenticated")
    uploaded = list(uploaded or [])
    prompt = (prompt or "").strip()
    if not uploaded and not prompt:
        raise InputError("no files or prompt")
    bucket = bucket or get_bucket()

    async with session_maker() as db:
        try:
            async with db.begin():
                build = await _persist_build(db, bucket, user_id, uploaded, prompt)
        except BaseException:
            await discard_uploaded_blobs(db, bucket)
            raise
        forget_uploaded_blobs(db)

    logger.info("Learning build committed: user=%s set=%s path=%s thread=%s job=%s",
                user_id, build.material_set.id, build.path_id, build.thread.id, build.job.id)

    try:
        build.job = await dispatch(build.job.id, engine=engine, session_maker=session_maker)
    except DispatchError as e:
        e.result = build
        raise
    build.dispatched = True
    return build


@dataclass
class ChatTurn:
    thread: ChatThread
    user_message: ChatMessage
    assistant_message: ChatMessage
    job: JobRun
    dispatched: bool = False


async def send_chat_message(user_id: uuid.UUID, thread_id: uuid.UUID, content: str, *,
                            engine=None, session_maker=async_session_maker) -> ChatTurn:
    """Append a user message plus an assistant placeholder and schedule the reply."""
    content = (content or "").strip()
    if not content:
        raise InputError("message content is empty")

    async with session_maker() as db:
        async with db.begin():
            thread = await get_thread_for_user(db, user_id, thread_id)
            user_msg = await append_message(db, thread.id, user_id, ChatRole.user.value, content)
            job = await enqueue(db, user_id, JOB_CHAT_RESPOND, "chat_thread", thread.id, {
                "thread_id": str(thread.id),
                "message_id": str(user_msg.id),
                "path_id": str(thread.path_id) if thread.path_id else None,
            })
            assistant_msg = await append_message(
                db, thread.id, user_id, ChatRole.assistant.value, "",
                metadata={"kind": "chat_reply", "job_id": str(job.id), "reply_to": str(user_msg.id)},
                status="pending",
            )
    turn = ChatTurn(thread=thread, user_message=user_msg, assistant_message=assistant_msg, job=job)

    try:
        turn.job = await dispatch(job.id, engine=engine, session_maker=session_maker)
    except DispatchError as e:
        e.result = turn
        raise
    turn.dispatched = True
    return turn
