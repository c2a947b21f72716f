import io
import uuid

import pytest
from sqlalchemy import func, select

from neurobridge.errors import DispatchError, InputError, NotAuthenticatedError, TransientError
from neurobridge.models import (
    ChatMessage,
    ChatThread,
    JobRun,
    JobStatus,
    MaterialFile,
    MaterialFileStatus,
    MaterialSet,
    Path,
    PathStatus,
)
from neurobridge.services import workflow
from neurobridge.services.jobs import JOB_CHAT_RESPOND, JOB_LEARNING_BUILD
from neurobridge.services.material import UploadedMaterial
from neurobridge.services.path_bootstrap import PLACEHOLDER_TITLE
from neurobridge.storage import CATEGORY_MATERIAL, LocalBucket
from tests.fakes import FakeWorkflowEngine

ALL_MODELS = (MaterialSet, MaterialFile, Path, ChatThread, ChatMessage, JobRun)


def _pdf():
    data = b"%PDF" + b"\0" * 1230
    return UploadedMaterial(original_name="notes.pdf", mime_type="application/pdf",
                            size_bytes=len(data), stream=io.BytesIO(data))


async def _counts(session_maker):
    async with session_maker() as db:
        return {m.__name__: await db.scalar(select(func.count()).select_from(m)) for m in ALL_MODELS}


async def _messages(session_maker, thread_id):
    async with session_maker() as db:
        return (await db.execute(
            select(ChatMessage).where(ChatMessage.thread_id == thread_id).order_by(ChatMessage.seq)
        )).scalars().all()


@pytest.mark.asyncio
async def test_upload_with_prompt_builds_everything(session_maker, bucket, user):
    engine = FakeWorkflowEngine()

    build = await workflow.upload_materials_and_start_learning_build_with_chat(
        user.id, [_pdf()], "help me learn this", bucket=bucket, engine=engine,
    )

    assert build.dispatched
    set_id, path_id, thread_id, job_id = build.material_set.id, build.path_id, build.thread.id, build.job.id
    async with session_maker() as db:
        files = (await db.execute(select(MaterialFile))).scalars().all()
        path = await db.get(Path, path_id)
        thread = await db.get(ChatThread, thread_id)
        job = await db.get(JobRun, job_id)

    assert len(files) == 1
    assert files[0].storage_key == f"materials/{set_id}/{files[0].id}"
    assert files[0].status == MaterialFileStatus.uploaded.value
    assert files[0].size_bytes == 1234
    assert await bucket.exists(CATEGORY_MATERIAL, files[0].storage_key)

    assert path.status == PathStatus.draft.value
    assert path.title == PLACEHOLDER_TITLE
    assert path.job_id == job_id

    assert thread.title == "New chat"
    assert thread.next_seq == 2
    assert thread.job_id == job_id
    assert thread.meta == {"material_set_id": str(set_id), "path_id": str(path_id), "kind": "path_build"}

    msgs = await _messages(session_maker, thread_id)
    assert [(m.seq, m.role, m.content) for m in msgs] == [
        (1, "user", "help me learn this"),
        (2, "assistant", ""),
    ]
    assert msgs[1].meta == {
        "kind": "path_generation",
        "material_set_id": str(set_id),
        "path_id": str(path_id),
        "job_id": str(job_id),
    }

    assert job.job_type == JOB_LEARNING_BUILD
    assert job.entity_type == "material_set"
    assert job.entity_id == set_id
    assert job.payload == {
        "material_set_id": str(set_id),
        "path_id": str(path_id),
        "thread_id": str(thread_id),
        "prompt": "help me learn this",
    }
    assert job.status == JobStatus.dispatched.value
    assert [d[0] for d in engine.dispatched] == [job_id]


@pytest.mark.asyncio
async def test_prompt_only_creates_an_empty_set(session_maker, bucket, user):
    build = await workflow.upload_materials_and_start_learning_build_with_chat(
        user.id, [], "teach me Rust ownership", bucket=bucket, engine=FakeWorkflowEngine(),
    )

    counts = await _counts(session_maker)
    assert counts["MaterialSet"] == 1
    assert counts["MaterialFile"] == 0
    assert build.files == []
    msgs = await _messages(session_maker, build.thread.id)
    assert [(m.seq, m.role, m.content) for m in msgs] == [(1, "user", "teach me Rust ownership"), (2, "assistant", "")]


@pytest.mark.asyncio
async def test_files_without_prompt_skip_the_user_message(session_maker, bucket, user):
    build = await workflow.upload_materials_and_start_learning_build_with_chat(
        user.id, [_pdf()], "   ", bucket=bucket, engine=FakeWorkflowEngine(),
    )

    msgs = await _messages(session_maker, build.thread.id)
    assert [(m.seq, m.role) for m in msgs] == [(1, "assistant")]
    assert "prompt" not in build.job.payload


@pytest.mark.asyncio
async def test_neither_files_nor_prompt_is_rejected(session_maker, bucket, user):
    with pytest.raises(InputError, match="no files or prompt"):
        await workflow.upload_materials_and_start_learning_build_with_chat(
            user.id, [], "  ", bucket=bucket, engine=FakeWorkflowEngine(),
        )

    assert set((await _counts(session_maker)).values()) == {0}


@pytest.mark.asyncio
async def test_anonymous_caller_is_rejected(bucket):
    with pytest.raises(NotAuthenticatedError):
        await workflow.upload_materials_and_start_learning_build_with_chat(
            None, [], "hi", bucket=bucket, engine=FakeWorkflowEngine(),
        )


@pytest.mark.asyncio
async def test_failure_before_commit_leaves_no_rows_and_no_blobs(session_maker, bucket, user, monkeypatch):
    async def broken_enqueue(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(workflow, "enqueue", broken_enqueue)
    engine = FakeWorkflowEngine()

    with pytest.raises(RuntimeError):
        await workflow.upload_materials_and_start_learning_build_with_chat(
            user.id, [_pdf(), _pdf()], "help me learn this", bucket=bucket, engine=engine,
        )

    assert set((await _counts(session_maker)).values()) == {0}
    assert [p for p in bucket.root.rglob("*") if p.is_file()] == []
    assert engine.dispatched == []


@pytest.mark.asyncio
async def test_second_upload_failure_discards_the_first_blob(session_maker, tmp_path, user):
    class SecondUploadFails(LocalBucket):
        uploads = 0

        async def upload_file(self, category, key, stream, content_type=None):
            self.uploads += 1
            if self.uploads == 2:
                raise ConnectionError("bucket unavailable")
            return await super().upload_file(category, key, stream, content_type)

    bucket = SecondUploadFails(tmp_path / "blobs", "/static/uploads")
    engine = FakeWorkflowEngine()

    with pytest.raises(TransientError):
        await workflow.upload_materials_and_start_learning_build_with_chat(
            user.id, [_pdf(), _pdf()], "help me learn this", bucket=bucket, engine=engine,
        )

    assert bucket.uploads == 2
    assert set((await _counts(session_maker)).values()) == {0}
    assert [p for p in bucket.root.rglob("*") if p.is_file()] == []
    assert engine.dispatched == []


@pytest.mark.asyncio
async def test_engine_only_sees_committed_jobs(session_maker, bucket, user):
    seen = []

    async def check_committed(job_id, job_type, payload):
        # a separate session only sees committed rows
        async with session_maker() as db:
            job = await db.get(JobRun, job_id)
            thread = await db.get(ChatThread, uuid.UUID(payload["thread_id"]))
        seen.append((job is not None, thread is not None))

    engine = FakeWorkflowEngine(on_dispatch=check_committed)
    await workflow.upload_materials_and_start_learning_build_with_chat(
        user.id, [_pdf()], "hello", bucket=bucket, engine=engine,
    )

    assert seen == [(True, True)]


@pytest.mark.asyncio
async def test_dispatch_failure_returns_the_persisted_ids(session_maker, bucket, user):
    with pytest.raises(DispatchError) as exc:
        await workflow.upload_materials_and_start_learning_build_with_chat(
            user.id, [_pdf()], "hello", bucket=bucket, engine=FakeWorkflowEngine(fail=True),
        )

    build = exc.value.result
    assert build is not None
    assert not build.dispatched
    assert exc.value.job_id == build.job.id
    async with session_maker() as db:
        job = await db.get(JobRun, build.job.id)
        assert job.status == JobStatus.queued.value
        assert await db.get(Path, build.path_id) is not None
    counts = await _counts(session_maker)
    assert counts["ChatMessage"] == 2


@pytest.mark.asyncio
async def test_send_chat_message_appends_turn_and_dispatches(session_maker, bucket, user):
    engine = FakeWorkflowEngine()
    build = await workflow.upload_materials_and_start_learning_build_with_chat(
        user.id, [], "start", bucket=bucket, engine=engine,
    )

    turn = await workflow.send_chat_message(user.id, build.thread.id, "what next?", engine=engine)

    assert turn.dispatched
    assert (turn.user_message.seq, turn.assistant_message.seq) == (3, 4)
    assert turn.assistant_message.status == "pending"
    assert turn.assistant_message.meta["job_id"] == str(turn.job.id)
    assert turn.job.job_type == JOB_CHAT_RESPOND
    assert turn.job.status == JobStatus.dispatched.value


@pytest.mark.asyncio
async def test_send_chat_message_rejects_empty_content(user):
    with pytest.raises(InputError):
        await workflow.send_chat_message(user.id, user.id, "   ", engine=FakeWorkflowEngine())
