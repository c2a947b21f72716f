from sqlalchemy import (
    Column, Integer, String, ForeignKey, Text, DateTime, func,
    UniqueConstraint, Index, Float
)
from fastapi_users_db_sqlalchemy import SQLAlchemyBaseUserTableUUID
from fastapi_users_db_sqlalchemy.generics import GUID
from .database import Base, JSONType
from datetime import datetime, timezone
import enum
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class MaterialSetStatus(str, enum.Enum):
    pending = "pending"
    uploading = "uploading"
    uploaded = "uploaded"
    failed = "failed"


class MaterialFileStatus(str, enum.Enum):
    pending_upload = "pending_upload"
    uploaded = "uploaded"
    upload_failed = "upload_failed"


class PathStatus(str, enum.Enum):
    draft = "draft"
    active = "active"
    archived = "archived"


class ChatRole(str, enum.Enum):
    user = "user"
    assistant = "assistant"
    system = "system"


class JobStatus(str, enum.Enum):
    queued = "queued"
    dispatched = "dispatched"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"
    cancelled = "cancelled"


TERMINAL_JOB_STATUSES = {JobStatus.succeeded.value, JobStatus.failed.value, JobStatus.cancelled.value}


class SagaStatus(str, enum.Enum):
    running = "running"
    succeeded = "succeeded"
    failed = "failed"
    compensating = "compensating"
    compensated = "compensated"


# ---------------------------
# USER MODEL
# ---------------------------
class User(SQLAlchemyBaseUserTableUUID, Base):
    # id, email (unique), hashed_password, is_active, is_superuser, is_verified
    first_name = Column(String(120), nullable=True)
    last_name = Column(String(120), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now())
    deleted_at = Column(DateTime(timezone=True), nullable=True)


class UserToken(Base):
    __tablename__ = "user_token"

    id = Column(GUID, primary_key=True, default=uuid.uuid4)
    user_id = Column(GUID, ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)
    access_token = Column(Text, nullable=False, unique=True)
    refresh_token = Column(String(64), nullable=False, unique=True)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class UserPersonalizationPrefs(Base):
    __tablename__ = "user_personalization_prefs"

    id = Column(GUID, primary_key=True, default=uuid.uuid4)
    user_id = Column(GUID, ForeignKey("user.id", ondelete="CASCADE"), nullable=False, unique=True)
    prefs = Column(JSONType, default=dict, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now())


# ---------------------------
# MATERIALS
# ---------------------------
class MaterialSet(Base):
    __tablename__ = "material_set"

    id = Column(GUID, primary_key=True, default=uuid.uuid4)
    user_id = Column(GUID, ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(255), nullable=True)
    status = Column(String(32), nullable=False, default=MaterialSetStatus.pending.value)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now())


class MaterialFile(Base):
    __tablename__ = "material_file"

    id = Column(GUID, primary_key=True, default=uuid.uuid4)
    material_set_id = Column(GUID, ForeignKey("material_set.id", ondelete="CASCADE"), nullable=False, index=True)
    original_name = Column(String(512), nullable=False)
    mime_type = Column(String(255), nullable=True)
    size_bytes = Column(Integer, nullable=False, default=0)
    storage_key = Column(String(512), nullable=False, unique=True)
    file_url = Column(Text, nullable=True)
    status = Column(String(32), nullable=False, default=MaterialFileStatus.pending_upload.value)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now())
    deleted_at = Column(DateTime(timezone=True), nullable=True)


class UserLibraryIndex(Base):
    """(user, material set) -> canonical path. Row-lock target for path creation."""
    __tablename__ = "user_library_index"
    __table_args__ = (
        UniqueConstraint("user_id", "material_set_id", name="uq_user_library_index_user_set"),
    )

    id = Column(GUID, primary_key=True, default=uuid.uuid4)
    user_id = Column(GUID, ForeignKey("user.id", ondelete="CASCADE"), nullable=False)
    material_set_id = Column(GUID, ForeignKey("material_set.id", ondelete="CASCADE"), nullable=False)
    path_id = Column(GUID, ForeignKey("path.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now())


# ---------------------------
# PATHS
# ---------------------------
class Path(Base):
    __tablename__ = "path"

    id = Column(GUID, primary_key=True, default=uuid.uuid4)
    user_id = Column(GUID, ForeignKey("user.id", ondelete="CASCADE"), nullable=True, index=True)
    title = Column(String(255), nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    status = Column(String(32), nullable=False, default=PathStatus.draft.value)
    job_id = Column(GUID, nullable=True)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSONType, default=dict, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now())


# ---------------------------
# CHAT
# ---------------------------
class ChatThread(Base):
    __tablename__ = "chat_thread"

    id = Column(GUID, primary_key=True, default=uuid.uuid4)
    user_id = Column(GUID, ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)
    path_id = Column(GUID, ForeignKey("path.id", ondelete="SET NULL"), nullable=True, index=True)
    job_id = Column(GUID, nullable=True)
    title = Column(String(255), nullable=False, default="New chat")
    status = Column(String(32), nullable=False, default="active")
    meta = Column("metadata", JSONType, default=dict, nullable=False)
    next_seq = Column(Integer, nullable=False, default=0)
    last_message_at = Column(DateTime(timezone=True), nullable=True)
    last_viewed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now())
    deleted_at = Column(DateTime(timezone=True), nullable=True)


class ChatMessage(Base):
    __tablename__ = "chat_message"
    __table_args__ = (
        UniqueConstraint("thread_id", "seq", name="uq_chat_message_thread_seq"),
    )

    id = Column(GUID, primary_key=True, default=uuid.uuid4)
    thread_id = Column(GUID, ForeignKey("chat_thread.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(GUID, ForeignKey("user.id", ondelete="CASCADE"), nullable=False)
    seq = Column(Integer, nullable=False)
    role = Column(String(16), nullable=False)
    status = Column(String(32), nullable=False, default="sent")
    content = Column(Text, nullable=False, default="")
    meta = Column("metadata", JSONType, default=dict, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now())


# ---------------------------
# JOBS / SAGAS
# ---------------------------
class JobRun(Base):
    __tablename__ = "job_run"
    __table_args__ = (
        Index("ix_job_run_entity", "entity_type", "entity_id"),
        Index("ix_job_run_status_updated", "status", "updated_at"),
    )

    id = Column(GUID, primary_key=True, default=uuid.uuid4)
    owner_user_id = Column(GUID, ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)
    job_type = Column(String(64), nullable=False)
    entity_type = Column(String(64), nullable=True)
    entity_id = Column(GUID, nullable=True)
    status = Column(String(32), nullable=False, default=JobStatus.queued.value)
    stage = Column(String(64), nullable=False, default="queued")
    progress = Column(Integer, nullable=False, default=0)
    attempts = Column(Integer, nullable=False, default=0)
    message = Column(Text, nullable=False, default="")
    error = Column(Text, nullable=False, default="")
    payload = Column(JSONType, default=dict, nullable=False)
    result = Column(JSONType, default=dict, nullable=False)
    saga_id = Column(GUID, nullable=True)
    dispatched_at = Column(DateTime(timezone=True), nullable=True)
    last_error_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now())


class SagaRun(Base):
    __tablename__ = "saga_run"

    id = Column(GUID, primary_key=True, default=uuid.uuid4)
    owner_user_id = Column(GUID, ForeignKey("user.id", ondelete="CASCADE"), nullable=False)
    root_job_id = Column(GUID, nullable=False, unique=True)
    status = Column(String(32), nullable=False, default=SagaStatus.running.value)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now())


class SagaAction(Base):
    __tablename__ = "saga_action"
    __table_args__ = (
        UniqueConstraint("saga_id", "seq", name="uq_saga_action_seq"),
    )

    id = Column(GUID, primary_key=True, default=uuid.uuid4)
    saga_id = Column(GUID, ForeignKey("saga_run.id", ondelete="CASCADE"), nullable=False)
    seq = Column(Integer, nullable=False)
    kind = Column(String(64), nullable=False)
    payload = Column(JSONType, default=dict, nullable=False)
    status = Column(String(32), nullable=False, default="pending")  # pending|done|failed
    error = Column(Text, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now())


# ---------------------------
# GAZE TELEMETRY
# ---------------------------
class UserGazeBlockStat(Base):
    __tablename__ = "user_gaze_block_stat"
    __table_args__ = (
        UniqueConstraint("user_id", "session_id", "block_id", name="uq_gaze_stat_user_session_block"),
    )

    id = Column(GUID, primary_key=True, default=uuid.uuid4)
    user_id = Column(GUID, ForeignKey("user.id", ondelete="CASCADE"), nullable=False)
    session_id = Column(GUID, nullable=False)
    path_id = Column(GUID, nullable=True)
    path_node_id = Column(GUID, nullable=True)
    block_id = Column(String(255), nullable=False)
    fixation_ms = Column(Integer, nullable=False, default=0)
    fixation_count = Column(Integer, nullable=False, default=0)
    read_credit = Column(Float, nullable=False, default=0.0)
    last_seen_at = Column(DateTime(timezone=True), nullable=True)
    meta = Column("metadata", JSONType, default=dict, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now())


class UserGazeEvent(Base):
    __tablename__ = "user_gaze_event"

    id = Column(GUID, primary_key=True, default=uuid.uuid4)
    user_id = Column(GUID, ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)
    session_id = Column(GUID, nullable=False)
    path_id = Column(GUID, nullable=True)
    path_node_id = Column(GUID, nullable=True)
    block_id = Column(String(255), nullable=False)
    line_id = Column(String(255), nullable=False, default="")
    x = Column(Float, nullable=False, default=0.0)
    y = Column(Float, nullable=False, default=0.0)
    confidence = Column(Float, nullable=False, default=0.0)
    occurred_at = Column(DateTime(timezone=True), nullable=False, index=True)
    meta = Column("metadata", JSONType, default=dict, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
