import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi_users import schemas as fu_schemas
from pydantic import AliasChoices, BaseModel, EmailStr, Field

# =========================
# USER SCHEMAS
# =========================
class UserCreate(fu_schemas.BaseUserCreate):
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class UserRead(BaseModel):
    id: uuid.UUID
    email: EmailStr
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_superuser: bool = False
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class ProfileUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None


# =========================
# MATERIALS / PATHS
# =========================
class MaterialFileRead(BaseModel):
    id: uuid.UUID
    material_set_id: uuid.UUID
    original_name: str
    mime_type: Optional[str] = None
    size_bytes: int = 0
    storage_key: str
    file_url: Optional[str] = None
    status: str

    class Config:
        from_attributes = True


class UploadResponse(BaseModel):
    ok: bool = True
    material_set_id: uuid.UUID
    path_id: uuid.UUID
    thread_id: uuid.UUID
    job_id: uuid.UUID
    dispatched: bool = True


class PathRead(BaseModel):
    id: uuid.UUID
    title: str
    description: str = ""
    status: str
    job_id: Optional[uuid.UUID] = None
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("meta", "metadata"))
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# =========================
# CHAT
# =========================
class ThreadCreate(BaseModel):
    title: Optional[str] = None
    path_id: Optional[uuid.UUID] = None


class ThreadRead(BaseModel):
    id: uuid.UUID
    title: str
    status: str
    path_id: Optional[uuid.UUID] = None
    job_id: Optional[uuid.UUID] = None
    next_seq: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("meta", "metadata"))
    last_message_at: Optional[datetime] = None
    last_viewed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class MessageCreate(BaseModel):
    content: str


class MessageRead(BaseModel):
    id: uuid.UUID
    thread_id: uuid.UUID
    seq: int
    role: str
    status: str
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("meta", "metadata"))
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SendMessageResponse(BaseModel):
    thread: ThreadRead
    user_message: MessageRead
    assistant_message: MessageRead
    job_id: uuid.UUID


# =========================
# JOBS
# =========================
class JobRead(BaseModel):
    id: uuid.UUID
    job_type: str
    entity_type: Optional[str] = None
    entity_id: Optional[uuid.UUID] = None
    status: str
    stage: str
    progress: int = 0
    message: str = ""
    error: str = ""
    result: Dict[str, Any] = Field(default_factory=dict)
    saga_id: Optional[uuid.UUID] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# =========================
# GAZE / PREFS
# =========================
class GazeHit(BaseModel):
    block_id: str = ""
    line_id: str = ""
    x: float = 0.0
    y: float = 0.0
    confidence: float = 0.0
    # RFC 3339 string or epoch milliseconds
    ts: Optional[Any] = None
    dt_ms: float = 0.0
    read_credit: float = 0.0
    source: str = ""
    screen_w: int = 0
    screen_h: int = 0
    line_index: Optional[int] = None
    extra: Optional[Any] = None


class GazeIngestRequest(BaseModel):
    path_id: Optional[str] = None
    node_id: Optional[str] = None
    hits: List[GazeHit] = Field(default_factory=list)


class GazeIngestResponse(BaseModel):
    ok: bool = True
    accepted: int


class PrefsUpdate(BaseModel):
    prefs: Dict[str, Any] = Field(default_factory=dict)
