"""Per-request identity.

``set_context_from_token`` (services/auth.py) resolves the bearer token and
stores the result here; services read it back to enforce ownership without
threading a user id through every call.
"""
from __future__ import annotations

import uuid
from contextvars import ContextVar, Token
from dataclasses import dataclass
from typing import Optional

from .errors import NotAuthenticatedError


@dataclass(frozen=True)
class RequestData:
    user_id: uuid.UUID
    session_id: uuid.UUID
    access_token: str
    refresh_token: str


_request_data: ContextVar[Optional[RequestData]] = ContextVar("request_data", default=None)


def get_request_data() -> Optional[RequestData]:
    return _request_data.get()


def set_request_data(rd: Optional[RequestData]) -> Token:
    return _request_data.set(rd)


def require_request_data() -> RequestData:
    rd = _request_data.get()
    if rd is None or rd.user_id is None:
        raise NotAuthenticatedError("not authenticated")
    return rd
