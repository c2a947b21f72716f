"""Error kinds raised by the service layer.

Routers let these propagate; ``main.py`` turns them into JSON responses
using ``status_code`` and ``code``.
"""
from __future__ import annotations

from typing import Any, Optional


class ServiceError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "", *, cause: Optional[str] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        # internal detail, logged but never returned to clients
        self.cause = cause


class InputError(ServiceError):
    status_code = 400
    code = "validation_error"


class NotAuthenticatedError(ServiceError):
    status_code = 401
    code = "unauthorized"


class InvalidCredentialsError(NotAuthenticatedError):
    code = "invalid_credentials"

    def __init__(self, cause: Optional[str] = None):
        super().__init__("invalid credentials", cause=cause)


class PermissionDeniedError(ServiceError):
    status_code = 403
    code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    code = "not_found"


class ConflictError(ServiceError):
    status_code = 409
    code = "conflict"


class TransientError(ServiceError):
    status_code = 503
    code = "unavailable"


class DispatchError(TransientError):
    """The job row is committed but the workflow engine was not notified.

    ``result`` carries whatever the caller already persisted so the ids can be
    returned; the reconciler re-dispatches the job later.
    """

    code = "dispatch_failed"

    def __init__(self, job_id: Any, message: str = "", *, result: Any = None):
        super().__init__(message or f"dispatch failed for job {job_id}")
        self.job_id = job_id
        self.result = result


class RefusalError(ServiceError):
    status_code = 502
    code = "llm_refusal"


class InvariantError(RuntimeError):
    """Programming error: the caller broke a contract (nil stream, length mismatch)."""
