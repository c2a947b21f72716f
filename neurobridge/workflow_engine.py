"""Client for the external workflow engine that runs build pipelines.

The backend only schedules work: it hands the engine a job id (plus the
stored payload) after the job row has committed, and the engine's workers
drive the stages out-of-band.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from .errors import TransientError
from .settings.config import settings

logger = logging.getLogger(__name__)


class WorkflowEngineError(TransientError):
    code = "workflow_engine_unavailable"


class NullWorkflowEngine:
    """Used when WORKFLOW_ENGINE_URL is unset; dispatch becomes a log line."""

    async def dispatch(self, job_id, job_type: str, payload: dict[str, Any]) -> None:
        logger.info("Workflow engine disabled; job %s (%s) left for external pickup", job_id, job_type)

    async def cancel(self, job_id) -> None:
        logger.info("Workflow engine disabled; cancel for job %s not forwarded", job_id)


class HttpWorkflowEngine:
    def __init__(self, base_url: str, *, timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def _post(self, path: str, body: dict[str, Any]) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as c:
                r = await c.post(f"{self.base_url}{path}", json=body)
                r.raise_for_status()
        except httpx.HTTPError as e:
            raise WorkflowEngineError(f"workflow engine request failed: {e}") from e

    async def dispatch(self, job_id, job_type: str, payload: dict[str, Any]) -> None:
        # the job id doubles as the workflow id so a repeated dispatch is a no-op on the engine side
        await self._post("/workflows", {
            "workflow_id": f"job_run:{job_id}",
            "job_id": str(job_id),
            "job_type": job_type,
            "payload": payload or {},
        })

    async def cancel(self, job_id) -> None:
        await self._post(f"/workflows/job_run:{job_id}/cancel", {"job_id": str(job_id)})


_engine = None


def get_workflow_engine():
    global _engine
    if _engine is None:
        if settings.WORKFLOW_ENGINE_URL:
            _engine = HttpWorkflowEngine(settings.WORKFLOW_ENGINE_URL, timeout=settings.WORKFLOW_DISPATCH_TIMEOUT)
        else:
            _engine = NullWorkflowEngine()
    return _engine


def set_workflow_engine(engine) -> None:
    global _engine
    _engine = engine
