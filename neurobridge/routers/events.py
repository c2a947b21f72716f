from fastapi import APIRouter, Depends

from neurobridge.request_context import RequestData
from neurobridge.schemas import GazeIngestRequest, GazeIngestResponse
from neurobridge.services.gaze import get_gaze_service
from neurobridge.utils import require_authenticated_user

router = APIRouter()


@router.post("/api/gaze", response_model=GazeIngestResponse)
async def ingest_gaze(body: GazeIngestRequest, rd: RequestData = Depends(require_authenticated_user)):
    accepted = await get_gaze_service().ingest(rd.user_id, rd.session_id, body)
    return GazeIngestResponse(accepted=accepted)
