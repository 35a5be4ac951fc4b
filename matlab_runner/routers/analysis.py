"""
API Router for analysis runs.

Exposes endpoints for:
- Starting a run and streaming its progress (POST /matlab/execute-stream)
- Stopping the active run (POST /matlab/stop)
- Inspecting the supervisor (GET /matlab/status)
- Liveness (GET /health)
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException, Request  # type: ignore[import-not-found]
from fastapi.responses import StreamingResponse  # type: ignore[import-not-found]

from ..models import AnalysisStartRequest, HealthResponse, StopResponse, SupervisorStatusResponse
from ..services.analysis_supervisor import AnalysisBusyError, analysis_supervisor

logger = logging.getLogger(__name__)

router = APIRouter(tags=["analysis"])


@router.post("/matlab/execute-stream")
async def execute_stream(request: AnalysisStartRequest, http_request: Request):
    try:
        coordinator = await analysis_supervisor.start_run(request)
    except AnalysisBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.exception("Failed to start analysis run")
        raise HTTPException(status_code=500, detail=str(e))

    return StreamingResponse(
        coordinator.channel.iter_sse_frames(is_disconnected=http_request.is_disconnected),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/matlab/stop", response_model=StopResponse)
async def stop_analysis():
    try:
        return await analysis_supervisor.stop()
    except Exception as e:
        logger.exception("Failed to stop analysis run")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/matlab/status", response_model=SupervisorStatusResponse)
async def analysis_status():
    return analysis_supervisor.status()


@router.get("/health", response_model=HealthResponse)
async def health():
    return HealthResponse(status="ok", timestamp=datetime.now(timezone.utc).isoformat())
