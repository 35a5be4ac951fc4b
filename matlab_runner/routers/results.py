"""
API Router for analysis results.

Exposes endpoints for:
- Reading the latest JSON results (GET /ctmc/results, GET /results/latest)
- Extracting per-component results from results.mat (GET /results/parse)
"""

import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, HTTPException, Query  # type: ignore[import-not-found]

from ..models import ErrorCode, ExtractedResultsResponse, ResultsResponse
from ..services.results_service import (
    ExtractionFailedError,
    ExtractionTimeoutError,
    ResultsNotFoundError,
    results_extractor,
    results_service,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["results"])


def _error_detail(code: ErrorCode, exc: Exception) -> dict:
    return {"code": code.value, "message": str(exc)}


def _fetch_latest(directory: Optional[str]) -> ResultsResponse:
    try:
        return results_service.fetch_latest(directory)
    except ResultsNotFoundError as e:
        raise HTTPException(status_code=404, detail=_error_detail(ErrorCode.NOT_FOUND, e))


@router.get("/ctmc/results", response_model=ResultsResponse)
async def get_ctmc_results(library_path: Optional[str] = Query(default=None, alias="libraryPath")):
    return _fetch_latest(library_path)


@router.get("/results/latest", response_model=ResultsResponse)
async def get_latest_results(
    directory: Optional[str] = Query(default=None),
    library_path: Optional[str] = Query(default=None, alias="libraryPath"),
):
    return _fetch_latest(directory or library_path)


@router.get("/results/parse", response_model=ExtractedResultsResponse)
async def parse_results(
    results_path: str = Query(alias="resultsPath", min_length=1),
    components: str = Query(default=""),
    iterations: int = Query(default=1, ge=1),
    mission_time: float = Query(default=0.0, alias="missionTime", ge=0),
):
    names = [name.strip() for name in components.split(",") if name.strip()]
    if not names:
        raise HTTPException(status_code=400, detail="At least one component name is required")
    try:
        return await results_extractor.extract(
            Path(results_path),
            names,
            iterations=iterations,
            mission_time=mission_time,
        )
    except ResultsNotFoundError as e:
        raise HTTPException(status_code=404, detail=_error_detail(ErrorCode.NOT_FOUND, e))
    except ExtractionTimeoutError as e:
        raise HTTPException(status_code=504, detail=_error_detail(ErrorCode.TIMEOUT, e))
    except ExtractionFailedError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except Exception as e:
        logger.exception("Results extraction failed")
        raise HTTPException(status_code=500, detail=str(e))
