"""
Results retrieval and extraction.

`fetch_latest` reads the JSON results an analysis left in `<dir>/output/`.
`ResultsExtractor` converts a `results.mat` into per-component JSON by
running a rendered MATLAB script under a hard time ceiling.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from ..config import config
from ..models import ExtractedResultsResponse, ResultsResponse
from ..runtime.artifact_watcher import find_artifact
from ..runtime.process_lifecycle import ProcessLifecycleManager
from .analysis_supervisor import AnalysisSupervisor, analysis_supervisor
from .workspace_preparer import WorkspacePreparer, escape_matlab_string

logger = logging.getLogger(__name__)


class ResultsNotFoundError(LookupError):
    pass


class ExtractionTimeoutError(TimeoutError):
    pass


class ExtractionFailedError(RuntimeError):
    pass


class ResultsService:
    def __init__(self, supervisor: AnalysisSupervisor) -> None:
        self._supervisor = supervisor

    def resolve_directory(self, directory: Optional[str]) -> Path:
        if directory and directory.strip():
            return Path(directory.strip()).expanduser()
        remembered = self._supervisor.last_successful_dir
        if remembered is None:
            raise ResultsNotFoundError("No directory given and no successful analysis run yet")
        return remembered

    def fetch_latest(self, directory: Optional[str] = None) -> ResultsResponse:
        base = self.resolve_directory(directory)
        wanted = base / str(config.RESULTS.OUTPUT_SUBDIR) / str(config.RESULTS.JSON_NAME)
        found = find_artifact(wanted)
        if found is None or not found.is_file():
            raise ResultsNotFoundError(f"Results file not found: {wanted}")
        try:
            data = json.loads(found.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ResultsNotFoundError(f"Results file unreadable: {found}: {exc}") from exc
        stat = found.stat()
        modified = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
        age = max(0.0, datetime.now(timezone.utc).timestamp() - stat.st_mtime)
        logger.info("Loaded results from %s (age %.0fs)", found, age)
        return ResultsResponse(
            data=data,
            path=str(found),
            modified_at=modified.isoformat(),
            age_seconds=round(age, 3),
        )


class ResultsExtractor:
    def __init__(
        self,
        *,
        lifecycle: ProcessLifecycleManager | None = None,
        preparer: WorkspacePreparer | None = None,
        timeout_sec: float | None = None,
    ) -> None:
        self._lifecycle = lifecycle or ProcessLifecycleManager()
        self._preparer = preparer or WorkspacePreparer()
        self._timeout_sec = timeout_sec

    @property
    def timeout_sec(self) -> float:
        if self._timeout_sec is not None:
            return float(self._timeout_sec)
        return float(config.RESULTS.EXTRACTION_TIMEOUT_SEC)

    @staticmethod
    def working_dir_for(results_path: Path) -> Path:
        parent = results_path.parent
        if parent.name.lower() == str(config.RESULTS.OUTPUT_SUBDIR).lower():
            return parent.parent
        return parent

    async def extract(
        self,
        results_path: Path,
        components: list[str],
        *,
        iterations: int,
        mission_time: float,
    ) -> ExtractedResultsResponse:
        found = find_artifact(results_path)
        if found is None or not found.is_file():
            raise ResultsNotFoundError(f"Results file not found: {results_path}")
        working_dir = self.working_dir_for(found)
        script_path = self._preparer.render_extraction_script(
            working_dir,
            results_path=found,
            components=components,
            iterations=iterations,
            mission_time=mission_time,
        )
        output_json = self._preparer.output_dir(working_dir) / str(config.RESULTS.EXTRACTED_JSON_NAME)
        if output_json.exists():
            output_json.unlink()

        command = [
            str(config.MATLAB.EXECUTABLE),
            "-batch",
            f"run('{escape_matlab_string(str(script_path))}')",
        ]
        handle = await self._lifecycle.spawn(f"extract-{uuid.uuid4().hex[:8]}", working_dir, command)
        try:
            stdout, stderr = await asyncio.wait_for(handle.process.communicate(), timeout=self.timeout_sec)
        except asyncio.TimeoutError as exc:
            logger.warning("[%s] extraction exceeded %.0fs; terminating", handle.run_id, self.timeout_sec)
            await self._lifecycle.terminate(handle)
            raise ExtractionTimeoutError(
                f"Results extraction timed out after {self.timeout_sec:.0f} seconds"
            ) from exc
        finally:
            self._lifecycle.release(handle)

        stderr_text = (stderr or b"").decode("utf-8", errors="replace").strip()
        if handle.returncode != 0:
            raise ExtractionFailedError(
                f"Results extraction failed (exit code {handle.returncode}): {stderr_text or 'no error output'}"
            )
        logger.info("[%s] extraction output: %s", handle.run_id, (stdout or b"").decode("utf-8", errors="replace").strip())
        try:
            payload: dict[str, Any] = json.loads(output_json.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ExtractionFailedError(f"Extraction output unreadable: {output_json}: {exc}") from exc

        extracted = payload.get("components") or {}
        missing = payload.get("missing") or []
        if isinstance(missing, str):
            missing = [missing]
        return ExtractedResultsResponse(
            results_path=str(found),
            components=extracted if isinstance(extracted, dict) else {},
            missing_components=list(missing),
        )


results_service = ResultsService(analysis_supervisor)
results_extractor = ResultsExtractor(lifecycle=analysis_supervisor.lifecycle)
