import json
import os
import time
from pathlib import Path

import pytest

from matlab_runner.services.analysis_supervisor import AnalysisSupervisor
from matlab_runner.services.results_service import (
    ExtractionFailedError,
    ExtractionTimeoutError,
    ResultsExtractor,
    ResultsNotFoundError,
    ResultsService,
)
from tests.common.fake_process import FakeLifecycle


def _write_results(directory: Path, payload: dict, *, subdir: str = "output") -> Path:
    target = directory / subdir / "results.json"
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(payload), encoding="utf-8")
    return target


def test_fetch_latest_from_explicit_directory(library_dir: Path):
    target = _write_results(library_dir, {"states": ["S0", "S1"], "probabilities": [0.9, 0.1]})
    old = time.time() - 30
    os.utime(target, (old, old))

    response = ResultsService(AnalysisSupervisor()).fetch_latest(str(library_dir))
    assert response.success is True
    assert response.data["states"] == ["S0", "S1"]
    assert response.path == str(target)
    assert response.age_seconds >= 29


def test_fetch_latest_uses_remembered_directory(library_dir: Path, monkeypatch):
    _write_results(library_dir, {"ok": True}, subdir="Output")
    supervisor = AnalysisSupervisor()
    monkeypatch.setattr(supervisor, "_last_successful_dir", library_dir)

    response = ResultsService(supervisor).fetch_latest(None)
    assert response.data == {"ok": True}
    assert Path(response.path).parent.name.lower() == "output"


def test_fetch_latest_missing_raises(library_dir: Path):
    service = ResultsService(AnalysisSupervisor())
    with pytest.raises(ResultsNotFoundError):
        service.fetch_latest(str(library_dir))
    with pytest.raises(ResultsNotFoundError, match="no successful analysis run"):
        service.fetch_latest(None)


def test_fetch_latest_invalid_json_raises(library_dir: Path):
    target = library_dir / "output" / "results.json"
    target.parent.mkdir()
    target.write_text("{not json", encoding="utf-8")
    with pytest.raises(ResultsNotFoundError, match="unreadable"):
        ResultsService(AnalysisSupervisor()).fetch_latest(str(library_dir))


def _mat_file(library_dir: Path) -> Path:
    mat = library_dir / "output" / "results.mat"
    mat.parent.mkdir(exist_ok=True)
    mat.write_bytes(b"MATLAB 5.0 MAT-file")
    return mat


@pytest.mark.asyncio
async def test_extract_reads_generated_json(library_dir: Path):
    mat = _mat_file(library_dir)

    def _on_spawn(handle):
        payload = {
            "components": {"Pump": {"nFailures": 3, "totalIterations": 10, "reliability": 0.7}},
            "missing": "Valve",
        }
        (library_dir / "output" / "extracted_results.json").write_text(json.dumps(payload), encoding="utf-8")
        handle.process.emit("EXTRACTION_COMPLETED\n")
        handle.process.exit(0)

    lifecycle = FakeLifecycle(on_spawn=_on_spawn)
    extractor = ResultsExtractor(lifecycle=lifecycle)  # type: ignore[arg-type]
    response = await extractor.extract(mat, ["Pump", "Valve"], iterations=10, mission_time=100.0)

    assert response.components["Pump"]["nFailures"] == 3
    assert response.missing_components == ["Valve"]
    assert response.results_path == str(mat)

    handle = lifecycle.spawned[0]
    assert handle.working_dir == library_dir
    assert handle.command[1] == "-batch"
    assert "extract_results.m" in handle.command[2]
    assert (library_dir / "extract_results.m").exists()


@pytest.mark.asyncio
async def test_extract_timeout_terminates_process(library_dir: Path):
    mat = _mat_file(library_dir)
    lifecycle = FakeLifecycle()
    extractor = ResultsExtractor(lifecycle=lifecycle, timeout_sec=0.05)  # type: ignore[arg-type]

    with pytest.raises(ExtractionTimeoutError):
        await extractor.extract(mat, ["Pump"], iterations=10, mission_time=100.0)
    assert len(lifecycle.terminated) == 1


@pytest.mark.asyncio
async def test_extract_nonzero_exit_raises(library_dir: Path):
    mat = _mat_file(library_dir)

    def _on_spawn(handle):
        handle.process.emit_stderr("MATLAB_ERROR: Unable to read file\n")
        handle.process.exit(1)

    extractor = ResultsExtractor(lifecycle=FakeLifecycle(on_spawn=_on_spawn))  # type: ignore[arg-type]
    with pytest.raises(ExtractionFailedError, match="Unable to read file"):
        await extractor.extract(mat, ["Pump"], iterations=10, mission_time=100.0)


@pytest.mark.asyncio
async def test_extract_missing_results_file(library_dir: Path):
    extractor = ResultsExtractor(lifecycle=FakeLifecycle())  # type: ignore[arg-type]
    with pytest.raises(ResultsNotFoundError):
        await extractor.extract(library_dir / "output" / "results.mat", ["Pump"], iterations=1, mission_time=1.0)
