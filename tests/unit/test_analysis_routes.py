import json
from pathlib import Path

import pytest

fastapi = pytest.importorskip("fastapi")
httpx = pytest.importorskip("httpx")

from matlab_runner.main import app
from matlab_runner.models import AnalysisStartRequest, ExtractedResultsResponse
from matlab_runner.services.analysis_supervisor import AnalysisSupervisor
from matlab_runner.services.results_service import ExtractionTimeoutError, ResultsService
from matlab_runner.services.workspace_preparer import WorkspacePreparer
from tests.common.fake_process import FakeLifecycle, play


async def _request(method: str, path: str, **kwargs):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        return await client.request(method, path, **kwargs)


def _parse_sse(body: str) -> list[dict]:
    frames = [chunk for chunk in body.split("\n\n") if chunk.strip()]
    assert all(frame.startswith("data: ") for frame in frames)
    return [json.loads(frame[len("data: "):]) for frame in frames]


@pytest.fixture
def supervisor(monkeypatch):
    lifecycle = FakeLifecycle()
    instance = AnalysisSupervisor(
        lifecycle=lifecycle,  # type: ignore[arg-type]
        preparer=WorkspacePreparer(platform_name="posix"),
        poll_interval_sec=30,
    )
    monkeypatch.setattr("matlab_runner.routers.analysis.analysis_supervisor", instance)
    monkeypatch.setattr("matlab_runner.routers.results.results_service", ResultsService(instance))
    return instance


def _start_body(working_dir: Path) -> dict:
    return {
        "shyftaPath": str(working_dir),
        "modelName": "Pump",
        "modelContent": "% model",
        "zftaContent": "% main",
    }


@pytest.mark.asyncio
async def test_health():
    res = await _request("GET", "/api/health")
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "ok"
    assert body["timestamp"]


@pytest.mark.asyncio
async def test_execute_stream_reports_progress_and_success(supervisor, library_dir: Path):
    lifecycle: FakeLifecycle = supervisor.lifecycle  # type: ignore[assignment]

    def _on_spawn(handle):
        (library_dir / "output" / "results.mat").write_bytes(b"mat")
        handle.process.emit("Starting MATLAB analysis: ZFTAMain\n")
        play(handle.process, ["Progress: 10.00%\n", "Progress: 55.50%\n"], exit_code=0)

    lifecycle.on_spawn = _on_spawn
    res = await _request("POST", "/api/matlab/execute-stream", json=_start_body(library_dir))

    assert res.status_code == 200
    assert res.headers["content-type"].startswith("text/event-stream")
    assert res.headers["cache-control"] == "no-cache"
    events = _parse_sse(res.text)
    progress = [event["progress"] for event in events if not event["terminal"]]
    assert progress == sorted(progress)
    assert 10.0 in progress and 55.5 in progress
    terminal = [event for event in events if event["terminal"]]
    assert len(terminal) == 1
    assert terminal[0]["success"] is True
    assert terminal[0]["exitCode"] == 0
    assert terminal[0]["resultPath"].endswith("results.mat")
    assert supervisor.last_successful_dir == library_dir


@pytest.mark.asyncio
async def test_execute_stream_missing_directory_single_failure(supervisor, tmp_path: Path):
    res = await _request("POST", "/api/matlab/execute-stream", json=_start_body(tmp_path / "missing"))
    assert res.status_code == 200
    events = _parse_sse(res.text)
    assert len(events) == 1
    assert events[0]["terminal"] is True
    assert events[0]["success"] is False
    assert events[0]["errorCode"] == "VALIDATION_ERROR"
    assert supervisor.lifecycle.spawned == []  # type: ignore[attr-defined]


@pytest.mark.asyncio
async def test_execute_stream_rejects_invalid_body(supervisor):
    res = await _request("POST", "/api/matlab/execute-stream", json={"modelName": "Pump"})
    assert res.status_code == 422


@pytest.mark.asyncio
async def test_execute_stream_busy_returns_409(supervisor, library_dir: Path, monkeypatch):
    monkeypatch.setattr(supervisor, "_policy", "reject")
    first = await supervisor.start_run(AnalysisStartRequest.model_validate(_start_body(library_dir)))

    res = await _request("POST", "/api/matlab/execute-stream", json=_start_body(library_dir))
    assert res.status_code == 409

    await supervisor.stop()
    await first.wait_closed(timeout=3.0)


@pytest.mark.asyncio
async def test_stop_and_status(supervisor, library_dir: Path):
    idle = await _request("POST", "/api/matlab/stop")
    assert idle.status_code == 200
    assert idle.json()["running"] is False

    coordinator = await supervisor.start_run(AnalysisStartRequest.model_validate(_start_body(library_dir)))
    status = await _request("GET", "/api/matlab/status")
    assert status.status_code == 200
    assert status.json()["active"] is True
    assert status.json()["run"]["runId"] == coordinator.run_id

    res = await _request("POST", "/api/matlab/stop")
    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    assert body["running"] is True
    assert body["message"] == "MATLAB process termination initiated"
    assert coordinator.terminal_event.error_code.value == "CANCELLED"
    assert len(supervisor.lifecycle.terminated) == 1  # type: ignore[attr-defined]
    await coordinator.wait_closed(timeout=3.0)


@pytest.mark.asyncio
async def test_ctmc_results_endpoint(supervisor, library_dir: Path):
    target = library_dir / "output" / "results.json"
    target.parent.mkdir()
    target.write_text(json.dumps({"states": ["Up", "Down"]}), encoding="utf-8")

    res = await _request("GET", "/api/ctmc/results", params={"libraryPath": str(library_dir)})
    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    assert body["data"] == {"states": ["Up", "Down"]}
    assert "ageSeconds" in body and "modifiedAt" in body

    latest = await _request("GET", "/api/results/latest", params={"directory": str(library_dir)})
    assert latest.status_code == 200


@pytest.mark.asyncio
async def test_results_not_found(supervisor, library_dir: Path):
    res = await _request("GET", "/api/ctmc/results", params={"libraryPath": str(library_dir)})
    assert res.status_code == 404
    assert res.json()["detail"]["code"] == "NOT_FOUND"
    assert res.json()["detail"]["message"]
    res = await _request("GET", "/api/results/latest")
    assert res.status_code == 404


@pytest.mark.asyncio
async def test_results_parse_maps_errors(monkeypatch):
    async def _timeout(*_args, **_kwargs):
        raise ExtractionTimeoutError("Results extraction timed out after 600 seconds")

    monkeypatch.setattr("matlab_runner.routers.results.results_extractor.extract", _timeout)
    res = await _request(
        "GET",
        "/api/results/parse",
        params={"resultsPath": "/tmp/output/results.mat", "components": "Pump,Valve", "iterations": "10"},
    )
    assert res.status_code == 504
    assert res.json()["detail"] == {
        "code": "TIMEOUT",
        "message": "Results extraction timed out after 600 seconds",
    }

    empty = await _request("GET", "/api/results/parse", params={"resultsPath": "/tmp/r.mat", "components": ""})
    assert empty.status_code == 400


@pytest.mark.asyncio
async def test_results_parse_success(monkeypatch):
    captured = {}

    async def _extract(results_path, components, *, iterations, mission_time):
        captured.update(path=results_path, components=components, iterations=iterations, mission_time=mission_time)
        return ExtractedResultsResponse(
            results_path=str(results_path),
            components={"Pump": {"nFailures": 1}},
            missing_components=["Valve"],
        )

    monkeypatch.setattr("matlab_runner.routers.results.results_extractor.extract", _extract)
    res = await _request(
        "GET",
        "/api/results/parse",
        params={
            "resultsPath": "/lib/output/results.mat",
            "components": "Pump, Valve",
            "iterations": "1000",
            "missionTime": "8760",
            "timestep": "1",
        },
    )
    assert res.status_code == 200
    body = res.json()
    assert body["components"]["Pump"]["nFailures"] == 1
    assert body["missingComponents"] == ["Valve"]
    assert captured["components"] == ["Pump", "Valve"]
    assert captured["iterations"] == 1000
    assert captured["mission_time"] == 8760.0
