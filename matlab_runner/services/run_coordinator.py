from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Coroutine, Optional, Protocol

from ..config import config
from ..models import (
    AnalysisStartRequest,
    ErrorCode,
    ProgressEvent,
    RunKind,
    RunSnapshot,
    RunState,
)
from ..runtime.artifact_watcher import ArtifactWatcher, find_artifact
from ..runtime.evidence import (
    Candidate,
    EvidenceSource,
    Verdict,
    failure_candidate,
    success_candidate,
)
from ..runtime.output_classifier import OutputClassifier
from ..runtime.process_lifecycle import ProcessHandle, ProcessLifecycleManager, SpawnError
from ..runtime.run_kind_profile import RunKindProfile
from .progress_channel import ProgressChannel
from .workspace_preparer import PreparedWorkspace, RunValidationError, WorkspacePreparer, resolve_working_dir

logger = logging.getLogger(__name__)


class RunOwner(Protocol):
    def on_run_terminal(self, coordinator: "RunCoordinator") -> None:
        ...

    def on_process_released(self, coordinator: "RunCoordinator") -> None:
        ...


def arbitrate_exit(
    exit_code: int,
    *,
    success_code: int,
    artifact_found: bool,
    success_marker_seen: bool,
) -> Verdict:
    """A clean exit only counts as success when corroborated by the artifact or a success marker."""
    if exit_code == success_code and (artifact_found or success_marker_seen):
        return Verdict.SUCCEEDED
    return Verdict.FAILED


@dataclass
class AnalysisRun:
    run_id: str
    kind: RunKind
    requested_dir: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    working_dir: Optional[Path] = None
    command: tuple[str, ...] = ()
    state: RunState = RunState.STARTING
    progress: float = 0.0
    pid: Optional[int] = None
    result_path: Optional[Path] = None
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    exit_code: Optional[int] = None

    def snapshot(self) -> RunSnapshot:
        return RunSnapshot(
            run_id=self.run_id,
            kind=self.kind,
            state=self.state,
            working_dir=str(self.working_dir or self.requested_dir),
            started_at=self.started_at.isoformat(),
            progress=self.progress,
            pid=self.pid,
            error=self.error,
            result_path=str(self.result_path) if self.result_path else None,
        )


class RunCoordinator:
    """
    Drives one analysis run and arbitrates its completion signals.

    Evidence comes from the output classifier (stdout/stderr readers), the
    artifact watcher (timer), the process-exit waiter and the cancellation
    path. Every candidate goes through `submit()`; the first terminal
    candidate wins and everything after it is suppressed.
    """

    def __init__(
        self,
        request: AnalysisStartRequest,
        *,
        run_id: str,
        profile: RunKindProfile,
        lifecycle: ProcessLifecycleManager,
        preparer: WorkspacePreparer,
        owner: Optional[RunOwner] = None,
        poll_interval_sec: float | None = None,
    ) -> None:
        self.request = request
        self.profile = profile
        self.run = AnalysisRun(run_id=run_id, kind=request.kind, requested_dir=request.working_dir)
        self.channel = ProgressChannel(run_id)
        self.channel.set_disconnect_handler(self.handle_disconnect)
        self.classifier = OutputClassifier(profile)
        self._lifecycle = lifecycle
        self._preparer = preparer
        self._owner = owner
        self._poll_interval_sec = poll_interval_sec
        self._lock = threading.Lock()
        self._terminal_event: Optional[ProgressEvent] = None
        self._prepared: Optional[PreparedWorkspace] = None
        self._handle: Optional[ProcessHandle] = None
        self._watcher: Optional[ArtifactWatcher] = None
        self._monitor_task: Optional[asyncio.Task[None]] = None
        self._reaper_task: Optional[asyncio.Task[None]] = None
        self._background: set[asyncio.Task[Any]] = set()
        self._termination_started = False
        self._released = False

    @property
    def run_id(self) -> str:
        return self.run.run_id

    @property
    def is_terminal(self) -> bool:
        return self._terminal_event is not None

    @property
    def terminal_event(self) -> Optional[ProgressEvent]:
        return self._terminal_event

    @property
    def succeeded(self) -> bool:
        return self.run.state == RunState.SUCCEEDED

    @property
    def process_alive(self) -> bool:
        return self._handle is not None and self._handle.returncode is None and not self._released

    @property
    def watcher(self) -> Optional[ArtifactWatcher]:
        return self._watcher

    @property
    def monitor_task(self) -> Optional[asyncio.Task[None]]:
        return self._monitor_task

    # ------------------------------------------------------------------
    # Arbitration
    # ------------------------------------------------------------------
    def submit(self, candidate: Candidate) -> bool:
        """Turn a candidate into a canonical event; returns False when suppressed."""
        with self._lock:
            if self._terminal_event is not None:
                logger.debug(
                    "[%s] suppressed %s candidate after terminal event",
                    self.run_id,
                    candidate.source.value,
                )
                return False
            if candidate.terminal:
                event = self._build_terminal_event(candidate)
                self._terminal_event = event
                self.channel.publish(event)
            else:
                if candidate.progress is not None:
                    if candidate.progress <= self.run.progress:
                        return False
                    self.run.progress = min(100.0, candidate.progress)
                self.channel.publish(
                    ProgressEvent(
                        progress=self.run.progress,
                        message=candidate.message,
                        output=candidate.output,
                    )
                )
                return True
        self._after_terminal(candidate)
        return True

    def _build_terminal_event(self, candidate: Candidate) -> ProgressEvent:
        run = self.run
        run.exit_code = candidate.exit_code
        if candidate.verdict == Verdict.SUCCEEDED:
            run.state = RunState.SUCCEEDED
            run.progress = 100.0
            run.result_path = candidate.result_path
            return ProgressEvent(
                progress=100.0,
                message=candidate.message,
                output=candidate.output,
                terminal=True,
                success=True,
                exit_code=candidate.exit_code,
                result_path=str(candidate.result_path) if candidate.result_path else None,
            )
        run.state = RunState.FAILED
        run.error = candidate.error
        run.error_code = candidate.error_code
        return ProgressEvent(
            progress=run.progress,
            message=candidate.message,
            output=candidate.output,
            terminal=True,
            success=False,
            error=candidate.error,
            error_code=candidate.error_code,
            exit_code=candidate.exit_code,
        )

    def _after_terminal(self, candidate: Candidate) -> None:
        if self._watcher is not None:
            self._watcher.stop()
        if candidate.verdict == Verdict.SUCCEEDED:
            logger.info(
                "[%s] analysis succeeded via %s (result=%s)",
                self.run_id,
                candidate.source.value,
                candidate.result_path,
            )
            if self.process_alive:
                # The engine may still be writing auxiliary files; leave it running.
                self._schedule_reaper()
        else:
            logger.info(
                "[%s] analysis failed via %s: %s (%s)",
                self.run_id,
                candidate.source.value,
                candidate.error,
                candidate.error_code.value if candidate.error_code else "-",
            )
            if candidate.source == EvidenceSource.CLASSIFIER and self.process_alive:
                self._spawn_background(self._terminate_once())
        if self._owner is not None:
            try:
                self._owner.on_run_terminal(self)
            except Exception:
                logger.warning("[%s] owner terminal notification failed", self.run_id, exc_info=True)

    # ------------------------------------------------------------------
    # Launch
    # ------------------------------------------------------------------
    async def launch(self) -> None:
        """Validate, prepare and spawn; returns once running or terminal."""
        try:
            await self._launch()
        except Exception as exc:
            logger.exception("[%s] unexpected launch failure", self.run_id)
            self.submit(
                failure_candidate(
                    EvidenceSource.SUPERVISOR,
                    error=f"Internal error while starting analysis: {exc}",
                    error_code=ErrorCode.RUNTIME_ERROR,
                )
            )
            await self._terminate_once()
            self._release()

    async def _launch(self) -> None:
        try:
            working_dir = resolve_working_dir(self.request.working_dir)
        except RunValidationError as exc:
            self._fail_validation(exc)
            return
        self.run.working_dir = working_dir
        self._status(f"Working directory verified: {working_dir}")
        if self.is_terminal:
            return

        try:
            prepared = self._preparer.prepare(
                working_dir,
                self.profile,
                model_name=self.request.model_name,
                model_content=self.request.model_content,
                main_content=self.request.main_content,
            )
        except RunValidationError as exc:
            self._fail_validation(exc)
            return
        self._prepared = prepared
        self.run.command = prepared.command
        driver_names = ", ".join(path.name for path in prepared.driver_files)
        self._status(f"Output directory prepared; driver files written: {driver_names}")
        self._status("Launcher ready, starting MATLAB...")
        if self.is_terminal:
            return

        try:
            handle = await self._lifecycle.spawn(self.run_id, working_dir, list(prepared.command))
        except SpawnError as exc:
            logger.error("[%s] spawn failed: %s", self.run_id, exc)
            self.submit(
                failure_candidate(
                    EvidenceSource.SUPERVISOR,
                    error=str(exc),
                    error_code=ErrorCode.SPAWN_ERROR,
                    message=f"Failed to start MATLAB process: {exc}",
                )
            )
            return
        self._handle = handle
        self.run.pid = handle.pid

        if self.is_terminal:
            # Cancelled while the process was being created.
            await self._terminate_once()
            self._release()
            return

        with self._lock:
            if self._terminal_event is None:
                self.run.state = RunState.RUNNING
        self._status(f"MATLAB process started (pid {handle.pid})")

        self._watcher = ArtifactWatcher(
            prepared.artifact_path,
            self._on_artifact_found,
            interval_sec=self._poll_interval_sec,
            name=f"{self.run_id}-artifact",
        )
        self._watcher.start()
        self._monitor_task = asyncio.create_task(self._monitor(handle), name=f"analysis-monitor-{self.run_id}")

    def _fail_validation(self, exc: RunValidationError) -> None:
        logger.warning("[%s] validation failed: %s", self.run_id, exc)
        self.submit(
            failure_candidate(
                EvidenceSource.SUPERVISOR,
                error=str(exc),
                error_code=ErrorCode.VALIDATION_ERROR,
                message=f"Setup failed: {exc}",
            )
        )

    def _status(self, message: str) -> None:
        self.submit(Candidate(source=EvidenceSource.SUPERVISOR, message=message))

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------
    async def _monitor(self, handle: ProcessHandle) -> None:
        readers = [
            asyncio.create_task(self._read_stream(handle.stdout, is_stderr=False)),
            asyncio.create_task(self._read_stream(handle.stderr, is_stderr=True)),
        ]
        try:
            exit_code = await handle.wait()
            logger.info("[%s] process exited with code %s", self.run_id, exit_code)
            try:
                await asyncio.wait_for(
                    asyncio.gather(*readers, return_exceptions=True),
                    timeout=float(config.RUN.STREAM_DRAIN_TIMEOUT_SEC),
                )
            except asyncio.TimeoutError:
                logger.warning("[%s] stream readers did not finish in time; cancelling", self.run_id)
                for reader in readers:
                    reader.cancel()
                await asyncio.gather(*readers, return_exceptions=True)
            if not self.is_terminal:
                leftover = self.classifier.flush()
                if leftover is not None:
                    self.submit(leftover)
            self._on_process_exit(exit_code)
        finally:
            for reader in readers:
                if not reader.done():
                    reader.cancel()
            if self._watcher is not None:
                self._watcher.stop()
            if self._reaper_task is not None and not self._reaper_task.done():
                self._reaper_task.cancel()
            self._release()

    async def _read_stream(self, stream: Optional[asyncio.StreamReader], *, is_stderr: bool) -> None:
        if stream is None:
            return
        tag = "ERR" if is_stderr else "OUT"
        chunk_size = int(config.RUN.STREAM_READ_CHUNK_BYTES)
        verbose = bool(config.RUN.VERBOSE_PROCESS_OUTPUT)
        while True:
            chunk = await stream.read(chunk_size)
            if not chunk:
                break
            if verbose:
                logger.info("[%s %s] %s", self.run_id, tag, chunk.decode("utf-8", errors="replace").rstrip())
            if self.is_terminal:
                # Keep draining so the process never blocks on a full pipe.
                continue
            if is_stderr:
                candidate = self.classifier.feed_stderr(chunk)
            else:
                candidate = self.classifier.feed_stdout(chunk)
            if candidate is not None:
                self.submit(candidate)

    def _on_artifact_found(self, path: Path) -> None:
        self.submit(
            success_candidate(
                EvidenceSource.WATCHER,
                message=f"Results file detected: {path}",
                output=self.classifier.output,
                result_path=path,
            )
        )

    def _on_process_exit(self, exit_code: int) -> None:
        if self.is_terminal:
            logger.info("[%s] exit code %s ignored, run already resolved", self.run_id, exit_code)
            return
        artifact = find_artifact(self._prepared.artifact_path) if self._prepared else None
        success_code = int(config.RUN.SUCCESS_EXIT_CODE)
        verdict = arbitrate_exit(
            exit_code,
            success_code=success_code,
            artifact_found=artifact is not None,
            success_marker_seen=self.classifier.success_marker_seen,
        )
        logger.info(
            "[%s] exit arbitration: code=%s artifact=%s marker=%s -> %s",
            self.run_id,
            exit_code,
            "found" if artifact else "missing",
            self.classifier.success_marker_seen,
            verdict.value,
        )
        if verdict == Verdict.SUCCEEDED:
            self.submit(
                success_candidate(
                    EvidenceSource.PROCESS_EXIT,
                    message="MATLAB analysis completed successfully",
                    output=self.classifier.output,
                    result_path=artifact,
                    exit_code=exit_code,
                )
            )
            return
        self.submit(
            failure_candidate(
                EvidenceSource.PROCESS_EXIT,
                error=(
                    f"MATLAB analysis failed (exit code {exit_code}, "
                    f"results file {'found' if artifact else 'missing'})"
                ),
                error_code=ErrorCode.EXIT_MISMATCH,
                output=self.classifier.output,
                exit_code=exit_code,
            )
        )

    # ------------------------------------------------------------------
    # Cancellation and termination
    # ------------------------------------------------------------------
    async def cancel(self, error_code: ErrorCode = ErrorCode.CANCELLED, reason: str = "Analysis stopped by user") -> bool:
        accepted = self.submit(
            failure_candidate(
                EvidenceSource.SUPERVISOR,
                error=reason,
                error_code=error_code,
                output=self.classifier.output,
            )
        )
        if accepted:
            await self._terminate_once()
        return accepted

    def handle_disconnect(self) -> None:
        if self.is_terminal:
            return
        self._spawn_background(self.cancel(ErrorCode.CANCELLED, "Client disconnected"))

    async def terminate_process(self) -> bool:
        """Terminate a process still running after the run resolved."""
        return await self._terminate_once()

    async def _terminate_once(self) -> bool:
        handle = self._handle
        if handle is None or self._termination_started:
            return False
        self._termination_started = True
        try:
            return await self._lifecycle.terminate(handle)
        except Exception:
            logger.warning("[%s] process termination failed", self.run_id, exc_info=True)
            return False

    def _schedule_reaper(self) -> None:
        delay = float(config.RUN.STRAY_PROCESS_REAP_SEC)
        if delay <= 0 or self._reaper_task is not None:
            return
        self._reaper_task = asyncio.get_running_loop().create_task(self._reap_stray(delay))

    async def _reap_stray(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self.process_alive:
            logger.warning("[%s] process still running %.0fs after success; terminating", self.run_id, delay)
            await self._terminate_once()

    def _spawn_background(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _release(self) -> None:
        if self._released:
            return
        self._released = True
        if self._handle is not None:
            self._lifecycle.release(self._handle)
        if self._owner is not None:
            try:
                self._owner.on_process_released(self)
            except Exception:
                logger.warning("[%s] owner release notification failed", self.run_id, exc_info=True)

    async def wait_closed(self, timeout: float | None = None) -> None:
        """Wait for the monitor (process reaping) to finish; used by tests and shutdown."""
        task = self._monitor_task
        if task is None:
            return
        await asyncio.wait_for(asyncio.shield(task), timeout=timeout)


__all__ = [
    "AnalysisRun",
    "RunCoordinator",
    "RunOwner",
    "arbitrate_exit",
]
