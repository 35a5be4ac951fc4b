from __future__ import annotations

import logging
import threading
import uuid
from pathlib import Path
from typing import Callable, Optional

from ..config import config
from ..models import AnalysisStartRequest, ErrorCode, RunKind, StopResponse, SupervisorStatusResponse
from ..runtime.process_lifecycle import ProcessLifecycleManager
from ..runtime.run_kind_profile import RunKindProfile, get_run_kind_profile
from .run_coordinator import RunCoordinator
from .workspace_preparer import WorkspacePreparer

logger = logging.getLogger(__name__)

POLICY_PREEMPT = "preempt"
POLICY_REJECT = "reject"
CONCURRENT_START_POLICIES = (POLICY_PREEMPT, POLICY_REJECT)


class AnalysisBusyError(RuntimeError):
    pass


class AnalysisSupervisor:
    """
    Owns the single active-run slot.

    At most one run is active at a time. Runs that resolved while their
    process kept going (early success, classifier failure mid-termination)
    are tracked as lingering until the process exits, so a new run or a stop
    request can reap them.
    """

    def __init__(
        self,
        *,
        lifecycle: ProcessLifecycleManager | None = None,
        preparer: WorkspacePreparer | None = None,
        profile_loader: Callable[[RunKind], RunKindProfile] = get_run_kind_profile,
        policy: str | None = None,
        poll_interval_sec: float | None = None,
    ) -> None:
        self.lifecycle = lifecycle or ProcessLifecycleManager()
        self.preparer = preparer or WorkspacePreparer()
        self._profile_loader = profile_loader
        self._policy = policy
        self._poll_interval_sec = poll_interval_sec
        self._lock = threading.Lock()
        self._active: Optional[RunCoordinator] = None
        self._lingering: dict[str, RunCoordinator] = {}
        self._last_successful_dir: Optional[Path] = None

    @property
    def policy(self) -> str:
        raw = self._policy if self._policy is not None else str(config.RUN.CONCURRENT_START_POLICY)
        policy = raw.strip().lower()
        if policy not in CONCURRENT_START_POLICIES:
            logger.warning("Unknown concurrent start policy %r, using %s", raw, POLICY_PREEMPT)
            return POLICY_PREEMPT
        return policy

    @property
    def active_run(self) -> Optional[RunCoordinator]:
        with self._lock:
            return self._active

    @property
    def last_successful_dir(self) -> Optional[Path]:
        with self._lock:
            return self._last_successful_dir

    def lingering_runs(self) -> list[RunCoordinator]:
        with self._lock:
            return list(self._lingering.values())

    async def start_run(self, request: AnalysisStartRequest) -> RunCoordinator:
        """
        Start a new run and return its coordinator.

        Returns once the process is running or the run already failed
        (validation or spawn); in both cases the events are waiting on the
        coordinator's channel.

        Raises:
            AnalysisBusyError: a run is active and the policy is `reject`.
        """
        profile = self._profile_loader(request.kind)
        coordinator = RunCoordinator(
            request,
            run_id=uuid.uuid4().hex[:12],
            profile=profile,
            lifecycle=self.lifecycle,
            preparer=self.preparer,
            owner=self,
            poll_interval_sec=self._poll_interval_sec,
        )
        with self._lock:
            previous = self._active
            if previous is not None and previous.is_terminal:
                previous = None
            if previous is not None and self.policy == POLICY_REJECT:
                raise AnalysisBusyError(f"Analysis run {previous.run_id} is already active")
            self._active = coordinator
            lingering = list(self._lingering.values())

        logger.info(
            "Starting analysis run %s (kind=%s, dir=%s)",
            coordinator.run_id,
            request.kind.value,
            request.working_dir,
        )
        if previous is not None:
            logger.info("Pre-empting active run %s", previous.run_id)
            await previous.cancel(ErrorCode.PREEMPTED, "Analysis pre-empted by a new run")
        for stray in lingering:
            if await stray.terminate_process():
                logger.info("Reaped lingering process of run %s", stray.run_id)

        await coordinator.launch()
        return coordinator

    async def stop(self) -> StopResponse:
        with self._lock:
            active = self._active
            if active is not None and active.is_terminal:
                active = None
            lingering = list(self._lingering.values())

        reaped = 0
        for stray in lingering:
            if await stray.terminate_process():
                reaped += 1

        if active is None:
            logger.info("Stop requested with no active run (reaped %s lingering)", reaped)
            if reaped:
                return StopResponse(
                    running=True,
                    message="Lingering MATLAB process terminated",
                    reaped_processes=reaped,
                )
            return StopResponse(
                running=False,
                message="No MATLAB process currently running",
                reaped_processes=reaped,
            )

        pid = active.run.pid
        logger.info("Stopping analysis run %s (pid=%s)", active.run_id, pid)
        await active.cancel(ErrorCode.CANCELLED, "Analysis stopped by user")
        return StopResponse(
            running=True,
            message="MATLAB process termination initiated",
            pid=pid,
            reaped_processes=reaped,
        )

    def status(self) -> SupervisorStatusResponse:
        with self._lock:
            active = self._active
            last_dir = self._last_successful_dir
        return SupervisorStatusResponse(
            active=active is not None and not active.is_terminal,
            run=active.run.snapshot() if active is not None else None,
            last_successful_dir=str(last_dir) if last_dir else None,
            concurrent_start_policy=self.policy,
        )

    async def shutdown(self) -> None:
        with self._lock:
            active = self._active
            lingering = list(self._lingering.values())
        if active is not None and not active.is_terminal:
            await active.cancel(ErrorCode.CANCELLED, "Server shutting down")
        for stray in lingering:
            await stray.terminate_process()
        terminated = await self.lifecycle.terminate_all()
        if terminated:
            logger.info("Terminated %s remaining process tree(s) on shutdown", terminated)

    def on_run_terminal(self, coordinator: RunCoordinator) -> None:
        with self._lock:
            if self._active is coordinator:
                self._active = None
            if coordinator.succeeded and coordinator.run.working_dir is not None:
                self._last_successful_dir = coordinator.run.working_dir
            if coordinator.process_alive:
                self._lingering[coordinator.run_id] = coordinator

    def on_process_released(self, coordinator: RunCoordinator) -> None:
        with self._lock:
            self._lingering.pop(coordinator.run_id, None)


analysis_supervisor = AnalysisSupervisor()
