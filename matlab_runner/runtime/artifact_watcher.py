from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler  # type: ignore[import-untyped]

from ..config import config

logger = logging.getLogger(__name__)


def find_artifact(path: Path) -> Path | None:
    """
    Locate `path`, falling back to a case-insensitive match per component.

    The analysis toolchain may materialize directories with different casing
    than requested (`C:\\Foo\\output` vs `C:\\foo\\Output`), so each missing
    component is looked up by scanning its parent directory.
    """
    if path.exists():
        return path
    anchor = Path(path.anchor) if path.anchor else Path(".")
    parts = path.parts[1:] if path.anchor else path.parts
    current = anchor
    for part in parts:
        candidate = current / part
        if candidate.exists():
            current = candidate
            continue
        match = _scan_case_insensitive(current, part)
        if match is None:
            return None
        current = match
    return current


def _scan_case_insensitive(directory: Path, name: str) -> Path | None:
    wanted = name.lower()
    try:
        entries = sorted(directory.iterdir())
    except OSError:
        return None
    for entry in entries:
        if entry.name.lower() == wanted:
            return entry
    return None


class ArtifactWatcher:
    """
    Interval poller for a run's result artifact.

    Fires `on_found` at most once, then shuts its scheduler down. `stop()` may
    be called at any time (and repeatedly); no poll runs after it returns.
    """

    def __init__(
        self,
        artifact_path: Path,
        on_found: Callable[[Path], None],
        *,
        interval_sec: float | None = None,
        name: str = "artifact-watcher",
    ) -> None:
        self.artifact_path = artifact_path
        self._on_found = on_found
        requested = float(config.RUN.ARTIFACT_POLL_INTERVAL_SEC if interval_sec is None else interval_sec)
        self.interval_sec = max(float(config.RUN.ARTIFACT_POLL_MIN_INTERVAL_SEC), requested)
        self._name = name
        self._scheduler: AsyncIOScheduler | None = None
        self._fired = False
        self._stopped = False

    @property
    def running(self) -> bool:
        return self._scheduler is not None and not self._stopped

    @property
    def fired(self) -> bool:
        return self._fired

    def start(self) -> None:
        if self._scheduler is not None or self._stopped:
            return
        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self._poll,
            "interval",
            seconds=self.interval_sec,
            id=self._name,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(
            "[%s] watching %s every %.2fs", self._name, self.artifact_path, self.interval_sec
        )

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        scheduler = self._scheduler
        if scheduler is None or not scheduler.running:
            return
        try:
            scheduler.remove_all_jobs()
        except Exception:
            logger.warning("[%s] failed to remove poll job", self._name, exc_info=True)
        # Shutting down cancels pending job futures; defer it so a poll that
        # calls stop() from inside the job is allowed to finish.
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._shutdown_scheduler(scheduler)
            return
        loop.call_soon(self._shutdown_scheduler, scheduler)

    def _shutdown_scheduler(self, scheduler: AsyncIOScheduler) -> None:
        if not scheduler.running:
            return
        try:
            scheduler.shutdown(wait=False)
        except Exception:
            logger.warning("[%s] scheduler shutdown failed", self._name, exc_info=True)

    def poll_once(self) -> Path | None:
        """Check for the artifact once; fires the callback on first sighting."""
        if self._stopped or self._fired:
            return None
        found = find_artifact(self.artifact_path)
        if found is None:
            return None
        self._fired = True
        self.stop()
        logger.info("[%s] artifact found: %s", self._name, found)
        self._on_found(found)
        return found

    async def _poll(self) -> None:
        self.poll_once()
