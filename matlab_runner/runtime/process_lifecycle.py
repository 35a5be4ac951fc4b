from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..config import config

logger = logging.getLogger(__name__)


class SpawnError(RuntimeError):
    pass


@dataclass
class ProcessHandle:
    """One spawned launcher process; owned by a single run."""

    run_id: str
    process: asyncio.subprocess.Process
    working_dir: Path
    command: tuple[str, ...]
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    termination_requested: bool = False

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self.process.stdout

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        return self.process.stderr

    async def wait(self) -> int:
        return await self.process.wait()


class ProcessLifecycleManager:
    """
    Spawns the analysis launcher and tears down its whole process tree.

    The launcher starts MATLAB, which forks its own engine processes, so the
    child is placed in a new session (POSIX) or process group (Windows) and
    termination always targets the group.
    """

    def __init__(self, grace_period_sec: float | None = None) -> None:
        self._grace_period_sec = grace_period_sec
        self._handles: dict[str, ProcessHandle] = {}

    @property
    def grace_period_sec(self) -> float:
        if self._grace_period_sec is not None:
            return float(self._grace_period_sec)
        return float(config.RUN.TERMINATE_GRACE_SEC)

    def live_handles(self) -> list[ProcessHandle]:
        return [handle for handle in self._handles.values() if handle.returncode is None]

    async def spawn(
        self,
        run_id: str,
        working_dir: Path,
        command: list[str],
        env: dict[str, str] | None = None,
    ) -> ProcessHandle:
        if not command:
            raise SpawnError("empty launch command")
        kwargs: dict[str, Any] = {
            "stdin": asyncio.subprocess.DEVNULL,
            "stdout": asyncio.subprocess.PIPE,
            "stderr": asyncio.subprocess.PIPE,
            "cwd": str(working_dir),
            "env": env if env is not None else os.environ.copy(),
        }
        if os.name == "nt":
            kwargs["creationflags"] = int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
        else:
            kwargs["start_new_session"] = True
        try:
            proc = await asyncio.create_subprocess_exec(*command, **kwargs)
        except (OSError, ValueError) as exc:
            raise SpawnError(f"failed to start {command[0]}: {exc}") from exc

        handle = ProcessHandle(
            run_id=run_id,
            process=proc,
            working_dir=working_dir,
            command=tuple(command),
        )
        self._handles[run_id] = handle
        logger.info("[%s] spawned pid=%s cwd=%s cmd=%s", run_id, proc.pid, working_dir, command)
        return handle

    def release(self, handle: ProcessHandle) -> None:
        current = self._handles.get(handle.run_id)
        if current is handle:
            self._handles.pop(handle.run_id, None)

    async def terminate(self, handle: ProcessHandle) -> bool:
        """
        Terminate the handle's process tree.

        Returns True when a termination was actually attempted; repeated calls
        and calls on exited processes are no-ops returning False.
        """
        if handle.termination_requested or handle.returncode is not None:
            self.release(handle)
            return False
        handle.termination_requested = True
        prefix = handle.run_id
        try:
            if os.name == "nt":
                await self._terminate_process_tree_windows(handle.process, prefix)
            else:
                await self._terminate_process_tree_posix(handle.process, prefix)
        finally:
            self.release(handle)
        logger.info("[%s] process tree terminated (pid=%s, returncode=%s)", prefix, handle.pid, handle.returncode)
        return True

    async def terminate_all(self) -> int:
        handles = self.live_handles()
        terminated = 0
        for handle in handles:
            try:
                if await self.terminate(handle):
                    terminated += 1
            except Exception:
                logger.warning("[%s] termination during shutdown failed", handle.run_id, exc_info=True)
        return terminated

    async def _terminate_process_tree_posix(self, proc: asyncio.subprocess.Process, prefix: str) -> None:
        grace = self.grace_period_sec
        try:
            pgid = os.getpgid(proc.pid)
        except ProcessLookupError:
            return
        except OSError:
            pgid = None

        if pgid is not None and pgid == proc.pid:
            try:
                os.killpg(pgid, signal.SIGTERM)
                await asyncio.wait_for(proc.wait(), timeout=grace)
                return
            except asyncio.TimeoutError:
                logger.warning("[%s] process group SIGTERM timeout, escalating to SIGKILL", prefix)
                try:
                    os.killpg(pgid, signal.SIGKILL)
                    await asyncio.wait_for(proc.wait(), timeout=grace)
                    return
                except ProcessLookupError:
                    return
                except Exception:
                    logger.warning("[%s] process group SIGKILL failed", prefix, exc_info=True)
            except ProcessLookupError:
                return
            except Exception:
                logger.warning("[%s] process group termination failed", prefix, exc_info=True)
        elif pgid is not None:
            logger.warning(
                "[%s] subprocess is not process-group leader (pgid=%s,pid=%s); fallback terminate",
                prefix,
                pgid,
                proc.pid,
            )

        try:
            proc.terminate()
            await asyncio.wait_for(proc.wait(), timeout=grace)
        except ProcessLookupError:
            return
        except Exception:
            try:
                proc.kill()
                await asyncio.wait_for(proc.wait(), timeout=grace)
            except ProcessLookupError:
                return
            except Exception:
                logger.warning("[%s] fallback terminate/kill failed", prefix, exc_info=True)

    async def _terminate_process_tree_windows(self, proc: asyncio.subprocess.Process, prefix: str) -> None:
        grace = self.grace_period_sec
        if await self._taskkill(proc.pid, force=False, prefix=prefix):
            try:
                await asyncio.wait_for(proc.wait(), timeout=grace)
                return
            except asyncio.TimeoutError:
                logger.warning("[%s] taskkill /T timeout, escalating to /F", prefix)

        if await self._taskkill(proc.pid, force=True, prefix=prefix):
            try:
                await asyncio.wait_for(proc.wait(), timeout=grace)
                return
            except asyncio.TimeoutError:
                pass

        try:
            proc.kill()
            await asyncio.wait_for(proc.wait(), timeout=grace)
        except ProcessLookupError:
            return
        except Exception:
            logger.warning("[%s] windows terminate/kill failed", prefix, exc_info=True)

    async def _taskkill(self, pid: int, *, force: bool, prefix: str) -> bool:
        args = ["taskkill"]
        if force:
            args.append("/F")
        args.extend(["/T", "/PID", str(pid)])
        try:
            killer = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await asyncio.wait_for(killer.wait(), timeout=self.grace_period_sec)
        except Exception:
            logger.warning("[%s] %s failed", prefix, " ".join(args), exc_info=True)
            return False
        return killer.returncode == 0
