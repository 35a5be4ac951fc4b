import asyncio
import os
from pathlib import Path

import pytest

from matlab_runner.runtime.process_lifecycle import ProcessLifecycleManager, SpawnError

pytestmark = pytest.mark.skipif(os.name == "nt", reason="POSIX process groups required")


def _alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except FileNotFoundError:
        return not Path("/proc").is_dir()
    except OSError:
        return True
    # zombies waiting for init to reap them count as gone
    return stat.rsplit(")", 1)[-1].split()[0] != "Z"


@pytest.mark.asyncio
async def test_spawn_captures_output_and_exit_code(tmp_path: Path):
    manager = ProcessLifecycleManager(grace_period_sec=1.0)
    handle = await manager.spawn("run-1", tmp_path, ["/bin/sh", "-c", "echo hello; echo oops 1>&2; exit 3"])
    stdout = await handle.stdout.read()
    stderr = await handle.stderr.read()
    code = await handle.wait()

    assert stdout.strip() == b"hello"
    assert stderr.strip() == b"oops"
    assert code == 3
    assert handle.run_id == "run-1"
    assert manager.live_handles() == []


@pytest.mark.asyncio
async def test_spawn_runs_in_working_dir(tmp_path: Path):
    manager = ProcessLifecycleManager()
    handle = await manager.spawn("run-cwd", tmp_path, ["/bin/sh", "-c", "pwd"])
    stdout = await handle.stdout.read()
    await handle.wait()
    assert Path(stdout.decode().strip()).resolve() == tmp_path.resolve()


@pytest.mark.asyncio
async def test_spawn_missing_binary_raises_spawn_error(tmp_path: Path):
    manager = ProcessLifecycleManager()
    with pytest.raises(SpawnError):
        await manager.spawn("run-missing", tmp_path, [str(tmp_path / "no-such-matlab")])
    assert manager.live_handles() == []


@pytest.mark.asyncio
async def test_spawn_empty_command_raises(tmp_path: Path):
    with pytest.raises(SpawnError):
        await ProcessLifecycleManager().spawn("run-empty", tmp_path, [])


@pytest.mark.asyncio
async def test_terminate_kills_process_tree_once(tmp_path: Path):
    manager = ProcessLifecycleManager(grace_period_sec=1.0)
    pid_file = tmp_path / "child.pid"
    handle = await manager.spawn(
        "run-tree",
        tmp_path,
        ["/bin/sh", "-c", f"sleep 60 & echo $! > {pid_file}; wait"],
    )
    for _ in range(100):
        if pid_file.exists() and pid_file.read_text().strip():
            break
        await asyncio.sleep(0.02)
    child_pid = int(pid_file.read_text().strip())

    assert await manager.terminate(handle) is True
    assert handle.returncode is not None
    assert manager.live_handles() == []

    # The grandchild shared the process group and is gone as well.
    for _ in range(100):
        if not _alive(child_pid):
            break
        await asyncio.sleep(0.02)
    else:
        pytest.fail("child process survived group termination")

    assert await manager.terminate(handle) is False


@pytest.mark.asyncio
async def test_terminate_escalates_when_sigterm_ignored(tmp_path: Path):
    manager = ProcessLifecycleManager(grace_period_sec=0.3)
    handle = await manager.spawn(
        "run-stubborn",
        tmp_path,
        ["/bin/sh", "-c", "trap '' TERM; echo ready; while true; do sleep 0.1; done"],
    )
    await handle.stdout.readline()
    assert await manager.terminate(handle) is True
    assert handle.returncode is not None


@pytest.mark.asyncio
async def test_terminate_exited_process_is_noop(tmp_path: Path):
    manager = ProcessLifecycleManager()
    handle = await manager.spawn("run-done", tmp_path, ["/bin/sh", "-c", "exit 0"])
    await handle.wait()
    assert await manager.terminate(handle) is False


@pytest.mark.asyncio
async def test_terminate_all_reports_count(tmp_path: Path):
    manager = ProcessLifecycleManager(grace_period_sec=1.0)
    await manager.spawn("a", tmp_path, ["/bin/sh", "-c", "sleep 60"])
    await manager.spawn("b", tmp_path, ["/bin/sh", "-c", "sleep 60"])
    assert len(manager.live_handles()) == 2
    assert await manager.terminate_all() == 2
    assert manager.live_handles() == []
