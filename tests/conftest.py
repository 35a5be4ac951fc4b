import sys
from pathlib import Path
import pytest

# Add project root to sys.path
# This ensures that 'matlab_runner' is importable as a top-level module during tests
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


@pytest.fixture
def override_config():
    """Temporarily override config values: `override_config("RUN.TERMINATE_GRACE_SEC", 0.1)`."""
    from matlab_runner.config import config

    saved: list[tuple[object, str, object]] = []

    def _override(dotted: str, value: object) -> None:
        *parents, leaf = dotted.split(".")
        node = config
        for name in parents:
            node = getattr(node, name)
        saved.append((node, leaf, getattr(node, leaf)))
        config.defrost()
        setattr(node, leaf, value)
        config.freeze()

    try:
        yield _override
    finally:
        config.defrost()
        for node, leaf, old in reversed(saved):
            setattr(node, leaf, old)
        config.freeze()


@pytest.fixture
def library_dir(tmp_path: Path) -> Path:
    """A working directory shaped like an analysis library checkout."""
    root = tmp_path / "SHyFTA"
    root.mkdir()
    (root / "SHyFTALib").mkdir()
    return root
