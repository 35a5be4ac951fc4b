"""
Core Configuration Definitions.

This module defines the default structure and values for the application's
configuration system using `yacs`. It serves as the single source of truth
for all configurable parameters.

Configuration is organized into sections:
- SYSTEM: Global paths and environment settings.
- SERVER: HTTP bind address and CORS.
- MATLAB: External toolchain invocation.
- RUN: Analysis run supervision (polling, termination, buffers, policy).
- RESULTS: Result artifact locations and the extraction ceiling.
"""

import os
from pathlib import Path
from yacs.config import CfgNode as CN  # type: ignore[import-untyped]


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.environ.get(name)
    if raw is None:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


_C = CN()

# -----------------------------------------------------------------------------
# System Configuration
# -----------------------------------------------------------------------------
_C.SYSTEM = CN()
# Root directory of the project (calculated dynamically if not set)
_C.SYSTEM.ROOT = str(Path(__file__).parent.parent)

# Data directory for logs and runtime state
_C.SYSTEM.DATA_DIR = os.environ.get(
    "MATLAB_RUNNER_DATA_DIR",
    os.path.join(_C.SYSTEM.ROOT, "data"),
)

# Bundled assets (run kind profiles, schemas, script templates)
_C.SYSTEM.ASSETS_DIR = os.path.join(os.path.dirname(__file__), "assets")

# -----------------------------------------------------------------------------
# HTTP Server
# -----------------------------------------------------------------------------
_C.SERVER = CN()
_C.SERVER.HOST = os.environ.get("MATLAB_RUNNER_HOST", "127.0.0.1")
_C.SERVER.PORT = int(os.environ.get("MATLAB_RUNNER_PORT", "3001"))
# The editor is served from a different origin during development
_C.SERVER.CORS_ORIGINS = _env_list("MATLAB_RUNNER_CORS_ORIGINS", ["*"])

# -----------------------------------------------------------------------------
# MATLAB toolchain
# -----------------------------------------------------------------------------
_C.MATLAB = CN()
_C.MATLAB.EXECUTABLE = os.environ.get("MATLAB_RUNNER_MATLAB_EXECUTABLE", "matlab")
# Log file MATLAB writes next to the driver files (-logfile)
_C.MATLAB.LOGFILE_NAME = "matlab_output.log"
# Launcher script name materialized into the working directory (extension added per platform)
_C.MATLAB.LAUNCHER_BASENAME = "run_analysis"

# -----------------------------------------------------------------------------
# Run supervision
# -----------------------------------------------------------------------------
_C.RUN = CN()
# Run kind profile file (driver names, markers, progress patterns)
_C.RUN.KIND_PROFILES = os.environ.get(
    "MATLAB_RUNNER_KIND_PROFILES",
    os.path.join(_C.SYSTEM.ASSETS_DIR, "configs", "run_kinds.json"),
)
# Artifact watcher poll cadence (seconds)
_C.RUN.ARTIFACT_POLL_INTERVAL_SEC = float(
    os.environ.get("MATLAB_RUNNER_ARTIFACT_POLL_INTERVAL_SEC", "10")
)
# Lower bound applied to the poll cadence
_C.RUN.ARTIFACT_POLL_MIN_INTERVAL_SEC = 0.05
# Grace period between graceful tree termination and forceful kill (seconds)
_C.RUN.TERMINATE_GRACE_SEC = float(os.environ.get("MATLAB_RUNNER_TERMINATE_GRACE_SEC", "2"))
# Exit code the launcher reports on success
_C.RUN.SUCCESS_EXIT_CODE = 0
# Rolling output buffer size (characters)
_C.RUN.OUTPUT_BUFFER_MAX_CHARS = 64 * 1024
# Output tail attached to progress events (characters)
_C.RUN.PROGRESS_TAIL_CHARS = 800
# Stream reader chunk size (bytes)
_C.RUN.STREAM_READ_CHUNK_BYTES = 1024
# Time allowed for pipe readers to drain after process exit (seconds)
_C.RUN.STREAM_DRAIN_TIMEOUT_SEC = 5.0
# How often the SSE loop checks whether the observer went away (seconds)
_C.RUN.DISCONNECT_POLL_SEC = 1.0
# Policy for a start request while a run is active: "preempt" or "reject"
_C.RUN.CONCURRENT_START_POLICY = os.environ.get("MATLAB_RUNNER_CONCURRENT_START_POLICY", "preempt")
# Process left running after an early success is terminated after this many seconds (0 disables)
_C.RUN.STRAY_PROCESS_REAP_SEC = float(os.environ.get("MATLAB_RUNNER_STRAY_PROCESS_REAP_SEC", "600"))
# Log every stdout/stderr chunk of the analysis process
_C.RUN.VERBOSE_PROCESS_OUTPUT = _env_bool("MATLAB_RUNNER_VERBOSE_PROCESS_OUTPUT", True)

# -----------------------------------------------------------------------------
# Results
# -----------------------------------------------------------------------------
_C.RESULTS = CN()
_C.RESULTS.OUTPUT_SUBDIR = "output"
# JSON results written by the analysis drivers
_C.RESULTS.JSON_NAME = "results.json"
# JSON written by the extraction script
_C.RESULTS.EXTRACTED_JSON_NAME = "extracted_results.json"
# Extraction script name materialized into the working directory
_C.RESULTS.EXTRACTION_SCRIPT_NAME = "extract_results.m"
# Ceiling for the results-extraction MATLAB process (seconds)
_C.RESULTS.EXTRACTION_TIMEOUT_SEC = float(
    os.environ.get("MATLAB_RUNNER_EXTRACTION_TIMEOUT_SEC", str(10 * 60))
)


def get_cfg_defaults():
    """
    Get a yacs CfgNode object with default values.
    Returns a clone to ensure thread-safety during initialization.
    """
    return _C.clone()
