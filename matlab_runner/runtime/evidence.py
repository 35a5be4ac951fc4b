"""
Evidence produced by the independent completion-signal sources of a run.

The output classifier, the artifact watcher, the process-exit waiter and the
cancellation path each emit `Candidate` objects; the run coordinator is the
only place where candidates become canonical progress events.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ..models import ErrorCode


class EvidenceSource(str, Enum):
    CLASSIFIER = "classifier"
    WATCHER = "watcher"
    PROCESS_EXIT = "process_exit"
    SUPERVISOR = "supervisor"


class Verdict(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class Candidate:
    source: EvidenceSource
    progress: float | None = None
    message: str = ""
    output: str = ""
    verdict: Verdict | None = None
    error: str | None = None
    error_code: ErrorCode | None = None
    exit_code: int | None = None
    result_path: Path | None = None

    @property
    def terminal(self) -> bool:
        return self.verdict is not None


def success_candidate(
    source: EvidenceSource,
    *,
    message: str,
    output: str = "",
    result_path: Path | None = None,
    exit_code: int | None = None,
) -> Candidate:
    return Candidate(
        source=source,
        progress=100.0,
        message=message,
        output=output,
        verdict=Verdict.SUCCEEDED,
        result_path=result_path,
        exit_code=exit_code,
    )


def failure_candidate(
    source: EvidenceSource,
    *,
    error: str,
    error_code: ErrorCode,
    message: str = "",
    output: str = "",
    exit_code: int | None = None,
) -> Candidate:
    return Candidate(
        source=source,
        message=message or error,
        output=output,
        verdict=Verdict.FAILED,
        error=error,
        error_code=error_code,
        exit_code=exit_code,
    )
