"""
Data Models for the MATLAB Analysis Runner.

This module defines the Pydantic models and enums shared by the supervisor,
the HTTP routers and the tests. It covers:
- Run lifecycle states (RunState) and analysis kinds (RunKind)
- Terminal error classification (ErrorCode)
- The progress event streamed to the editor (ProgressEvent)
- API Request/Response schemas (AnalysisStartRequest, StopResponse, ...)

Wire payloads use the camelCase field names the editor already speaks;
Python code uses snake_case attributes.
"""

from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class RunKind(str, Enum):
    """Analysis kind; selects driver files and output pattern sets."""
    FAULT_TREE = "fault_tree"  # SHyFTA dynamic fault tree simulation
    CTMC = "ctmc"              # Continuous-time Markov chain solver


class RunState(str, Enum):
    """
    Enum representing the lifecycle state of an analysis run.
    """
    IDLE = "idle"
    STARTING = "starting"     # Validating inputs and preparing the workspace
    RUNNING = "running"       # External process spawned
    SUCCEEDED = "succeeded"
    FAILED = "failed"         # Includes cancellation, see ErrorCode


class ErrorCode(str, Enum):
    """Stable error codes carried by terminal failure events and error responses."""
    VALIDATION_ERROR = "VALIDATION_ERROR"
    SPAWN_ERROR = "SPAWN_ERROR"
    RUNTIME_ERROR = "RUNTIME_ERROR"
    EXIT_MISMATCH = "EXIT_MISMATCH"
    CANCELLED = "CANCELLED"
    PREEMPTED = "PREEMPTED"
    TIMEOUT = "TIMEOUT"
    NOT_FOUND = "NOT_FOUND"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ProgressEvent(CamelModel):
    """One notification on a run's progress stream."""
    progress: float = 0.0
    message: str = ""
    output: str = ""
    terminal: bool = False
    success: Optional[bool] = None
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    exit_code: Optional[int] = None
    result_path: Optional[str] = None


class AnalysisStartRequest(CamelModel):
    """
    Start request sent by the editor.

    The field names of the legacy editor client (`shyftaPath`, `zftaContent`,
    `isCTMC`) are accepted as aliases.
    """
    working_dir: str = Field(
        min_length=1,
        validation_alias=AliasChoices("workingDir", "working_dir", "shyftaPath", "libraryPath"),
    )
    kind: RunKind = RunKind.FAULT_TREE
    model_name: str = Field(min_length=1, validation_alias=AliasChoices("modelName", "model_name"))
    model_content: str = Field(min_length=1, validation_alias=AliasChoices("modelContent", "model_content"))
    main_content: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("mainContent", "main_content", "zftaContent"),
    )

    @model_validator(mode="before")
    @classmethod
    def _legacy_ctmc_flag(cls, data: Any) -> Any:
        if isinstance(data, dict) and "kind" not in data and data.get("isCTMC") is True:
            data = dict(data)
            data["kind"] = RunKind.CTMC.value
        return data


class StopResponse(CamelModel):
    """Acknowledgement for stop requests."""
    success: bool = True
    running: bool
    message: str
    pid: Optional[int] = None
    reaped_processes: int = 0


class RunSnapshot(CamelModel):
    """Point-in-time view of the active run."""
    run_id: str
    kind: RunKind
    state: RunState
    working_dir: str
    started_at: str
    progress: float
    pid: Optional[int] = None
    error: Optional[str] = None
    result_path: Optional[str] = None


class SupervisorStatusResponse(CamelModel):
    active: bool
    run: Optional[RunSnapshot] = None
    last_successful_dir: Optional[str] = None
    concurrent_start_policy: str


class ResultsResponse(CamelModel):
    """Parsed results artifact plus file metadata."""
    success: bool = True
    data: Any
    path: str
    modified_at: str
    age_seconds: float


class ExtractedResultsResponse(CamelModel):
    """Per-component results extracted from results.mat."""
    success: bool = True
    results_path: str
    components: Dict[str, Any] = Field(default_factory=dict)
    missing_components: List[str] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: str
    timestamp: str
