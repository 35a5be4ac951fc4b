from __future__ import annotations

import codecs
import logging

from ..config import config
from ..models import ErrorCode
from .evidence import Candidate, EvidenceSource, failure_candidate, success_candidate
from .run_kind_profile import RunKindProfile

logger = logging.getLogger(__name__)

# Longest unterminated line kept for matching across chunk boundaries
MAX_CARRY_CHARS = 4096


class OutputClassifier:
    """
    Incremental classifier for the analysis process output.

    Chunks arrive with arbitrary boundaries. Text after the last newline is
    carried into the next scan so a marker or progress pattern split across
    two reads still matches; re-matching the carried text is harmless because
    progress only advances and terminal classifications are reported once.
    """

    def __init__(
        self,
        profile: RunKindProfile,
        *,
        max_buffer_chars: int | None = None,
        tail_chars: int | None = None,
    ) -> None:
        self._profile = profile
        self._max_buffer_chars = max(1, int(max_buffer_chars or config.RUN.OUTPUT_BUFFER_MAX_CHARS))
        self._tail_chars = max(1, int(tail_chars or config.RUN.PROGRESS_TAIL_CHARS))
        self._stdout_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._stderr_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._carry = ""
        self._progress = 0.0
        self._milestone_started = False
        self._success_marker_seen = False
        self._success_reported = False
        self._failure_reported = False

    @property
    def progress(self) -> float:
        return self._progress

    @property
    def success_marker_seen(self) -> bool:
        return self._success_marker_seen

    @property
    def output(self) -> str:
        return self._buffer

    def tail(self, chars: int | None = None) -> str:
        size = self._tail_chars if chars is None else max(0, chars)
        if size == 0:
            return ""
        return self._buffer[-size:]

    def feed_stdout(self, chunk: bytes | str) -> Candidate | None:
        text = self._decode(self._stdout_decoder, chunk)
        if not text:
            return None
        self._append(text)
        return self._classify_stdout(text)

    def feed_stderr(self, chunk: bytes | str) -> Candidate | None:
        text = self._decode(self._stderr_decoder, chunk)
        if not text:
            return None
        self._append(f"ERROR: {text}")
        if not self._profile.stderr_is_failure or not text.strip():
            return None
        return self._report_failure(text.strip())

    def flush(self) -> Candidate | None:
        """Decode bytes held back by the incremental decoders at end of stream."""
        candidate: Candidate | None = None
        tail_out = self._stdout_decoder.decode(b"", final=True)
        if tail_out:
            self._append(tail_out)
            candidate = self._classify_stdout(tail_out)
        tail_err = self._stderr_decoder.decode(b"", final=True)
        if tail_err:
            self._append(f"ERROR: {tail_err}")
            if candidate is None and self._profile.stderr_is_failure and tail_err.strip():
                candidate = self._report_failure(tail_err.strip())
        return candidate

    def _decode(self, decoder: codecs.IncrementalDecoder, chunk: bytes | str) -> str:
        if isinstance(chunk, str):
            return chunk
        return decoder.decode(chunk)

    def _append(self, text: str) -> None:
        self._buffer += text
        overflow = len(self._buffer) - self._max_buffer_chars
        if overflow > 0:
            self._buffer = self._buffer[overflow:]

    def _classify_stdout(self, text: str) -> Candidate | None:
        scan = self._carry + text
        newline_at = scan.rfind("\n")
        carry = scan[newline_at + 1:] if newline_at >= 0 else scan
        self._carry = carry[-MAX_CARRY_CHARS:]

        if any(marker in scan for marker in self._profile.failure_markers):
            failure = self._report_failure("MATLAB analysis failed")
            if failure is not None:
                return failure

        previous = self._progress
        self._advance_progress(scan)

        if not self._success_marker_seen and any(
            marker in scan for marker in self._profile.success_markers
        ):
            self._success_marker_seen = True

        if self._success_marker_seen and not self._success_reported and not self._failure_reported:
            self._success_reported = True
            self._progress = 100.0
            return success_candidate(
                EvidenceSource.CLASSIFIER,
                message="MATLAB reported successful completion",
                output=self.output,
            )

        if self._progress > previous:
            return Candidate(
                source=EvidenceSource.CLASSIFIER,
                progress=self._progress,
                message=f"MATLAB: {self._progress:.2f}%",
                output=self.tail(),
            )
        return None

    def _advance_progress(self, scan: str) -> None:
        progress_profile = self._profile.progress
        if progress_profile.mode == "numeric":
            if progress_profile.pattern is None:
                return
            matches = progress_profile.pattern.findall(scan)
            if not matches:
                return
            last = matches[-1]
            if isinstance(last, tuple):
                last = last[0]
            try:
                value = float(last)
            except ValueError:
                logger.debug("Ignoring unparsable progress value %r", last)
                return
            value = min(100.0, max(0.0, value))
            if value > self._progress:
                self._progress = value
            return

        lowered = scan.lower()
        if not self._milestone_started and any(
            marker.lower() in lowered for marker in progress_profile.start_markers
        ):
            self._milestone_started = True
            self._progress = max(self._progress, progress_profile.checkpoint)
        if any(marker.lower() in lowered for marker in progress_profile.completion_markers):
            self._progress = 100.0

    def _report_failure(self, error: str) -> Candidate | None:
        if self._failure_reported or self._success_reported:
            return None
        self._failure_reported = True
        return failure_candidate(
            EvidenceSource.CLASSIFIER,
            error=error,
            error_code=ErrorCode.RUNTIME_ERROR,
            message=f"MATLAB failed: {error}",
            output=self.output,
        )
