"""
Workspace preparation for analysis runs.

Before a launcher is spawned the working directory is validated, its
`output/` directory is cleared and recreated, the driver files sent by the
editor are written next to the analysis library, and a platform launcher
script is rendered from a Jinja template.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path

from jinja2 import Template

from ..config import config
from ..runtime.run_kind_profile import RunKindProfile

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parents[1] / "assets" / "templates"

SUCCESS_TOKEN = "SIMULATION_COMPLETED"
FAILURE_TOKEN = "SIMULATION_FAILED"
ERROR_PREFIX = "MATLAB_ERROR:"


class RunValidationError(ValueError):
    pass


@dataclass(frozen=True)
class PreparedWorkspace:
    working_dir: Path
    output_dir: Path
    artifact_path: Path
    driver_files: tuple[Path, ...]
    launcher_path: Path
    command: tuple[str, ...]


def escape_matlab_string(value: str) -> str:
    return value.replace("'", "''")


def build_matlab_statement(entry_command: str) -> str:
    return (
        f"try; {entry_command}; disp('{SUCCESS_TOKEN}'); "
        f"catch ME; fprintf(2, '{ERROR_PREFIX} %s\\n', ME.message); disp('{FAILURE_TOKEN}'); exit(1); "
        "end; exit(0);"
    )


def render_template(name: str, **context: object) -> str:
    template_path = TEMPLATES_DIR / name
    if not template_path.exists():
        raise RuntimeError(f"Template not found: {template_path}")
    return Template(template_path.read_text(encoding="utf-8")).render(**context)


def resolve_working_dir(raw: str) -> Path:
    if not raw or not raw.strip():
        raise RunValidationError("Working directory is required")
    working_dir = Path(raw.strip()).expanduser()
    if not working_dir.is_absolute():
        working_dir = working_dir.resolve()
    if not working_dir.exists():
        raise RunValidationError(f"Working directory not found: {working_dir}")
    if not working_dir.is_dir():
        raise RunValidationError(f"Working directory is not a directory: {working_dir}")
    return working_dir


class WorkspacePreparer:
    def __init__(self, *, platform_name: str | None = None) -> None:
        self._platform_name = platform_name or os.name

    @property
    def is_windows(self) -> bool:
        return self._platform_name == "nt"

    def output_dir(self, working_dir: Path) -> Path:
        return working_dir / str(config.RESULTS.OUTPUT_SUBDIR)

    def reset_output_dir(self, working_dir: Path) -> Path:
        output_dir = self.output_dir(working_dir)
        if output_dir.exists():
            shutil.rmtree(output_dir)
            logger.info("Cleared existing output directory %s", output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        return output_dir

    def write_driver_files(
        self,
        working_dir: Path,
        profile: RunKindProfile,
        *,
        model_name: str,
        model_content: str,
        main_content: str | None,
    ) -> list[Path]:
        written: list[Path] = []
        model_path = working_dir / profile.model_file_name(model_name)
        model_path.write_text(model_content, encoding="utf-8")
        written.append(model_path)
        logger.info("Model file written: %s", model_path)

        if profile.main_file_name and main_content:
            main_path = working_dir / profile.main_file_name
            main_path.write_text(main_content, encoding="utf-8")
            written.append(main_path)
            logger.info("Main driver written: %s", main_path)
        return written

    def verify_required_files(self, working_dir: Path, profile: RunKindProfile, model_name: str) -> None:
        missing = [
            name for name in profile.required_files(model_name)
            if not (working_dir / name).is_file()
        ]
        if missing:
            raise RunValidationError(f"Required driver files missing: {', '.join(missing)}")

    def render_launcher(self, working_dir: Path, profile: RunKindProfile) -> tuple[Path, tuple[str, ...]]:
        statement = build_matlab_statement(profile.entry_command)
        basename = str(config.MATLAB.LAUNCHER_BASENAME)
        context = {
            "label": profile.label,
            "kind": profile.kind.value,
            "entry_command": profile.entry_command,
            "matlab_executable": str(config.MATLAB.EXECUTABLE),
            "logfile_name": str(config.MATLAB.LOGFILE_NAME),
        }
        if self.is_windows:
            launcher_path = working_dir / f"{basename}.bat"
            # cmd.exe strips single percent signs
            script = render_template("run_analysis.bat.j2", matlab_statement=statement.replace("%", "%%"), **context)
            command: tuple[str, ...] = ("cmd", "/c", str(launcher_path))
        else:
            launcher_path = working_dir / f"{basename}.sh"
            script = render_template("run_analysis.sh.j2", matlab_statement=statement, **context)
            command = ("/bin/sh", str(launcher_path))
        launcher_path.write_text(script, encoding="utf-8")
        logger.info("Launcher rendered: %s", launcher_path)
        return launcher_path, command

    def prepare(
        self,
        working_dir: Path,
        profile: RunKindProfile,
        *,
        model_name: str,
        model_content: str,
        main_content: str | None,
    ) -> PreparedWorkspace:
        if not model_content:
            raise RunValidationError("Model file content is required")
        if profile.requires_main_file and not main_content:
            raise RunValidationError(f"{profile.main_file_name} content is required for {profile.kind.value} runs")
        try:
            output_dir = self.reset_output_dir(working_dir)
            driver_files = self.write_driver_files(
                working_dir,
                profile,
                model_name=model_name,
                model_content=model_content,
                main_content=main_content,
            )
            self.verify_required_files(working_dir, profile, model_name)
            launcher_path, command = self.render_launcher(working_dir, profile)
        except OSError as exc:
            raise RunValidationError(f"Failed to prepare working directory {working_dir}: {exc}") from exc
        return PreparedWorkspace(
            working_dir=working_dir,
            output_dir=output_dir,
            artifact_path=output_dir / profile.artifact_name,
            driver_files=tuple(driver_files),
            launcher_path=launcher_path,
            command=command,
        )

    def render_extraction_script(
        self,
        working_dir: Path,
        *,
        results_path: Path,
        components: list[str],
        iterations: int,
        mission_time: float,
    ) -> Path:
        output_dir = self.output_dir(working_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        script = render_template(
            "extract_results.m.j2",
            results_path=escape_matlab_string(str(results_path)),
            components=[escape_matlab_string(name) for name in components],
            iterations=int(iterations),
            mission_time=float(mission_time),
            output_dir=escape_matlab_string(str(output_dir)),
            extracted_json_name=escape_matlab_string(str(config.RESULTS.EXTRACTED_JSON_NAME)),
        )
        script_path = working_dir / str(config.RESULTS.EXTRACTION_SCRIPT_NAME)
        script_path.write_text(script, encoding="utf-8")
        return script_path
