from __future__ import annotations

import json
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

import jsonschema  # type: ignore[import-untyped]

from ..config import config
from ..models import RunKind


SCHEMA_PATH = Path(__file__).resolve().parents[1] / "assets" / "schemas" / "run_kind_profile_schema.json"


ProgressMode = Literal["numeric", "milestone"]


@dataclass(frozen=True)
class ProgressPatternProfile:
    mode: ProgressMode
    pattern: re.Pattern[str] | None = None
    start_markers: tuple[str, ...] = ()
    checkpoint: float = 0.0
    completion_markers: tuple[str, ...] = ()


@dataclass(frozen=True)
class RunKindProfile:
    kind: RunKind
    label: str
    entry_command: str
    model_file_template: str
    main_file_name: str | None
    requires_main_file: bool
    artifact_name: str
    progress: ProgressPatternProfile
    success_markers: tuple[str, ...]
    failure_markers: tuple[str, ...]
    stderr_is_failure: bool

    def model_file_name(self, model_name: str) -> str:
        stem = model_name.strip()
        if stem.lower().endswith(".m"):
            stem = stem[:-2]
        return self.model_file_template.format(model=stem)

    def required_files(self, model_name: str) -> list[str]:
        names = [self.model_file_name(model_name)]
        if self.requires_main_file and self.main_file_name:
            names.append(self.main_file_name)
        return names


def _load_schema() -> dict[str, Any]:
    if not SCHEMA_PATH.exists():
        raise RuntimeError(f"Run kind profile schema not found: {SCHEMA_PATH}")
    return json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))


def _build_progress(raw: dict[str, Any], *, kind: str, profile_path: Path) -> ProgressPatternProfile:
    if raw["mode"] == "numeric":
        try:
            pattern = re.compile(raw["pattern"])
        except re.error as exc:
            raise RuntimeError(
                f"Run kind profile invalid progress.pattern for {kind} ({profile_path}): {exc}"
            ) from exc
        if pattern.groups < 1:
            raise RuntimeError(
                f"Run kind profile progress.pattern for {kind} needs a capture group ({profile_path})"
            )
        return ProgressPatternProfile(mode="numeric", pattern=pattern)
    return ProgressPatternProfile(
        mode="milestone",
        start_markers=tuple(raw["start_markers"]),
        checkpoint=float(raw["checkpoint"]),
        completion_markers=tuple(raw["completion_markers"]),
    )


@lru_cache(maxsize=8)
def _load_profiles_cached(profile_path_str: str) -> dict[RunKind, RunKindProfile]:
    profile_path = Path(profile_path_str)
    if not profile_path.exists():
        raise RuntimeError(f"Run kind profiles not found: {profile_path}")

    payload = json.loads(profile_path.read_text(encoding="utf-8"))
    try:
        jsonschema.validate(instance=payload, schema=_load_schema())
    except jsonschema.ValidationError as exc:
        raise RuntimeError(
            f"Run kind profile validation failed ({profile_path}): {exc.message}"
        ) from exc

    loaded: dict[RunKind, RunKindProfile] = {}
    for raw in payload["profiles"]:
        kind = RunKind(raw["kind"])
        if kind in loaded:
            raise RuntimeError(f"Duplicate run kind profile '{kind.value}' ({profile_path})")
        if raw["requires_main_file"] and not raw.get("main_file_name"):
            raise RuntimeError(
                f"Run kind profile '{kind.value}' requires a main file but names none ({profile_path})"
            )
        loaded[kind] = RunKindProfile(
            kind=kind,
            label=str(raw.get("label") or kind.value),
            entry_command=str(raw["entry_command"]),
            model_file_template=str(raw["model_file_template"]),
            main_file_name=raw.get("main_file_name"),
            requires_main_file=bool(raw["requires_main_file"]),
            artifact_name=str(raw["artifact_name"]),
            progress=_build_progress(raw["progress"], kind=kind.value, profile_path=profile_path),
            success_markers=tuple(raw["success_markers"]),
            failure_markers=tuple(raw["failure_markers"]),
            stderr_is_failure=bool(raw["stderr_is_failure"]),
        )
    return loaded


def load_run_kind_profiles(profile_path: Path | None = None) -> dict[RunKind, RunKindProfile]:
    path = profile_path or Path(config.RUN.KIND_PROFILES)
    return _load_profiles_cached(str(path.resolve()))


def get_run_kind_profile(kind: RunKind, profile_path: Path | None = None) -> RunKindProfile:
    profiles = load_run_kind_profiles(profile_path)
    profile = profiles.get(kind)
    if profile is None:
        raise RuntimeError(f"No run kind profile configured for '{kind.value}'")
    return profile
