# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from .errors import InvalidJobSpec

# Literal matrix values: what YAML gives us for scalars.
AxisValue = Any


@dataclass(frozen=True)
class Step:
    """
    A single unit of work inside a CI job.

    Exactly one of `uses` (a setup action with options) or `run` (a shell
    command) is set; `kind` tells the Step Runner which one it is.
    """
    name: str | None = None
    run: str | None = None
    uses: str | None = None
    options: Dict[str, Any] = field(default_factory=dict, hash=False)
    env: Dict[str, str] = field(default_factory=dict, hash=False)
    working_directory: str | None = None
    timeout: float | None = None  # seconds

    @property
    def kind(self) -> str:
        return "setup" if self.uses is not None else "command"

    @property
    def action(self) -> str | None:
        """`actions-rs/toolchain@v1` -> `actions-rs/toolchain`"""
        if self.uses is None:
            return None
        return self.uses.split("@", 1)[0]

    @property
    def label(self) -> str:
        if self.name:
            return self.name
        if self.uses is not None:
            return self.uses
        lines = (self.run or "").strip().splitlines()
        return lines[0] if lines else "<empty>"


@dataclass(frozen=True)
class Trigger:
    """An event kind plus optional glob filters on branch, tag and changed paths."""
    event: str
    branches: Tuple[str, ...] = ()
    tags: Tuple[str, ...] = ()
    paths: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Job:
    """
    A CI job template: steps + platforms + optional matrix axes.

    `name` is the job id (the key under `jobs:`), `display_name` the
    human readable `name:` field.
    """
    name: str
    steps: Tuple[Step, ...]
    runs_on: Tuple[str, ...] = ()
    matrix: Tuple[Tuple[str, Tuple[AxisValue, ...]], ...] = ()
    display_name: str | None = None
    needs: Tuple[str, ...] = ()
    env: Dict[str, str] = field(default_factory=dict, hash=False)
    timeout: float | None = None  # seconds
    fail_fast: bool = False

    @property
    def is_template(self) -> bool:
        return bool(self.matrix)

    @property
    def axes(self) -> Dict[str, Tuple[AxisValue, ...]]:
        return dict(self.matrix)


@dataclass(frozen=True)
class JobInstance:
    """A job bound to one value per matrix axis and one concrete platform."""
    job: Job
    platform: str
    axes: Tuple[Tuple[str, AxisValue], ...] = ()
    steps: Tuple[Step, ...] = ()
    env: Dict[str, str] = field(default_factory=dict, hash=False)

    @property
    def name(self) -> str:
        return self.job.name

    @property
    def key(self) -> Tuple[str, Tuple[AxisValue, ...]]:
        return self.job.name, tuple(v for _, v in self.axes)

    @property
    def id(self) -> str:
        if not self.axes:
            return self.job.name
        return f"{self.job.name} ({', '.join(str(v) for _, v in self.axes)})"


@dataclass(frozen=True)
class PipelineDefinition:
    """Named trigger conditions + ordered jobs + pipeline-wide env."""
    jobs: Tuple[Job, ...]
    triggers: Tuple[Trigger, ...] = ()
    name: str | None = None
    env: Dict[str, str] = field(default_factory=dict, hash=False)

    def __post_init__(self) -> None:
        names = [j.name for j in self.jobs]
        if len(set(names)) != len(names):
            dupes = sorted({n for n in names if names.count(n) > 1})
            raise InvalidJobSpec(
                f"Duplicate job names found: {dupes}",
                details={"jobs": names},
            )

    def job(self, name: str) -> Optional[Job]:
        for j in self.jobs:
            if j.name == name:
                return j
        return None
