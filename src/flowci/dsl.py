# src/flowci/dsl.py
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .errors import InvalidJobSpec
from .dag import stages
from .matrix import axes_of, check_axis
from .model import Job, PipelineDefinition, Step, Trigger


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(name: str | None, cmd: str, *, cwd: str | None = None, timeout: float | None = None,
       env: Optional[Dict[str, str]] = None) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, working_directory=cwd, timeout=timeout, env=dict(env or {}))


def uses(action: str, name: str | None = None, **options: Any) -> Step:
    """Create a setup-action step: uses("actions-rs/toolchain@v1", toolchain="stable")."""
    return Step(name=name, uses=action, options=dict(options))


# ---------------------------------------------------------------------
# Functional Job helper (nice DX)
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    runs_on: str | Sequence[str] = "ubuntu-latest",
    matrix: Optional[Mapping[str, Iterable[Any]]] = None,
    needs: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    display_name: str | None = None,
    timeout: float | None = None,
    fail_fast: bool = False,
) -> Job:
    if not steps:
        raise InvalidJobSpec(f"job({name!r}) must have at least one step", job=name)

    axes = tuple((axis, tuple(values)) for axis, values in (matrix or {}).items())

    built = Job(
        name=name,
        steps=tuple(steps),
        runs_on=(runs_on,) if isinstance(runs_on, str) else tuple(runs_on),
        matrix=axes,
        needs=tuple(needs or ()),
        env={k: str(v) for k, v in (env or {}).items()},
        display_name=display_name,
        timeout=timeout,
        fail_fast=fail_fast,
    )
    for axis, values in axes_of(built):
        check_axis(name, axis, values)
    return built


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._steps: list[Step] = []
        self._runs_on: list[str] = []
        self._matrix: dict[str, list[Any]] = {}
        self._needs: list[str] = []
        self._env: dict[str, str] = {}
        self._timeout: float | None = None
        self._display_name: str | None = None
        self._fail_fast = False

    def named(self, display_name: str):
        self._display_name = display_name
        return self

    def runs_on(self, *platforms: str):
        self._runs_on.extend(platforms)
        return self

    def axis(self, name: str, *values: Any):
        self._matrix[name] = list(values)
        return self

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def setup(self, action: str, name: str | None = None, **options: Any):
        self._steps.append(uses(action, name, **options))
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None):
        self._steps.append(sh(name, run, cwd=cwd))
        return self

    def with_env(self, **env):
        # force values to str, they end up in a process environment
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def fail_fast(self, enabled: bool = True):
        self._fail_fast = enabled
        return self

    def build(self) -> Job:
        return job(
            self.name,
            *self._steps,
            runs_on=self._runs_on or "ubuntu-latest",
            matrix=self._matrix,
            needs=self._needs,
            env=self._env,
            display_name=self._display_name,
            timeout=self._timeout,
            fail_fast=self._fail_fast,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Pipeline helper
# ---------------------------------------------------------------------

def pipeline(
    *jobs: Job,
    on: Sequence[str] = ("push",),
    env: Optional[Dict[str, str]] = None,
    name: str | None = None,
) -> PipelineDefinition:
    """
    Users can write:
        from flowci.dsl import pipeline, job, sh

        PIPELINE = pipeline(
            job("test", sh("Test", "pytest -q"), matrix={"os": [...]}, runs_on="${{ matrix.os }}"),
            job("lint", sh("Ruff", "ruff check .")),
        )
    """
    definition = PipelineDefinition(
        name=name,
        triggers=tuple(Trigger(event=e) for e in on),
        jobs=tuple(jobs),
        env={k: str(v) for k, v in (env or {}).items()},
    )
    # unknown needs / cycles, same as a loaded document
    stages(definition.jobs)
    return definition
