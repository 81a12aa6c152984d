"""Job Graph Loader: YAML pipeline documents <-> PipelineDefinition.

The document shape follows GitHub Actions workflows:

    name: Build and test the library
    on: [push]
    env:
      RUST_BACKTRACE: full
    jobs:
      test:
        name: "Build and test"
        strategy:
          matrix:
            os: [macos-latest, ubuntu-latest]
        runs-on: ${{ matrix.os }}
        steps:
          - uses: actions/checkout@v3
          - uses: actions-rs/toolchain@v1
            with: {profile: minimal, toolchain: stable, components: "rustfmt, clippy"}
          - run: cargo test

Nothing here executes anything; every error is raised before a job runs.
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .dag import build_dag, topo_levels
from .errors import InvalidJobSpec, InvalidTriggerSpec, MalformedDefinition
from .matrix import axes_of, check_axis, referenced_axes
from .model import Job, PipelineDefinition, Step, Trigger
from .trigger import KNOWN_EVENTS

SETUP_OPTIONS = ("profile", "toolchain", "components")
TRIGGER_FILTERS = ("branches", "tags", "paths")

_MERGE_TAG = "tag:yaml.org,2002:merge"

_JOB_ID = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")


# ---------------------------------------------------------------------
# YAML
# ---------------------------------------------------------------------

class _UniqueKeyLoader(yaml.SafeLoader):
    """
    SafeLoader that refuses duplicate mapping keys (e.g. two `test:` jobs).

    Only the keys written in the mapping itself are compared; keys brought in
    by a merge key (`<<`) are resolved by SafeLoader as usual.
    """

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _value_node in node.value:
            if key_node.tag == _MERGE_TAG:
                # `<<: *defaults`; explicit keys may override merged ones
                continue
            key = self.construct_object(key_node, deep=deep)
            try:
                duplicate = key in seen
            except TypeError:
                continue
            if duplicate:
                raise InvalidJobSpec(
                    f"Duplicate key {key!r}",
                    details={"line": key_node.start_mark.line + 1},
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def _parse_yaml(text: str) -> Dict[str, Any]:
    try:
        data = yaml.load(text, Loader=_UniqueKeyLoader)
    except yaml.YAMLError as e:
        raise MalformedDefinition("Pipeline document is not valid YAML", details={"error": str(e)}) from e

    if not isinstance(data, dict):
        raise MalformedDefinition(
            "Pipeline document must be a mapping",
            details={"got": type(data).__name__},
        )

    # YAML 1.1 reads a bare `on:` key as boolean True
    if True in data and "on" not in data:
        data["on"] = data.pop(True)
    return data


# ---------------------------------------------------------------------
# Document schema
# ---------------------------------------------------------------------

class _StepDoc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: Optional[str] = None
    uses: Optional[str] = None
    run: Optional[str] = None
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    env: Dict[str, Any] = Field(default_factory=dict)
    working_directory: Optional[str] = Field(default=None, alias="working-directory")
    timeout_minutes: Optional[float] = Field(default=None, alias="timeout-minutes", gt=0)


class _StrategyDoc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    matrix: Dict[str, Any] = Field(default_factory=dict)
    fail_fast: bool = Field(default=False, alias="fail-fast")


class _JobDoc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: Optional[str] = None
    runs_on: Union[str, List[str]] = Field(alias="runs-on")
    steps: List[_StepDoc]
    strategy: Optional[_StrategyDoc] = None
    needs: Union[str, List[str]] = Field(default_factory=list)
    env: Dict[str, Any] = Field(default_factory=dict)
    timeout_minutes: Optional[float] = Field(default=None, alias="timeout-minutes", gt=0)


class _PipelineDoc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: Optional[str] = None
    on: Any = None
    env: Dict[str, Any] = Field(default_factory=dict)
    jobs: Dict[str, Any]


def _format_errors(e: ValidationError) -> List[str]:
    return [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]


def _env_value(v: Any) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    return "" if v is None else str(v)


def _env(raw: Dict[str, Any]) -> Dict[str, str]:
    return {str(k): _env_value(v) for k, v in raw.items()}


def _as_list(value: Union[str, List[str], None]) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


# ---------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------

def _parse_triggers(raw: Any) -> Tuple[Trigger, ...]:
    if raw is None:
        raise InvalidTriggerSpec("Pipeline declares no trigger ('on' is missing)")

    if isinstance(raw, str):
        raw = [raw]

    if isinstance(raw, list):
        events: Dict[str, Any] = {}
        for item in raw:
            if not isinstance(item, str):
                raise MalformedDefinition("Trigger list entries must be event names", details={"got": item})
            events[item] = None
        raw = events

    if not isinstance(raw, dict):
        raise MalformedDefinition("'on' must be an event name, a list or a mapping")

    triggers: List[Trigger] = []
    for event, config in raw.items():
        if event not in KNOWN_EVENTS:
            raise InvalidTriggerSpec(
                f"Unknown event kind {event!r}",
                details={"known_events": list(KNOWN_EVENTS)},
            )
        filters: Dict[str, Tuple[str, ...]] = {}
        # schedule carries cron entries, not filters
        if isinstance(config, dict) and event != "schedule":
            for key, value in config.items():
                if key not in TRIGGER_FILTERS:
                    raise InvalidTriggerSpec(
                        f"Unsupported filter {key!r} on '{event}'",
                        details={"supported": list(TRIGGER_FILTERS)},
                    )
                filters[key] = tuple(str(v) for v in _as_list(value))
        elif config is not None and event != "schedule":
            raise MalformedDefinition(f"Trigger '{event}' configuration must be a mapping")
        triggers.append(Trigger(event=event, **filters))
    return tuple(triggers)


# ---------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------

def _normalize_options(job_id: str, label: str, options: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in options.items():
        if key not in SETUP_OPTIONS:
            raise InvalidJobSpec(
                f"Unknown setup option {key!r}",
                job=job_id,
                step=label,
                details={"recognized": list(SETUP_OPTIONS)},
            )
        if key == "components":
            if isinstance(value, str):
                value = [c.strip() for c in value.split(",") if c.strip()]
            elif isinstance(value, list):
                value = [str(c) for c in value]
            else:
                raise InvalidJobSpec("'components' must be a list or comma separated string", job=job_id, step=label)
        else:
            value = _env_value(value)
        out[key] = value
    return out


def _build_step(job_id: str, index: int, doc: _StepDoc) -> Step:
    label = doc.name or doc.uses or f"step {index + 1}"
    if (doc.uses is None) == (doc.run is None):
        raise InvalidJobSpec("A step needs exactly one of 'uses' or 'run'", job=job_id, step=label)
    if doc.run is not None and doc.with_:
        raise InvalidJobSpec("'with' is only valid on 'uses' steps", job=job_id, step=label)

    return Step(
        name=doc.name,
        run=doc.run,
        uses=doc.uses,
        options=_normalize_options(job_id, label, doc.with_),
        env=_env(doc.env),
        working_directory=doc.working_directory,
        timeout=doc.timeout_minutes * 60 if doc.timeout_minutes else None,
    )


def _build_matrix(job_id: str, raw: Dict[str, Any]) -> Tuple[Tuple[str, Tuple[Any, ...]], ...]:
    axes = []
    for axis, values in raw.items():
        if axis in ("include", "exclude"):
            raise InvalidJobSpec(f"Matrix '{axis}' is not supported", job=job_id)
        if not isinstance(values, list):
            raise InvalidJobSpec(f"Matrix axis '{axis}' must be a list of values", job=job_id)
        for v in values:
            if isinstance(v, (dict, list)) or v is None:
                raise InvalidJobSpec(
                    f"Matrix axis '{axis}' values must be literals",
                    job=job_id,
                    details={"value": v},
                )
        axes.append((str(axis), tuple(values)))
    return tuple(axes)


def _check_expressions(job: Job) -> None:
    declared = {name for name, _ in axes_of(job)}
    texts: List[str] = list(job.runs_on) + list(job.env.values())
    for step in job.steps:
        texts.extend([step.name or "", step.run or ""])
        texts.extend(step.env.values())
        for v in step.options.values():
            texts.extend(v if isinstance(v, list) else [v])
    for text in texts:
        unknown = referenced_axes(text) - declared
        if unknown:
            raise InvalidJobSpec(
                f"Expression refers to undeclared matrix axis {sorted(unknown)}",
                job=job.name,
                details={"declared": sorted(declared)},
            )


def _build_job(job_id: str, raw: Any) -> Job:
    if not _JOB_ID.match(str(job_id)):
        raise InvalidJobSpec(f"Invalid job id {job_id!r}", job=str(job_id))
    if not isinstance(raw, dict):
        raise InvalidJobSpec("Job definition must be a mapping", job=job_id)

    try:
        doc = _JobDoc.model_validate(raw)
    except ValidationError as e:
        raise InvalidJobSpec("Invalid job definition", job=job_id, details={"errors": _format_errors(e)}) from e

    if not doc.steps:
        raise InvalidJobSpec("Job has no steps", job=job_id)

    runs_on = _as_list(doc.runs_on)
    if not runs_on:
        raise InvalidJobSpec("Job has no target platform ('runs-on')", job=job_id)

    strategy = doc.strategy or _StrategyDoc()
    job = Job(
        name=job_id,
        display_name=doc.name,
        runs_on=tuple(runs_on),
        steps=tuple(_build_step(job_id, i, s) for i, s in enumerate(doc.steps)),
        matrix=_build_matrix(job_id, strategy.matrix),
        needs=tuple(_as_list(doc.needs)),
        env=_env(doc.env),
        timeout=doc.timeout_minutes * 60 if doc.timeout_minutes else None,
        fail_fast=strategy.fail_fast,
    )
    for axis, values in axes_of(job):
        check_axis(job_id, axis, values)
    _check_expressions(job)
    return job


# ---------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------

def load_definition(text: str, *, default_name: str | None = None) -> PipelineDefinition:
    """
    Parse and validate a pipeline document.

    Raises:
      MalformedDefinition: unparsable structure
      InvalidJobSpec: semantic violation in a job
      InvalidTriggerSpec: unknown event kind / filter
    """
    data = _parse_yaml(text)
    try:
        doc = _PipelineDoc.model_validate(data)
    except ValidationError as e:
        raise MalformedDefinition("Invalid pipeline document", details={"errors": _format_errors(e)}) from e

    triggers = _parse_triggers(doc.on)
    jobs = tuple(_build_job(str(job_id), raw) for job_id, raw in doc.jobs.items())

    # unknown needs / cycles
    topo_levels(*build_dag(jobs))

    return PipelineDefinition(
        name=doc.name or default_name,
        triggers=triggers,
        jobs=jobs,
        env=_env(doc.env),
    )


def load_file(path: str | Path) -> PipelineDefinition:
    p = Path(path)
    return load_definition(p.read_text(encoding="utf-8"), default_name=p.stem)


def _minutes(seconds: float | None) -> float | int | None:
    if seconds is None:
        return None
    minutes = seconds / 60
    return int(minutes) if minutes == int(minutes) else minutes


def _dump_triggers(triggers: Tuple[Trigger, ...]) -> Any:
    if all(not (t.branches or t.tags or t.paths) for t in triggers):
        return [t.event for t in triggers]
    out: Dict[str, Any] = {}
    for t in triggers:
        filters = {k: list(getattr(t, k)) for k in TRIGGER_FILTERS if getattr(t, k)}
        out[t.event] = filters or None
    return out


def _dump_step(step: Step) -> Dict[str, Any]:
    d: Dict[str, Any] = {}
    if step.name is not None:
        d["name"] = step.name
    if step.uses is not None:
        d["uses"] = step.uses
        if step.options:
            d["with"] = {k: list(v) if isinstance(v, (list, tuple)) else v for k, v in step.options.items()}
    if step.run is not None:
        d["run"] = step.run
    if step.env:
        d["env"] = dict(step.env)
    if step.working_directory is not None:
        d["working-directory"] = step.working_directory
    if step.timeout is not None:
        d["timeout-minutes"] = _minutes(step.timeout)
    return d


def _dump_job(job: Job) -> Dict[str, Any]:
    d: Dict[str, Any] = {}
    if job.display_name is not None:
        d["name"] = job.display_name
    if job.matrix or job.fail_fast:
        strategy: Dict[str, Any] = {"matrix": {axis: list(values) for axis, values in job.matrix}}
        if job.fail_fast:
            strategy["fail-fast"] = True
        d["strategy"] = strategy
    d["runs-on"] = job.runs_on[0] if len(job.runs_on) == 1 else list(job.runs_on)
    if job.needs:
        d["needs"] = list(job.needs)
    if job.env:
        d["env"] = dict(job.env)
    if job.timeout is not None:
        d["timeout-minutes"] = _minutes(job.timeout)
    d["steps"] = [_dump_step(s) for s in job.steps]
    return d


def dump_definition(definition: PipelineDefinition) -> str:
    """Serialize back to a YAML document accepted by load_definition()."""
    doc: Dict[str, Any] = {}
    if definition.name is not None:
        doc["name"] = definition.name
    doc["on"] = _dump_triggers(definition.triggers)
    if definition.env:
        doc["env"] = dict(definition.env)
    doc["jobs"] = {job.name: _dump_job(job) for job in definition.jobs}
    return yaml.safe_dump(doc, sort_keys=False, default_flow_style=False)
