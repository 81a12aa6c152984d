# matrix.py
from __future__ import annotations

import itertools
import re
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Sequence, Set, Tuple

from .errors import InvalidJobSpec
from .model import AxisValue, Job, JobInstance, PipelineDefinition, Step

DEFAULT_PLATFORM = "ubuntu-latest"

# Axis name used when a job lists several literal platforms without a matrix.
PLATFORM_AXIS = "runs-on"

_EXPR = re.compile(r"\$\{\{\s*matrix\.([A-Za-z0-9_-]+)\s*\}\}")


def referenced_axes(text: str) -> Set[str]:
    return set(_EXPR.findall(text or ""))


def _render(value: AxisValue) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def check_axis(job: str, axis: str, values: Sequence[AxisValue]) -> None:
    """
    An axis needs at least one value and no two values that name the same
    instance: equal values (1, 1.0, True) or values that render alike (1, "1").
    """
    if not values:
        raise InvalidJobSpec(f"Matrix axis '{axis}' needs at least one value", job=job)
    seen: List[AxisValue] = []
    rendered: Set[str] = set()
    for v in values:
        text = _render(v)
        if text in rendered or any(v == s for s in seen):
            raise InvalidJobSpec(
                f"Matrix axis '{axis}' repeats the value {text!r}",
                job=job,
                details={"values": [_render(x) for x in values]},
            )
        seen.append(v)
        rendered.add(text)


def substitute(value: Any, context: Mapping[str, AxisValue], *, job: str = "") -> Any:
    """Replace ${{ matrix.<axis> }} in strings (recursively in lists/dicts)."""
    if isinstance(value, str):
        def _sub(m: re.Match) -> str:
            axis = m.group(1)
            if axis not in context:
                raise InvalidJobSpec(
                    f"Expression refers to unknown matrix axis '{axis}'",
                    job=job or None,
                    details={"axes": sorted(context)},
                )
            return _render(context[axis])

        return _EXPR.sub(_sub, value)
    if isinstance(value, list):
        return [substitute(v, context, job=job) for v in value]
    if isinstance(value, tuple):
        return tuple(substitute(v, context, job=job) for v in value)
    if isinstance(value, dict):
        return {k: substitute(v, context, job=job) for k, v in value.items()}
    return value


def _bind_step(step: Step, context: Mapping[str, AxisValue], job: str) -> Step:
    return replace(
        step,
        name=substitute(step.name, context, job=job),
        run=substitute(step.run, context, job=job),
        options=substitute(dict(step.options), context, job=job),
        env=substitute(dict(step.env), context, job=job),
    )


def axes_of(job: Job) -> List[Tuple[str, Tuple[AxisValue, ...]]]:
    """Declared matrix axes, plus the implicit `runs-on` axis for several literal platforms."""
    axes = list(job.matrix)
    if len(job.runs_on) > 1:
        if any(name == PLATFORM_AXIS for name, _ in axes):
            raise InvalidJobSpec(
                f"Matrix axis '{PLATFORM_AXIS}' clashes with a list of platforms in runs-on",
                job=job.name,
            )
        axes.append((PLATFORM_AXIS, tuple(job.runs_on)))
    return axes


def expand(job: Job, base_env: Mapping[str, str] | None = None) -> List[JobInstance]:
    """
    Expand a job template into one JobInstance per matrix combination.

    Order is the Cartesian product in declaration order: the first axis
    varies slowest. A job without axes expands to exactly one instance.
    """
    axes = axes_of(job)
    names = [name for name, _ in axes]
    for name, values in axes:
        check_axis(job.name, name, values)

    instances: List[JobInstance] = []
    for combo in itertools.product(*(values for _, values in axes)):
        bound: Tuple[Tuple[str, AxisValue], ...] = tuple(zip(names, combo))
        context: Dict[str, AxisValue] = dict(bound)

        if PLATFORM_AXIS in context:
            platform = substitute(str(context[PLATFORM_AXIS]), context, job=job.name)
        elif job.runs_on:
            platform = substitute(job.runs_on[0], context, job=job.name)
        else:
            platform = DEFAULT_PLATFORM

        env = dict(base_env or {})
        env.update(substitute(dict(job.env), context, job=job.name))

        instances.append(
            JobInstance(
                job=job,
                platform=platform,
                axes=bound,
                steps=tuple(_bind_step(s, context, job.name) for s in job.steps),
                env=env,
            )
        )
    return instances


def expand_all(definition: PipelineDefinition) -> List[JobInstance]:
    out: List[JobInstance] = []
    for job in definition.jobs:
        out.extend(expand(job, base_env=definition.env))
    return out
