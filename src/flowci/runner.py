# runner.py
from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from functools import partial
from typing import Dict, List, Optional

from .config import RunnerConfig
from .dag import build_dag, topo_levels
from .environment import provision
from .errors import Aborted, JobError
from .matrix import expand_all
from .model import JobInstance, PipelineDefinition
from .results import InstanceKey, JobResult, RunResult
from .steps import Provisioner, run_instance
from .trigger import Event, evaluate
from .ui.console import Console, get_console


class _AnyOf:
    """Cancel token that is set as soon as one of its events is."""

    def __init__(self, *events: threading.Event):
        self._events = events

    def is_set(self) -> bool:
        return any(e.is_set() for e in self._events)


def run_instances(
    definition: PipelineDefinition,
    instances: List[JobInstance],
    *,
    config: RunnerConfig,
    provisioner: Provisioner,
    cancel: Optional[threading.Event] = None,
    console: Optional[Console] = None,
) -> RunResult:
    """
    Scheduler: run every instance, in parallel where `needs` allows.

    - Instances of a job start once every instance of each job it needs
      succeeded; otherwise they end Failed/Aborted without provisioning.
    - A failing instance never stops its siblings unless the job sets
      `strategy.fail-fast` or the run sets `cancel_on_failure`.

    Raises:
      InvalidJobSpec: `needs` names a missing job or forms a cycle
    """
    console = console or get_console()
    run_cancel = cancel or threading.Event()

    run = RunResult()
    by_job: Dict[str, List[JobInstance]] = {job.name: [] for job in definition.jobs}
    for inst in instances:
        by_job[inst.name].append(inst)
        run.add(JobResult(inst))

    adj, indeg = build_dag(definition.jobs)
    # cycles raise here, before anything is submitted
    topo_levels(adj, indeg)
    indeg = dict(indeg)
    job_cancel = {name: threading.Event() for name in by_job}
    remaining = {name: len(insts) for name, insts in by_job.items()}
    job_ok = {name: True for name in by_job}
    ready: List[str] = [name for name, deg in indeg.items() if deg == 0]
    in_flight: Dict[Future, InstanceKey] = {}

    def finish(name: str) -> None:
        # unlock dependents; a failed job blocks them
        for nxt in sorted(adj[name]):
            if not job_ok[name]:
                job_ok[nxt] = False
            indeg[nxt] -= 1
            if indeg[nxt] == 0:
                ready.append(nxt)

    def block(name: str) -> None:
        for inst in by_job[name]:
            jr = run[inst.key]
            jr.fail(Aborted("A job this one needs did not succeed", job=inst.id,
                            details={"needs": list(inst.job.needs)}))
            console.print_failure(inst.id, jr.error)
        finish(name)

    with ThreadPoolExecutor(max_workers=config.workers) as pool:
        try:
            while ready or in_flight:
                # schedule all currently ready
                while ready:
                    name = ready.pop(0)
                    if not job_ok[name]:
                        block(name)
                        continue
                    if not by_job[name]:
                        finish(name)
                        continue
                    token = _AnyOf(run_cancel, job_cancel[name])
                    for inst in by_job[name]:
                        fut = pool.submit(run_instance, run[inst.key], provisioner, cancel=token, console=console)
                        in_flight[fut] = inst.key

                if not in_flight:
                    break

                # wait for one completion, then loop to schedule newly-ready jobs
                fut = next(as_completed(list(in_flight.keys())))
                jr = run[in_flight.pop(fut)]
                try:
                    fut.result()
                except Exception as e:
                    if not jr.state.terminal:
                        jr.fail(JobError(f"Unexpected error: {e}", job=jr.instance.id))
                    console.print_exception(e)

                name = jr.instance.name
                if not jr.succeeded:
                    job_ok[name] = False
                    if jr.instance.job.fail_fast:
                        job_cancel[name].set()
                    if config.cancel_on_failure:
                        run_cancel.set()

                remaining[name] -= 1
                if remaining[name] == 0:
                    finish(name)
        except KeyboardInterrupt:
            # running instances see the cancel, abort and tear down before the pool exits
            run_cancel.set()
            raise

    return run


def run_pipeline(
    definition: PipelineDefinition,
    event: Event,
    *,
    config: Optional[RunnerConfig] = None,
    provisioner: Optional[Provisioner] = None,
    cancel: Optional[threading.Event] = None,
    console: Optional[Console] = None,
) -> RunResult:
    """
    Trigger -> expand -> provision/run every instance -> aggregate.

    Definition errors are raised by the loader before we get here; this only
    returns once every instance reached a terminal state.
    """
    console = console or get_console()
    config = config or RunnerConfig.from_env()
    provisioner = provisioner or partial(provision, config=config)
    pipeline_name = definition.name or "pipeline"

    if not evaluate(definition, event):
        console.print_not_triggered(pipeline_name, event.kind, event.ref)
        return RunResult(triggered=False)

    instances = expand_all(definition)
    console.print_run_started(pipeline_name, event.kind, event.ref, len(instances))

    results = run_instances(
        definition,
        instances,
        config=config,
        provisioner=provisioner,
        cancel=cancel,
        console=console,
    )
    console.print_results(results)
    return results
