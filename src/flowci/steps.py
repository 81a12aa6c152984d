# steps.py
from __future__ import annotations

import time
from typing import Callable, ContextManager, Optional

from . import actions
from .environment import CancelToken, CommandResult, ExecutionEnvironment
from .errors import Aborted, JobError, ProvisioningError, StepFailure, Timeout
from .model import JobInstance, Step
from .results import JobResult, JobState, StepResult
from .ui.console import Console, get_console

Provisioner = Callable[[JobInstance], ContextManager[ExecutionEnvironment]]


def _budget(step: Step, deadline: float | None) -> float | None:
    """Step timeout, capped by what is left of the job timeout."""
    remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
    if step.timeout is None:
        return remaining
    if remaining is None:
        return step.timeout
    return min(step.timeout, remaining)


def _classify(job: str, step: Step, res: CommandResult, timeout: float | None) -> Optional[JobError]:
    if res.ok:
        return None
    if res.aborted:
        return Aborted("Run was cancelled while the step was running", job=job, step=step.label)
    if res.timed_out:
        return Timeout(f"Step exceeded its time limit ({timeout:.0f}s)", job=job, step=step.label,
                       details={"timeout_s": timeout})
    details = {"exit_code": res.exit_code}
    if step.kind == "setup":
        return ProvisioningError(f"Setup action '{step.uses}' failed", job=job, step=step.label, details=details)
    return StepFailure("Command exited with a non-zero status", job=job, step=step.label,
                       details={**details, "cmd": step.run})


def run_step(
    environment: ExecutionEnvironment,
    step: Step,
    *,
    deadline: float | None = None,
    cancel: Optional[CancelToken] = None,
) -> StepResult:
    """
    Run one step of either kind and report it as a StepResult.

    Setup steps go through the action registry, commands straight to the
    environment; failures come back as the StepResult's error, never raised.
    """
    job = environment.instance.id
    timeout = _budget(step, deadline)
    if timeout is not None and timeout <= 0:
        err = Timeout("Job time limit reached before the step started", job=job, step=step.label)
        return StepResult(step=step, succeeded=False, error=err)

    try:
        if step.kind == "setup":
            res = actions.run_setup(environment, step, timeout=timeout, cancel=cancel)
        else:
            res = environment.execute(
                step.run or "",
                env=dict(step.env),
                cwd=step.working_directory,
                timeout=timeout,
                cancel=cancel,
            )
    except JobError as e:
        if e.step is None:
            e.step = step.label
        return StepResult(step=step, succeeded=False, error=e)

    error = _classify(job, step, res, timeout)
    return StepResult(
        step=step,
        succeeded=error is None,
        output=res.output,
        exit_code=res.exit_code,
        duration=res.duration,
        error=error,
    )


def run_instance(
    result: JobResult,
    provisioner: Provisioner,
    *,
    cancel: Optional[CancelToken] = None,
    console: Optional[Console] = None,
) -> JobResult:
    """
    Drive one job instance through Pending -> Provisioning -> Running -> done.

    Steps run strictly in order; the first failure stops the instance.
    The environment is released by the provisioner on every path.
    """
    console = console or get_console()
    instance = result.instance

    if cancel is not None and cancel.is_set():
        result.fail(Aborted("Run was cancelled before the job started", job=instance.id))
        console.print_failure(instance.id, result.error)
        return result

    console.print_job_start(instance.id, instance.platform)
    result.transition(JobState.PROVISIONING)
    deadline = time.monotonic() + instance.job.timeout if instance.job.timeout else None

    try:
        with provisioner(instance) as environment:
            for step in instance.steps:
                if cancel is not None and cancel.is_set():
                    result.fail(Aborted("Run was cancelled", job=instance.id, step=step.label))
                    break
                if step.kind == "command" and result.state is JobState.PROVISIONING:
                    result.transition(JobState.RUNNING)

                console.print_step(instance.id, step.label)
                step_result = run_step(environment, step, deadline=deadline, cancel=cancel)
                result.steps.append(step_result)
                if not step_result.succeeded:
                    result.fail(step_result.error)
                    break
            else:
                if result.state is JobState.PROVISIONING:
                    result.transition(JobState.RUNNING)
                result.transition(JobState.SUCCEEDED)
    except JobError as e:
        # raised by the environment itself (start/teardown), not by a step
        if not result.state.terminal:
            result.fail(e)

    if result.succeeded:
        console.print_success(instance.id)
    else:
        console.print_failure(instance.id, result.error)
    return result
