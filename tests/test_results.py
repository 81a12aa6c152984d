import pytest

from flowci.dsl import job, sh
from flowci.errors import Aborted, StepFailure
from flowci.matrix import expand
from flowci.results import JobResult, JobState, RunResult, StepResult


def _results(name="test", **kw):
    return [JobResult(inst) for inst in expand(job(name, sh("Test", "true"), **kw))]


def _finish(result, ok=True):
    result.transition(JobState.PROVISIONING)
    result.transition(JobState.RUNNING)
    if ok:
        result.transition(JobState.SUCCEEDED)
    else:
        result.steps.append(StepResult(result.instance.steps[0], False, output="boom\n", exit_code=1))
        result.fail(StepFailure("Command exited with status 1", job=result.instance.id, step="Test",
                                details={"exit_code": 1}))


def test_no_instances_is_success():
    run = RunResult()
    assert len(run) == 0
    assert run.succeeded
    assert run.status == "success"
    assert run.exit_code == 0


def test_one_failure_fails_the_run():
    run = RunResult()
    a, b = _results(matrix={"os": ["macos-latest", "ubuntu-latest"]})
    _finish(a, ok=False)
    _finish(b)
    run.add(a)
    run.add(b)

    assert run.statuses == {"test (macos-latest)": JobState.FAILED, "test (ubuntu-latest)": JobState.SUCCEEDED}
    assert run.failures == [a]
    assert run.status == "failure"
    assert run.exit_code == 1
    assert run.by_job() == {"test": False}


def test_duplicate_instance_rejected():
    run = RunResult()
    [a] = _results()
    run.add(a)
    with pytest.raises(ValueError):
        run.add(JobResult(a.instance))


@pytest.mark.parametrize("path", [
    [JobState.RUNNING],
    [JobState.SUCCEEDED],
    [JobState.PROVISIONING, JobState.SUCCEEDED],
    [JobState.PROVISIONING, JobState.RUNNING, JobState.SUCCEEDED, JobState.FAILED],
])
def test_invalid_transitions(path):
    [r] = _results()
    *ok, bad = path
    for state in ok:
        r.transition(state)
    with pytest.raises(RuntimeError):
        r.transition(bad)


def test_pending_can_fail_directly():
    [r] = _results()
    r.fail(Aborted("cancelled", job="test"))
    assert r.state is JobState.FAILED
    assert r.state.terminal
    assert r.failed_step is None


def test_log_and_failed_step():
    [r] = _results()
    _finish(r, ok=False)
    assert r.failed_step == "Test"
    assert r.log == "--- Test (failed)\nboom"


def test_instances_are_keyed_by_job_and_axis_values():
    # both combinations display as "t (a, b, c)"
    results = _results("t", matrix={"x": ["a, b", "a"], "y": ["c", "b, c"]})
    run = RunResult()
    for r in results:
        run.add(r)

    assert len(run) == 4
    assert run[("t", ("a, b", "c"))] is results[0]
    assert run[("t", ("a", "b, c"))] is results[3]
    assert ("t", ("a", "c")) in run
    assert ("t", ("z", "z")) not in run
    assert "nope" not in run
