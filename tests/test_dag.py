import pytest

from flowci.dag import stages
from flowci.dsl import job, sh
from flowci.errors import InvalidJobSpec


def _job(name, *needs):
    return job(name, sh(None, "true"), needs=list(needs))


def test_levels_keep_declaration_order():
    jobs = [_job("lint"), _job("test"), _job("package", "test", "lint"), _job("docs", "lint")]
    assert stages(jobs) == [["lint", "test"], ["package", "docs"]]


def test_diamond():
    jobs = [_job("a"), _job("b", "a"), _job("c", "a"), _job("d", "b", "c")]
    assert stages(jobs) == [["a"], ["b", "c"], ["d"]]


def test_cycle_reports_stuck_jobs():
    with pytest.raises(InvalidJobSpec) as exc:
        stages([_job("ok"), _job("a", "b"), _job("b", "a")])
    assert exc.value.details["stuck_jobs"] == ["a", "b"]


def test_no_jobs():
    assert stages([]) == []
