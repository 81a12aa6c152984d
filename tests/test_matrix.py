import pytest

from flowci.dsl import job, pipeline, sh
from flowci.errors import InvalidJobSpec
from flowci.loader import load_definition
from flowci.matrix import PLATFORM_AXIS, expand, expand_all


def test_cartesian_product_size_and_order():
    j = job(
        "test",
        sh("Test", "tox -e py${{ matrix.python }}"),
        runs_on="${{ matrix.os }}",
        matrix={"os": ["ubuntu-latest", "macos-latest"], "python": ["310", "311", "312"]},
    )
    instances = expand(j)

    assert len(instances) == 2 * 3
    assert len({i.key for i in instances}) == 6
    # first axis varies slowest
    assert [i.key[1] for i in instances] == [
        ("ubuntu-latest", "310"), ("ubuntu-latest", "311"), ("ubuntu-latest", "312"),
        ("macos-latest", "310"), ("macos-latest", "311"), ("macos-latest", "312"),
    ]
    assert instances[0].platform == "ubuntu-latest"
    assert instances[0].steps[0].run == "tox -e py310"
    assert instances[4].id == "test (macos-latest, 311)"


def test_expansion_is_deterministic():
    j = job("t", sh(None, "echo ${{ matrix.a }}"), matrix={"a": [1, 2], "b": [True, False]})
    first = expand(j)
    second = expand(j)
    assert [i.key for i in first] == [i.key for i in second]
    assert first == second


def test_no_axes_is_one_instance():
    j = job("lint", sh("Clippy", "cargo clippy"))
    [inst] = expand(j)
    assert inst.id == "lint"
    assert inst.axes == ()
    assert inst.steps == j.steps
    assert inst.platform == "ubuntu-latest"


def test_literal_platform_list_expands_per_platform():
    j = job("build", sh(None, "make"), runs_on=["ubuntu-latest", "macos-latest"])
    instances = expand(j)
    assert [i.platform for i in instances] == ["ubuntu-latest", "macos-latest"]
    assert instances[0].axes == ((PLATFORM_AXIS, "ubuntu-latest"),)


def test_bool_values_render_like_yaml():
    j = job("t", sh(None, "echo ${{ matrix.flag }}"), matrix={"flag": [True]})
    assert expand(j)[0].steps[0].run == "echo true"


def test_unknown_axis_reference():
    j = job("t", sh(None, "echo ${{ matrix.nope }}"), matrix={"a": [1]})
    with pytest.raises(InvalidJobSpec):
        expand(j)


def test_env_merges_pipeline_then_job():
    p = pipeline(
        job("a", sh(None, "true"), env={"LEVEL": "job"}),
        job("b", sh(None, "true")),
        env={"LEVEL": "pipeline", "RUST_BACKTRACE": "full"},
    )
    a, b = expand_all(p)
    assert a.env == {"LEVEL": "job", "RUST_BACKTRACE": "full"}
    assert b.env == {"LEVEL": "pipeline", "RUST_BACKTRACE": "full"}


def test_unit_workflow_instances(unit_yml):
    instances = expand_all(load_definition(unit_yml))
    assert [i.id for i in instances] == ["test (macos-latest)", "test (ubuntu-latest)", "linter"]
    assert [i.platform for i in instances] == ["macos-latest", "ubuntu-latest", "ubuntu-latest"]
