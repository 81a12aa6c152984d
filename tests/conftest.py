from __future__ import annotations

import io
import textwrap
from contextlib import contextmanager
from pathlib import Path

import pytest

from flowci.actions import register_action
from flowci.config import RunnerConfig
from flowci.environment import CommandResult, ExecutionEnvironment
from flowci.loader import load_definition
from flowci.ui.console import Console

FIXTURES = Path(__file__).parent / "fixtures"


@pytest.fixture
def unit_yml() -> str:
    return (FIXTURES / "unit.yml").read_text(encoding="utf-8")


@pytest.fixture
def load():
    def _load(text: str):
        return load_definition(textwrap.dedent(text))

    return _load


@pytest.fixture
def console() -> Console:
    return Console(stream=io.StringIO())


@pytest.fixture
def config(tmp_path) -> RunnerConfig:
    return RunnerConfig(backend="local", workers=4, work_dir=tmp_path / "work")


class FakeEnvironment(ExecutionEnvironment):
    """Records commands instead of running them; `fail` maps command -> exit code."""

    backend = "fake"

    def __init__(self, instance, config, fail=None, fail_start=False):
        super().__init__(instance, config)
        self.fail = fail or {}
        self.fail_start = fail_start
        self.executed: list[str] = []
        self.started = False
        self.torn_down = False

    def start(self):
        from flowci.errors import ProvisioningError

        if self.fail_start:
            raise ProvisioningError("no capacity", job=self.instance.id)
        self.started = True

    def execute(self, command, *, env=None, cwd=None, timeout=None, cancel=None):
        self.executed.append(command)
        code = self.fail.get(command, 0)
        return CommandResult(exit_code=code, output=f"ran {command}\n")

    def teardown(self):
        self.torn_down = True


@pytest.fixture
def fake_provisioner(tmp_path):
    """Returns (provisioner, environments): every environment it hands out is kept."""
    environments: list[FakeEnvironment] = []
    cfg = RunnerConfig(work_dir=tmp_path)

    def make(fail=None, fail_start=False):
        @contextmanager
        def provisioner(instance):
            env = FakeEnvironment(instance, cfg, fail=fail, fail_start=fail_start)
            environments.append(env)
            try:
                env.start()
                yield env
            finally:
                env.teardown()

        return provisioner

    return make, environments


@register_action("test/ok")
def _ok_action(environment, step, **_kw):
    environment.set_env("TEST_TOOL", step.options.get("toolchain", "none"))
    return CommandResult(exit_code=0, output="installed\n")


@register_action("test/broken")
def _broken_action(environment, step, **_kw):
    return CommandResult(exit_code=3, output="installer crashed\n")
