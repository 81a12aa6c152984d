import sys
import threading

import pytest

from flowci import actions
from flowci.dsl import job, sh, uses
from flowci.environment import CommandResult, platform_os, provision
from flowci.errors import ProvisioningError
from flowci.matrix import expand

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="uses a POSIX shell")


def _instance(platform="ubuntu-latest", env=None):
    [inst] = expand(job("build", sh(None, "true"), runs_on=platform, env=env))
    return inst


def test_workspace_is_released(config):
    with provision(_instance(), config) as env:
        workspace = env.workspace
        assert workspace.is_dir()
        assert workspace.parent == config.work_dir
    assert not workspace.exists()


def test_workspace_released_on_error(config):
    with pytest.raises(RuntimeError):
        with provision(_instance(), config) as env:
            workspace = env.workspace
            raise RuntimeError("boom")
    assert not workspace.exists()


def test_execute_captures_output_and_status(config):
    with provision(_instance(), config) as env:
        ok = env.execute("echo hello; echo oops >&2")
        assert ok.ok
        assert "hello" in ok.output and "oops" in ok.output

        bad = env.execute("exit 3")
        assert bad.exit_code == 3
        assert not bad.ok


def test_state_persists_between_commands(config):
    with provision(_instance(), config) as env:
        assert env.execute("echo built > artifact.txt").ok
        assert env.execute("test -f artifact.txt").ok
        env.set_env("TOOL_HOME", "/opt/tool")
        assert env.execute('test "$TOOL_HOME" = /opt/tool').ok


def test_declared_env_passes_through(config):
    inst = _instance("macos-latest", env={"RUST_BACKTRACE": "full"})
    with provision(inst, config) as env:
        res = env.execute('echo "$RUST_BACKTRACE $RUNNER_OS $FLOWCI_PLATFORM"')
    assert res.output.strip() == "full macOS macos-latest"


def test_timeout_kills_command(config):
    with provision(_instance(), config) as env:
        res = env.execute("sleep 5", timeout=0.3)
    assert res.timed_out
    assert res.duration < 5


def test_cancel_kills_command(config):
    cancel = threading.Event()
    timer = threading.Timer(0.3, cancel.set)
    timer.start()
    try:
        with provision(_instance(), config) as env:
            res = env.execute("sleep 5", cancel=cancel)
    finally:
        timer.cancel()
    assert res.aborted


def test_platform_os():
    assert platform_os("macos-latest") == "macOS"
    assert platform_os("windows-2022") == "Windows"
    assert platform_os("ubuntu-latest") == "Linux"


def test_checkout_copies_source(tmp_path, config):
    src = tmp_path / "src"
    (src / "pkg").mkdir(parents=True)
    (src / "Cargo.toml").write_text("[package]\n")
    (src / "pkg" / "lib.rs").write_text("")
    cfg = config.override(source_dir=src)

    with provision(_instance(), cfg) as env:
        res = actions.run_setup(env, uses("actions/checkout@v3"))
        assert res.ok
        assert (env.workspace / "Cargo.toml").exists()
        assert (env.workspace / "pkg" / "lib.rs").exists()


def test_checkout_without_source(config):
    with provision(_instance(), config) as env:
        with pytest.raises(ProvisioningError):
            actions.run_setup(env, uses("actions/checkout@v4"))


def test_unregistered_action(config):
    with provision(_instance(), config) as env:
        with pytest.raises(ProvisioningError) as exc:
            actions.run_setup(env, uses("someone/unknown@v1"))
    assert "someone/unknown" in exc.value.message


def test_toolchain_resolution_and_commands():
    assert actions.resolve("actions-rs/toolchain") is actions.toolchain
    assert actions.resolve("other/toolchain") is actions.toolchain
    assert actions.toolchain_commands(
        {"profile": "minimal", "toolchain": "stable", "components": ["rustfmt", "clippy"]}
    ) == [
        "rustup toolchain install stable --profile minimal --component rustfmt --component clippy",
        "rustup default stable",
    ]


def test_toolchain_state_is_private_to_each_instance(config, monkeypatch):
    scripts = []

    with provision(_instance("ubuntu-latest"), config) as one, provision(_instance("macos-latest"), config) as two:
        for env in (one, two):
            monkeypatch.setattr(env, "execute", lambda script, **kw: scripts.append(script) or CommandResult(0))
            assert actions.run_setup(env, uses("actions-rs/toolchain@v1", toolchain="nightly")).ok

        for env in (one, two):
            assert env.exports["RUSTUP_HOME"].startswith(str(env.workspace))
            assert env.exports["CARGO_HOME"].startswith(str(env.workspace))
            assert env.path_entries[0].startswith(str(env.workspace))
        assert one.exports["RUSTUP_HOME"] != two.exports["RUSTUP_HOME"]

    assert all("rustup default nightly" in s for s in scripts)
