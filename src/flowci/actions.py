# actions.py
"""
Setup actions (`uses:` steps).

A handler gets the environment and the step and returns a CommandResult.
Handlers are looked up by action name without the `@version` suffix,
first exactly, then by glob (`*/toolchain`).
"""
from __future__ import annotations

import shlex
import shutil
import time
from fnmatch import fnmatch
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .environment import CancelToken, CommandResult, ExecutionEnvironment
from .errors import ProvisioningError
from .model import Step

SetupHandler = Callable[..., CommandResult]

_REGISTRY: Dict[str, SetupHandler] = {}

# Per-instance tool state, inside the workspace (never copied by checkout).
RUST_HOME = Path(".flowci") / "rust"

CHECKOUT_IGNORE = (".flowci", "__pycache__", ".pytest_cache", ".venv", "target")


def register_action(*names: str) -> Callable[[SetupHandler], SetupHandler]:
    def deco(fn: SetupHandler) -> SetupHandler:
        for name in names:
            _REGISTRY[name] = fn
        return fn

    return deco


def resolve(action: str) -> Optional[SetupHandler]:
    if action in _REGISTRY:
        return _REGISTRY[action]
    for pattern, handler in _REGISTRY.items():
        if any(ch in pattern for ch in "*?[") and fnmatch(action, pattern):
            return handler
    return None


def registered() -> List[str]:
    return sorted(_REGISTRY)


def run_setup(
    environment: ExecutionEnvironment,
    step: Step,
    *,
    timeout: float | None = None,
    cancel: Optional[CancelToken] = None,
) -> CommandResult:
    action = step.action or ""
    handler = resolve(action)
    if handler is None:
        raise ProvisioningError(
            f"No handler registered for setup action '{action}'",
            job=environment.instance.id,
            step=step.label,
            details={"registered": registered()},
        )
    return handler(environment, step, timeout=timeout, cancel=cancel)


# ---------------------------------------------------------------------
# Built-in actions
# ---------------------------------------------------------------------

@register_action("actions/checkout")
def checkout(environment: ExecutionEnvironment, step: Step, **_kw) -> CommandResult:
    """Copy the source tree into the workspace."""
    started = time.monotonic()
    src = environment.source_dir
    if src is None or not src.is_dir():
        raise ProvisioningError(
            "Nothing to check out (no source directory)",
            job=environment.instance.id,
            step=step.label,
            details={"source_dir": str(src)},
        )
    assert environment.workspace is not None

    shutil.copytree(
        src,
        environment.workspace,
        dirs_exist_ok=True,
        ignore=shutil.ignore_patterns(*CHECKOUT_IGNORE),
        symlinks=True,
    )
    count = sum(1 for p in environment.workspace.rglob("*") if p.is_file())
    return CommandResult(
        exit_code=0,
        output=f"Checked out {src} ({count} files)\n",
        duration=time.monotonic() - started,
    )


def toolchain_commands(options: Dict[str, object]) -> List[str]:
    """rustup invocations for {profile, toolchain, components}."""
    toolchain = str(options.get("toolchain") or "stable")
    profile = str(options.get("profile") or "default")
    components = options.get("components") or []

    install = ["rustup", "toolchain", "install", toolchain, "--profile", profile]
    for c in components:
        install.extend(["--component", str(c)])

    return [
        shlex.join(install),
        shlex.join(["rustup", "default", toolchain]),
    ]


@register_action("actions-rs/toolchain", "*/toolchain")
def toolchain(
    environment: ExecutionEnvironment,
    step: Step,
    *,
    timeout: float | None = None,
    cancel: Optional[CancelToken] = None,
) -> CommandResult:
    """
    Install a toolchain with rustup; later steps see it on PATH.

    A container owns its $HOME, so the docker backend installs there. On the
    host, RUSTUP_HOME and CARGO_HOME point into the instance workspace: the
    installed toolchains and the `rustup default` choice belong to this
    instance only. The host rustup binaries (proxies) stay on PATH and follow
    RUSTUP_HOME.
    """
    if environment.backend == "docker":
        environment.add_path("$HOME/.cargo/bin")
    else:
        assert environment.workspace is not None
        home = environment.workspace / RUST_HOME
        environment.set_env("RUSTUP_HOME", str(home / "rustup"))
        environment.set_env("CARGO_HOME", str(home / "cargo"))
        environment.add_path(str(Path.home() / ".cargo" / "bin"))
        environment.add_path(str(home / "cargo" / "bin"))
    script = "\n".join(toolchain_commands(dict(step.options)))
    return environment.execute(script, env=step.env, timeout=timeout, cancel=cancel)
