# environment.py
"""
Execution environments: one ephemeral sandbox per job instance.

Backends:
  - local:  a fresh workspace directory on the host; commands run there
  - docker: a long-lived container (one per instance) with the workspace
            bind-mounted, so tool installs survive from step to step

`provision()` is the only way the runner gets an environment, and it
always tears it down, whatever happens inside the `with` block.
"""
from __future__ import annotations

import os
import re
import shutil
import signal
import subprocess
import tempfile
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Protocol

from .config import RunnerConfig
from .errors import ProvisioningError, StepFailure
from .model import JobInstance

POLL_INTERVAL = 0.1
SHELL = "sh"
CONTAINER_WORKSPACE = "/workspace"


class CancelToken(Protocol):
    def is_set(self) -> bool: ...


@dataclass
class CommandResult:
    exit_code: int | None
    output: str = ""
    duration: float = 0.0
    timed_out: bool = False
    aborted: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.aborted


def platform_os(label: str) -> str:
    """`macos-latest` -> `macOS` (the RUNNER_OS convention)."""
    lowered = label.lower()
    if lowered.startswith(("macos", "osx")):
        return "macOS"
    if lowered.startswith("windows"):
        return "Windows"
    return "Linux"


def _slug(text: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "-", text).strip("-") or "job"


def _tail(text: str, limit: int) -> str:
    if limit and len(text) > limit:
        return text[-limit:]
    return text


def _kill(proc: subprocess.Popen) -> None:
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass


def _wait(
    proc: subprocess.Popen,
    *,
    timeout: float | None,
    cancel: Optional[CancelToken],
) -> CommandResult:
    """
    Wait for proc, polling so a timeout or a cancel request can kill it.
    communicate() may be retried after TimeoutExpired without losing output.
    """
    started = time.monotonic()
    deadline = started + timeout if timeout is not None else None
    timed_out = aborted = False

    while True:
        try:
            out, _ = proc.communicate(timeout=POLL_INTERVAL)
            break
        except subprocess.TimeoutExpired:
            pass

        if cancel is not None and cancel.is_set():
            aborted = True
        elif deadline is not None and time.monotonic() >= deadline:
            timed_out = True
        else:
            continue

        _kill(proc)
        out, _ = proc.communicate()
        break

    return CommandResult(
        exit_code=proc.returncode,
        output=out or "",
        duration=time.monotonic() - started,
        timed_out=timed_out,
        aborted=aborted,
    )


class ExecutionEnvironment:
    """Base sandbox: workspace directory + env vars + PATH additions."""

    backend = "base"

    def __init__(self, instance: JobInstance, config: RunnerConfig):
        self.instance = instance
        self.config = config
        self.workspace: Optional[Path] = None
        self.exports: Dict[str, str] = {}
        self.path_entries: List[str] = []

    @property
    def platform(self) -> str:
        return self.instance.platform

    @property
    def source_dir(self) -> Optional[Path]:
        return self.config.source_dir

    @property
    def workspace_path(self) -> str:
        """Workspace path as seen by commands."""
        return str(self.workspace)

    # -- state visible to later steps --------------------------------

    def set_env(self, key: str, value: str) -> None:
        self.exports[key] = value

    def add_path(self, entry: str) -> None:
        if entry not in self.path_entries:
            self.path_entries.insert(0, entry)

    def base_env(self) -> Dict[str, str]:
        env = {
            "CI": "true",
            "FLOWCI": "true",
            "FLOWCI_JOB": self.instance.name,
            "FLOWCI_INSTANCE": self.instance.id,
            "FLOWCI_PLATFORM": self.platform,
            "FLOWCI_WORKSPACE": self.workspace_path,
            "RUNNER_OS": platform_os(self.platform),
        }
        env.update(self.instance.env)
        env.update(self.exports)
        return env

    # -- lifecycle ------------------------------------------------------

    def _make_workspace(self) -> Path:
        root = self.config.work_dir
        if root is not None:
            Path(root).mkdir(parents=True, exist_ok=True)
        path = tempfile.mkdtemp(prefix=f"flowci-{_slug(self.instance.id)}-", dir=root)
        return Path(path)

    def start(self) -> None:
        raise NotImplementedError

    def execute(
        self,
        command: str,
        *,
        env: Optional[Dict[str, str]] = None,
        cwd: str | None = None,
        timeout: float | None = None,
        cancel: Optional[CancelToken] = None,
    ) -> CommandResult:
        raise NotImplementedError

    def teardown(self) -> None:
        """Release everything. Must be safe to call twice or after a failed start()."""
        if self.workspace is not None:
            shutil.rmtree(self.workspace, ignore_errors=True)
            self.workspace = None


class LocalEnvironment(ExecutionEnvironment):
    """Runs commands on the host in a private workspace directory."""

    backend = "local"

    def start(self) -> None:
        self.workspace = self._make_workspace()

    def execute(self, command, *, env=None, cwd=None, timeout=None, cancel=None) -> CommandResult:
        assert self.workspace is not None, "environment not started"

        workdir = (self.workspace / (cwd or ".")).resolve()
        if not workdir.exists():
            raise StepFailure(
                "Working directory not found",
                job=self.instance.id,
                details={"cwd": str(workdir)},
            )

        full_env = os.environ.copy()
        full_env.update(self.base_env())
        full_env.update(env or {})
        if self.path_entries:
            full_env["PATH"] = os.pathsep.join(self.path_entries + [full_env.get("PATH", "")])

        try:
            proc = subprocess.Popen(
                [SHELL, "-e", "-c", command],
                cwd=str(workdir),
                env=full_env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                start_new_session=(os.name == "posix"),
            )
        except FileNotFoundError as e:
            return CommandResult(exit_code=127, output=str(e))

        result = _wait(proc, timeout=timeout, cancel=cancel)
        result.output = _tail(result.output, self.config.output_limit)
        return result


def _check_docker_available(job: str) -> None:
    try:
        subprocess.run(["docker", "--version"], capture_output=True, check=True)
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        raise ProvisioningError(
            "Docker is not available",
            job=job,
            details={"hint": "Install Docker and ensure the daemon is running."},
        ) from e


class DockerEnvironment(ExecutionEnvironment):
    """One container per job instance; removed on teardown."""

    backend = "docker"

    def __init__(self, instance: JobInstance, config: RunnerConfig):
        super().__init__(instance, config)
        self.container: Optional[str] = None

    @property
    def workspace_path(self) -> str:
        return CONTAINER_WORKSPACE

    def start(self) -> None:
        image = self.config.docker_images.get(self.platform)
        if image is None:
            raise ProvisioningError(
                f"No docker image configured for platform '{self.platform}'",
                job=self.instance.id,
                details={"known_platforms": sorted(self.config.docker_images)},
            )
        _check_docker_available(self.instance.id)

        self.workspace = self._make_workspace()
        name = f"flowci-{_slug(self.instance.id)}-{uuid.uuid4().hex[:8]}"
        proc = subprocess.run(
            [
                "docker", "run", "-d", "--rm",
                "--name", name,
                "-v", f"{self.workspace}:{CONTAINER_WORKSPACE}",
                "-w", CONTAINER_WORKSPACE,
                image,
                "sleep", "infinity",
            ],
            capture_output=True,
            text=True,
        )
        if proc.returncode != 0:
            raise ProvisioningError(
                "Could not start container",
                job=self.instance.id,
                details={"image": image, "stderr": proc.stderr.strip()},
            )
        self.container = proc.stdout.strip()

    def execute(self, command, *, env=None, cwd=None, timeout=None, cancel=None) -> CommandResult:
        assert self.container is not None, "environment not started"

        container_cwd = f"{CONTAINER_WORKSPACE}/{cwd or '.'}".replace("//", "/")
        cmd = ["docker", "exec", "-w", container_cwd]
        full_env = self.base_env()
        full_env.update(env or {})
        for key, value in full_env.items():
            cmd.extend(["-e", f"{key}={value}"])

        script = command
        if self.path_entries:
            script = f'export PATH="{":".join(self.path_entries)}:$PATH"\n{command}'
        cmd.extend([self.container, SHELL, "-e", "-c", script])

        proc = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="replace",
            start_new_session=(os.name == "posix"),
        )
        result = _wait(proc, timeout=timeout, cancel=cancel)
        result.output = _tail(result.output, self.config.output_limit)
        return result

    def teardown(self) -> None:
        if self.container is not None:
            subprocess.run(["docker", "rm", "-f", self.container], capture_output=True)
            self.container = None
        super().teardown()


ENVIRONMENTS = {
    "local": LocalEnvironment,
    "docker": DockerEnvironment,
}


@contextmanager
def provision(instance: JobInstance, config: Optional[RunnerConfig] = None) -> Iterator[ExecutionEnvironment]:
    """
    Scoped acquisition of an environment for `instance`.

    Teardown runs on every exit path: success, step failure, abort,
    or an exception raised by start() itself.
    """
    config = config or RunnerConfig()
    environment = ENVIRONMENTS[config.backend](instance, config)
    try:
        environment.start()
        yield environment
    finally:
        environment.teardown()
