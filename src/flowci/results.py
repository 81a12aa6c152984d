# results.py
from __future__ import annotations

import enum
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

from .errors import JobError
from .model import JobInstance, Step

InstanceKey = Tuple[str, Tuple[object, ...]]


class JobState(str, enum.Enum):
    PENDING = "pending"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED)


_TRANSITIONS = {
    JobState.PENDING: {JobState.PROVISIONING, JobState.FAILED},
    JobState.PROVISIONING: {JobState.RUNNING, JobState.FAILED},
    JobState.RUNNING: {JobState.SUCCEEDED, JobState.FAILED},
    JobState.SUCCEEDED: set(),
    JobState.FAILED: set(),
}


@dataclass
class StepResult:
    step: Step
    succeeded: bool
    output: str = ""
    exit_code: int | None = None
    duration: float = 0.0
    error: Optional[JobError] = None

    @property
    def status(self) -> str:
        return "succeeded" if self.succeeded else "failed"


@dataclass
class JobResult:
    """Per-run mutable record of one job instance."""
    instance: JobInstance
    state: JobState = JobState.PENDING
    steps: List[StepResult] = field(default_factory=list)
    error: Optional[JobError] = None

    def transition(self, new: JobState) -> None:
        if new not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"[{self.instance.id}] invalid state transition {self.state.value} -> {new.value}"
            )
        self.state = new

    def fail(self, error: JobError) -> None:
        self.error = error
        self.transition(JobState.FAILED)

    @property
    def succeeded(self) -> bool:
        return self.state is JobState.SUCCEEDED

    @property
    def failed_step(self) -> Optional[str]:
        if self.error is not None and self.error.step:
            return self.error.step
        for r in self.steps:
            if not r.succeeded:
                return r.step.label
        return None

    @property
    def log(self) -> str:
        """Captured output of every step that ran, in order."""
        chunks = []
        for r in self.steps:
            chunks.append(f"--- {r.step.label} ({r.status})")
            if r.output:
                chunks.append(r.output.rstrip("\n"))
        return "\n".join(chunks)


class RunResult:
    """
    Job instance -> JobResult for one pipeline run.

    Results are keyed by `JobInstance.key` (job name + axis values); the
    display id ("test (macos-latest)") works for lookups too.
    The pipeline fails iff any instance failed; no instances is a success.
    """

    def __init__(self, triggered: bool = True):
        self.triggered = triggered
        self._results: Dict[InstanceKey, JobResult] = {}
        self._ids: Dict[str, InstanceKey] = {}
        self._lock = threading.Lock()

    def add(self, result: JobResult) -> None:
        key = result.instance.key
        with self._lock:
            if key in self._results:
                raise ValueError(f"Duplicate job instance: {result.instance.id}")
            self._results[key] = result
            self._ids.setdefault(result.instance.id, key)

    def _key(self, instance: Union[str, InstanceKey]) -> InstanceKey:
        if isinstance(instance, str):
            return self._ids[instance]
        return instance

    def __getitem__(self, instance: Union[str, InstanceKey]) -> JobResult:
        return self._results[self._key(instance)]

    def __contains__(self, instance: object) -> bool:
        try:
            return self._key(instance) in self._results
        except (KeyError, TypeError):
            return False

    def __iter__(self):
        return iter(self._results.values())

    def __len__(self) -> int:
        return len(self._results)

    @property
    def statuses(self) -> Dict[str, JobState]:
        return {r.instance.id: r.state for r in self._results.values()}

    @property
    def failures(self) -> List[JobResult]:
        return [r for r in self._results.values() if r.state is JobState.FAILED]

    @property
    def succeeded(self) -> bool:
        return all(r.succeeded for r in self._results.values())

    @property
    def status(self) -> str:
        return "success" if self.succeeded else "failure"

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    def by_job(self) -> Dict[str, bool]:
        """Same AND, per top-level job."""
        out: Dict[str, bool] = {}
        for r in self._results.values():
            out[r.instance.name] = out.get(r.instance.name, True) and r.succeeded
        return out
