# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass(eq=False)
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - per-instance diagnostics in the run result
      - debugging without full tracebacks
    """
    message: str
    job: str | None = None
    step: str | None = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> str:
        return type(self).__name__

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


# ----------------------------------------------------------------------
# Pre-execution errors: abort the whole run, nothing executes
# ----------------------------------------------------------------------

class DefinitionError(CIError):
    pass


class MalformedDefinition(DefinitionError):
    """The document could not be parsed into a pipeline structure."""


class InvalidJobSpec(DefinitionError):
    """The document parsed but violates a semantic rule."""


class InvalidTriggerSpec(DefinitionError):
    """The document declares an event kind we do not know."""


# ----------------------------------------------------------------------
# Per-instance errors: recorded on the job result, siblings keep going
# ----------------------------------------------------------------------

class JobError(CIError):
    pass


class ProvisioningError(JobError):
    """A setup action failed (or has no handler)."""


class StepFailure(JobError):
    """A command step exited non-zero."""

    @property
    def exit_code(self) -> int | None:
        return self.details.get("exit_code")


class Timeout(JobError):
    pass


class Aborted(JobError):
    pass
