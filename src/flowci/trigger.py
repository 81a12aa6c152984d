# trigger.py
from __future__ import annotations

from dataclasses import dataclass
from fnmatch import fnmatch
from typing import Iterable, Optional, Tuple

from .errors import InvalidTriggerSpec
from .model import PipelineDefinition, Trigger

KNOWN_EVENTS = ("push", "pull_request", "workflow_dispatch", "schedule")


@dataclass(frozen=True)
class Event:
    """An incoming event: kind (e.g. "push") + git ref metadata."""
    kind: str
    ref: str | None = None
    sha: str | None = None
    changed_files: Optional[Tuple[str, ...]] = None

    @property
    def branch(self) -> str | None:
        if self.ref and self.ref.startswith("refs/heads/"):
            return self.ref[len("refs/heads/"):]
        if self.ref and not self.ref.startswith("refs/"):
            return self.ref
        return None

    @property
    def tag(self) -> str | None:
        if self.ref and self.ref.startswith("refs/tags/"):
            return self.ref[len("refs/tags/"):]
        return None


def check_trigger(trigger: Trigger) -> None:
    if trigger.event not in KNOWN_EVENTS:
        raise InvalidTriggerSpec(
            f"Unknown event kind {trigger.event!r}",
            details={"known_events": list(KNOWN_EVENTS)},
        )


def _matches_any(value: str, patterns: Iterable[str]) -> bool:
    return any(fnmatch(value, p) for p in patterns)


def matches(trigger: Trigger, event: Event) -> bool:
    check_trigger(trigger)
    if trigger.event != event.kind:
        return False

    # A push to a tag is filtered by `tags`, a push to a branch by `branches`.
    # When only one of the two filters is declared, the other ref type never matches.
    if trigger.branches or trigger.tags:
        if event.tag is not None:
            if not trigger.tags or not _matches_any(event.tag, trigger.tags):
                return False
        elif event.branch is not None:
            if not trigger.branches or not _matches_any(event.branch, trigger.branches):
                return False
        else:
            return False

    # No file list on the event means "unknown", which never filters the run out.
    if trigger.paths and event.changed_files is not None:
        if not any(_matches_any(f, trigger.paths) for f in event.changed_files):
            return False

    return True


def evaluate(definition: PipelineDefinition, event: Event) -> bool:
    """Should `event` start a run of `definition`? Pure."""
    for t in definition.triggers:
        check_trigger(t)
    return any(matches(t, event) for t in definition.triggers)
