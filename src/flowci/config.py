# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Optional

BACKENDS = ("local", "docker")

DEFAULT_DOCKER_IMAGES: Dict[str, str] = {
    "ubuntu-latest": "ubuntu:24.04",
    "ubuntu-24.04": "ubuntu:24.04",
    "ubuntu-22.04": "ubuntu:22.04",
    "debian-latest": "debian:stable-slim",
}

# Captured output kept per step (tail), so huge logs do not sit in memory.
DEFAULT_OUTPUT_LIMIT = 64 * 1024


def _bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _images(value: str) -> Dict[str, str]:
    """FLOWCI_DOCKER_IMAGES="ubuntu-latest=ubuntu:24.04,alpine=alpine:3" """
    out: Dict[str, str] = {}
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        label, sep, image = item.partition("=")
        if not sep or not label.strip() or not image.strip():
            raise ValueError(f"Invalid FLOWCI_DOCKER_IMAGES entry: {item!r} (expected label=image)")
        out[label.strip()] = image.strip()
    return out


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


@dataclass(frozen=True)
class RunnerConfig:
    """Knobs for one pipeline run. CLI options override the FLOWCI_* env vars."""
    backend: str = "local"
    workers: int = field(default_factory=default_workers)
    work_dir: Optional[Path] = None  # None -> system temp dir
    source_dir: Optional[Path] = None  # what `actions/checkout` copies
    cancel_on_failure: bool = False
    output_limit: int = DEFAULT_OUTPUT_LIMIT
    docker_images: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_DOCKER_IMAGES))

    def __post_init__(self) -> None:
        if self.backend not in BACKENDS:
            raise ValueError(f"Unknown backend {self.backend!r}; expected one of {list(BACKENDS)}")
        if self.workers < 1:
            raise ValueError("workers must be >= 1")

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "RunnerConfig":
        env = os.environ if environ is None else environ
        kwargs = {}
        if env.get("FLOWCI_BACKEND"):
            kwargs["backend"] = env["FLOWCI_BACKEND"]
        if env.get("FLOWCI_WORKERS"):
            kwargs["workers"] = int(env["FLOWCI_WORKERS"])
        if env.get("FLOWCI_WORK_DIR"):
            kwargs["work_dir"] = Path(env["FLOWCI_WORK_DIR"])
        if env.get("FLOWCI_CANCEL_ON_FAILURE"):
            kwargs["cancel_on_failure"] = _bool(env["FLOWCI_CANCEL_ON_FAILURE"])
        if env.get("FLOWCI_OUTPUT_LIMIT"):
            kwargs["output_limit"] = int(env["FLOWCI_OUTPUT_LIMIT"])
        if env.get("FLOWCI_DOCKER_IMAGES"):
            images = dict(DEFAULT_DOCKER_IMAGES)
            images.update(_images(env["FLOWCI_DOCKER_IMAGES"]))
            kwargs["docker_images"] = images
        return cls(**kwargs)

    def override(self, **changes) -> "RunnerConfig":
        """replace() that ignores None values (unset CLI options)."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})
