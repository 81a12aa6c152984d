from pathlib import Path

import pytest

from flowci.config import DEFAULT_DOCKER_IMAGES, RunnerConfig


def test_defaults():
    cfg = RunnerConfig.from_env({})
    assert cfg.backend == "local"
    assert cfg.workers >= 1
    assert not cfg.cancel_on_failure
    assert cfg.docker_images == DEFAULT_DOCKER_IMAGES


def test_from_env():
    cfg = RunnerConfig.from_env({
        "FLOWCI_BACKEND": "docker",
        "FLOWCI_WORKERS": "3",
        "FLOWCI_WORK_DIR": "/tmp/flowci",
        "FLOWCI_CANCEL_ON_FAILURE": "yes",
        "FLOWCI_DOCKER_IMAGES": "alpine=alpine:3, ubuntu-latest=ubuntu:22.04",
    })
    assert cfg.backend == "docker"
    assert cfg.workers == 3
    assert cfg.work_dir == Path("/tmp/flowci")
    assert cfg.cancel_on_failure
    assert cfg.docker_images["alpine"] == "alpine:3"
    assert cfg.docker_images["ubuntu-latest"] == "ubuntu:22.04"


@pytest.mark.parametrize("environ", [
    {"FLOWCI_BACKEND": "kubernetes"},
    {"FLOWCI_WORKERS": "0"},
    {"FLOWCI_DOCKER_IMAGES": "no-equals-sign"},
])
def test_invalid_env(environ):
    with pytest.raises(ValueError):
        RunnerConfig.from_env(environ)


def test_override_ignores_unset_options():
    cfg = RunnerConfig.from_env({"FLOWCI_WORKERS": "2"})
    assert cfg.override(workers=None, backend=None).workers == 2
    assert cfg.override(workers=5).workers == 5
