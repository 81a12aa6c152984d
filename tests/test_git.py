import shutil
import subprocess
import sys
import textwrap

import pytest
from click.testing import CliRunner

from flowci.cli import cli
from flowci.git import changed_files, current_ref

pytestmark = [
    pytest.mark.skipif(shutil.which("git") is None, reason="git not installed"),
    pytest.mark.skipif(sys.platform == "win32", reason="uses a POSIX shell"),
]


def _git(repo, *args):
    subprocess.run(
        ["git", "-c", "user.name=flowci", "-c", "user.email=flowci@example.com", *args],
        cwd=repo, check=True, capture_output=True,
    )


@pytest.fixture
def repo(tmp_path):
    root = tmp_path / "repo"
    root.mkdir()
    _git(root, "init", "-q", "-b", "main")
    (root / "README.md").write_text("hello\n")
    (root / "flowci.yml").write_text(textwrap.dedent("""
        on:
          push:
            paths: ["src/*"]
        jobs:
          test:
            runs-on: ubuntu-latest
            steps:
              - run: echo tested
    """))
    _git(root, "add", ".")
    _git(root, "commit", "-q", "-m", "init")
    return root


def _commit(repo, path, text):
    target = repo / path
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(text)
    _git(repo, "add", ".")
    _git(repo, "commit", "-q", "-m", f"change {path}")


def test_changed_files(repo):
    _commit(repo, "src/lib.rs", "fn main() {}\n")
    assert changed_files("HEAD~1", cwd=repo) == ["src/lib.rs"]
    assert changed_files("HEAD", cwd=repo) == []


def test_current_ref(repo):
    assert current_ref(repo) == "refs/heads/main"


def test_run_since_fills_changed_paths(repo, tmp_path):
    runner = CliRunner()
    args = ["run", str(repo / "flowci.yml"), "--since", "HEAD~1", "--work-dir", str(tmp_path / "w")]

    _commit(repo, "README.md", "docs only\n")
    res = runner.invoke(cli, args)
    assert res.exit_code == 0
    assert "not triggered" in res.output

    _commit(repo, "src/lib.rs", "fn main() {}\n")
    res = runner.invoke(cli, args)
    assert res.exit_code == 0, res.output
    assert "Pipeline: SUCCESS" in res.output


def test_run_since_unknown_ref(repo):
    res = CliRunner().invoke(cli, ["run", str(repo / "flowci.yml"), "--since", "no-such-ref"])
    assert res.exit_code == 1
    assert "Cannot compute changed files" in res.output
