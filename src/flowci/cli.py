# cli.py
from __future__ import annotations

import subprocess
import sys
import threading
from pathlib import Path

import click

from .config import BACKENDS, RunnerConfig
from .dag import stages
from .errors import DefinitionError
from .git import changed_files as git_changed_files
from .git import current_ref, head_sha, repo_root
from .loader import load_file
from .matrix import expand_all
from .runner import run_pipeline
from .trigger import KNOWN_EVENTS, Event
from .ui.console import Console, get_console, set_console

DEFAULT_PIPELINE_FILES = ("flowci.yml", "flowci.yaml", ".flowci.yml", ".flowci.yaml")

EXIT_DEFINITION_ERROR = 2


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Pipeline file from the argument, or the first default name present.

    Raises:
        SystemExit: If no pipeline file can be found
    """
    console = get_console()

    if pipeline_arg:
        path = Path(pipeline_arg)
        if not path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {pipeline_arg}",
                suggestion="Create a pipeline file or specify a different path:\n  flowci run path/to/pipeline.yml",
            )
            sys.exit(1)
        return path

    for name in DEFAULT_PIPELINE_FILES:
        path = Path(name)
        if path.exists():
            return path

    console.print_error(
        "No pipeline file found",
        "Could not find a pipeline file.",
        details=["Looked for:", *(f"  {n}" for n in DEFAULT_PIPELINE_FILES)],
        suggestion="Create flowci.yml or pass a path:\n  flowci run path/to/pipeline.yml",
    )
    sys.exit(1)


def _load(path: Path):
    try:
        return load_file(path)
    except DefinitionError as e:
        _report_definition_error(path, e)
        sys.exit(EXIT_DEFINITION_ERROR)


def _report_definition_error(path: Path, e: DefinitionError) -> None:
    details = []
    if e.job:
        details.append(f"job: {e.job}")
    if e.step:
        details.append(f"step: {e.step}")
    for k, v in e.details.items():
        if isinstance(v, list):
            details.append(f"{k}:")
            details.extend(f"  {item}" for item in v)
        else:
            details.append(f"{k}: {v}")
    get_console().print_error(f"{e.kind} in {path}", e.message, details=details or None)


def _git_default(fn, cwd: Path):
    try:
        return fn(cwd)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """flowci: run a CI pipeline document locally, matrix and all."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("pipeline", required=False)
@click.option("--event", "event_kind", default="push", show_default=True, type=click.Choice(KNOWN_EVENTS),
              help="Event kind that triggers the run")
@click.option("--ref", default=None, help="Git ref of the event (defaults to the current branch)")
@click.option("--sha", default=None, help="Commit SHA of the event (defaults to HEAD)")
@click.option("--changed-file", "changed_files", multiple=True, help="Changed path, for 'paths' trigger filters")
@click.option("--since", default=None, help="Add the files changed between this ref and HEAD to the changed paths")
@click.option("--backend", default=None, type=click.Choice(BACKENDS), help="Execution environment backend")
@click.option("--workers", default=None, type=int, help="Number of job instances run in parallel")
@click.option("--work-dir", default=None, type=click.Path(file_okay=False), help="Where workspaces are created")
@click.option("--source", default=None, type=click.Path(file_okay=False, exists=True),
              help="Directory actions/checkout copies (defaults to the repository root)")
@click.option("--cancel-on-failure/--no-cancel-on-failure", default=None,
              help="Abort every other job instance after the first failure")
@click.pass_context
def run(ctx, pipeline, event_kind, ref, sha, changed_files, since, backend, workers, work_dir, source, cancel_on_failure):
    """Run a pipeline for an event."""
    console = get_console()
    path = discover_pipeline(pipeline)
    definition = _load(path)

    base = path.resolve().parent
    source_dir = Path(source).resolve() if source else (_git_default(repo_root, base) or base)

    try:
        config = RunnerConfig.from_env().override(
            backend=backend,
            workers=workers,
            work_dir=Path(work_dir) if work_dir else None,
            source_dir=source_dir,
            cancel_on_failure=cancel_on_failure,
        )
    except ValueError as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(EXIT_DEFINITION_ERROR)

    changed = list(changed_files)
    if since:
        diff = _git_default(lambda cwd: git_changed_files(since, cwd=cwd), source_dir)
        if diff is None:
            console.print_error(
                "Cannot compute changed files",
                f"git diff against '{since}' failed in {source_dir}",
                suggestion="Check that the ref exists, or pass paths with --changed-file",
            )
            sys.exit(1)
        changed.extend(p for p in diff if p not in changed)

    event = Event(
        kind=event_kind,
        ref=ref or _git_default(current_ref, source_dir),
        sha=sha or _git_default(head_sha, source_dir),
        changed_files=tuple(changed) if changed or since else None,
    )
    console.print_debug(f"event={event} backend={config.backend} workers={config.workers}")

    cancel = threading.Event()
    try:
        results = run_pipeline(definition, event, config=config, cancel=cancel, console=console)
    except KeyboardInterrupt:
        cancel.set()
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except DefinitionError as e:
        _report_definition_error(path, e)
        sys.exit(EXIT_DEFINITION_ERROR)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    for failed in results.failures:
        console.print_job_log(failed)

    sys.exit(results.exit_code)


@cli.command()
@click.argument("pipeline", required=False)
def plan(pipeline):
    """Show the job instances a run would execute, by stage."""
    console = get_console()
    path = discover_pipeline(pipeline)
    definition = _load(path)

    instances = expand_all(definition)
    by_job: dict[str, list[str]] = {}
    for inst in instances:
        by_job.setdefault(inst.name, []).append(f"{inst.id} [{inst.platform}]")

    console.print_plan([
        [line for name in stage for line in by_job.get(name, [])]
        for stage in stages(definition.jobs)
    ])


@cli.command()
@click.argument("pipeline", required=False)
def validate(pipeline):
    """Load and validate a pipeline without running it."""
    console = get_console()
    path = discover_pipeline(pipeline)
    definition = _load(path)
    instances = expand_all(definition)
    console.print_info(f"OK: {path} ({len(definition.jobs)} jobs, {len(instances)} job instances)")


if __name__ == "__main__":
    cli()
