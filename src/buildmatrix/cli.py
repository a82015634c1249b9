# cli.py
from __future__ import annotations

import subprocess
import sys
from pathlib import Path

import click

from buildmatrix.collaborators import (
    Collaborators,
    DirectoryCheckout,
    GitCheckout,
    default_collaborators,
)
from buildmatrix.errors import ConfigurationError
from buildmatrix.git_facts.git import repo_root
from buildmatrix.notify import ConsoleNotifier, NotificationMetadata, WebhookNotifier
from buildmatrix.runner import Workflow, load_workflow, plan_jobs, run_pipeline
from buildmatrix.settings import Settings
from buildmatrix.ui.console import Console, get_console, set_console
from buildmatrix.workers import local_worker

DEFAULT_WORKFLOW = "buildmatrix_workflow.py"

EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


class WorkflowDiscoveryError(ConfigurationError):
    """No usable workflow file; reported like any other configuration problem."""

    def __init__(self, title: str, message: str, details: list[str] | None = None):
        super().__init__(message)
        self.title = title
        self.details = details or []


def find_workflow_files(directory: Path = Path(".")) -> list[Path]:
    """Candidates in `directory`: the default workflow first, then every *_matrix.py."""
    default = directory / DEFAULT_WORKFLOW
    matrices = sorted(p for p in directory.glob("*_matrix.py") if p.is_file())
    return ([default] if default.is_file() else []) + matrices


def discover_workflow(workflow_arg: str | None, directory: Path = Path(".")) -> Path:
    """
    Pick the workflow file to load.

    An explicit --workflow always wins (the .py suffix may be left off).
    Otherwise buildmatrix_workflow.py is used when present, else the one
    *_matrix.py in the directory. Anything else is a WorkflowDiscoveryError.
    """
    if workflow_arg:
        path = Path(workflow_arg)
        if not path.exists() and path.suffix != ".py":
            path = path.with_name(path.name + ".py")
        if not path.is_file():
            raise WorkflowDiscoveryError(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
            )
        return path

    candidates = find_workflow_files(directory)
    if directory / DEFAULT_WORKFLOW in candidates:
        return directory / DEFAULT_WORKFLOW
    if len(candidates) == 1:
        return candidates[0]
    if not candidates:
        raise WorkflowDiscoveryError(
            "No workflow file found",
            f"Nothing to run in {directory.resolve()}.",
            details=["Looked for:", f"  {DEFAULT_WORKFLOW}", "  *_matrix.py"],
        )
    raise WorkflowDiscoveryError(
        "Multiple matrix files found",
        "More than one *_matrix.py and no default workflow; pick one with --workflow:",
        details=[f"  {p.name}" for p in candidates],
    )


def build_collaborators(workflow: Workflow, settings: Settings) -> Collaborators:
    collaborators = default_collaborators(
        timeout=settings.step_timeout,
        artifact_root=settings.work_dir / "artifacts",
    )
    for name, step in workflow.extra_steps.items():
        collaborators.registry.register(name, step)
    return collaborators


def choose_checkout(mode: str, source: Path, stash_dir: Path):
    if mode == "dir":
        return DirectoryCheckout(source=source, stash_dir=stash_dir)
    if mode == "git":
        return GitCheckout(repo=source, stash_dir=stash_dir)
    try:
        repo_root(cwd=source)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return DirectoryCheckout(source=source, stash_dir=stash_dir)
    return GitCheckout(repo=source, stash_dir=stash_dir)


def _config_error(e: ConfigurationError) -> None:
    if isinstance(e, WorkflowDiscoveryError):
        get_console().print_error(
            e.title,
            str(e),
            details=e.details,
            suggestion="Specify a workflow explicitly:\n  buildmatrix run --workflow my_matrix.py",
        )
    else:
        get_console().print_error(
            "Invalid build matrix",
            str(e),
            suggestion="Fix the workflow file; nothing was scheduled.",
        )
    sys.exit(EXIT_CONFIG)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """buildmatrix: expand a build matrix and run every job in parallel."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@click.pass_context
def plan(ctx, workflow):
    """Expand the matrix and list the jobs without running them."""
    console = get_console()

    try:
        workflow_path = discover_workflow(workflow)
        wf = load_workflow(workflow_path)
        settings = Settings.from_env()
        descriptors = plan_jobs(wf.matrix, build_collaborators(wf, settings))
    except ConfigurationError as e:
        _config_error(e)
        return
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)

    console.print_header(f"PLAN: {len(descriptors)} job(s) from {workflow_path.name}")
    for d in descriptors:
        console.print_plan_job(d.id, d.requirement.expression())


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@click.option("--workers", "max_workers", default=None, type=int, help="Maximum number of jobs in flight")
@click.option("--work-dir", default=None, type=click.Path(path_type=Path), help="Workspaces, stash and artifacts")
@click.option("--source", default=".", show_default=True, type=click.Path(path_type=Path), help="Source tree to build")
@click.option(
    "--checkout",
    "checkout_mode",
    type=click.Choice(["auto", "git", "dir"]),
    default="auto",
    show_default=True,
    help="git: stash HEAD with git archive; dir: stash the directory as is",
)
@click.option("--webhook", default=None, help="POST the result to this URL")
@click.option("--job-name", default=None, help="Pipeline name used in notifications")
@click.option("--build-number", default=None, help="Build number used in notifications")
@click.option("--branch", default=None, help="Branch used in notifications")
@click.pass_context
def run(ctx, workflow, max_workers, work_dir, source, checkout_mode, webhook, job_name, build_number, branch):
    """Run every job of the build matrix."""
    console = get_console()

    try:
        workflow_path = discover_workflow(workflow)
        settings = Settings.from_env(cwd=source).override(
            work_dir=work_dir,
            webhook_url=webhook,
            job_name=job_name,
            build_number=build_number,
            branch=branch,
        )
        wf = load_workflow(workflow_path)
        collaborators = build_collaborators(wf, settings)
        workers = wf.workers or [local_worker(settings.work_dir / "workspaces")]
        notifier = WebhookNotifier(settings.webhook_url) if settings.webhook_url else ConsoleNotifier()
        checkout = choose_checkout(checkout_mode, source.resolve(), settings.work_dir / "stash")

        console.print_run_started(
            job_name=settings.job_name,
            build_number=settings.build_number,
            branch=settings.branch,
            workflow=workflow_path.name,
            job_count=len(plan_jobs(wf.matrix, collaborators)),
        )
        for w in workers:
            console.print_debug(f"worker {w.name}: {sorted(w.capabilities)} x{w.executors}")

        result = run_pipeline(
            wf.matrix,
            workers=workers,
            checkout=checkout,
            collaborators=collaborators,
            notifier=notifier,
            metadata=NotificationMetadata(
                job_name=settings.job_name,
                build_number=settings.build_number,
                branch=settings.branch,
            ),
            max_workers=max_workers,
        )
    except ConfigurationError as e:
        _config_error(e)
        return
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)

    if not result.succeeded:
        sys.exit(EXIT_FAILED)


if __name__ == "__main__":
    cli()
