# pipeline.py
from __future__ import annotations

import shutil
import threading
import time
import traceback
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Type

from .collaborators import Collaborators, SourceSnapshot, Workspace, slugify
from .environment import materialize
from .errors import (
    BuildError,
    ExtraStepError,
    InfrastructureError,
    JobError,
    TestError,
)
from .model import JobDescriptor, JobOutcome, JobStatus, StepRecord, StepResult
from .ui.console import get_console
from .workers import Worker, WorkerPool

# Steps of one job, in order:
#   lease worker slot -> acquire workspace -> restore source -> build
#   -> test -> extra steps (declared order) -> release workspace
#
# Release always runs once the workspace directory may exist, whatever
# happened before it. Every failure ends up in the JobOutcome; nothing
# raised here reaches the scheduler.


def workspace_path(worker: Worker, descriptor: JobDescriptor) -> Path:
    return worker.root / slugify(descriptor.id)


def release_workspace(path: Path) -> Optional[str]:
    """Remove a workspace. Safe to call twice. Returns an error message instead of raising."""
    if not path.exists():
        return None
    try:
        shutil.rmtree(path)
    except OSError as e:
        return f"could not remove workspace {path}: {e}"
    return None


class JobRun:
    """State of one job while it executes: the steps recorded so far."""

    def __init__(
        self,
        descriptor: JobDescriptor,
        *,
        abort: Optional[threading.Event] = None,
    ):
        self.descriptor = descriptor
        self.abort = abort
        self.steps: List[StepRecord] = []
        self.console = get_console()

    def check_abort(self) -> None:
        if self.abort is not None and self.abort.is_set():
            raise InfrastructureError(job_id=self.descriptor.id, message="pipeline aborted")

    def step(
        self,
        name: str,
        fn: Callable[[], StepResult],
        error_cls: Type[JobError],
    ) -> StepResult:
        """
        Run one collaborator call and record it.

        An unsuccessful result or a crash inside the collaborator raises
        error_cls for this job only.
        """
        self.check_abort()
        self.console.print_step(self.descriptor.id, name)
        started = time.monotonic()
        try:
            result = fn()
        except JobError:
            raise
        except Exception as e:
            self.steps.append(
                StepRecord(
                    name=name,
                    succeeded=False,
                    log=traceback.format_exc(),
                    duration=time.monotonic() - started,
                )
            )
            raise error_cls(
                job_id=self.descriptor.id,
                message=f"{name} crashed: {type(e).__name__}: {e}",
            ) from e

        self.steps.append(
            StepRecord(
                name=name,
                succeeded=result.success,
                log=result.log,
                artifacts=tuple(result.artifacts),
                duration=time.monotonic() - started,
            )
        )
        if not result.success:
            raise error_cls(job_id=self.descriptor.id, message=f"{name} failed")
        return result

    def record(self, name: str, succeeded: bool, log: str = "") -> None:
        self.steps.append(StepRecord(name=name, succeeded=succeeded, log=log))


@contextmanager
def acquire_workspace(run: JobRun, worker: Worker) -> Iterator[Workspace]:
    """Clean, exclusive directory for the job; removed again on every exit path."""
    descriptor = run.descriptor
    path = workspace_path(worker, descriptor)
    run.check_abort()
    run.console.print_step(descriptor.id, "acquire workspace")

    try:
        try:
            if path.exists():
                # leftovers from an earlier run of the same job
                shutil.rmtree(path)
            path.mkdir(parents=True)
        except OSError as e:
            run.record("acquire workspace", False, str(e))
            raise InfrastructureError(
                job_id=descriptor.id,
                message=f"could not acquire workspace {path}: {e}",
            ) from e
        run.record("acquire workspace", True, str(path))

        yield Workspace(
            path=path,
            job_id=descriptor.id,
            worker=worker.name,
            build_type=descriptor.build_type,
            os_class=descriptor.os_class,
        )
    finally:
        run.console.print_step(descriptor.id, "release workspace")
        error = release_workspace(path)
        run.record("release workspace", error is None, error or "")


def _execute(
    run: JobRun,
    ws: Workspace,
    snapshot: SourceSnapshot,
    collaborators: Collaborators,
) -> None:
    d = run.descriptor

    def restore() -> StepResult:
        snapshot.materialize(ws.path)
        return StepResult(success=True, log=f"restored {snapshot.archive} into {ws.path}")

    run.step("restore source", restore, InfrastructureError)
    env = materialize(d.environment, ws.path)

    run.step(
        "build",
        lambda: collaborators.builder.build(ws, d.build_type, d.configure_args, env),
        BuildError,
    )
    run.step("test", lambda: collaborators.tester.test(ws, env), TestError)

    for name in d.extra_steps:
        extra = collaborators.registry.resolve(name)

        def run_extra(extra=extra) -> StepResult:
            result = extra.run(ws)
            if result.success and result.artifacts and collaborators.artifacts is not None:
                stored = collaborators.artifacts.archive(d.id, list(result.artifacts))
                return StepResult(success=True, log=result.log, artifacts=tuple(stored))
            return result

        run.step(name, run_extra, ExtraStepError)


def _error_text(e: JobError) -> str:
    if not e.details:
        return e.message
    extra = ", ".join(f"{k}={v}" for k, v in e.details.items())
    return f"{e.message} ({extra})"


def run_job(
    descriptor: JobDescriptor,
    *,
    pool: WorkerPool,
    snapshot: SourceSnapshot,
    collaborators: Collaborators,
    abort: Optional[threading.Event] = None,
) -> JobOutcome:
    """Execute one job end to end and report how it went. Never raises."""
    run = JobRun(descriptor, abort=abort)
    started = time.monotonic()
    worker_name: Optional[str] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None

    try:
        with pool.lease(descriptor.id, descriptor.requirement, abort) as w:
            worker_name = w.name
            run.console.print_job_start(descriptor.id, w.name)
            with acquire_workspace(run, w) as ws:
                _execute(run, ws, snapshot, collaborators)
    except JobError as e:
        error_kind, error = e.kind, _error_text(e)
    except Exception as e:
        # a bug in a collaborator or in the pipeline itself; still only this job
        error_kind, error = "crash", f"{type(e).__name__}: {e}"
        run.record("crash", False, traceback.format_exc())

    cleanup_failed = any(s.name == "release workspace" and not s.succeeded for s in run.steps)
    if error is None and cleanup_failed:
        error_kind, error = InfrastructureError.kind, "workspace cleanup failed"

    status = JobStatus.SUCCEEDED if error is None else JobStatus.FAILED
    run.console.print_job_finished(descriptor.id, status.value, error)
    return JobOutcome(
        job_id=descriptor.id,
        status=status,
        steps=tuple(run.steps),
        error_kind=error_kind,
        error=error,
        worker=worker_name,
        duration=time.monotonic() - started,
    )
