# runner.py
from __future__ import annotations

import runpy
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .collaborators import Checkout, Collaborators, ExtraStep
from .environment import EnvironmentComposer
from .errors import ConfigurationError, InfrastructureError
from .matrix import expand_matrix
from .model import BuildMatrix, JobDescriptor, JobOutcome, JobStatus, PipelineResult, StepRecord
from .notify import NotificationMetadata, Notifier, aggregate, notify_result
from .pipeline import run_job
from .scheduler import dispatch
from .ui.console import get_console
from .workers import Worker, WorkerPool

# checkout (once) ---> expand ---> dispatch jobs ---> aggregate ---> notify


# ----------------------------------------------------------------------
# Workflow loading (local file)
# ----------------------------------------------------------------------

@dataclass
class Workflow:
    matrix: BuildMatrix
    workers: Optional[List[Worker]] = None
    extra_steps: Dict[str, ExtraStep] = field(default_factory=dict)


def load_workflow(path: str | Path) -> Workflow:
    """
    Load a build matrix from a python file path.

    The file must define either:
      - workflow() -> BuildMatrix
      - MATRIX = BuildMatrix | [BuildCombination | dict, ...]

    and may define:
      - WORKERS = [Worker, ...]
      - EXTRA_STEPS = {"name": step, ...}
      - ENV_OVERRIDES = {"Linux && clang": ["CXX=clang++"]}   (only with a list MATRIX)
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"buildmatrix_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    matrix = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            matrix = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise TypeError(
                    "Your workflow() is being called with arguments (name collision with a helper). "
                    "Use the 'wf' helper instead: `from buildmatrix import wf, combination` then "
                    "`def workflow(): return wf(combination(...), ...)`"
                ) from e
            raise
    elif "MATRIX" in globals_dict:
        matrix = globals_dict["MATRIX"]

    if isinstance(matrix, (list, tuple)):
        matrix = BuildMatrix.from_entries(matrix, globals_dict.get("ENV_OVERRIDES"))
    if not isinstance(matrix, BuildMatrix):
        raise ConfigurationError(
            "Workflow must return/define a BuildMatrix. "
            "Define workflow() -> BuildMatrix or MATRIX = wf(...)."
        )

    workers = globals_dict.get("WORKERS")
    if workers is not None:
        workers = list(workers)
        if not all(isinstance(w, Worker) for w in workers):
            raise ConfigurationError("WORKERS must be a list of Worker (see buildmatrix.worker())")

    extra_steps = dict(globals_dict.get("EXTRA_STEPS") or {})
    return Workflow(matrix=matrix, workers=workers, extra_steps=extra_steps)


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def plan_jobs(matrix: BuildMatrix, collaborators: Optional[Collaborators] = None) -> List[JobDescriptor]:
    """
    Expand and validate without running anything. Raises ConfigurationError
    for a malformed matrix, an unknown extra step or an empty job set.
    """
    registry = collaborators.registry if collaborators is not None else None
    descriptors = expand_matrix(matrix, EnvironmentComposer(matrix.env_overrides), registry)
    if not descriptors:
        raise ConfigurationError(
            "The matrix expanded to zero jobs (no combinations, or no tools in any combination)"
        )
    return descriptors


def _unavailable(descriptors: Sequence[JobDescriptor], error: Exception) -> List[JobOutcome]:
    message = f"source snapshot unavailable: {type(error).__name__}: {error}"
    return [
        JobOutcome(
            job_id=d.id,
            status=JobStatus.FAILED,
            steps=(StepRecord(name="checkout", succeeded=False, log=str(error)),),
            error_kind=InfrastructureError.kind,
            error=message,
        )
        for d in descriptors
    ]


def run_pipeline(
    matrix: BuildMatrix,
    *,
    workers: Sequence[Worker],
    checkout: Checkout,
    collaborators: Collaborators,
    notifier: Notifier,
    metadata: NotificationMetadata,
    max_workers: Optional[int] = None,
    abort: Optional[threading.Event] = None,
) -> PipelineResult:
    """
    Run the whole matrix.

    Configuration problems raise ConfigurationError before the checkout and
    before any job starts; in that case nobody is notified. Everything that
    goes wrong afterwards is reported per job, and exactly one notification
    is sent.
    """
    console = get_console()
    descriptors = plan_jobs(matrix, collaborators)
    pool = WorkerPool(workers)

    console.print_step("checkout", "snapshot")
    try:
        snapshot = checkout.snapshot()
    except Exception as e:
        console.print_exception(e)
        outcomes = _unavailable(descriptors, e)
    else:
        if snapshot.revision:
            console.print_debug(f"source revision {snapshot.revision}")

        def run_one(descriptor: JobDescriptor, abort_event: threading.Event) -> JobOutcome:
            return run_job(
                descriptor,
                pool=pool,
                snapshot=snapshot,
                collaborators=collaborators,
                abort=abort_event,
            )

        outcomes = dispatch(descriptors, run_one, max_workers=max_workers, abort=abort)

    result = aggregate(outcomes)
    console.print_results(result.outcomes)
    notify_result(result, metadata, notifier)
    return result
