# scheduler.py
from __future__ import annotations

import threading
import time
import traceback
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Callable, Dict, List, Optional, Sequence

from .errors import ConfigurationError
from .model import JobDescriptor, JobOutcome, JobStatus, StepRecord
from .ui.console import get_console

RunFn = Callable[[JobDescriptor, threading.Event], JobOutcome]


def _crashed(descriptor: JobDescriptor, exc: BaseException) -> JobOutcome:
    tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return JobOutcome(
        job_id=descriptor.id,
        status=JobStatus.FAILED,
        steps=(StepRecord(name="crash", succeeded=False, log=tb),),
        error_kind="crash",
        error=f"{type(exc).__name__}: {exc}",
    )


def dispatch(
    descriptors: Sequence[JobDescriptor],
    run_fn: RunFn,
    *,
    max_workers: Optional[int] = None,
    abort: Optional[threading.Event] = None,
) -> List[JobOutcome]:
    """
    Run every descriptor concurrently and return one outcome per descriptor,
    in descriptor order.

    There is no fail-fast: a failed or crashed job is recorded and the rest
    keep going. Ctrl-C sets `abort`, drops jobs that have not started, waits
    for running jobs to clean up at their next step boundary and re-raises.
    """
    descriptors = list(descriptors)
    ids = [d.id for d in descriptors]
    if len(set(ids)) != len(ids):
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        raise ConfigurationError(f"Duplicate job ids: {dupes}")
    if not descriptors:
        return []

    if abort is None:
        abort = threading.Event()
    if max_workers is None:
        max_workers = len(descriptors)

    console = get_console()
    results: Dict[str, JobOutcome] = {}
    started = time.monotonic()

    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="buildmatrix-job") as pool:
        in_flight: Dict[Future, JobDescriptor] = {
            pool.submit(run_fn, d, abort): d for d in descriptors
        }
        try:
            for fut in as_completed(in_flight):
                d = in_flight[fut]
                try:
                    results[d.id] = fut.result()
                except Exception as e:
                    results[d.id] = _crashed(d, e)
        except KeyboardInterrupt:
            abort.set()
            for fut in in_flight:
                fut.cancel()
            console.print_info("\nAborting: waiting for running jobs to clean up...")
            raise

    console.print_debug(f"dispatched {len(descriptors)} job(s) in {time.monotonic() - started:.1f}s")
    return [results[d.id] for d in descriptors]
