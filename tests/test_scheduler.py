import threading
import time

import pytest

from buildmatrix.dsl import combination, wf
from buildmatrix.errors import ConfigurationError
from buildmatrix.matrix import expand_matrix
from buildmatrix.model import JobOutcome, JobStatus
from buildmatrix.scheduler import dispatch


def _jobs():
    return expand_matrix(wf(combination("Linux", "gcc", "clang", build_types=["debug", "release"])))


def _ok(descriptor, abort):
    return JobOutcome(job_id=descriptor.id, status=JobStatus.SUCCEEDED)


def test_outcomes_follow_descriptor_order_not_completion_order():
    jobs = _jobs()
    delays = {j.id: 0.05 * (len(jobs) - i) for i, j in enumerate(jobs)}
    finished = []
    lock = threading.Lock()

    def slow_first(descriptor, abort):
        time.sleep(delays[descriptor.id])
        with lock:
            finished.append(descriptor.id)
        return _ok(descriptor, abort)

    outcomes = dispatch(jobs, slow_first)

    assert [o.job_id for o in outcomes] == [j.id for j in jobs]
    assert finished[0] == jobs[-1].id


def test_jobs_run_concurrently():
    jobs = _jobs()
    barrier = threading.Barrier(len(jobs), timeout=5)

    def meet(descriptor, abort):
        barrier.wait()
        return _ok(descriptor, abort)

    outcomes = dispatch(jobs, meet)
    assert all(o.succeeded for o in outcomes)


def test_crash_in_one_job_does_not_stop_the_others():
    jobs = _jobs()
    victim = jobs[1].id

    def flaky(descriptor, abort):
        if descriptor.id == victim:
            raise RuntimeError("runner lost")
        return _ok(descriptor, abort)

    outcomes = dispatch(jobs, flaky)

    by_id = {o.job_id: o for o in outcomes}
    assert by_id[victim].status is JobStatus.FAILED
    assert by_id[victim].error_kind == "crash"
    assert "runner lost" in by_id[victim].diagnostics()
    assert sum(o.succeeded for o in outcomes) == len(jobs) - 1


def test_failed_job_is_not_fail_fast():
    jobs = _jobs()
    seen = []

    def first_fails(descriptor, abort):
        seen.append(descriptor.id)
        status = JobStatus.FAILED if descriptor.id == jobs[0].id else JobStatus.SUCCEEDED
        return JobOutcome(job_id=descriptor.id, status=status)

    dispatch(jobs, first_fails, max_workers=1)
    assert sorted(seen) == sorted(j.id for j in jobs)


def test_duplicate_ids_are_rejected():
    (job,) = expand_matrix(wf(combination("Linux", "gcc", build_types=["release"])))
    with pytest.raises(ConfigurationError, match="Duplicate job ids"):
        dispatch([job, job], _ok)


def test_empty_job_list():
    assert dispatch([], _ok) == []


def test_run_fn_receives_the_abort_event():
    jobs = _jobs()
    abort = threading.Event()
    received = []

    def capture(descriptor, event):
        received.append(event)
        return _ok(descriptor, event)

    dispatch(jobs, capture, abort=abort)
    assert all(e is abort for e in received)
