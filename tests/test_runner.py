import textwrap

import pytest

from buildmatrix.collaborators import Collaborators, DirectoryCheckout, ExtraStepRegistry
from buildmatrix.dsl import combination, wf
from buildmatrix.errors import ConfigurationError
from buildmatrix.model import JobStatus
from buildmatrix.notify import FAILURE, SUCCESS, NotificationMetadata
from buildmatrix.runner import load_workflow, plan_jobs, run_pipeline

from conftest import CountingCheckout, FailingCheckout, FakeBuilder, FakeStep, FakeTester, RecordingNotifier

META = NotificationMetadata(job_name="libdemo", build_number="7", branch="main")


def _matrix():
    return wf(
        combination("Linux", "gcc", "clang", build_types=["debug", "release"], extra_steps=["coverage"]),
    )


def _checkout(tmp_path, source_dir):
    return CountingCheckout(DirectoryCheckout(source=source_dir, stash_dir=tmp_path / "stash"))


def test_one_failing_job_does_not_stop_the_rest(tmp_path, source_dir, linux_worker):
    broken = "[0:1] Linux && clang: release"
    collaborators = Collaborators(
        builder=FakeBuilder(fail_for=(broken,)),
        tester=FakeTester(),
        registry=ExtraStepRegistry({"coverage": FakeStep()}),
    )
    checkout = _checkout(tmp_path, source_dir)
    notifier = RecordingNotifier()

    result = run_pipeline(
        _matrix(),
        workers=[linux_worker],
        checkout=checkout,
        collaborators=collaborators,
        notifier=notifier,
        metadata=META,
    )

    assert checkout.calls == 1
    assert len(result.outcomes) == 4
    assert [o.job_id for o in result.outcomes] == [d.id for d in plan_jobs(_matrix(), collaborators)]
    assert [o.job_id for o in result.failed_outcomes()] == [broken]
    assert not result.succeeded
    assert len(collaborators.builder.calls) == 4

    ((outcome, metadata, logs),) = notifier.calls
    assert outcome == FAILURE
    assert metadata == META
    assert broken in logs
    assert "expected ';'" in logs


def test_all_jobs_succeeding_notifies_success(tmp_path, source_dir, linux_worker, collaborators):
    notifier = RecordingNotifier()
    result = run_pipeline(
        _matrix(),
        workers=[linux_worker],
        checkout=_checkout(tmp_path, source_dir),
        collaborators=collaborators,
        notifier=notifier,
        metadata=META,
        max_workers=2,
    )
    assert result.succeeded
    assert notifier.calls == [(SUCCESS, META, None)]
    assert list((linux_worker.root).iterdir()) == []


def test_unplaceable_jobs_fail_but_others_run(tmp_path, source_dir, linux_worker, collaborators):
    matrix = wf(
        combination("Linux", "gcc", build_types=["release"]),
        combination("Windows", "cl", build_types=["release"]),
    )
    notifier = RecordingNotifier()
    result = run_pipeline(
        matrix,
        workers=[linux_worker],
        checkout=_checkout(tmp_path, source_dir),
        collaborators=collaborators,
        notifier=notifier,
        metadata=META,
    )
    linux, windows = result.outcomes
    assert linux.status is JobStatus.SUCCEEDED
    assert windows.error_kind == "placement_error"
    assert notifier.calls[0][0] == FAILURE


def test_empty_matrix_is_rejected_before_checkout_and_notification(tmp_path, source_dir, linux_worker, collaborators):
    checkout = _checkout(tmp_path, source_dir)
    notifier = RecordingNotifier()
    with pytest.raises(ConfigurationError):
        run_pipeline(
            wf(combination("FreeBSD", build_types=["release"])),
            workers=[linux_worker],
            checkout=checkout,
            collaborators=collaborators,
            notifier=notifier,
            metadata=META,
        )
    assert checkout.calls == 0
    assert notifier.calls == []


def test_unknown_extra_step_is_rejected_before_checkout(tmp_path, source_dir, linux_worker, collaborators):
    checkout = _checkout(tmp_path, source_dir)
    notifier = RecordingNotifier()
    with pytest.raises(ConfigurationError, match="sanitize"):
        run_pipeline(
            wf(combination("Linux", "gcc", build_types=["release"], extra_steps=["sanitize"])),
            workers=[linux_worker],
            checkout=checkout,
            collaborators=collaborators,
            notifier=notifier,
            metadata=META,
        )
    assert checkout.calls == 0
    assert notifier.calls == []


def test_checkout_failure_fails_every_job_and_notifies_once(linux_worker, collaborators):
    checkout = FailingCheckout()
    notifier = RecordingNotifier()

    result = run_pipeline(
        _matrix(),
        workers=[linux_worker],
        checkout=checkout,
        collaborators=collaborators,
        notifier=notifier,
        metadata=META,
    )

    assert checkout.calls == 1
    assert len(result.outcomes) == 4
    assert all(o.error_kind == "infrastructure_error" for o in result.outcomes)
    assert collaborators.builder.calls == []
    ((outcome, _, logs),) = notifier.calls
    assert outcome == FAILURE
    assert "remote hung up unexpectedly" in logs


def test_load_workflow_function(tmp_path):
    path = tmp_path / "buildmatrix_workflow.py"
    path.write_text(
        textwrap.dedent(
            """
            from buildmatrix import combination, sh_step, wf, worker

            WORKERS = [worker("box", "Linux", "gcc", root="/tmp/box", executors=2)]
            EXTRA_STEPS = {"docs": sh_step("doxygen")}

            def workflow():
                return wf(
                    combination("Linux", "gcc", build_types=["debug"], extra_steps=["docs"]),
                    env_overrides={"Linux && gcc": ["CC=gcc-12"]},
                )
            """
        )
    )
    loaded = load_workflow(path)

    assert loaded.matrix.combinations[0].platform_tag == "Linux"
    assert [w.name for w in loaded.workers] == ["box"]
    assert loaded.workers[0].executors == 2
    assert list(loaded.extra_steps) == ["docs"]


def test_load_workflow_matrix_list(tmp_path):
    path = tmp_path / "nightly_matrix.py"
    path.write_text(
        textwrap.dedent(
            """
            MATRIX = [
                {"platform": "Linux", "tools": ["gcc", "clang"], "build_types": ["release"]},
                {"platform": "macOS", "tools": ["clang"], "build_types": ["release"]},
            ]
            ENV_OVERRIDES = {"macOS && clang": ["CXX=clang++"]}
            """
        )
    )
    loaded = load_workflow(path)

    assert len(loaded.matrix.combinations) == 2
    assert loaded.workers is None
    assert loaded.extra_steps == {}
    jobs = plan_jobs(loaded.matrix)
    assert [j.id for j in jobs] == [
        "[0:0] Linux && gcc: release",
        "[0:1] Linux && clang: release",
        "[1:0] macOS && clang: release",
    ]
    assert jobs[2].environment["CXX"] == "clang++"


def test_load_workflow_without_matrix(tmp_path):
    path = tmp_path / "empty_matrix.py"
    path.write_text("X = 1\n")
    with pytest.raises(ConfigurationError):
        load_workflow(path)


def test_load_workflow_rejects_bad_workers(tmp_path):
    path = tmp_path / "bad_matrix.py"
    path.write_text('MATRIX = []\nWORKERS = ["linux-1"]\n')
    with pytest.raises(ConfigurationError, match="WORKERS"):
        load_workflow(path)
