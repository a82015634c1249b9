from __future__ import annotations

import threading
from pathlib import Path
from typing import List, Mapping, Optional

import pytest

from buildmatrix.collaborators import (
    Collaborators,
    DirectoryCheckout,
    ExtraStepRegistry,
    SourceSnapshot,
    Workspace,
)
from buildmatrix.model import StepResult
from buildmatrix.ui.console import Console, set_console
from buildmatrix.workers import Worker


class FakeBuilder:
    def __init__(self, fail_for: tuple = (), crash_for: tuple = ()):
        self.fail_for = set(fail_for)
        self.crash_for = set(crash_for)
        self.calls: List[dict] = []
        self._lock = threading.Lock()

    def build(self, workspace: Workspace, build_type: str, configure_args: str, environment: Mapping[str, str]) -> StepResult:
        with self._lock:
            self.calls.append(
                {
                    "job_id": workspace.job_id,
                    "path": workspace.path,
                    "build_type": build_type,
                    "configure_args": configure_args,
                    "environment": dict(environment),
                    "sources": sorted(p.name for p in workspace.path.iterdir()),
                }
            )
        if workspace.job_id in self.crash_for:
            raise RuntimeError("compiler exploded")
        if workspace.job_id in self.fail_for:
            return StepResult(success=False, log="error: expected ';' before '}' token")
        return StepResult(success=True, log=f"built {build_type}")


class FakeTester:
    def __init__(self, fail_for: tuple = ()):
        self.fail_for = set(fail_for)
        self.calls: List[str] = []

    def test(self, workspace: Workspace, environment: Mapping[str, str]) -> StepResult:
        self.calls.append(workspace.job_id)
        if workspace.job_id in self.fail_for:
            return StepResult(success=False, log="1 of 12 tests failed: test_parse_empty")
        return StepResult(success=True, log="100% tests passed")


class FakeStep:
    def __init__(self, success: bool = True, artifact: Optional[str] = None):
        self.success = success
        self.artifact = artifact
        self.ran: List[str] = []

    def run(self, workspace: Workspace) -> StepResult:
        self.ran.append(workspace.job_id)
        artifacts = ()
        if self.artifact:
            p = workspace.path / self.artifact
            p.write_text("<html>report</html>")
            artifacts = (str(p),)
        return StepResult(success=self.success, log="step output", artifacts=artifacts)


class RecordingNotifier:
    def __init__(self):
        self.calls: List[tuple] = []

    def notify(self, outcome, metadata, logs=None) -> None:
        self.calls.append((outcome, metadata, logs))


class FailingCheckout:
    def __init__(self):
        self.calls = 0

    def snapshot(self) -> SourceSnapshot:
        self.calls += 1
        raise RuntimeError("remote hung up unexpectedly")


class CountingCheckout:
    def __init__(self, inner):
        self.inner = inner
        self.calls = 0

    def snapshot(self) -> SourceSnapshot:
        self.calls += 1
        return self.inner.snapshot()


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console(debug=False)
    set_console(console)
    return console


@pytest.fixture
def source_dir(tmp_path) -> Path:
    src = tmp_path / "src"
    (src / "lib").mkdir(parents=True)
    (src / "CMakeLists.txt").write_text("project(demo CXX)\n")
    (src / "lib" / "demo.cpp").write_text("int demo() { return 42; }\n")
    (src / ".git").mkdir()
    (src / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    return src


@pytest.fixture
def snapshot(tmp_path, source_dir) -> SourceSnapshot:
    return DirectoryCheckout(source=source_dir, stash_dir=tmp_path / "stash").snapshot()


@pytest.fixture
def linux_worker(tmp_path) -> Worker:
    return Worker(name="linux-1", capabilities=frozenset({"Linux", "gcc", "clang"}), root=tmp_path / "ws", executors=4)


@pytest.fixture
def collaborators() -> Collaborators:
    return Collaborators(
        builder=FakeBuilder(),
        tester=FakeTester(),
        registry=ExtraStepRegistry({"coverage": FakeStep()}),
    )
