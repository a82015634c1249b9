# collaborators.py
from __future__ import annotations

import hashlib
import os
import shlex
import shutil
import subprocess
import tarfile
from dataclasses import dataclass, field
from fnmatch import fnmatch
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

from .errors import ConfigurationError
from .git_facts import git
from .model import StepResult


DEFAULT_STEP_TIMEOUT = 3600.0

SNAPSHOT_EXCLUDES = [
    ".git",
    ".git/*",
    ".buildmatrix",
    ".buildmatrix/*",
    "__pycache__/*",
    "*/__pycache__/*",
]

TOOL_HINTS = {
    "cmake": "Install CMake or fix PATH.",
    "ctest": "Install CMake (ctest ships with it) or fix PATH.",
    "gcovr": "Install gcovr (e.g., pip install gcovr).",
    "git": "Install Git or fix PATH.",
}

# lower-case matrix build type -> CMAKE_BUILD_TYPE
CMAKE_BUILD_TYPES = {
    "debug": "Debug",
    "release": "Release",
    "relwithdebinfo": "RelWithDebInfo",
    "minsizerel": "MinSizeRel",
}


# ---------------------------------------------------------------------
# What a job hands to its collaborators
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Workspace:
    """An exclusive per-job directory on a worker."""
    path: Path
    job_id: str
    worker: str
    build_type: str
    os_class: str = "unix"

    @property
    def build_dir(self) -> Path:
        return self.path / "build"


@dataclass(frozen=True)
class SourceSnapshot:
    """
    The stashed source tree every job starts from.

    The archive is only ever read; each job extracts its own private copy.
    """
    archive: Path
    revision: Optional[str] = None

    def materialize(self, dest: str | Path) -> Path:
        dest_p = Path(dest)
        dest_p.mkdir(parents=True, exist_ok=True)
        with tarfile.open(str(self.archive), mode="r:gz") as tar:
            tar.extractall(path=str(dest_p), filter="data")
        return dest_p


# ---------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------

class Checkout(Protocol):
    def snapshot(self) -> SourceSnapshot: ...


class Builder(Protocol):
    def build(
        self,
        workspace: Workspace,
        build_type: str,
        configure_args: str,
        environment: Mapping[str, str],
    ) -> StepResult: ...


class Tester(Protocol):
    def test(self, workspace: Workspace, environment: Mapping[str, str]) -> StepResult: ...


class ExtraStep(Protocol):
    def run(self, workspace: Workspace) -> StepResult: ...


class ArtifactStore(Protocol):
    def archive(self, job_id: str, paths: Sequence[str]) -> List[str]: ...


# ---------------------------------------------------------------------
# Command execution
# ---------------------------------------------------------------------

def split_args(text: str, os_class: str = "unix") -> List[str]:
    """
    Split a configure/command string into argv, dropping the quotes that
    group a token: '-G "Visual Studio 17 2022"' -> ["-G", "Visual Studio 17 2022"].

    On Windows-class workers backslashes are path separators, not escapes.
    """
    lexer = shlex.shlex(text, posix=True)
    lexer.whitespace_split = True
    lexer.commenters = ""
    if os_class == "windows":
        lexer.escape = ""
    return list(lexer)



def run_command(
    cmd: Sequence[str],
    *,
    cwd: str | Path,
    env: Optional[Mapping[str, str]] = None,
    timeout: Optional[float] = DEFAULT_STEP_TIMEOUT,
) -> StepResult:
    """
    Run one external command and capture everything it prints.

    A non-zero exit, a missing tool or a timeout (the process is killed)
    all come back as an unsuccessful StepResult; none of them raise.

    The tool itself is looked up on the host PATH, so a job environment
    with a minimal PATH (Windows-class) still finds cmake/ctest.
    """
    full_env = os.environ.copy()
    full_env.update(env or {})
    header = "$ " + " ".join(shlex.quote(c) for c in cmd)
    argv = list(cmd)
    resolved = shutil.which(argv[0]) if argv else None
    if resolved:
        argv[0] = resolved

    try:
        proc = subprocess.run(
            argv,
            cwd=str(cwd),
            env=full_env,
            text=True,
            capture_output=True,
            timeout=timeout,
        )
    except FileNotFoundError:
        tool = cmd[0]
        hint = TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")
        return StepResult(success=False, log=f"{header}\n{tool}: command not found. {hint}")
    except subprocess.TimeoutExpired as e:
        partial = _decode(e.stdout) + _decode(e.stderr)
        return StepResult(success=False, log=f"{header}\n{partial}\ntimed out after {timeout}s (killed)")

    log = "\n".join(part for part in (header, proc.stdout.rstrip("\n"), proc.stderr.rstrip("\n")) if part)
    if proc.returncode != 0:
        log += f"\nexit code {proc.returncode}"
    return StepResult(success=proc.returncode == 0, log=log)


def _decode(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


# ---------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------

def _excluded(rel: str, patterns: List[str]) -> bool:
    return any(fnmatch(rel, p) for p in patterns)


@dataclass
class DirectoryCheckout:
    """Stash a plain directory (no VCS needed)."""
    source: Path
    stash_dir: Path
    excludes: List[str] = field(default_factory=lambda: list(SNAPSHOT_EXCLUDES))

    def snapshot(self) -> SourceSnapshot:
        source = Path(self.source).resolve()
        if not source.is_dir():
            raise FileNotFoundError(f"Source directory not found: {source}")

        out = Path(self.stash_dir).resolve() / "source.tar.gz"
        out.parent.mkdir(parents=True, exist_ok=True)
        stash_rel = _relative_to(out.parent, source)

        tmp = out.with_suffix(".tmp")
        with tarfile.open(str(tmp), mode="w:gz") as tar:
            for path in sorted(source.rglob("*")):
                if not path.is_file():
                    continue
                rel = path.relative_to(source).as_posix()
                if _excluded(rel, self.excludes):
                    continue
                if stash_rel is not None and (rel == stash_rel or rel.startswith(stash_rel + "/")):
                    continue
                tar.add(str(path), arcname=rel, recursive=False)
        tmp.replace(out)
        return SourceSnapshot(archive=out)


def _relative_to(path: Path, root: Path) -> Optional[str]:
    try:
        return path.relative_to(root).as_posix()
    except ValueError:
        return None


@dataclass
class GitCheckout:
    """Stash the tracked tree of a git repository at `ref`."""
    repo: Path
    stash_dir: Path
    ref: str = "HEAD"

    def snapshot(self) -> SourceSnapshot:
        out = Path(self.stash_dir).resolve() / "source.tar.gz"
        git.archive(self.ref, out, cwd=self.repo)
        return SourceSnapshot(archive=out, revision=git.head_sha(cwd=self.repo))


# ---------------------------------------------------------------------
# Build / test
# ---------------------------------------------------------------------

def cmake_build_type(build_type: str) -> str:
    return CMAKE_BUILD_TYPES.get(build_type.lower(), build_type)


@dataclass
class CMakeBuilder:
    """Configure then compile with CMake, out of tree in <workspace>/build."""
    timeout: Optional[float] = DEFAULT_STEP_TIMEOUT
    generator: Optional[str] = None

    def build(
        self,
        workspace: Workspace,
        build_type: str,
        configure_args: str,
        environment: Mapping[str, str],
    ) -> StepResult:
        cmake_type = cmake_build_type(build_type)
        configure = [
            "cmake",
            "-S", str(workspace.path),
            "-B", str(workspace.build_dir),
            f"-DCMAKE_BUILD_TYPE={cmake_type}",
        ]
        if self.generator:
            configure += ["-G", self.generator]
        configure += split_args(configure_args, workspace.os_class)

        configured = run_command(configure, cwd=workspace.path, env=environment, timeout=self.timeout)
        if not configured.success:
            return configured

        compile_cmd = ["cmake", "--build", str(workspace.build_dir), "--parallel"]
        if workspace.os_class == "windows":
            # Visual Studio generators are multi-config
            compile_cmd += ["--config", cmake_type]
        compiled = run_command(compile_cmd, cwd=workspace.path, env=environment, timeout=self.timeout)
        return StepResult(success=compiled.success, log=configured.log + "\n" + compiled.log)


@dataclass
class CTestTester:
    timeout: Optional[float] = DEFAULT_STEP_TIMEOUT

    def test(self, workspace: Workspace, environment: Mapping[str, str]) -> StepResult:
        cmd = ["ctest", "--test-dir", str(workspace.build_dir), "--output-on-failure"]
        if workspace.os_class == "windows":
            cmd += ["-C", cmake_build_type(workspace.build_type)]
        return run_command(cmd, cwd=workspace.path, env=environment, timeout=self.timeout)


# ---------------------------------------------------------------------
# Artifacts
# ---------------------------------------------------------------------

@dataclass
class DirectoryArtifactStore:
    """Copy artifacts out of a workspace before it is released."""
    root: Path

    def archive(self, job_id: str, paths: Sequence[str]) -> List[str]:
        dest = Path(self.root) / slugify(job_id)
        dest.mkdir(parents=True, exist_ok=True)
        stored: List[str] = []
        for p in paths:
            src = Path(p)
            target = dest / src.name
            if src.is_dir():
                shutil.copytree(src, target, dirs_exist_ok=True)
            else:
                shutil.copy2(src, target)
            stored.append(str(target))
        return stored


def slugify(job_id: str) -> str:
    """
    Filesystem-safe, collision-free name for a job id:
    `[0:1] Linux && clang: release` -> `0-1-linux-clang-release-<8 hex>`
    """
    out = []
    for ch in job_id.lower():
        out.append(ch if ch.isalnum() else "-")
    slug = "-".join(part for part in "".join(out).split("-") if part) or "job"
    digest = hashlib.sha1(job_id.encode("utf-8")).hexdigest()[:8]
    return f"{slug}-{digest}"


# ---------------------------------------------------------------------
# Extra steps
# ---------------------------------------------------------------------

class ExtraStepRegistry:
    """Name -> extra step. Names are checked before anything is scheduled."""

    def __init__(self, steps: Optional[Mapping[str, ExtraStep]] = None):
        self._steps: Dict[str, ExtraStep] = {}
        for name, step in (steps or {}).items():
            self.register(name, step)

    def register(self, name: str, step: ExtraStep) -> None:
        if not callable(getattr(step, "run", None)):
            raise ConfigurationError(f"Extra step {name!r} has no run(workspace) method")
        self._steps[name] = step

    def names(self) -> List[str]:
        return sorted(self._steps)

    def __contains__(self, name: object) -> bool:
        return name in self._steps

    def resolve(self, name: str) -> ExtraStep:
        try:
            return self._steps[name]
        except KeyError:
            raise ConfigurationError(
                f"Unknown extra step {name!r}. Known steps: {self.names()}"
            ) from None

    def validate(self, names: Iterable[str]) -> None:
        unknown = sorted({n for n in names if n not in self._steps})
        if unknown:
            raise ConfigurationError(f"Unknown extra steps {unknown}. Known steps: {self.names()}")


def default_registry(timeout: Optional[float] = DEFAULT_STEP_TIMEOUT) -> ExtraStepRegistry:
    from .step_workflows.coverage import CoverageStep

    return ExtraStepRegistry({"coverage": CoverageStep(timeout=timeout)})


@dataclass
class Collaborators:
    """Everything a job calls out to."""
    builder: Builder
    tester: Tester
    registry: ExtraStepRegistry
    artifacts: Optional[ArtifactStore] = None


def default_collaborators(
    *,
    timeout: Optional[float] = DEFAULT_STEP_TIMEOUT,
    artifact_root: Optional[Path] = None,
) -> Collaborators:
    return Collaborators(
        builder=CMakeBuilder(timeout=timeout),
        tester=CTestTester(timeout=timeout),
        registry=default_registry(timeout=timeout),
        artifacts=DirectoryArtifactStore(artifact_root) if artifact_root is not None else None,
    )
