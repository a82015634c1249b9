# workers.py
from __future__ import annotations

import os
import platform
import shutil
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, Iterator, List, Optional, Sequence

from .errors import ConfigurationError, InfrastructureError, PlacementError
from .model import CapabilityRequirement

# platform.system() -> capability tag used in matrices
HOST_PLATFORM_TAGS = {
    "Linux": "Linux",
    "Darwin": "macOS",
    "Windows": "Windows",
}

KNOWN_TOOLCHAINS = ("gcc", "clang", "cl")


@dataclass(frozen=True)
class Worker:
    """
    A place jobs can run: advertised capabilities, a workspace root and a
    number of executor slots.
    """
    name: str
    capabilities: FrozenSet[str]
    root: Path
    executors: int = 1

    def __post_init__(self) -> None:
        object.__setattr__(self, "capabilities", frozenset(self.capabilities))
        object.__setattr__(self, "root", Path(self.root))
        if self.executors < 1:
            raise ConfigurationError(f"Worker {self.name!r} needs at least one executor, got {self.executors}")


def worker(name: str, *capabilities: str, root: str | Path, executors: int = 1) -> Worker:
    """Convenience for workflow files: worker("mac-1", "macOS", "clang", root="/ci")."""
    return Worker(name=name, capabilities=frozenset(capabilities), root=Path(root), executors=executors)


def eligible_workers(requirement: CapabilityRequirement, workers: Iterable[Worker]) -> List[Worker]:
    """The placement query: every worker advertising all required tags."""
    return [w for w in workers if requirement.is_satisfied_by(w.capabilities)]


def local_worker(root: str | Path, *, executors: Optional[int] = None) -> Worker:
    """
    Describe the current host: its platform tag plus every known toolchain
    found on PATH.
    """
    system = platform.system()
    caps = {HOST_PLATFORM_TAGS.get(system, system)}
    caps.update(tool for tool in KNOWN_TOOLCHAINS if shutil.which(tool))

    if executors is None:
        c = os.cpu_count() or 2
        executors = max(1, c - 1)

    return Worker(name=platform.node() or "local", capabilities=frozenset(caps), root=Path(root), executors=executors)


class WorkerPool:
    """
    Slot accounting across workers.

    lease() blocks while every eligible worker is busy and fails immediately
    with PlacementError when no worker is eligible at all.
    """

    def __init__(self, workers: Sequence[Worker], *, poll_interval: float = 0.5):
        names = [w.name for w in workers]
        if len(set(names)) != len(names):
            dupes = sorted({n for n in names if names.count(n) > 1})
            raise ConfigurationError(f"Duplicate worker names found: {dupes}")

        self.workers = list(workers)
        self.poll_interval = poll_interval
        self._busy: Dict[str, int] = {w.name: 0 for w in self.workers}
        self._cond = threading.Condition()

    def busy(self, name: str) -> int:
        with self._cond:
            return self._busy[name]

    def _pick(self, candidates: List[Worker]) -> Optional[Worker]:
        free = [w for w in candidates if self._busy[w.name] < w.executors]
        if not free:
            return None
        # least loaded first, then declaration order
        return min(free, key=lambda w: self._busy[w.name] / w.executors)

    @contextmanager
    def lease(
        self,
        job_id: str,
        requirement: CapabilityRequirement,
        abort: Optional[threading.Event] = None,
    ) -> Iterator[Worker]:
        candidates = eligible_workers(requirement, self.workers)
        if not candidates:
            raise PlacementError(
                job_id=job_id,
                message=f"no worker matches '{requirement.expression()}'",
                details={"workers": ", ".join(w.name for w in self.workers) or "(none)"},
            )

        with self._cond:
            chosen = self._pick(candidates)
            while chosen is None:
                if abort is not None and abort.is_set():
                    raise InfrastructureError(job_id=job_id, message="aborted while waiting for a worker")
                self._cond.wait(timeout=self.poll_interval)
                chosen = self._pick(candidates)
            self._busy[chosen.name] += 1

        try:
            yield chosen
        finally:
            with self._cond:
                self._busy[chosen.name] -= 1
                self._cond.notify_all()
