# step_workflows/shell.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..collaborators import DEFAULT_STEP_TIMEOUT, Workspace, run_command, split_args
from ..model import StepResult


@dataclass
class ShellStep:
    """
    An extra step that runs one command from the workspace root.

    Artifacts are paths relative to the workspace; missing ones are reported
    in the log and not returned.
    """
    cmd: str
    cwd: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    artifacts: List[str] = field(default_factory=list)
    timeout: Optional[float] = DEFAULT_STEP_TIMEOUT

    def run(self, workspace: Workspace) -> StepResult:
        cwd = (workspace.path / (self.cwd or ".")).resolve()
        if not cwd.exists():
            return StepResult(success=False, log=f"cwd not found: {cwd}")

        argv = split_args(self.cmd, workspace.os_class)
        result = run_command(argv, cwd=cwd, env=self.env, timeout=self.timeout)
        if not result.success:
            return result

        found: List[str] = []
        log = result.log
        for rel in self.artifacts:
            p = workspace.path / rel
            if p.exists():
                found.append(str(p))
            else:
                log += f"\nartifact not found: {rel}"
        return StepResult(success=True, log=log, artifacts=tuple(found))


def sh_step(cmd: str, *, cwd: str | None = None, artifacts: Optional[List[str]] = None, **env: str) -> ShellStep:
    """Workflow-file helper: EXTRA_STEPS = {"docs": sh_step("make docs", artifacts=["docs/html"])}"""
    return ShellStep(cmd=cmd, cwd=cwd, env={k: str(v) for k, v in env.items()}, artifacts=list(artifacts or []))
