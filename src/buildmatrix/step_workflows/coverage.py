# step_workflows/coverage.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..collaborators import DEFAULT_STEP_TIMEOUT, Workspace, run_command, split_args
from ..model import StepResult


# ---------------------------------------------------------------------
# Coverage report (gcovr)
# ---------------------------------------------------------------------

@dataclass
class CoverageStep:
    """
    HTML coverage report for a build made with --coverage flags.

    The report lands in <workspace>/coverage/ and is returned as the step's
    artifact so it can be archived before the workspace is released.
    """
    output_dir: str = "coverage"
    args: str = ""
    timeout: Optional[float] = DEFAULT_STEP_TIMEOUT

    def run(self, workspace: Workspace) -> StepResult:
        out_dir = workspace.path / self.output_dir
        out_dir.mkdir(parents=True, exist_ok=True)
        report = out_dir / "index.html"

        cmd = [
            "gcovr",
            "--root", str(workspace.path),
            "--html-details", str(report),
        ]
        if self.args:
            cmd.extend(split_args(self.args, workspace.os_class))
        cmd.append(str(workspace.build_dir))

        result = run_command(cmd, cwd=workspace.path, timeout=self.timeout)
        if not result.success:
            return result
        return StepResult(success=True, log=result.log, artifacts=(str(out_dir),))
