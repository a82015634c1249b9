# settings.py
from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional

from .collaborators import DEFAULT_STEP_TIMEOUT
from .errors import ConfigurationError
from .git_facts.git import get_current_ref


DEFAULT_WORK_DIR = ".buildmatrix/work"


@dataclass(frozen=True)
class Settings:
    """
    Run metadata and local paths, read from the environment the CI server
    (or the developer) provides. CLI flags are applied on top with override().
    """
    job_name: str
    build_number: str
    branch: str
    work_dir: Path
    webhook_url: Optional[str] = None
    step_timeout: float = DEFAULT_STEP_TIMEOUT

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        *,
        cwd: str | Path = ".",
    ) -> Settings:
        env = os.environ if environ is None else environ
        root = Path(cwd).resolve()

        job_name = env.get("BUILDMATRIX_JOB_NAME") or env.get("JOB_NAME") or root.name
        branch = env.get("BRANCH_NAME") or _git_branch(root)

        raw_timeout = env.get("BUILDMATRIX_STEP_TIMEOUT")
        try:
            step_timeout = float(raw_timeout) if raw_timeout else DEFAULT_STEP_TIMEOUT
        except ValueError:
            raise ConfigurationError(
                f"BUILDMATRIX_STEP_TIMEOUT must be a number of seconds, got {raw_timeout!r}"
            ) from None
        if step_timeout <= 0:
            raise ConfigurationError(f"BUILDMATRIX_STEP_TIMEOUT must be positive, got {raw_timeout!r}")

        return cls(
            job_name=job_name,
            build_number=env.get("BUILD_NUMBER") or "0",
            branch=branch,
            work_dir=Path(env.get("BUILDMATRIX_WORK_DIR") or (root / DEFAULT_WORK_DIR)),
            webhook_url=env.get("BUILDMATRIX_WEBHOOK_URL") or None,
            step_timeout=step_timeout,
        )

    def override(self, **values) -> Settings:
        """Replace the fields that were given a non-None value."""
        return replace(self, **{k: v for k, v in values.items() if v is not None})


def _git_branch(cwd: Path) -> str:
    try:
        return get_current_ref(cwd=cwd)
    except (subprocess.CalledProcessError, FileNotFoundError):
        # not a git checkout, or git missing
        return "unknown"
