# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


class ConfigurationError(ValueError):
    """
    The declarative matrix cannot be turned into a job set.

    Raised before anything is scheduled. This is the only pipeline-fatal error.
    """


@dataclass
class JobError(Exception):
    """
    A failure confined to a single job.

    Never propagates past the job boundary; the pipeline turns it into a
    failed JobOutcome.
    """
    job_id: str
    message: str
    details: dict = field(default_factory=dict)

    kind = "job_error"

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"job={self.job_id}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class PlacementError(JobError):
    """No worker advertises every tag of the job's requirement."""
    kind = "placement_error"


class InfrastructureError(JobError):
    """Workspace, snapshot or environment setup failed (or the run was aborted)."""
    kind = "infrastructure_error"


class BuildError(JobError):
    kind = "build_error"


class TestError(JobError):
    __test__ = False  # not a pytest test class

    kind = "test_error"


class ExtraStepError(JobError):
    kind = "extra_step_error"


class NotificationError(Exception):
    """A notifier could not deliver the pipeline result."""
