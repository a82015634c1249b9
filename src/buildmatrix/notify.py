# notify.py
from __future__ import annotations

import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Iterable, Literal, Optional, Protocol

from pydantic import BaseModel

from .errors import ConfigurationError, NotificationError
from .model import JobOutcome, PipelineResult
from .ui.console import get_console

SUCCESS = "success"
FAILURE = "failure"


@dataclass(frozen=True)
class NotificationMetadata:
    job_name: str
    build_number: str
    branch: str


class Notifier(Protocol):
    def notify(self, outcome: str, metadata: NotificationMetadata, logs: Optional[str] = None) -> None: ...


# ---------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------

def aggregate(outcomes: Iterable[JobOutcome]) -> PipelineResult:
    """
    Reduce job outcomes to one result. An empty job set is a configuration
    problem, never a vacuous success.
    """
    outcomes = tuple(outcomes)
    if not outcomes:
        raise ConfigurationError("The matrix expanded to zero jobs")
    return PipelineResult(outcomes=outcomes)


def notify_result(result: PipelineResult, metadata: NotificationMetadata, notifier: Notifier) -> None:
    """Call exactly one hook: success, or failure with every failed job's diagnostics."""
    if result.succeeded:
        notifier.notify(SUCCESS, metadata)
    else:
        notifier.notify(FAILURE, metadata, result.diagnostics())


# ---------------------------------------------------------------------
# Notifiers
# ---------------------------------------------------------------------

class ConsoleNotifier:
    """Prints the notification; the default when nothing else is configured."""

    def notify(self, outcome: str, metadata: NotificationMetadata, logs: Optional[str] = None) -> None:
        console = get_console()
        title = f"{metadata.job_name} #{metadata.build_number} ({metadata.branch})"
        if outcome == SUCCESS:
            console.print_header(f"SUCCESS: {title}")
            return
        console.print_header(f"FAILURE: {title}")
        if logs:
            console.print_info(logs)


class NotificationPayload(BaseModel):
    """JSON body POSTed by WebhookNotifier."""
    outcome: Literal["success", "failure"]
    job_name: str
    build_number: str
    branch: str
    logs: Optional[str] = None


class WebhookNotifier:
    """POST the pipeline result as JSON to a URL (chat hook, mail relay, ...)."""

    def __init__(self, url: str, *, timeout: float = 30.0, headers: Optional[dict] = None):
        self.url = url
        self.timeout = timeout
        self.headers = headers or {}

    def notify(self, outcome: str, metadata: NotificationMetadata, logs: Optional[str] = None) -> None:
        payload = NotificationPayload(
            outcome=outcome,
            job_name=metadata.job_name,
            build_number=metadata.build_number,
            branch=metadata.branch,
            logs=logs,
        )
        self.send(payload)

    def send(self, payload: NotificationPayload) -> None:
        req_headers = {"Content-Type": "application/json"}
        req_headers.update(self.headers)
        req = urllib.request.Request(
            self.url,
            data=payload.model_dump_json().encode("utf-8"),
            headers=req_headers,
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                response.read()
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8") if e.fp else ""
            raise NotificationError(f"Webhook request failed: {e.code} {e.reason}. {error_body}") from e
        except urllib.error.URLError as e:
            raise NotificationError(f"Network error: {e.reason}") from e

