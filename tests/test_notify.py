import io
import json
import urllib.error

import pytest

from buildmatrix.errors import ConfigurationError, NotificationError
from buildmatrix.model import JobOutcome, JobStatus, StepRecord
from buildmatrix.notify import (
    FAILURE,
    SUCCESS,
    ConsoleNotifier,
    NotificationMetadata,
    WebhookNotifier,
    aggregate,
    notify_result,
)

from conftest import RecordingNotifier

META = NotificationMetadata(job_name="libdemo", build_number="42", branch="main")


def _ok(job_id):
    return JobOutcome(job_id=job_id, status=JobStatus.SUCCEEDED)


def _failed(job_id, log):
    return JobOutcome(
        job_id=job_id,
        status=JobStatus.FAILED,
        steps=(StepRecord(name="build", succeeded=False, log=log),),
        error_kind="build_error",
        error="build failed",
    )


def test_aggregate_of_nothing_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        aggregate([])


def test_all_succeeded_sends_one_success():
    notifier = RecordingNotifier()
    notify_result(aggregate([_ok("a"), _ok("b")]), META, notifier)
    assert notifier.calls == [(SUCCESS, META, None)]


def test_any_failure_sends_one_failure_with_every_failed_job():
    notifier = RecordingNotifier()
    result = aggregate([_failed("a", "undefined reference to `foo'"), _ok("b"), _failed("c", "ld returned 1")])
    notify_result(result, META, notifier)

    ((outcome, metadata, logs),) = notifier.calls
    assert outcome == FAILURE
    assert metadata == META
    assert "=== a (failed) ===" in logs and "undefined reference" in logs
    assert "=== c (failed) ===" in logs and "ld returned 1" in logs
    assert "=== b" not in logs


def test_console_notifier_prints_failure_logs(quiet_console, capsys):
    ConsoleNotifier().notify(FAILURE, META, "=== a (failed) ===")
    out = capsys.readouterr().out
    assert "FAILURE: libdemo #42 (main)" in out
    assert "=== a (failed) ===" in out


class _Response:
    def __init__(self):
        self.read_called = False

    def read(self):
        self.read_called = True
        return b"ok"

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def test_webhook_posts_json(monkeypatch):
    sent = {}

    def fake_urlopen(req, timeout):
        sent["url"] = req.full_url
        sent["method"] = req.get_method()
        sent["body"] = json.loads(req.data.decode("utf-8"))
        sent["content_type"] = req.get_header("Content-type")
        sent["token"] = req.get_header("X-token")
        sent["timeout"] = timeout
        return _Response()

    monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)

    notifier = WebhookNotifier("http://chat.local/hook", timeout=5, headers={"X-Token": "t"})
    notifier.notify(FAILURE, META, "logs here")

    assert sent["url"] == "http://chat.local/hook"
    assert sent["method"] == "POST"
    assert sent["content_type"] == "application/json"
    assert sent["token"] == "t"
    assert sent["timeout"] == 5
    assert sent["body"] == {
        "outcome": "failure",
        "job_name": "libdemo",
        "build_number": "42",
        "branch": "main",
        "logs": "logs here",
    }


def test_webhook_http_error_is_a_notification_error(monkeypatch):
    def fake_urlopen(req, timeout):
        raise urllib.error.HTTPError(req.full_url, 503, "Service Unavailable", {}, io.BytesIO(b"try later"))

    monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)

    with pytest.raises(NotificationError, match="503"):
        WebhookNotifier("http://chat.local/hook").notify(SUCCESS, META)


def test_webhook_network_error_is_a_notification_error(monkeypatch):
    def fake_urlopen(req, timeout):
        raise urllib.error.URLError("connection refused")

    monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)

    with pytest.raises(NotificationError, match="connection refused"):
        WebhookNotifier("http://chat.local/hook").notify(SUCCESS, META)
