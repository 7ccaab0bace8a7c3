"""
Unit tests - summary notification
"""

from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from batchloader.config import NotificationConfig
from batchloader.notify import ROW_STYLES, Notifier, build_html, build_subject
from batchloader.results import LoadResult, RunSummary


def make_summary(outcomes: list[bool]) -> RunSummary:
    results = [
        LoadResult("analytics", "public", f"t{i}", "SUCCESS" if ok else "ERROR",
                   1, 1 if ok else 0, 0 if ok else 1, 0, 100.0 if ok else 0.0, f"t{i}.csv", ok)
        for i, ok in enumerate(outcomes)
    ]
    now = datetime(2024, 1, 15, 6, 0, tzinfo=timezone.utc)
    return RunSummary(
        run_id="20240115_060000",
        attempted=len(outcomes),
        succeeded=sum(outcomes),
        failed=len(outcomes) - sum(outcomes),
        has_error=not all(outcomes),
        results=results,
        results_path=Path("/logs/results.log"),
        stats_path=Path("/logs/stats.txt"),
        started_at=now,
        finished_at=now,
    )


CONFIG = NotificationConfig(
    recipients=("ops@example.com",),
    smtp_host="mail.example.com",
    subject_prefix="loader",
    cluster_name="etl-01",
)


@pytest.mark.unit
def test_subject_on_success():
    assert build_subject(make_summary([True, True]), CONFIG) == "[loader] 2 of 2 files loaded"


@pytest.mark.unit
def test_subject_on_error_names_failures_and_cluster():
    subject = build_subject(make_summary([True, False, True]), CONFIG)

    assert subject == "[loader] 2 of 3 files loaded - 1 failed on etl-01"


@pytest.mark.unit
def test_html_rows_styled_by_status():
    body = build_html(make_summary([True, False]))

    assert body.count(ROW_STYLES["ok"]) == 1
    assert body.count(ROW_STYLES["failed"]) == 1


@pytest.mark.unit
def test_message_is_multipart_with_html():
    msg = Notifier(CONFIG).build_message(make_summary([True]))

    assert msg.is_multipart()
    assert msg["To"] == "ops@example.com"
    assert msg.get_body(preferencelist=("html",)) is not None


@pytest.mark.unit
def test_send_skipped_without_recipients():
    notifier = Notifier(NotificationConfig(smtp_host="mail.example.com"))

    assert not notifier.send(make_summary([True]))


@pytest.mark.unit
@patch("batchloader.notify.smtplib.SMTP")
def test_send_uses_smtp(mock_smtp):
    assert Notifier(CONFIG).send(make_summary([True, False]))

    mock_smtp.assert_called_once_with("mail.example.com", 25, timeout=30)
    smtp = mock_smtp.return_value.__enter__.return_value
    sent = smtp.send_message.call_args.args[0]
    assert "1 failed" in sent["Subject"]


@pytest.mark.unit
@patch("batchloader.notify.smtplib.SMTP", side_effect=OSError("connection refused"))
def test_send_failure_is_not_raised(mock_smtp):
    assert not Notifier(CONFIG).send(make_summary([True]))
