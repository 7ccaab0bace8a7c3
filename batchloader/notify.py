"""Mail the run summary to the configured recipients."""

import html
import smtplib
from email.message import EmailMessage

import structlog

from batchloader.config import NotificationConfig
from batchloader.results import STATS_COLUMNS, RunSummary, render_table

log = structlog.get_logger()

ROW_STYLES = {
    "ok": "background-color:#e6f4ea;",
    "warning": "background-color:#fff4e5;",
    "failed": "background-color:#fce8e6;font-weight:bold;",
}


def build_subject(summary: RunSummary, config: NotificationConfig) -> str:
    """
    Subject line: "<prefix> 2 of 3 files loaded", with the failure count and
    cluster appended when any file failed.
    """
    subject = f"[{config.subject_prefix}] {summary.succeeded} of {summary.attempted} files loaded"
    if summary.has_error:
        subject += f" - {summary.failed} failed on {config.cluster_name}"
    return subject


def row_style(succeeded: bool, rows_failed: int) -> str:
    if not succeeded:
        return ROW_STYLES["failed"]
    if rows_failed:
        return ROW_STYLES["warning"]
    return ROW_STYLES["ok"]


def build_html(summary: RunSummary) -> str:
    """Render the stats as an HTML table, one styled row per file."""
    header = "".join(f"<th>{html.escape(col)}</th>" for col in STATS_COLUMNS)
    rows = []
    for result in summary.results:
        cells = "".join(f"<td>{html.escape(cell)}</td>" for cell in result.as_row())
        style = row_style(result.succeeded, result.rows_failed)
        rows.append(f'<tr style="{style}">{cells}</tr>')

    return (
        "<html><body>"
        f"<p>Run {html.escape(summary.run_id)}: {summary.succeeded} of {summary.attempted} "
        f"files loaded, {summary.failed} failed.</p>"
        '<table border="1" cellspacing="0" cellpadding="4">'
        f"<tr>{header}</tr>{''.join(rows)}</table>"
        f"<p>Full results: {html.escape(str(summary.results_path))}</p>"
        "</body></html>"
    )


def build_text(summary: RunSummary) -> str:
    return "\n".join([
        f"Run {summary.run_id}: {summary.succeeded} of {summary.attempted} files loaded, "
        f"{summary.failed} failed.",
        "",
        render_table([r.as_row() for r in summary.results]),
        "",
        f"Full results: {summary.results_path}",
    ])


class Notifier:
    """Compose and deliver the summary mail over SMTP."""

    def __init__(self, config: NotificationConfig) -> None:
        self.config = config

    def build_message(self, summary: RunSummary) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = build_subject(summary, self.config)
        msg["From"] = self.config.sender
        msg["To"] = ", ".join(self.config.recipients)
        msg.set_content(build_text(summary))
        if self.config.html:
            msg.add_alternative(build_html(summary), subtype="html")
        return msg

    def send(self, summary: RunSummary) -> bool:
        """
        Send the summary mail.

        Returns:
            True if the message was handed to the SMTP server
        """
        if not self.config.recipients or not self.config.smtp_host:
            log.info("notification_skipped", reason="no recipients or smtp host configured")
            return False

        msg = self.build_message(summary)
        try:
            with smtplib.SMTP(self.config.smtp_host, self.config.smtp_port, timeout=30) as smtp:
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            log.error("notification_failed", error=str(e), error_type=type(e).__name__)
            return False

        log.info("notification_sent", subject=msg["Subject"], recipients=len(self.config.recipients))
        return True
