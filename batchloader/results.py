"""
Aggregate loader output into per-file records and the run summary.

The loader prints a fixed set of labelled lines, e.g.:

    Status: SUCCESS
    Rows total: 1000
    Rows successfully loaded: 998
    Rows failed: 2
    Rows duplicate/omitted: 0
    Percentage loaded: 99.80%

Each file yields one LoadResult for the stats file; the raw output goes to
the detail section of the results log.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

import structlog

log = structlog.get_logger()

STATS_COLUMNS = (
    "database",
    "schema",
    "table",
    "status",
    "rows_total",
    "rows_loaded",
    "rows_failed",
    "rows_skipped",
    "rows_loaded_pct",
    "file_name",
)

LABELS = {
    "status": "Status",
    "rows_total": "Rows total",
    "rows_loaded": "Rows successfully loaded",
    "rows_failed": "Rows failed",
    "rows_skipped": "Rows duplicate/omitted",
    "rows_loaded_pct": "Percentage loaded",
}

SUCCESS_STATUSES = {"OK", "SUCCESS", "SUCCEEDED", "LOADED"}
FAILED_STATUS = "FAILED"
UNKNOWN_STATUS = "UNKNOWN"


@dataclass(frozen=True)
class LoadResult:
    """Outcome of loading one file. Never mutated after creation."""
    database: str
    schema: str
    table: str
    status: str
    rows_total: int
    rows_loaded: int
    rows_failed: int
    rows_skipped: int
    loaded_percentage: float
    file_name: str
    succeeded: bool

    def as_row(self) -> tuple[str, ...]:
        return (
            self.database,
            self.schema,
            self.table,
            self.status,
            str(self.rows_total),
            str(self.rows_loaded),
            str(self.rows_failed),
            str(self.rows_skipped),
            f"{self.loaded_percentage:.2f}",
            self.file_name,
        )

    def to_stats_line(self) -> str:
        return "|".join(self.as_row())


def _extract(output: str, label: str) -> str | None:
    match = re.search(rf"^\s*{re.escape(label)}\s*:\s*(.+?)\s*$", output, re.MULTILINE)
    return match.group(1) if match else None


def _to_int(value: str | None) -> int:
    if not value:
        return 0
    digits = re.sub(r"[^\d-]", "", value)
    try:
        return int(digits)
    except ValueError:
        return 0


def _to_pct(value: str | None) -> float:
    if not value:
        return 0.0
    try:
        return float(value.strip().rstrip("%").replace(",", "."))
    except ValueError:
        return 0.0


def parse_loader_output(
    output: str,
    database: str,
    schema: str,
    table: str,
    file_name: str,
    returncode: int,
) -> LoadResult:
    """
    Build a LoadResult from captured loader output and its exit status.

    A non-zero exit status always marks the file failed. The loader's own
    status is kept unless it claims success, in which case FAILED is used.
    """
    status = _extract(output, LABELS["status"])
    rows_total = _to_int(_extract(output, LABELS["rows_total"]))
    rows_loaded = _to_int(_extract(output, LABELS["rows_loaded"]))
    pct_text = _extract(output, LABELS["rows_loaded_pct"])

    if pct_text is not None:
        percentage = _to_pct(pct_text)
    elif rows_total:
        percentage = rows_loaded * 100.0 / rows_total
    else:
        percentage = 0.0

    succeeded = returncode == 0
    if not succeeded and (not status or status.upper() in SUCCESS_STATUSES):
        status = FAILED_STATUS

    return LoadResult(
        database=database,
        schema=schema,
        table=table,
        status=status or UNKNOWN_STATUS,
        rows_total=rows_total,
        rows_loaded=rows_loaded,
        rows_failed=_to_int(_extract(output, LABELS["rows_failed"])),
        rows_skipped=_to_int(_extract(output, LABELS["rows_skipped"])),
        loaded_percentage=percentage,
        file_name=file_name,
        succeeded=succeeded,
    )


def render_table(rows: list[tuple[str, ...]], headers: tuple[str, ...] = STATS_COLUMNS) -> str:
    """Render rows as a left-aligned, pipe-separated text table."""
    widths = [len(h) for h in headers]
    for row in rows:
        widths = [max(w, len(cell)) for w, cell in zip(widths, row)]

    def fmt(cells) -> str:
        return " | ".join(cell.ljust(w) for cell, w in zip(cells, widths)).rstrip()

    separator = "-+-".join("-" * w for w in widths)
    return "\n".join([fmt(headers), separator, *(fmt(row) for row in rows)])


@dataclass
class RunSummary:
    """Everything the notifier and archiver need after a run."""
    run_id: str
    attempted: int
    succeeded: int
    failed: int
    has_error: bool
    results: list[LoadResult]
    results_path: Path
    stats_path: Path
    started_at: datetime
    finished_at: datetime

    @property
    def has_bad_records(self) -> bool:
        return any(r.rows_failed > 0 for r in self.results)


@dataclass
class ResultAggregator:
    """
    Collect per-file results and detail output for one run.

    Detail output is appended to a transient file in the work directory as
    the run progresses; finalize() writes the stats file and the combined
    results log into the log directory.
    """
    work_dir: Path
    log_dir: Path
    run_id: str
    results: list[LoadResult] = field(default_factory=list)
    notices: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        self.work_dir = Path(self.work_dir)
        self.log_dir = Path(self.log_dir)
        self.detail_path = self.work_dir / f"detail_{self.run_id}.log"
        self.results_path = self.log_dir / f"results_{self.run_id}.log"
        self.stats_path = self.log_dir / f"stats_{self.run_id}.txt"

    def add_notice(self, message: str) -> None:
        """Record a run-level notice shown ahead of the summary table."""
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        self.notices.append(f"[{stamp}] {message}")

    def append_detail(self, title: str, text: str) -> None:
        """Append a titled section of raw output to the detail log."""
        with open(self.detail_path, "a") as f:
            f.write(f"===== {title} =====\n")
            f.write(text)
            if text and not text.endswith("\n"):
                f.write("\n")
            f.write("\n")

    def record(self, result: LoadResult, output: str) -> None:
        """Append a file's result to the stats buffer and its output to the detail log."""
        self.results.append(result)
        self.append_detail(
            f"{result.schema}.{result.table} <- {result.file_name} [{result.status}]",
            output,
        )

    def finalize(self, attempted: int, succeeded: int, failed: int, has_error: bool) -> RunSummary:
        """Write the stats file and the combined results log."""
        finished_at = datetime.now(timezone.utc)

        stats_lines = ["|".join(STATS_COLUMNS), *(r.to_stats_line() for r in self.results)]
        self.stats_path.write_text("\n".join(stats_lines) + "\n")

        detail = self.detail_path.read_text() if self.detail_path.exists() else ""
        sections = [
            *self.notices,
            "",
            f"Files loaded: {succeeded} of {attempted} succeeded, {failed} failed",
            "",
            render_table([r.as_row() for r in self.results]),
            "",
            detail,
        ]
        self.results_path.write_text("\n".join(sections))

        log.info(
            "results_written",
            results_path=str(self.results_path),
            stats_path=str(self.stats_path),
            files=len(self.results),
        )

        return RunSummary(
            run_id=self.run_id,
            attempted=attempted,
            succeeded=succeeded,
            failed=failed,
            has_error=has_error,
            results=list(self.results),
            results_path=self.results_path,
            stats_path=self.stats_path,
            started_at=self.started_at,
            finished_at=finished_at,
        )

    def cleanup(self) -> None:
        """Remove transient files from the work directory."""
        self.detail_path.unlink(missing_ok=True)
