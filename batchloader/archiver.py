"""
Archive source files and run artifacts.

Source files are moved out of the source root after their load so the next
run does not pick them up again. Run artifacts (results log, stats file and
any bad-records files) are copied to a dated archive directory according to
the archive policy.
"""

import shutil
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from batchloader.results import RunSummary
from batchloader.storage import Storage

log = structlog.get_logger()


@dataclass
class ArchiveResult:
    """Result of archiving run artifacts."""
    archived: bool
    archive_dir: str | None = None
    files: list[str] = field(default_factory=list)


def move_source(storage: Storage, identifier: str, succeeded: bool,
                archive_path: str | None, failed_path: str | None) -> str | None:
    """
    Move a loaded file to the archive (success) or failed (failure) root.

    Leaves the file in place when the matching root is not configured.
    Never raises; a failed move is logged.
    """
    destination = archive_path if succeeded else failed_path
    if not destination:
        return None

    try:
        moved_to = storage.move(identifier, destination)
    except Exception as e:
        log.error(
            "source_move_failed",
            file=identifier,
            destination=destination,
            error=str(e),
            error_type=type(e).__name__,
        )
        return None

    log.debug("source_moved", file=identifier, destination=moved_to)
    return moved_to


def should_archive(policy: str, summary: RunSummary) -> bool:
    if policy == "always":
        return True
    if policy == "on-error":
        return summary.has_error
    if policy == "on-bad-records":
        return summary.has_bad_records
    return False


class Archiver:
    """Copy run artifacts into <archive_root>/YYYY-MM-DD/ according to policy."""

    def __init__(self, archive_root: str | None, policy: str, bad_records_dir: str | None = None) -> None:
        self.archive_root = archive_root
        self.policy = policy
        self.bad_records_dir = bad_records_dir

    def run(self, summary: RunSummary) -> ArchiveResult:
        if not self.archive_root or not should_archive(self.policy, summary):
            log.info("artifact_archive_skipped", policy=self.policy)
            return ArchiveResult(archived=False)

        archive_dir = Path(self.archive_root) / summary.started_at.strftime("%Y-%m-%d")
        copied = []

        try:
            archive_dir.mkdir(parents=True, exist_ok=True)
            for path, relative in self._artifacts(summary):
                dest = archive_dir / relative
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(path, dest)
                copied.append(str(dest))
        except OSError as e:
            log.error(
                "artifact_archive_failed",
                archive_dir=str(archive_dir),
                copied=len(copied),
                error=str(e),
                error_type=type(e).__name__,
            )
            return ArchiveResult(archived=False, archive_dir=str(archive_dir), files=copied)

        log.info("artifacts_archived", archive_dir=str(archive_dir), files=len(copied), policy=self.policy)
        return ArchiveResult(archived=True, archive_dir=str(archive_dir), files=copied)

    def _artifacts(self, summary: RunSummary) -> list[tuple[Path, Path]]:
        """Return (source, path relative to the archive directory) pairs."""
        artifacts = [
            (p, Path(p.name)) for p in (summary.results_path, summary.stats_path) if p.exists()
        ]

        bad_root = Path(self.bad_records_dir) if self.bad_records_dir else None
        if bad_root is not None and bad_root.is_dir():
            artifacts.extend(
                (p, Path("bad_records") / p.relative_to(bad_root))
                for p in sorted(bad_root.rglob("*"))
                if p.is_file() and p.stat().st_size > 0
            )

        return artifacts
