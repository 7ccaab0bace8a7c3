"""
Batch Loader

Runs unattended (cron or similar). Executes one load run:
1. Take the instance lock (reclaiming a stale one)
2. Check the run gate
3. Run run-level "before" hooks
4. For each source file: resolve table, run table "before" hooks, load,
   record the result, run table "after" hooks, move the file
5. Run run-level "after" hooks
6. Write the results log and stats file
7. Mail the summary
8. Archive run artifacts
9. Release the lock
"""

import argparse
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import structlog

from batchloader.actions import ActionDispatcher, Trigger
from batchloader.archiver import Archiver, move_source
from batchloader.config import Config, ConfigError
from batchloader.context import RunContext, RunState
from batchloader.loader import LoadExecutor
from batchloader.lock import LockHeld, LockManager
from batchloader.notify import Notifier
from batchloader.resolver import resolve_table
from batchloader.results import ResultAggregator, RunSummary
from batchloader.storage import Storage, create_storage, enumerate_sources, gate_open

log = structlog.get_logger()

EXIT_OK = 0
EXIT_PREFLIGHT = 1
EXIT_USAGE = 2


class PreflightError(Exception):
    """A required directory is missing; no load may be attempted."""


@dataclass
class RunOutcome:
    """What a run did, for the caller and for tests."""
    exit_code: int
    context: RunContext
    reason: str | None = None
    summary: RunSummary | None = None

    @property
    def state(self) -> RunState:
        return self.context.state

    @property
    def failed(self) -> bool:
        """Aggregate failure signal: any file failed to load."""
        return self.summary is not None and self.summary.has_error


def check_directories(config: Config) -> None:
    """
    Raises:
        PreflightError: If the work, lock, log or local source directory does not exist
    """
    required = ["work_dir", "lock_dir", "log_dir"]
    if config.source_profile == "local":
        required.append("source_path")

    for name in required:
        path = Path(getattr(config, name))
        if not path.is_dir():
            raise PreflightError(f"{name} does not exist: {path}")


def process_file(
    identifier: str,
    config: Config,
    storage: Storage,
    dispatcher: ActionDispatcher,
    executor: LoadExecutor,
) -> None:
    """Resolve, hook, load, hook and move a single source file."""
    target = resolve_table(
        identifier,
        config.default_schema,
        config.default_load_mode,
        config.strip_patterns,
        config.file_extension,
    )

    dispatcher.run_table_hooks(target.key, Trigger.BEFORE, identifier)
    result = executor.load(identifier, target)
    dispatcher.run_table_hooks(target.key, Trigger.AFTER, identifier)

    move_source(storage, identifier, result.succeeded, config.archive_path, config.failed_path)


def run(config: Config, storage: Storage | None = None, notifier: Notifier | None = None) -> RunOutcome:
    """
    Execute one complete load run.

    Only a missing directory, a held lock or a closed gate stop a run
    early; individual hook and file failures are recorded and the run
    carries on.
    """
    check_directories(config)

    ctx = RunContext(
        run_timestamp=datetime.now(timezone.utc),
        work_dir=Path(config.work_dir),
        lock_dir=Path(config.lock_dir),
        log_dir=Path(config.log_dir),
        source_profile=config.source_profile,
    )
    log.info("run_started", run_id=ctx.run_id, profile=config.source_profile, database=config.database)

    lock = LockManager(config.lock_dir)
    try:
        lock.acquire()
    except LockHeld as e:
        log.info("run_skipped", reason="already_running", pid=e.pid, lock=str(e.path))
        return RunOutcome(EXIT_OK, ctx, reason="already_running")

    try:
        ctx.advance(RunState.LOCKED)
        return _run_locked(config, ctx, storage, notifier)
    finally:
        lock.release()
        ctx.advance(RunState.UNLOCKED)


def _run_locked(
    config: Config,
    ctx: RunContext,
    storage: Storage | None,
    notifier: Notifier | None,
) -> RunOutcome:
    if storage is None:
        storage = create_storage(config.source_profile, config.source_path)

    if not gate_open(storage, config.gate_signal):
        log.info("run_skipped", reason="gate_closed", signal=config.gate_signal)
        return RunOutcome(EXIT_OK, ctx, reason="gate_closed")
    ctx.advance(RunState.GATED)

    aggregator = ResultAggregator(work_dir=ctx.work_dir, log_dir=ctx.log_dir, run_id=ctx.run_id)
    aggregator.add_notice(f"Run {ctx.run_id} started on {config.notification.cluster_name}")
    dispatcher = ActionDispatcher(config, ctx, aggregator)
    executor = LoadExecutor(config, ctx, storage, aggregator)

    try:
        dispatcher.run_level(Trigger.BEFORE)

        ctx.advance(RunState.LOADING)
        files = enumerate_sources(
            storage, config.file_extension, config.exclude_pattern, config.ignore_dirs
        )
        for identifier in files:
            process_file(identifier, config, storage, dispatcher, executor)

        dispatcher.run_level(Trigger.AFTER)

        if ctx.attempted == 0:
            log.info("run_complete", run_id=ctx.run_id, attempted=0, reason="no_files")
            return RunOutcome(EXIT_OK, ctx, reason="no_files")

        aggregator.add_notice(f"Run {ctx.run_id} finished")
        summary = aggregator.finalize(ctx.attempted, ctx.succeeded, ctx.failed, ctx.has_error)
        ctx.advance(RunState.SUMMARIZED)

        (notifier or Notifier(config.notification)).send(summary)
        ctx.advance(RunState.NOTIFIED)

        Archiver(
            config.artifact_archive_dir, config.archive_policy, config.loader.bad_records_dir
        ).run(summary)
    finally:
        executor.cleanup()
        aggregator.cleanup()
        ctx.advance(RunState.CLEANED)

    log.info(
        "run_complete",
        run_id=ctx.run_id,
        attempted=ctx.attempted,
        succeeded=ctx.succeeded,
        failed=ctx.failed,
        has_error=ctx.has_error,
    )
    return RunOutcome(EXIT_OK, ctx, summary=summary)


def configure_logging(console: bool = False) -> None:
    renderer = structlog.dev.ConsoleRenderer() if console else structlog.processors.JSONRenderer()
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="batchloader",
        description="Load delimited files into the analytical store via the bulk-load command",
    )
    parser.add_argument(
        "-c", "--config",
        required=True,
        help="Path to the YAML configuration file",
    )
    parser.add_argument(
        "--console-logs",
        action="store_true",
        help="Human-readable logs instead of JSON",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point; returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(args.console_logs)

    try:
        config = Config.from_file(args.config)
    except ConfigError as e:
        parser.print_usage(sys.stderr)
        print(f"batchloader: error: {e}", file=sys.stderr)
        return EXIT_USAGE

    try:
        outcome = run(config)
    except PreflightError as e:
        log.error("preflight_failed", error=str(e))
        return EXIT_PREFLIGHT

    if outcome.failed:
        log.warning("run_had_failures", failed=outcome.summary.failed, attempted=outcome.summary.attempted)

    return outcome.exit_code


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
