"""
Bulk-load invocation for the batch loader.

Builds one loader command line per file for the active source profile:

- local: the file is passed by path, or streamed on stdin when rows need
  rewriting (extra column, line ending normalisation); failed rows go to a
  bad-records directory per schema
- gcs: the loader reads the object itself from the bucket, so the command
  carries bucket, region, optional credentials and a buffer size instead

The exit status decides success; the captured output feeds the result
aggregator.
"""

import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator

import structlog

from batchloader.config import Config, ExtraColumn, fill_placeholders
from batchloader.context import RunContext
from batchloader.processes import run_query
from batchloader.resolver import ResolvedTable
from batchloader.results import LoadResult, ResultAggregator, parse_loader_output
from batchloader.storage import Storage, parse_gcs_path

log = structlog.get_logger()

STDIN_SOURCE = "-"


@dataclass
class Invocation:
    """A ready-to-run loader command."""
    argv: list[str]
    stdin_path: Path | None = None          # Local file streamed through the row transformer
    extra_column: ExtraColumn | None = None
    normalize_line_endings: bool = False


def common_arguments(config: Config, target: ResolvedTable) -> list[str]:
    """Arguments shared by both source profiles."""
    options = config.loader
    args = [
        "--database", config.database,
        "--schema", target.schema,
        "--table", target.table,
        "--mode", target.load_mode.value,
        "--header", "true" if options.header else "false",
        "--format", options.format,
        "--separator", options.field_separator,
        "--enclosed-by", options.enclosed_by,
        "--max-ignored-rows", str(options.max_ignored_rows),
        "--null", options.null_token,
        "--verbosity", str(options.verbosity),
    ]

    for flag, value in (
        ("--date-format", options.date_format),
        ("--time-format", options.time_format),
        ("--timestamp-format", options.timestamp_format),
        ("--boolean-format", options.boolean_format),
    ):
        if value:
            args.extend([flag, value])

    return args


def build_local_invocation(
    config: Config,
    target: ResolvedTable,
    source_path: str,
    run_timestamp: str,
) -> Invocation:
    """
    Build the loader command for a file on the local filesystem.

    When the table has an extra column configured, or line endings must be
    normalised, the file is streamed on stdin instead of passed by path.
    """
    extra = config.extra_columns.get(target.table)
    if extra is not None:
        extra = ExtraColumn(
            header=extra.header,
            value=fill_placeholders(
                extra.value,
                run_timestamp=run_timestamp,
                file_name=target.file_name,
                schema=target.schema,
                table=target.table,
            ),
        )

    piped = extra is not None or config.normalize_line_endings

    argv = [*shlex.split(config.loader.command), *common_arguments(config, target)]
    argv.extend(["--file", STDIN_SOURCE if piped else source_path])

    if config.loader.bad_records_dir:
        bad_records = Path(config.loader.bad_records_dir) / target.schema
        bad_records.mkdir(parents=True, exist_ok=True)
        argv.extend(["--bad-records", str(bad_records)])

    return Invocation(
        argv=argv,
        stdin_path=Path(source_path) if piped else None,
        extra_column=extra,
        normalize_line_endings=config.normalize_line_endings,
    )


def build_object_store_invocation(config: Config, target: ResolvedTable, identifier: str) -> Invocation:
    """Build the loader command for an object the loader reads from the bucket itself."""
    store = config.object_store
    object_root = store.object_root.strip("/") or parse_gcs_path(config.source_path)[1]
    object_path = f"{object_root}/{identifier}" if object_root else identifier

    argv = [*shlex.split(config.loader.command), *common_arguments(config, target)]
    argv.extend([
        "--file", object_path,
        "--bucket", store.bucket,
        "--buffer-size", str(store.buffer_size),
    ])
    if store.region:
        argv.extend(["--region", store.region])
    if store.access_key and store.secret_key:
        argv.extend(["--access-key", store.access_key, "--secret-key", store.secret_key])

    return Invocation(argv=argv)


def transform_lines(
    source: BinaryIO,
    extra: ExtraColumn | None,
    separator: str,
    header: bool,
    normalize_line_endings: bool,
) -> Iterator[bytes]:
    """
    Yield the source lines, rewritten for loading.

    With an extra column, the header line (when present) gains the column
    name and every data line gains the value. Line endings are normalised
    to "\\n" when requested.
    """
    sep = separator.encode()
    first = True

    for line in source:
        if line.endswith(b"\r\n"):
            body, ending = line[:-2], b"\r\n"
        elif line.endswith(b"\n"):
            body, ending = line[:-1], b"\n"
        else:
            body, ending = line, b""

        if normalize_line_endings:
            body, ending = body.rstrip(b"\r"), b"\n"

        if extra is not None and body:
            suffix = extra.header if header and first else extra.value
            body = body + sep + suffix.encode()

        first = False
        yield body + ending


def redact(argv: list[str]) -> list[str]:
    """Hide credential values before logging a command line."""
    hidden = list(argv)
    for i, arg in enumerate(hidden[:-1]):
        if arg in ("--access-key", "--secret-key"):
            hidden[i + 1] = "****"
    return hidden


class LoadExecutor:
    """Load files one at a time and record their outcomes."""

    def __init__(
        self,
        config: Config,
        ctx: RunContext,
        storage: Storage,
        aggregator: ResultAggregator,
    ) -> None:
        self.config = config
        self.ctx = ctx
        self.storage = storage
        self.aggregator = aggregator
        self.output_path = Path(ctx.work_dir) / f"loader_{ctx.run_id}.out"

    def truncate_if_needed(self, target: ResolvedTable) -> None:
        """Truncate a table once per run, before its first file is loaded."""
        if not self.config.truncate_before_load or target.key in self.ctx.truncated_tables:
            return

        self.ctx.truncated_tables.add(target.key)

        if self.config.query is None:
            log.error("truncate_skipped", table=str(target.key), reason="no query command configured")
            return

        try:
            statement = fill_placeholders(
                self.config.truncate_statement,
                database=self.config.database,
                schema=target.schema,
                table=target.table,
            )
            outcome = run_query(statement, self.config.query, self.ctx.work_dir, self.config.poll)
        except Exception as e:
            log.error("truncate_failed", table=str(target.key), error=str(e), error_type=type(e).__name__)
            return

        if outcome.ok:
            log.info("table_truncated", table=str(target.key))
        else:
            log.error("truncate_failed", table=str(target.key), output=outcome.output[-2000:])

    def build_invocation(self, identifier: str, target: ResolvedTable) -> Invocation:
        if self.storage.profile == "gcs":
            return build_object_store_invocation(self.config, target, identifier)
        return build_local_invocation(
            self.config, target, self.storage.location(identifier), self.ctx.run_id
        )

    def load(self, identifier: str, target: ResolvedTable) -> LoadResult:
        """
        Load one file and record the result.

        Never raises - any error starting or feeding the loader counts as a
        failed load.
        """
        self.truncate_if_needed(target)

        try:
            invocation = self.build_invocation(identifier, target)
            log.info("load_started", file=identifier, table=str(target.key), argv=redact(invocation.argv))
            returncode = self._execute(invocation)
            output = self.output_path.read_text(errors="replace")
        except Exception as e:
            returncode = -1
            output = f"{type(e).__name__}: {e}\n"
            log.error("load_error", file=identifier, error=str(e), error_type=type(e).__name__)

        result = parse_loader_output(
            output,
            database=self.config.database,
            schema=target.schema,
            table=target.table,
            file_name=identifier,
            returncode=returncode,
        )
        self.aggregator.record(result, output)

        if result.succeeded:
            self.ctx.record_success()
            log.info(
                "file_loaded",
                file=identifier,
                table=str(target.key),
                rows_loaded=result.rows_loaded,
                rows_failed=result.rows_failed,
            )
        else:
            self.ctx.record_failure()
            log.error("file_load_failed", file=identifier, table=str(target.key), returncode=returncode)

        return result

    def _execute(self, invocation: Invocation) -> int:
        """
        Run the loader, capturing stdout and stderr to the per-run output file.

        A piped source is opened before the loader starts, so an unreadable
        file never reaches the loader as empty input. If streaming fails part
        way the loader is killed rather than left to commit a partial load.
        """
        with open(self.output_path, "wb") as out:
            if invocation.stdin_path is None:
                return subprocess.run(
                    invocation.argv, stdin=subprocess.DEVNULL, stdout=out, stderr=subprocess.STDOUT
                ).returncode

            with open(invocation.stdin_path, "rb") as source:
                proc = subprocess.Popen(
                    invocation.argv, stdin=subprocess.PIPE, stdout=out, stderr=subprocess.STDOUT
                )
                try:
                    for chunk in transform_lines(
                        source,
                        invocation.extra_column,
                        self.config.loader.field_separator,
                        self.config.loader.header,
                        invocation.normalize_line_endings,
                    ):
                        proc.stdin.write(chunk)
                except BrokenPipeError:
                    log.warning("loader_closed_stdin", argv=redact(invocation.argv))
                except Exception:
                    proc.kill()
                    raise
                finally:
                    try:
                        proc.stdin.close()
                    except BrokenPipeError:
                        pass
                    proc.wait()

            return proc.returncode

    def cleanup(self) -> None:
        self.output_path.unlink(missing_ok=True)
