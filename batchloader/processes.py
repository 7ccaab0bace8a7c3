"""
Child process execution with bounded completion polling.

Hook commands and the query-execution command are spawned and then watched
with wait_for(), a soft wait: once the attempt budget is spent the caller
moves on whether or not the child has exited. terminate_on_timeout turns
this into a hard wait that kills the child.
"""

import os
import shlex
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol

import structlog

from batchloader.config import PollOptions, QueryOptions

log = structlog.get_logger()


class ProcessHandle(Protocol):
    """Anything that can report liveness; subprocess.Popen satisfies this."""

    pid: int

    def poll(self) -> int | None:
        ...

    def kill(self) -> None:
        ...

    def wait(self, timeout: float | None = None) -> int:
        ...


@dataclass
class CommandOutcome:
    """Result of a polled command."""
    finished: bool
    returncode: int | None
    output: str

    @property
    def ok(self) -> bool:
        return self.finished and self.returncode == 0


def wait_for(
    handle: ProcessHandle,
    max_attempts: int,
    interval: float,
    terminate_on_timeout: bool = False,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """
    Poll a child process until it exits or the attempt budget is spent.

    Args:
        handle: Process to watch
        max_attempts: Maximum number of liveness probes
        interval: Seconds to sleep after each live probe
        terminate_on_timeout: Kill the child if it outlives the budget
        sleep: Sleep function (injectable for tests)

    Returns:
        True if the child was seen to exit, False if it may still be running
    """
    for _ in range(max_attempts):
        if handle.poll() is not None:
            return True
        sleep(interval)

    if handle.poll() is not None:
        return True

    log.warning(
        "process_poll_budget_exhausted",
        pid=handle.pid,
        max_attempts=max_attempts,
        interval_seconds=interval,
        terminated=terminate_on_timeout,
    )

    if terminate_on_timeout:
        handle.kill()
        handle.wait()

    return False


def _feed_stdin(proc: subprocess.Popen, text: str, argv: list[str]) -> None:
    try:
        proc.stdin.write(text)
        proc.stdin.close()
    except (BrokenPipeError, ValueError):
        log.warning("command_closed_stdin", argv=argv[:1], pid=proc.pid)


def run_command(
    argv: list[str],
    work_dir: str | Path,
    poll: PollOptions,
    stdin_text: str | None = None,
) -> CommandOutcome:
    """
    Spawn a command, feed it optional stdin, and poll for completion.

    Combined stdout/stderr is captured to a transient file in work_dir and
    returned as text. Stdin is written from a helper thread so a child that
    never reads it cannot hold this call beyond the poll budget.
    """
    fd, name = tempfile.mkstemp(dir=work_dir, prefix="cmd_", suffix=".out")
    output_path = Path(name)
    feeder = None

    try:
        with os.fdopen(fd, "w") as out:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
                stdout=out,
                stderr=subprocess.STDOUT,
                text=True,
            )

            if stdin_text is not None:
                feeder = threading.Thread(
                    target=_feed_stdin, args=(proc, stdin_text, argv), daemon=True
                )
                feeder.start()

            finished = wait_for(
                proc,
                poll.max_attempts,
                poll.interval_seconds,
                terminate_on_timeout=poll.terminate_on_timeout,
            )

            # Once the child is gone its pipe is closed and the writer returns
            if feeder is not None and (finished or poll.terminate_on_timeout):
                feeder.join(timeout=max(poll.interval_seconds, 1.0))

        output = output_path.read_text(errors="replace")
    finally:
        output_path.unlink(missing_ok=True)

    return CommandOutcome(
        finished=finished,
        returncode=proc.returncode if finished else None,
        output=output,
    )


def run_query(
    statement: str,
    query: QueryOptions,
    work_dir: str | Path,
    poll: PollOptions,
) -> CommandOutcome:
    """
    Execute one SQL statement through the query-execution command.

    The statement is passed on stdin. Success is detected by the success
    marker appearing in the captured output, not by the exit status.
    """
    outcome = run_command(shlex.split(query.command), work_dir, poll, stdin_text=statement)

    succeeded = outcome.finished and query.success_marker in outcome.output
    return CommandOutcome(
        finished=outcome.finished,
        returncode=0 if succeeded else (outcome.returncode or 1),
        output=outcome.output,
    )
