"""Per-run state passed explicitly through every stage of a run."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import NamedTuple


class TableKey(NamedTuple):
    """Identity of a target table; used for hook dedup and truncate tracking."""
    schema: str
    table: str

    def __str__(self) -> str:
        return f"{self.schema}.{self.table}"


class RunState(str, Enum):
    INIT = "init"
    LOCKED = "locked"
    GATED = "gated"
    LOADING = "loading"
    SUMMARIZED = "summarized"
    NOTIFIED = "notified"
    CLEANED = "cleaned"
    UNLOCKED = "unlocked"


@dataclass
class RunContext:
    """
    Mutable state for a single run.

    Created at run start and discarded at run end. Counters are always
    zero-initialised so that succeeded + failed == attempted holds for
    any sequence of outcomes.
    """
    run_timestamp: datetime
    work_dir: Path
    lock_dir: Path
    log_dir: Path
    source_profile: str

    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    has_error: bool = False
    state: RunState = RunState.INIT

    # (trigger, kind) -> table keys whose hook already ran this run
    executed_actions: dict[tuple[str, str], set[TableKey]] = field(default_factory=dict)
    truncated_tables: set[TableKey] = field(default_factory=set)

    @property
    def run_id(self) -> str:
        return self.run_timestamp.strftime("%Y%m%d_%H%M%S")

    def executed_set(self, trigger: str, kind: str) -> set[TableKey]:
        """Return the dedup set for a hook category, creating it on first use."""
        return self.executed_actions.setdefault((trigger, kind), set())

    def record_success(self) -> None:
        self.attempted += 1
        self.succeeded += 1

    def record_failure(self) -> None:
        self.attempted += 1
        self.failed += 1
        self.has_error = True

    def advance(self, state: RunState) -> None:
        self.state = state
