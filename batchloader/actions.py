"""
Pre/post load hooks.

Hooks are configured per table (or for the whole run, under the __run__
key) for each combination of trigger (before/after) and kind
(query/command). A per-table hook runs at most once per run, however many
files resolve to that table. Hook failures are logged and reported; they
never abort the run.
"""

import shlex
from dataclasses import dataclass
from enum import Enum

import structlog

from batchloader.config import RUN_LEVEL_KEY, Config, fill_placeholders
from batchloader.context import RunContext, TableKey
from batchloader.processes import CommandOutcome, run_command, run_query

log = structlog.get_logger()

RUN_LEVEL_TABLE_KEY = TableKey(RUN_LEVEL_KEY, RUN_LEVEL_KEY)


class Trigger(str, Enum):
    BEFORE = "before"
    AFTER = "after"


class ActionKind(str, Enum):
    QUERY = "query"
    COMMAND = "command"


class ActionScope(str, Enum):
    TABLE = "table"
    RUN = "run"


@dataclass(frozen=True)
class ActionSpec:
    """A configured hook. Immutable for the duration of a run."""
    trigger: Trigger
    kind: ActionKind
    scope: ActionScope
    template: str


@dataclass(frozen=True)
class ActionResult:
    ran: bool
    ok: bool


NOT_RUN = ActionResult(ran=False, ok=True)


class ActionDispatcher:
    """Look up and execute hooks, recording what already ran in the RunContext."""

    def __init__(self, config: Config, ctx: RunContext, results_log=None) -> None:
        """
        Args:
            config: Loader configuration holding the hook tables
            ctx: Run context holding the dedup sets
            results_log: Optional ResultAggregator receiving hook output
        """
        self.config = config
        self.ctx = ctx
        self.results_log = results_log

    def lookup(self, table: str, trigger: Trigger, kind: ActionKind) -> ActionSpec | None:
        """Return the hook for a table name (or the run-level key), if any."""
        template = self.config.action_table(trigger.value, kind.value).get(table)
        if not template:
            return None
        scope = ActionScope.RUN if table == RUN_LEVEL_KEY else ActionScope.TABLE
        return ActionSpec(trigger=trigger, kind=kind, scope=scope, template=template)

    def maybe_run(
        self,
        key: TableKey,
        trigger: Trigger,
        kind: ActionKind,
        spec: ActionSpec | None,
        executed: set[TableKey],
        file_name: str = "",
    ) -> ActionResult:
        """
        Run a hook unless it already ran for this table in this run.

        The table is marked as executed whether the hook succeeds or fails.
        """
        if key in executed:
            return NOT_RUN
        if spec is None or not spec.template.strip():
            return NOT_RUN

        ok = self._execute(spec, key, file_name)
        executed.add(key)
        return ActionResult(ran=True, ok=ok)

    def run_table_hooks(self, key: TableKey, trigger: Trigger, file_name: str) -> None:
        """Run query then command hooks configured for a table."""
        for kind in (ActionKind.QUERY, ActionKind.COMMAND):
            self.maybe_run(
                key,
                trigger,
                kind,
                self.lookup(key.table, trigger, kind),
                self.ctx.executed_set(trigger.value, kind.value),
                file_name=file_name,
            )

    def run_level(self, trigger: Trigger) -> None:
        """
        Run the run-level hooks for a trigger.

        There is a single call site per trigger, so these always run when
        configured; a fresh dedup set keeps them out of the per-table sets.
        """
        for kind in (ActionKind.QUERY, ActionKind.COMMAND):
            spec = self.lookup(RUN_LEVEL_KEY, trigger, kind)
            self.maybe_run(RUN_LEVEL_TABLE_KEY, trigger, kind, spec, set())

    def _execute(self, spec: ActionSpec, key: TableKey, file_name: str) -> bool:
        context = dict(
            trigger=spec.trigger.value,
            kind=spec.kind.value,
            scope=spec.scope.value,
            table=str(key),
        )
        log.info("action_started", **context)

        try:
            if spec.kind is ActionKind.QUERY:
                outcome = self._run_query(spec.template)
            else:
                outcome = self._run_command(spec.template, key, file_name)
        except Exception as e:
            log.error("action_failed", error=str(e), error_type=type(e).__name__, **context)
            return False

        if self.results_log is not None:
            self.results_log.append_detail(
                f"{spec.trigger.value} {spec.kind.value} hook for {key}", outcome.output
            )

        if outcome.ok:
            log.info("action_succeeded", **context)
        elif not outcome.finished:
            log.warning("action_still_running", **context)
        else:
            log.error(
                "action_failed",
                returncode=outcome.returncode,
                output=outcome.output[-2000:],
                **context,
            )
        return outcome.ok

    def _run_query(self, statement: str) -> CommandOutcome:
        if self.config.query is None:
            raise RuntimeError("query hook configured but no query command is set")
        return run_query(statement, self.config.query, self.ctx.work_dir, self.config.poll)

    def _run_command(self, template: str, key: TableKey, file_name: str) -> CommandOutcome:
        placeholders = {
            "database": self.config.database,
            "schema": key.schema,
            "table": key.table,
            "config": self.config.config_path,
            "results_log": str(self.results_log.results_path) if self.results_log else "",
            "file_name": file_name,
        }
        argv = [fill_placeholders(part, **placeholders) for part in shlex.split(template)]
        return run_command(argv, self.ctx.work_dir, self.config.poll)
