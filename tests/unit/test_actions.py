"""
Unit tests - hook dispatch and once-per-run semantics
"""

from datetime import datetime, timezone

import pytest

from batchloader.actions import ActionDispatcher, ActionKind, ActionScope, ActionSpec, Trigger
from batchloader.context import RunContext, TableKey
from batchloader.results import ResultAggregator


def make_context(workspace) -> RunContext:
    return RunContext(
        run_timestamp=datetime(2024, 1, 15, 6, 0, tzinfo=timezone.utc),
        work_dir=workspace.work,
        lock_dir=workspace.lock,
        log_dir=workspace.logs,
        source_profile="local",
    )


def hook_actions(workspace, **tables) -> dict:
    hook = workspace.command("hook.py")
    return {
        "before": {"command": {t: f"{hook} {tpl}" for t, tpl in tables.items()}},
    }


@pytest.mark.unit
def test_table_hook_runs_once_per_table(workspace):
    config = workspace.config(actions=hook_actions(workspace, orders="pre {schema} {table}"))
    ctx = make_context(workspace)
    dispatcher = ActionDispatcher(config, ctx)
    key = TableKey("public", "orders")

    for _ in range(3):
        dispatcher.run_table_hooks(key, Trigger.BEFORE, "orders.csv")

    assert workspace.lines("hooks.log") == ["pre public orders"]
    assert key in ctx.executed_set("before", "command")


@pytest.mark.unit
def test_same_table_name_in_other_schema_is_a_different_key(workspace):
    config = workspace.config(actions=hook_actions(workspace, orders="pre {schema}"))
    dispatcher = ActionDispatcher(config, make_context(workspace))

    dispatcher.run_table_hooks(TableKey("public", "orders"), Trigger.BEFORE, "orders.csv")
    dispatcher.run_table_hooks(TableKey("sales", "orders"), Trigger.BEFORE, "sales/orders.csv")

    assert workspace.lines("hooks.log") == ["pre public", "pre sales"]


@pytest.mark.unit
def test_missing_hook_is_a_noop(workspace):
    config = workspace.config()
    ctx = make_context(workspace)
    dispatcher = ActionDispatcher(config, ctx)
    executed = ctx.executed_set("after", "query")

    result = dispatcher.maybe_run(
        TableKey("public", "orders"), Trigger.AFTER, ActionKind.QUERY, None, executed
    )

    assert not result.ran
    assert executed == set()


@pytest.mark.unit
def test_failed_hook_is_reported_and_still_marked(workspace):
    config = workspace.config(actions=hook_actions(workspace, orders="fail"))
    ctx = make_context(workspace)
    dispatcher = ActionDispatcher(config, ctx)
    key = TableKey("public", "orders")
    spec = dispatcher.lookup("orders", Trigger.BEFORE, ActionKind.COMMAND)
    executed = ctx.executed_set("before", "command")

    first = dispatcher.maybe_run(key, Trigger.BEFORE, ActionKind.COMMAND, spec, executed)
    second = dispatcher.maybe_run(key, Trigger.BEFORE, ActionKind.COMMAND, spec, executed)

    assert first.ran and not first.ok
    assert not second.ran
    assert workspace.lines("hooks.log") == ["fail"]


@pytest.mark.unit
def test_command_placeholders_are_substituted(workspace):
    template = "{database} {schema} {table} {config} {results_log} {file_name}"
    config = workspace.config(actions=hook_actions(workspace, orders=template))
    ctx = make_context(workspace)
    aggregator = ResultAggregator(work_dir=workspace.work, log_dir=workspace.logs, run_id=ctx.run_id)
    dispatcher = ActionDispatcher(config, ctx, aggregator)

    dispatcher.run_table_hooks(TableKey("sales", "orders"), Trigger.BEFORE, "sales/orders.csv")

    assert workspace.lines("hooks.log") == [
        f"analytics sales orders {config.config_path} {aggregator.results_path} sales/orders.csv"
    ]
    assert "before command hook for sales.orders" in aggregator.detail_path.read_text()


@pytest.mark.unit
def test_query_hook_sends_raw_statement(workspace):
    config = workspace.config(actions={
        "after": {"query": {"orders": "ANALYZE {schema}.orders;"}},
    })
    dispatcher = ActionDispatcher(config, make_context(workspace))

    dispatcher.run_table_hooks(TableKey("public", "orders"), Trigger.AFTER, "orders.csv")

    assert workspace.lines("queries.log") == ["ANALYZE {schema}.orders;"]


@pytest.mark.unit
def test_run_level_hook_bypasses_table_dedup_sets(workspace):
    config = workspace.config(actions=hook_actions(workspace, __run__="start {database}"))
    ctx = make_context(workspace)
    dispatcher = ActionDispatcher(config, ctx)

    spec = dispatcher.lookup("__run__", Trigger.BEFORE, ActionKind.COMMAND)
    dispatcher.run_level(Trigger.BEFORE)

    assert spec == ActionSpec(Trigger.BEFORE, ActionKind.COMMAND, ActionScope.RUN, spec.template)
    assert workspace.lines("hooks.log") == ["start analytics"]
    assert ctx.executed_set("before", "command") == set()


@pytest.mark.unit
def test_command_template_keeps_unrelated_braces(workspace):
    config = workspace.config(
        actions=hook_actions(workspace, orders="'{print $1}' ${HOME} {table}")
    )
    ctx = make_context(workspace)
    dispatcher = ActionDispatcher(config, ctx)
    key = TableKey("public", "orders")
    spec = dispatcher.lookup("orders", Trigger.BEFORE, ActionKind.COMMAND)

    result = dispatcher.maybe_run(
        key, Trigger.BEFORE, ActionKind.COMMAND, spec, ctx.executed_set("before", "command")
    )

    assert result.ran and result.ok
    assert workspace.lines("hooks.log") == ["{print $1} ${HOME} orders"]
