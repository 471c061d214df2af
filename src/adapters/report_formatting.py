"""Shared report formatting helpers for the CLI.

Keeping formatting here keeps validation, dry-run and audit output consistent
regardless of which command produced it.
"""

from __future__ import annotations

from typing import Any, Iterable

from rich.table import Table

from core.models import ExecutionResult, TestResult, ValidationResult


def format_validation(result: ValidationResult) -> str:
    """Return a human-readable validation report."""

    if result.valid:
        return f"OK: {result.rule_count} rule(s) valid"

    lines = [f"INVALID: {len(result.errors)} error(s) in {result.rule_count} rule(s)"]
    for issue in result.errors:
        location = issue.path
        if issue.line is not None:
            location = f"{location} (line {issue.line})"
        lines.append(f"  - {location}: {issue.message}")
    return "\n".join(lines)


def format_test_result(result: TestResult) -> str:
    """Return the dry-run report: matched rules, then the action preview."""

    if not result.matched_rules:
        return "No rules matched."

    lines = ["Matched rules:"]
    for rule in result.matched_rules:
        lines.append(f"  - {rule.id} ({rule.name}): {rule.reason}")
    lines.append("Actions:")
    for action in result.actions_preview:
        lines.append(f"  - [{action.rule_id}] {action.type}: {action.details}")
    return "\n".join(lines)


def format_execution(result: ExecutionResult) -> str:
    """Return the audit trail of one processed message."""

    lines = []
    for rule in result.evaluated_rules:
        if rule.skipped_cooldown:
            status = "cooldown"
        elif rule.matched:
            status = "matched"
        else:
            status = "no match"
        lines.append(f"{rule.id}: {status} ({rule.reason})")
    for action in result.executed_actions:
        outcome = "ok" if action.success else f"failed: {action.error}"
        lines.append(f"  {action.rule_id} -> {action.details} [{outcome}, {action.duration_ms}ms]")
    return "\n".join(lines) or "No rules evaluated."


def fires_table(fires: Iterable[dict[str, Any]]) -> Table:
    table = Table(title="Rule fires")
    for header in ("Fired at", "Rule", "Chat", "Actions", "Status"):
        table.add_column(header)
    for fire in fires:
        actions = ", ".join(action.get("details", action.get("type", "")) for action in fire["actions"])
        status = "ok" if fire["success"] else f"failed: {fire['error_message']}"
        table.add_row(fire["fired_at"], fire["rule_id"], fire["chat_id"] or "", actions, status)
    return table


def stats_table(stats: dict[str, Any]) -> Table:
    table = Table(title=f"Last {stats['period_hours']}h")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Messages", str(stats["messages"]["total"]))
    table.add_row("Processed", str(stats["messages"]["processed"]))
    table.add_row("Rule fires", str(stats["rule_fires"]["total"]))
    table.add_row("Successful", str(stats["rule_fires"]["successful"]))
    table.add_row("Failed", str(stats["rule_fires"]["failed"]))
    for rule in stats["top_rules"]:
        table.add_row(f"Top: {rule['rule_id']}", str(rule["fire_count"]))
    return table
