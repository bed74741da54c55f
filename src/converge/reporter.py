"""Textual and structured summaries of plans and runs.

Lines are always emitted in declaration order, independent of execution
order or concurrency, so two runs over the same input produce output
that diffs cleanly.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import asdict, dataclass
from typing import Any

from .executor import ApplyResult, NodeResult, NodeStatus
from .planner import Action, Plan, PlanEntry

ACTION_SYMBOLS: dict[Action, str] = {
    Action.CREATE: "+",
    Action.UPDATE: "~",
    Action.DESTROY: "-",
    Action.NOOP: "=",
    Action.SKIP: ".",
}

# Past tense used in run lines for succeeded actions
ACTION_DONE: dict[Action, str] = {
    Action.CREATE: "created",
    Action.UPDATE: "updated",
    Action.DESTROY: "destroyed",
    Action.NOOP: "unchanged",
    Action.SKIP: "skipped",
}


@dataclass(frozen=True)
class Summary:
    """Aggregate counts for a run."""

    created: int = 0
    updated: int = 0
    destroyed: int = 0
    unchanged: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def summarize(result: ApplyResult) -> Summary:
    counts: Counter[str] = Counter()
    for node_result in result.results.values():
        if node_result.status == NodeStatus.FAILED:
            counts["failed"] += 1
        elif node_result.status == NodeStatus.SKIPPED:
            counts["skipped"] += 1
        else:
            counts[ACTION_DONE[node_result.action]] += 1
    return Summary(**counts)


def _plan_line(entry: PlanEntry) -> str:
    line = f"  {ACTION_SYMBOLS[entry.action]} {entry.node_id} ({entry.node.kind.value}): "
    line += entry.action.value
    if entry.error:
        line += f" [error: {entry.error}]"
    elif entry.reason:
        line += f" ({entry.reason})"
    return line


def render_plan(plan: Plan) -> str:
    """Render a plan, e.g. `Plan: 2 to add, 1 to change, 0 to destroy.`"""
    lines = [_plan_line(entry) for entry in plan.by_declaration()]
    lines.append(
        f"Plan: {plan.count(Action.CREATE)} to add, "
        f"{plan.count(Action.UPDATE)} to change, "
        f"{plan.count(Action.DESTROY)} to destroy."
    )
    return "\n".join(lines)


def _result_line(node_result: NodeResult) -> str:
    head = f"  {node_result.node_id} ({node_result.kind.value}): "
    if node_result.status == NodeStatus.SUCCEEDED:
        return head + ACTION_DONE[node_result.action]
    return head + f"{node_result.status.value} ({node_result.reason})"


def render_result(result: ApplyResult) -> str:
    """Render a run, e.g. `Resources: 3 added, 0 changed, 0 destroyed.`"""
    summary = summarize(result)
    lines = [_result_line(r) for r in result.ordered()]
    if result.cancelled:
        lines.append("Run cancelled: operations not started were skipped.")
    lines.append(
        f"Resources: {summary.created} added, {summary.updated} changed, "
        f"{summary.destroyed} destroyed, {summary.failed} failed, {summary.skipped} skipped."
    )
    return "\n".join(lines)


def plan_to_dict(plan: Plan) -> dict[str, Any]:
    return {
        "operation": plan.operation.value,
        "entries": [
            {
                "id": entry.node_id,
                "kind": entry.node.kind.value,
                "action": entry.action.value,
                "reason": entry.reason,
                "error": entry.error,
            }
            for entry in plan.by_declaration()
        ],
        "summary": {
            "add": plan.count(Action.CREATE),
            "change": plan.count(Action.UPDATE),
            "destroy": plan.count(Action.DESTROY),
        },
    }


def result_to_dict(result: ApplyResult) -> dict[str, Any]:
    return {
        "operation": result.operation.value,
        "cancelled": result.cancelled,
        "duration_seconds": result.duration_seconds,
        "resources": [
            {
                "id": r.node_id,
                "kind": r.kind.value,
                "action": r.action.value,
                "status": r.status.value,
                "reason": r.reason,
                "attempts": r.attempts,
            }
            for r in result.ordered()
        ],
        "summary": summarize(result).to_dict(),
    }
