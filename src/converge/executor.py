"""Apply/destroy executor.

Walks a plan with a bounded pool of concurrent node operations:

1. A node starts only once every blocker has reached a terminal state.
   Blockers are dependencies when applying and dependents when destroying.
2. If a blocker failed or was skipped, the node is skipped and the reason
   names the blocker. Independent branches keep going (partial failure,
   no rollback).
3. Output references are resolved right before the provider call, from
   the outputs of blockers that already succeeded.
4. Nothing is retried unless a retry hook asks for it, and only for
   ProviderTransientError.

CANCELLATION:
`cancel()` stops new operations from starting. In-flight provider calls
run to completion and pending retries give up. Nodes that never started
are reported Skipped. A request applies to one run only.

Provider calls are blocking and run in the loop's default thread executor.
Only the dispatcher writes results; each worker task owns one node and
hands its result back when it completes.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from functools import partial
from typing import Any

from .conditions import ResolvedGraph
from .config import DEFAULT_PARALLELISM, MAX_PARALLELISM, MIN_PARALLELISM
from .errors import ProviderError, ProviderTransientError
from .graph import ResourceKind, UnresolvedReferenceError
from .planner import Action, Operation, Plan, PlanEntry
from .providers import ProviderRegistry, RetryHook

logger = logging.getLogger(__name__)


class NodeStatus(str, Enum):
    """Terminal status of a node after execution."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class NodeResult:
    """Outcome of one node."""

    node_id: str
    kind: ResourceKind
    action: Action
    status: NodeStatus
    index: int
    reason: str = ""
    outputs: dict[str, Any] = field(default_factory=dict)
    attempts: int = 0


@dataclass
class ApplyResult:
    """Outcome of an apply or destroy pass."""

    operation: Operation
    results: dict[str, NodeResult] = field(default_factory=dict)
    cancelled: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def ordered(self) -> list[NodeResult]:
        """Results in declaration order."""
        return sorted(self.results.values(), key=lambda r: r.index)

    def with_status(self, status: NodeStatus) -> list[str]:
        return [r.node_id for r in self.ordered() if r.status == status]

    @property
    def success(self) -> bool:
        return not self.cancelled and not self.with_status(NodeStatus.FAILED)


class Executor:
    """Executes plan entries against providers."""

    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        parallelism: int = DEFAULT_PARALLELISM,
        retry_hook: RetryHook | None = None,
    ) -> None:
        if not MIN_PARALLELISM <= parallelism <= MAX_PARALLELISM:
            raise ValueError(
                f"parallelism must be between {MIN_PARALLELISM} and {MAX_PARALLELISM}"
            )
        self._registry = registry
        self._parallelism = parallelism
        self._retry_hook = retry_hook
        self._cancel_event = asyncio.Event()

    @property
    def parallelism(self) -> int:
        return self._parallelism

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Stop issuing new node operations.

        Applies to the current run, or to the next one when called before
        `execute`. The request is consumed when that run finishes.
        """
        if not self._cancel_event.is_set():
            logger.warning("Cancellation requested, no new operations will start")
        self._cancel_event.set()

    def _blockers(self, entry: PlanEntry, plan: Plan, resolved: ResolvedGraph) -> list[str]:
        if entry.action == Action.SKIP:
            return []
        if plan.operation == Operation.DESTROY:
            return resolved.dependents_of(entry.node_id)
        return resolved.dependencies_of(entry.node_id)

    async def execute(self, plan: Plan, resolved: ResolvedGraph) -> ApplyResult:
        """Execute every entry of the plan.

        Returns:
            ApplyResult with a terminal status for every plan entry.
        """
        result = ApplyResult(operation=plan.operation)
        outputs: dict[str, dict[str, Any]] = {}
        pending: list[PlanEntry] = list(plan.entries)
        running: dict[asyncio.Task[NodeResult], PlanEntry] = {}

        def record(node_result: NodeResult) -> None:
            result.results[node_result.node_id] = node_result
            if node_result.status == NodeStatus.SUCCEEDED:
                outputs[node_result.node_id] = node_result.outputs
            self._log_node_result(node_result)

        logger.info(
            "Starting execution",
            extra={
                "operation": plan.operation.value,
                "entry_count": len(plan.entries),
                "parallelism": self._parallelism,
            },
        )

        relation = "dependent" if plan.operation == Operation.DESTROY else "dependency"

        while pending or running:
            recorded_before = len(result.results)
            waiting: list[PlanEntry] = []
            for entry in pending:
                node = entry.node
                if entry.action == Action.SKIP:
                    record(_result(entry, NodeStatus.SKIPPED, entry.reason))
                    continue

                blockers = self._blockers(entry, plan, resolved)
                blocked = [
                    b for b in blockers
                    if b in result.results and result.results[b].status != NodeStatus.SUCCEEDED
                ]
                if blocked:
                    blocker = result.results[blocked[0]]
                    reason = f"{relation} '{blocker.node_id}' {blocker.status.value}"
                    record(_result(entry, NodeStatus.SKIPPED, reason))
                    continue

                if (
                    self._cancel_event.is_set()
                    or len(running) >= self._parallelism
                    or any(b not in result.results for b in blockers)
                ):
                    waiting.append(entry)
                    continue

                if entry.error is not None:
                    record(_result(entry, NodeStatus.FAILED, entry.error))
                    continue

                attributes: dict[str, Any] = {}
                if entry.action in (Action.CREATE, Action.UPDATE):
                    try:
                        attributes = node.resolve_attributes(outputs)
                    except UnresolvedReferenceError as e:
                        record(_result(entry, NodeStatus.FAILED, f"unresolved reference {e}"))
                        continue

                task = asyncio.create_task(self._run(entry, attributes))
                running[task] = entry

            pending = waiting

            if self._cancel_event.is_set() and pending:
                for entry in pending:
                    record(_result(entry, NodeStatus.SKIPPED, "cancelled"))
                pending = []

            if not running:
                if pending and len(result.results) > recorded_before:
                    continue
                if pending:
                    # Unreachable for a valid schedule: some blocker never finished
                    raise RuntimeError(
                        f"Execution stalled with pending nodes: {[e.node_id for e in pending]}"
                    )
                break

            done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                running.pop(task)
                record(task.result())

        result.cancelled = self._cancel_event.is_set()
        self._cancel_event.clear()
        result.end_time = datetime.now(UTC)
        logger.info(
            "Execution finished",
            extra={
                "operation": plan.operation.value,
                "succeeded": len(result.with_status(NodeStatus.SUCCEEDED)),
                "failed": len(result.with_status(NodeStatus.FAILED)),
                "skipped": len(result.with_status(NodeStatus.SKIPPED)),
                "cancelled": result.cancelled,
                "duration_seconds": result.duration_seconds,
            },
        )
        return result

    async def _cancelled_within(self, delay: float) -> bool:
        """Wait up to `delay` seconds, returning early with True on cancellation."""
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=delay)
        except TimeoutError:
            return False
        return True

    async def _run(self, entry: PlanEntry, attributes: dict[str, Any]) -> NodeResult:
        """Run one node's provider operation."""
        node = entry.node

        if entry.action == Action.NOOP:
            current_outputs = dict(entry.current.outputs) if entry.current else {}
            return _result(entry, NodeStatus.SUCCEEDED, entry.reason, outputs=current_outputs)

        try:
            provider = self._registry.for_kind(node.kind)
        except ProviderError as e:
            return _result(entry, NodeStatus.FAILED, str(e))

        match entry.action:
            case Action.CREATE:
                call = partial(provider.create, node, attributes)
            case Action.UPDATE:
                call = partial(provider.update, node, attributes)
            case Action.DESTROY:
                call = partial(provider.destroy, node)
            case _:
                return _result(entry, NodeStatus.FAILED, f"unsupported action {entry.action.value}")

        loop = asyncio.get_running_loop()
        attempt = 0
        while True:
            attempt += 1
            try:
                outputs = await loop.run_in_executor(None, call)
                return _result(
                    entry,
                    NodeStatus.SUCCEEDED,
                    outputs=dict(outputs or {}),
                    attempts=attempt,
                )
            except ProviderTransientError as e:
                delay = self._retry_hook(node.id, e, attempt) if self._retry_hook else None
                if delay is None:
                    return _result(entry, NodeStatus.FAILED, str(e), attempts=attempt)
                logger.warning(
                    "Transient provider error, retrying",
                    extra={
                        "node_id": node.id,
                        "attempt": attempt,
                        "wait_seconds": delay,
                        "error": str(e),
                    },
                )
                if await self._cancelled_within(delay):
                    return _result(
                        entry,
                        NodeStatus.FAILED,
                        f"{e} (retry abandoned: cancelled)",
                        attempts=attempt,
                    )
            except ProviderError as e:
                return _result(entry, NodeStatus.FAILED, str(e), attempts=attempt)
            except Exception as e:
                logger.exception(
                    "Unexpected error in provider operation",
                    extra={"node_id": node.id, "action": entry.action.value},
                )
                return _result(
                    entry,
                    NodeStatus.FAILED,
                    f"unexpected {type(e).__name__}: {e}",
                    attempts=attempt,
                )

    def _log_node_result(self, node_result: NodeResult) -> None:
        extra = {
            "node_id": node_result.node_id,
            "kind": node_result.kind.value,
            "action": node_result.action.value,
            "status": node_result.status.value,
            "attempts": node_result.attempts,
        }
        if node_result.reason:
            extra["reason"] = node_result.reason
        if node_result.status == NodeStatus.FAILED:
            logger.error("Resource operation failed", extra=extra)
        elif node_result.status == NodeStatus.SKIPPED:
            logger.warning("Resource skipped", extra=extra)
        else:
            logger.info("Resource operation succeeded", extra=extra)


def _result(
    entry: PlanEntry,
    status: NodeStatus,
    reason: str = "",
    *,
    outputs: dict[str, Any] | None = None,
    attempts: int = 0,
) -> NodeResult:
    return NodeResult(
        node_id=entry.node_id,
        kind=entry.node.kind,
        action=entry.action,
        status=status,
        index=entry.node.index,
        reason=reason,
        outputs=outputs or {},
        attempts=attempts,
    )
