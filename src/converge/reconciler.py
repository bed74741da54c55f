"""Reconciliation orchestration.

Runs the phases of a pass in order:

1. Build the graph (duplicate ids, unknown references)
2. Resolve inclusion flags (unbound flags, dangling dependencies)
3. Schedule (cycles)
4. Plan by reading current state
5. Check guardrails (apply and destroy only)
6. Execute

Phases 1-3 are validation. Their errors are collected and reported
together, and no provider is ever called when any of them fails.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, NoReturn

from .conditions import InclusionResolver, ResolvedGraph
from .config import DEFAULT_PARALLELISM
from .errors import ConfigurationError, ConfigurationErrors, flatten_errors
from .executor import ApplyResult, Executor
from .graph import ResourceGraph, ResourceNode
from .guardrails import GuardrailEnforcer, GuardrailViolation
from .planner import Operation, Plan, Planner
from .providers import ProviderRegistry, RetryHook
from .scheduler import Schedule, TopologicalScheduler

logger = logging.getLogger(__name__)


class ExitCode(IntEnum):
    """Process exit codes."""

    SUCCESS = 0
    FAILURES = 1
    CONFIGURATION_ERROR = 2
    BLOCKED = 3


@dataclass(frozen=True)
class ValidatedStack:
    """A graph that passed validation, ready to plan."""

    graph: ResourceGraph
    resolved: ResolvedGraph
    schedule: Schedule


@dataclass(frozen=True)
class RunOutcome:
    """Result of an apply or destroy pass."""

    plan: Plan
    result: ApplyResult | None = None
    blocked: GuardrailViolation | None = None

    @property
    def exit_code(self) -> ExitCode:
        if self.blocked is not None:
            return ExitCode.BLOCKED
        if self.result is None or not self.result.success:
            return ExitCode.FAILURES
        return ExitCode.SUCCESS


class Reconciler:
    """Validates, plans and converges resource graphs.

    Usage:
        reconciler = Reconciler(registry, parallelism=4)
        stack = reconciler.validate(nodes, flags)
        outcome = await reconciler.apply(stack)
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        parallelism: int = DEFAULT_PARALLELISM,
        retry_hook: RetryHook | None = None,
        guardrails: GuardrailEnforcer | None = None,
    ) -> None:
        self._planner = Planner(registry)
        self._executor = Executor(registry, parallelism=parallelism, retry_hook=retry_hook)
        self._guardrails = guardrails

    @property
    def executor(self) -> Executor:
        return self._executor

    def validate(
        self,
        nodes: Iterable[ResourceNode],
        flags: Mapping[str, Any] | None = None,
    ) -> ValidatedStack:
        """Build, resolve and schedule, collecting every configuration error.

        Raises:
            ConfigurationError: A single problem.
            ConfigurationErrors: Several problems, all listed.
        """
        graph, errors = ResourceGraph.build(nodes)

        try:
            resolved = InclusionResolver(flags).resolve(graph)
        except ConfigurationError as e:
            errors.extend(flatten_errors(e))
            # Keep looking for cycles across the full graph
            resolved = ResolvedGraph.all_included(graph)

        try:
            schedule = TopologicalScheduler(resolved).schedule()
        except ConfigurationError as e:
            self._reject([*errors, *flatten_errors(e)])
        if errors:
            self._reject(errors)

        logger.info(
            "Validation passed",
            extra={
                "node_count": len(graph),
                "included_count": len(resolved.included),
                "excluded_count": len(resolved.excluded),
            },
        )
        return ValidatedStack(graph=graph, resolved=resolved, schedule=schedule)

    @staticmethod
    def _reject(errors: list[ConfigurationError]) -> NoReturn:
        logger.error(
            "Validation failed",
            extra={"error_count": len(errors), "errors": [str(e) for e in errors]},
        )
        if len(errors) == 1:
            raise errors[0]
        raise ConfigurationErrors(errors)

    def plan(self, stack: ValidatedStack, operation: Operation = Operation.APPLY) -> Plan:
        if operation == Operation.DESTROY:
            return self._planner.plan_destroy(stack.resolved, stack.schedule)
        return self._planner.plan_apply(stack.resolved, stack.schedule)

    async def _run(self, stack: ValidatedStack, operation: Operation) -> RunOutcome:
        plan = self.plan(stack, operation)

        if self._guardrails is not None:
            try:
                self._guardrails.check(plan)
            except GuardrailViolation as e:
                logger.error(
                    "Run blocked by guardrail",
                    extra={"operation": operation.value, "guardrail": type(e).__name__},
                )
                return RunOutcome(plan=plan, blocked=e)

        result = await self._executor.execute(plan, stack.resolved)
        return RunOutcome(plan=plan, result=result)

    async def apply(self, stack: ValidatedStack) -> RunOutcome:
        """Converge every included resource to its declaration."""
        return await self._run(stack, Operation.APPLY)

    async def destroy(self, stack: ValidatedStack) -> RunOutcome:
        """Tear down every included resource in reverse order."""
        return await self._run(stack, Operation.DESTROY)

    def cancel(self) -> None:
        """Stop starting new operations. Safe to call from a signal handler."""
        self._executor.cancel()
