"""Run-level safety guardrails.

Checked against a computed plan before apply or destroy issues any
mutating provider call. `plan` and `validate` are never blocked.

- Kill switch: halts every apply and destroy
- Change limit: caps the number of mutating plan entries per run
- Destroy gate: destroy can be disabled centrally
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from .planner import Action, Operation, Plan

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHANGES_PER_RUN = 100


class GuardrailViolation(Exception):
    """Raised when a guardrail check fails."""

    pass


class KillSwitchActive(GuardrailViolation):
    """Raised when the kill switch is enabled."""

    pass


class ChangeLimitExceeded(GuardrailViolation):
    """Raised when a plan carries more mutating entries than allowed."""

    pass


class DestroyNotAllowed(GuardrailViolation):
    """Raised when destroy is disabled and the plan would destroy resources."""

    pass


@dataclass(frozen=True)
class GuardrailsConfig:
    """Guardrail settings. Documents cannot override them."""

    kill_switch_enabled: bool = False
    max_changes_per_run: int = DEFAULT_MAX_CHANGES_PER_RUN
    allow_destroy: bool = True

    def __post_init__(self) -> None:
        if self.max_changes_per_run < 0:
            raise ValueError("MAX_CHANGES_PER_RUN must not be negative")

    @classmethod
    def from_env(cls) -> GuardrailsConfig:
        """Load guardrails configuration from environment.

        Environment Variables:
            KILL_SWITCH: If "true", blocks apply and destroy
            MAX_CHANGES_PER_RUN: Max mutating plan entries per run (default: 100)
            ALLOW_DESTROY: If "false", blocks destroy (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError:
                return default

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            kill_switch_enabled=get_bool("KILL_SWITCH", False),
            max_changes_per_run=get_int("MAX_CHANGES_PER_RUN", DEFAULT_MAX_CHANGES_PER_RUN),
            allow_destroy=get_bool("ALLOW_DESTROY", True),
        )


class GuardrailEnforcer:
    """Gatekeeper for mutating runs.

    Usage:
        enforcer = GuardrailEnforcer(GuardrailsConfig.from_env())
        enforcer.check(plan)  # Raises GuardrailViolation if blocked
    """

    def __init__(self, config: GuardrailsConfig | None = None) -> None:
        self._config = config or GuardrailsConfig()

    @property
    def config(self) -> GuardrailsConfig:
        return self._config

    def check_kill_switch(self) -> None:
        """Raise KillSwitchActive if the kill switch is on.

        The KILL_SWITCH environment variable is re-read so it can be flipped
        without rebuilding the configuration.
        """
        env_kill_switch = os.environ.get("KILL_SWITCH", "").lower() in ("true", "1", "yes")
        if self._config.kill_switch_enabled or env_kill_switch:
            logger.critical(
                "Kill switch active, run blocked",
                extra={
                    "from_config": self._config.kill_switch_enabled,
                    "from_env": env_kill_switch,
                },
            )
            raise KillSwitchActive(
                "Kill switch is active. Apply and destroy are blocked. "
                "Unset KILL_SWITCH to resume."
            )

    def check_change_limit(self, plan: Plan) -> None:
        changes = plan.mutating_count
        limit = self._config.max_changes_per_run
        if changes > limit:
            logger.warning(
                "GUARDRAIL: Change limit exceeded",
                extra={"changes": changes, "limit": limit},
            )
            raise ChangeLimitExceeded(
                f"Plan has {changes} changes, which exceeds MAX_CHANGES_PER_RUN ({limit})"
            )

    def check_destroy_allowed(self, plan: Plan) -> None:
        if plan.operation != Operation.DESTROY or self._config.allow_destroy:
            return
        if plan.count(Action.DESTROY) == 0:
            return
        logger.warning(
            "GUARDRAIL: Destroy disabled",
            extra={"destroy_count": plan.count(Action.DESTROY)},
        )
        raise DestroyNotAllowed("Destroy is disabled. Set ALLOW_DESTROY=true to permit it.")

    def check(self, plan: Plan) -> None:
        """Run every guardrail against a plan.

        Raises:
            GuardrailViolation: The first violated guardrail.
        """
        self.check_kill_switch()
        self.check_destroy_allowed(plan)
        self.check_change_limit(plan)
        logger.debug(
            "Guardrails passed",
            extra={"operation": plan.operation.value, "changes": plan.mutating_count},
        )
