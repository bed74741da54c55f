"""converge command line interface.

Usage:
    converge validate -f stack.yaml            # Check the document and graph
    converge plan -f stack.yaml                # Show what apply would do
    converge apply -f stack.yaml --var x=1     # Converge infrastructure
    converge destroy -f stack.yaml             # Tear everything down

Exit codes:
    0  success
    1  completed with failures, or cancelled
    2  fatal configuration error (nothing was touched)
    3  blocked by a guardrail (nothing was touched)
"""

from __future__ import annotations

import asyncio
import json
import signal
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path
from typing import Any, NoReturn

import click

from .azure_provider import AzureResourceProvider
from .config import MAX_PARALLELISM, MIN_PARALLELISM, ProviderName, Settings
from .errors import ConfigurationError
from .guardrails import GuardrailEnforcer, GuardrailsConfig
from .main import setup_logging
from .planner import Operation, Plan
from .providers import LocalStateProvider, ProviderRegistry, exponential_backoff
from .reconciler import ExitCode, Reconciler, RunOutcome, ValidatedStack
from .reporter import plan_to_dict, render_plan, render_result, result_to_dict
from .security import SecretlessViolationError, managed_identity_credential
from .spec_loader import Stack, load_stack, parse_var_assignments

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def fail(
    ctx: click.Context, message: str, code: ExitCode = ExitCode.CONFIGURATION_ERROR
) -> NoReturn:
    """Print an error on stderr and exit."""
    click.secho(f"Error: {message}", fg="red", err=True)
    ctx.exit(int(code))


def build_registry(settings: Settings) -> ProviderRegistry:
    """Create the provider registry for the configured backend.

    Raises:
        SecretlessViolationError: If the azure provider finds credential secrets.
        SettingsError: If the local state file cannot be read.
    """
    if settings.provider == ProviderName.AZURE:
        credential = managed_identity_credential(settings.client_id)
        provider = AzureResourceProvider(
            credential=credential,
            subscription_id=settings.subscription_id or "",
            operation_timeout_seconds=settings.operation_timeout_seconds,
        )
        return ProviderRegistry(default=provider)
    return ProviderRegistry(default=LocalStateProvider(settings.state_file))


def build_reconciler(settings: Settings, registry: ProviderRegistry) -> Reconciler:
    retry_hook = None
    if settings.provider_max_retries > 0:
        retry_hook = exponential_backoff(
            max_attempts=settings.provider_max_retries + 1,
            base_seconds=settings.retry_backoff_base_seconds,
        )
    return Reconciler(
        registry,
        parallelism=settings.parallelism,
        retry_hook=retry_hook,
        guardrails=GuardrailEnforcer(GuardrailsConfig.from_env()),
    )


def run_with_signals(
    reconciler: Reconciler, operation: Operation, stack: ValidatedStack
) -> RunOutcome:
    """Run apply or destroy, turning SIGINT/SIGTERM into cancellation."""

    async def runner() -> RunOutcome:
        loop = asyncio.get_running_loop()
        for sig in SHUTDOWN_SIGNALS:
            loop.add_signal_handler(sig, reconciler.cancel)
        try:
            if operation == Operation.DESTROY:
                return await reconciler.destroy(stack)
            return await reconciler.apply(stack)
        finally:
            for sig in SHUTDOWN_SIGNALS:
                loop.remove_signal_handler(sig)

    return asyncio.run(runner())


def document_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by every command: the document and its variables."""
    func = click.option(
        "--json", "as_json", is_flag=True, help="Print machine-readable JSON"
    )(func)
    func = click.option(
        "--var",
        "variables",
        multiple=True,
        metavar="NAME=VALUE",
        help="Override a document variable (repeatable)",
    )(func)
    func = click.option(
        "--file",
        "-f",
        "file",
        required=True,
        type=click.Path(dir_okay=False, path_type=Path),
        help="Resource document (YAML)",
    )(func)
    return func


def provider_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options for commands that talk to a provider."""
    func = click.option(
        "--state-file",
        type=click.Path(dir_okay=False, path_type=Path),
        help="State file of the local provider",
    )(func)
    func = click.option(
        "--provider",
        type=click.Choice([p.value for p in ProviderName]),
        help="Provider backend",
    )(func)
    func = click.option(
        "--parallelism",
        "-p",
        type=click.IntRange(MIN_PARALLELISM, MAX_PARALLELISM),
        help="Max concurrent resource operations",
    )(func)
    return func


def load_and_validate(
    ctx: click.Context,
    file: Path,
    variables: tuple[str, ...],
    reconciler: Reconciler,
    run_suffix: str | None = None,
) -> tuple[Stack, ValidatedStack]:
    """Load the document and validate its graph, exiting with code 2 on errors."""
    try:
        stack = load_stack(file, parse_var_assignments(variables), run_suffix)
        validated = reconciler.validate(stack.nodes, stack.variables)
    except ConfigurationError as e:
        fail(ctx, str(e))
    return stack, validated


def prepare(
    ctx: click.Context,
    parallelism: int | None,
    provider: str | None,
    state_file: Path | None,
) -> tuple[Settings, ProviderRegistry, Reconciler]:
    """Apply command line overrides and create the reconciler."""
    settings: Settings = ctx.obj["settings"]
    overrides: dict[str, Any] = {}
    if parallelism is not None:
        overrides["parallelism"] = parallelism
    if provider is not None:
        overrides["provider"] = ProviderName(provider)
    if state_file is not None:
        overrides["state_file"] = state_file

    try:
        settings = replace(settings, **overrides)
        registry = build_registry(settings)
        reconciler = build_reconciler(settings, registry)
    except ConfigurationError as e:
        fail(ctx, str(e))
    except SecretlessViolationError as e:
        fail(ctx, str(e))
    except ValueError as e:
        fail(ctx, f"Invalid guardrail configuration: {e}")
    return settings, registry, reconciler


def local_state(registry: ProviderRegistry) -> LocalStateProvider | None:
    default = registry.default
    return default if isinstance(default, LocalStateProvider) else None


def known_run_suffix(settings: Settings, registry: ProviderRegistry) -> str | None:
    """The `${run.suffix}` to reuse: CONVERGE_RUN_SUFFIX, then the one in local state."""
    if settings.run_suffix is not None:
        return settings.run_suffix
    state = local_state(registry)
    return state.run_suffix if state is not None else None


def plan_exit_code(plan: Plan) -> ExitCode:
    if any(entry.error for entry in plan.entries):
        return ExitCode.FAILURES
    return ExitCode.SUCCESS


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="converge")
@click.pass_context
def cli(ctx: click.Context) -> None:
    """converge: declarative resource reconciler.

    \b
    Quick Start:
        converge validate -f stacks/eks-cluster.yaml
        converge plan -f stacks/eks-cluster.yaml --var create_cluster=false
        converge apply -f stacks/eks-cluster.yaml
    """
    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        fail(ctx, str(e))
    setup_logging(settings.log_level, settings.log_format)
    ctx.obj = {"settings": settings}


@cli.command()
@document_options
@click.pass_context
def validate(ctx: click.Context, file: Path, variables: tuple[str, ...], as_json: bool) -> None:
    """Validate the document, flags and dependency graph. No provider calls."""
    settings: Settings = ctx.obj["settings"]
    reconciler = Reconciler(ProviderRegistry())
    stack, validated = load_and_validate(ctx, file, variables, reconciler, settings.run_suffix)

    if as_json:
        click.echo(
            json.dumps(
                {
                    "stack": stack.name,
                    "valid": True,
                    "apply_order": list(validated.schedule.apply_order),
                    "excluded": list(validated.resolved.excluded),
                },
                indent=2,
            )
        )
        return

    click.echo(
        f"Stack '{stack.name}' is valid: {len(validated.graph)} resources, "
        f"{len(validated.resolved.excluded)} disabled."
    )
    click.echo("Apply order: " + ", ".join(validated.schedule.apply_order))


@cli.command()
@document_options
@provider_options
@click.option("--destroy", "for_destroy", is_flag=True, help="Plan a destroy instead")
@click.pass_context
def plan(
    ctx: click.Context,
    file: Path,
    variables: tuple[str, ...],
    as_json: bool,
    parallelism: int | None,
    provider: str | None,
    state_file: Path | None,
    for_destroy: bool,
) -> None:
    """Show the actions apply (or destroy) would take. Reads only."""
    settings, registry, reconciler = prepare(ctx, parallelism, provider, state_file)
    run_suffix = known_run_suffix(settings, registry)
    _, validated = load_and_validate(ctx, file, variables, reconciler, run_suffix)

    operation = Operation.DESTROY if for_destroy else Operation.APPLY
    computed = reconciler.plan(validated, operation)

    if as_json:
        click.echo(json.dumps(plan_to_dict(computed), indent=2))
    else:
        click.echo(render_plan(computed))
    ctx.exit(int(plan_exit_code(computed)))


def _converge(
    ctx: click.Context,
    operation: Operation,
    file: Path,
    variables: tuple[str, ...],
    as_json: bool,
    parallelism: int | None,
    provider: str | None,
    state_file: Path | None,
) -> None:
    settings, registry, reconciler = prepare(ctx, parallelism, provider, state_file)
    run_suffix = known_run_suffix(settings, registry)
    stack, validated = load_and_validate(ctx, file, variables, reconciler, run_suffix)

    state = local_state(registry)
    if state is not None:
        state.remember_run_suffix(stack.run_suffix)

    outcome = run_with_signals(reconciler, operation, validated)

    if as_json:
        click.echo(
            json.dumps(
                {
                    "plan": plan_to_dict(outcome.plan),
                    "result": result_to_dict(outcome.result) if outcome.result else None,
                    "blocked": str(outcome.blocked) if outcome.blocked else None,
                    "exit_code": int(outcome.exit_code),
                },
                indent=2,
            )
        )
    else:
        click.echo(render_plan(outcome.plan))
        if outcome.result is not None:
            click.echo("")
            click.echo(render_result(outcome.result))

    if outcome.blocked is not None:
        fail(ctx, str(outcome.blocked), ExitCode.BLOCKED)
    ctx.exit(int(outcome.exit_code))


@cli.command()
@document_options
@provider_options
@click.pass_context
def apply(
    ctx: click.Context,
    file: Path,
    variables: tuple[str, ...],
    as_json: bool,
    parallelism: int | None,
    provider: str | None,
    state_file: Path | None,
) -> None:
    """Create or update every enabled resource."""
    _converge(ctx, Operation.APPLY, file, variables, as_json, parallelism, provider, state_file)


@cli.command()
@document_options
@provider_options
@click.pass_context
def destroy(
    ctx: click.Context,
    file: Path,
    variables: tuple[str, ...],
    as_json: bool,
    parallelism: int | None,
    provider: str | None,
    state_file: Path | None,
) -> None:
    """Delete every enabled resource in reverse dependency order."""
    _converge(ctx, Operation.DESTROY, file, variables, as_json, parallelism, provider, state_file)
