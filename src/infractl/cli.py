"""infractl command line interface.

Usage:
    infractl validate                      # Schema-check the configuration
    infractl plan                          # Show the changes an apply would make
    infractl plan --destroy                # Show what destroying everything means
    infractl apply                         # Plan, confirm, apply
    infractl apply --auto-approve          # Apply without confirmation
    infractl show                          # Print the applied state
    infractl graph                         # Print dependency edges and order

Global options (config dir, state file, variables, provider) also read
INFRACTL_* environment variables; options on the command line win.

Exit codes:
    0  success
    1  apply finished with failed or not attempted operations
    2  configuration, validation, reference, cycle or state error
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import signal
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import click

from .config import Config, ConfigurationError, LogFormat
from .loader import ConfigLoadError, parse_var_overrides
from .main import setup_logging
from .models import ResourceId, SchemaError
from .planner import ChangeSet
from .provider import ProviderLoadError, load_provider
from .reconciler import Reconciler, ReconcileResult
from .render import render_apply, render_graph, render_plan, render_state
from .state import StateError

EXIT_APPLY_FAILED = 1
EXIT_ERROR = 2


class InfractlClickError(click.ClickException):
    """Pre-apply failure, reported with exit code 2."""

    exit_code = EXIT_ERROR


@dataclass
class CliContext:
    """Settings shared by every command."""

    config: Config
    overrides: dict[str, Any] = field(default_factory=dict)

    def reconciler(self, *, with_provider: bool = False) -> Reconciler:
        provider = None
        if with_provider:
            if self.config.provider is None:
                raise InfractlClickError(
                    "No provider configured. Use --provider module:attribute "
                    "or set INFRACTL_PROVIDER."
                )
            try:
                provider = load_provider(self.config.provider)
            except ProviderLoadError as e:
                raise InfractlClickError(str(e)) from e
        return Reconciler(self.config, provider, overrides=self.overrides)


def _raise_for(result: ReconcileResult) -> None:
    if result.error is not None:
        raise InfractlClickError(str(result.error)) from result.error


def _parse_targets(targets: tuple[str, ...]) -> list[ResourceId] | None:
    if not targets:
        return None
    try:
        return [ResourceId.parse(target) for target in targets]
    except SchemaError as e:
        raise click.BadParameter(str(e), param_hint="--target") from e


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="infractl")
@click.option(
    "--config-dir",
    "-c",
    type=click.Path(path_type=Path),
    help="Directory with *.yaml resource files [INFRACTL_CONFIG_DIR]",
)
@click.option(
    "--state",
    "state_path",
    type=click.Path(path_type=Path),
    help="State file path [INFRACTL_STATE]",
)
@click.option(
    "--var-file",
    type=click.Path(path_type=Path),
    help="Environment variables file [INFRACTL_VAR_FILE]",
)
@click.option("--var", "var_items", multiple=True, help="Set a variable: name=value")
@click.option("--provider", help="Provider import path module:attribute [INFRACTL_PROVIDER]")
@click.option("--parallelism", type=int, help="Max concurrent operations [INFRACTL_PARALLELISM]")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level [INFRACTL_LOG_LEVEL]",
)
@click.option("--log-json", is_flag=True, help="Emit JSON logs on stdout")
@click.pass_context
def cli(
    ctx: click.Context,
    config_dir: Path | None,
    state_path: Path | None,
    var_file: Path | None,
    var_items: tuple[str, ...],
    provider: str | None,
    parallelism: int | None,
    log_level: str | None,
    log_json: bool,
) -> None:
    """infractl: declarative infrastructure reconciliation.

    \b
    Quick Start:
        infractl -c ./infra validate
        infractl -c ./infra plan
        infractl -c ./infra --provider mypkg.aws:Provider apply
    """
    updates: dict[str, Any] = {
        "config_dir": config_dir,
        "state_path": state_path,
        "var_file": var_file,
        "provider": provider,
        "max_parallelism": parallelism,
        "log_level": log_level.upper() if log_level else None,
        "log_format": LogFormat.JSON if log_json else None,
    }
    try:
        config = Config.from_env()
        config = dataclasses.replace(
            config, **{key: value for key, value in updates.items() if value is not None}
        )
        overrides = parse_var_overrides(var_items)
    except (ConfigurationError, ConfigLoadError) as e:
        raise InfractlClickError(str(e)) from e

    setup_logging(config.log_format, config.log_level)
    ctx.obj = CliContext(config=config, overrides=overrides)


# =============================================================================
# Commands
# =============================================================================


@cli.command()
@click.pass_obj
def validate(obj: CliContext) -> None:
    """Check every resource against its kind's schema."""
    result = obj.reconciler().validate()
    _raise_for(result)
    assert result.desired is not None
    click.secho(f"Configuration valid: {len(result.desired)} resources.", fg="green")


@cli.command()
@click.option("--destroy", is_flag=True, help="Plan destruction of every managed resource")
@click.option("--target", "targets", multiple=True, help="Limit to kind.name (repeatable)")
@click.pass_obj
def plan(obj: CliContext, destroy: bool, targets: tuple[str, ...]) -> None:
    """Show the changes an apply would make."""
    result = obj.reconciler().plan(destroy=destroy, targets=_parse_targets(targets))
    _raise_for(result)
    assert result.change_set is not None
    click.echo(render_plan(result.change_set))


@cli.command()
@click.option("--auto-approve", is_flag=True, help="Skip interactive confirmation")
@click.option("--destroy", is_flag=True, help="Destroy every managed resource")
@click.option("--target", "targets", multiple=True, help="Limit to kind.name (repeatable)")
@click.pass_obj
def apply(obj: CliContext, auto_approve: bool, destroy: bool, targets: tuple[str, ...]) -> None:
    """Plan and apply changes through the provider."""
    if auto_approve:
        obj.config = dataclasses.replace(obj.config, auto_approve=True)
    target_ids = _parse_targets(targets)
    reconciler = obj.reconciler(with_provider=True)
    aborted = False

    def cancel_on_sigint() -> None:
        # Only once approved, so Ctrl-C at the prompt still aborts
        with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
            asyncio.get_running_loop().add_signal_handler(signal.SIGINT, reconciler.cancel)

    def confirm(change_set: ChangeSet) -> bool:
        nonlocal aborted
        click.echo(render_plan(change_set))
        click.echo()
        try:
            approved = click.confirm("Apply these changes?", default=False)
        except click.Abort:
            aborted = True
            return False
        if approved:
            cancel_on_sigint()
        return approved

    async def run() -> ReconcileResult:
        if obj.config.auto_approve:
            cancel_on_sigint()
        try:
            return await reconciler.apply(destroy=destroy, targets=target_ids, confirm=confirm)
        finally:
            with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
                asyncio.get_running_loop().remove_signal_handler(signal.SIGINT)

    result = asyncio.run(run())
    if aborted:
        raise click.Abort()

    if result.apply_result is None:
        _raise_for(result)
        if not result.approved:
            click.echo("Apply cancelled, nothing changed.")
        else:
            click.echo(render_plan(result.change_set or ChangeSet()))
        return

    click.echo(render_apply(result.apply_result))
    if result.error is not None:
        raise click.ClickException(str(result.error))
    if not result.success:
        click.get_current_context().exit(EXIT_APPLY_FAILED)


@cli.command()
@click.pass_obj
def show(obj: CliContext) -> None:
    """Print the applied state."""
    try:
        applied = obj.reconciler().applied_state()
    except StateError as e:
        raise InfractlClickError(str(e)) from e
    click.echo(render_state(applied))


@cli.command()
@click.pass_obj
def graph(obj: CliContext) -> None:
    """Print dependency edges and the creation order."""
    result = obj.reconciler().graph()
    _raise_for(result)
    assert result.graph is not None
    click.echo(render_graph(result.graph))


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
