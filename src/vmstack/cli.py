"""vmstack CLI.

Usage:
    vmstack plan                               # Show what apply would do
    vmstack apply --provider mypkg.gcp:factory # Converge the stack
    vmstack destroy --provider mypkg.gcp:factory --yes

Project, region and file paths default to the same environment variables
the non-interactive runner reads (GCP_PROJECT, GCP_REGION, STACK_FILE,
STATE_FILE, VMSTACK_PROVIDER).

Exit codes: 0 success, 1 error or total failure, 3 partial failure.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import click

from .config import DEFAULT_MAX_PARALLEL_OPERATIONS, Config, ConfigurationError
from .dependency import DependencyError
from .diff_normalizer import PayloadDiffProcessor, create_diff_processor_from_env
from .ignore_rules import IgnoreRulesError
from .main import EXIT_SUCCESS, exit_code_for, setup_logging
from .models import StackInput, StackValidationError
from .planner import Planner, compose_and_plan
from .provider import ResourceProvider, load_provider_factory
from .reconciler import Reconciler
from .report import ApplyReport, RunStatus, render_plan, render_report
from .spec_loader import SpecLoadError, load_stack
from .state import FileStateStore, StateStoreError

_STATUS_COLORS = {
    RunStatus.SUCCESS: "green",
    RunStatus.PARTIAL_FAILURE: "yellow",
    RunStatus.TOTAL_FAILURE: "red",
}


class CliContext:
    """Options shared by every command."""

    def __init__(
        self,
        project: str,
        region: str,
        stack_file: Path,
        state_file: Path,
        parallel: int,
    ) -> None:
        self.project = project
        self.region = region
        self.stack_file = stack_file
        self.state_file = state_file
        self.parallel = parallel

    def config(self) -> Config:
        try:
            return Config(
                project_id=self.project,
                region=self.region,
                stack_file=self.stack_file,
                state_file=self.state_file,
                max_parallel_operations=self.parallel,
            )
        except ConfigurationError as e:
            raise click.ClickException(str(e)) from e

    def load_stack(self) -> StackInput:
        try:
            return load_stack(self.stack_file)
        except SpecLoadError as e:
            raise click.ClickException(str(e)) from e

    def load_state(self) -> FileStateStore:
        try:
            return FileStateStore(self.state_file)
        except StateStoreError as e:
            raise click.ClickException(str(e)) from e


def _diff_processor() -> PayloadDiffProcessor:
    try:
        return create_diff_processor_from_env()
    except IgnoreRulesError as e:
        raise click.ClickException(str(e)) from e


def _provider(path: str | None, config: Config) -> ResourceProvider:
    if not path:
        raise click.ClickException(
            "--provider (or VMSTACK_PROVIDER) is required, e.g. mypkg.gcp:make_provider"
        )
    try:
        factory = load_provider_factory(path)
    except ValueError as e:
        raise click.ClickException(str(e)) from e
    return factory(config.session)


def _finish(ctx: click.Context, report: ApplyReport) -> None:
    click.echo(render_report(report))
    click.secho(
        f"Status: {report.status.value}",
        fg=_STATUS_COLORS[report.status],
    )
    code = exit_code_for(report.status)
    if code != EXIT_SUCCESS:
        ctx.exit(code)


provider_option = click.option(
    "--provider",
    "provider_path",
    envvar="VMSTACK_PROVIDER",
    help="Provider factory as module:callable",
)


@click.group()
@click.version_option(version="0.1.0", prog_name="vmstack")
@click.option("--project", envvar="GCP_PROJECT", default="", help="GCP project id")
@click.option("--region", envvar="GCP_REGION", default="", help="GCP region")
@click.option(
    "--stack",
    "stack_file",
    envvar="STACK_FILE",
    default="stack.yaml",
    type=click.Path(path_type=Path),
    help="Stack YAML file",
)
@click.option(
    "--state",
    "state_file",
    envvar="STATE_FILE",
    default=".vmstack/state.yaml",
    type=click.Path(path_type=Path),
    help="State YAML file",
)
@click.option(
    "--parallel",
    envvar="MAX_PARALLEL_OPERATIONS",
    default=DEFAULT_MAX_PARALLEL_OPERATIONS,
    type=int,
    help="Maximum provider calls in flight",
)
@click.option("--verbose", "-v", is_flag=True, help="Emit JSON logs on stdout")
@click.pass_context
def cli(
    ctx: click.Context,
    project: str,
    region: str,
    stack_file: Path,
    state_file: Path,
    parallel: int,
    verbose: bool,
) -> None:
    """vmstack: reconcile a single GCE VM and its supporting resources.

    \b
    Quick Start:
        vmstack plan                         # Dry run against saved state
        vmstack apply --provider pkg:make    # Create or converge
        vmstack destroy --provider pkg:make  # Tear down in reverse order
    """
    if verbose:
        setup_logging(logging.INFO)
    ctx.obj = CliContext(project, region, stack_file, state_file, parallel)


@cli.command()
@click.option("--show-payloads", is_flag=True, help="Include desired payloads")
@click.pass_obj
def plan(obj: CliContext, show_payloads: bool) -> None:
    """Show the actions apply would take. Never calls the provider."""
    config = obj.config()
    stack = obj.load_stack()
    state = obj.load_state()

    try:
        _, computed = compose_and_plan(stack, config.session, state, Planner(_diff_processor()))
    except (StackValidationError, DependencyError) as e:
        raise click.ClickException(str(e)) from e

    click.echo(render_plan(computed, show_payloads=show_payloads))


@cli.command()
@provider_option
@click.pass_context
def apply(ctx: click.Context, provider_path: str | None) -> None:
    """Create or converge every resource in the stack."""
    obj: CliContext = ctx.obj
    config = obj.config()
    stack = obj.load_stack()
    state = obj.load_state()
    reconciler = Reconciler(config, _provider(provider_path, config), state, _diff_processor())

    try:
        report = asyncio.run(reconciler.apply(stack))
    except (StackValidationError, DependencyError) as e:
        raise click.ClickException(str(e)) from e

    _finish(ctx, report)


@cli.command()
@provider_option
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def destroy(ctx: click.Context, provider_path: str | None, yes: bool) -> None:
    """Delete everything recorded in the state file, newest first."""
    obj: CliContext = ctx.obj
    config = obj.config()
    state = obj.load_state()

    count = len(state.creation_order())
    if count == 0:
        click.echo("Nothing to destroy.")
        return
    if not yes:
        click.confirm(f"Destroy {count} resources?", abort=True)

    reconciler = Reconciler(config, _provider(provider_path, config), state)
    report = asyncio.run(reconciler.destroy())
    _finish(ctx, report)


if __name__ == "__main__":
    cli()
