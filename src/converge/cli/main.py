"""Main CLI entry point."""

import json
import sys
from pathlib import Path
from typing import Dict, Optional, Tuple

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from converge import __version__
from converge.cli.graph import graph
from converge.cli.output import output
from converge.config.expressions import render
from converge.config.models import Document, EngineSettings
from converge.config.parser import ConfigLoader
from converge.config.variables import bind_variables, load_var_file, parse_var_assignments, resolve_variables
from converge.orchestrator.dependency_graph import DependencyGraph
from converge.orchestrator.executor import ApplyResult, ApplyStatus
from converge.orchestrator.planner import ChangeAction, Plan
from converge.orchestrator.reconciler import Reconciler
from converge.providers import build_provider
from converge.state.manager import StateManager
from converge.utils.errors import ConvergeError, PartialApplyError
from converge.utils.logging import get_logger, setup_logging

console = Console()
logger = get_logger(__name__)

ACTION_STYLES = {
    ChangeAction.CREATE: ("+", "green"),
    ChangeAction.UPDATE: ("~", "yellow"),
    ChangeAction.DESTROY: ("-", "red"),
    ChangeAction.NO_OP: (" ", "dim"),
}


@click.group()
@click.version_option(__version__, prog_name="converge")
@click.option('--config', '-c', 'config_path', default='converge.yaml', show_default=True,
              help='Path to the configuration document')
@click.option('--state', 'state_path', help='State file path (overrides settings.state_path)')
@click.option('--provider', type=click.Choice(['memory', 'aws']), help='Provider to use')
@click.option('--region', help='Provider region')
@click.option('--profile', help='AWS profile to use')
@click.option('--parallelism', type=click.IntRange(1, 64), help='Maximum concurrent provider operations')
@click.option('--log-level', default='info', type=click.Choice(['debug', 'info', 'warning', 'error']))
@click.option('--log-dir', default='.converge/logs', show_default=True, help='Directory for JSON logs')
@click.pass_context
def cli(ctx, config_path, state_path, provider, region, profile, parallelism, log_level, log_dir):
    """Desired-state reconciliation engine."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path
    ctx.obj['overrides'] = {
        'state_path': state_path,
        'provider': provider,
        'region': region,
        'profile': profile,
        'parallelism': parallelism,
    }

    setup_logging(log_level, log_dir)


cli.add_command(graph)
cli.add_command(output)


var_option = click.option('--var', 'var_assignments', multiple=True, metavar='NAME=VALUE',
                          help='Set a variable (repeatable)')
var_file_option = click.option('--var-file', 'var_files', multiple=True,
                               type=click.Path(exists=True, dir_okay=False),
                               help='YAML file of variable values (repeatable)')


def fail(error: ConvergeError) -> None:
    """Print an error for the user and exit non-zero."""
    console.print(f"[red]{error.to_user_message()}[/red]", highlight=False)
    sys.exit(1)


def load_document(ctx) -> Document:
    return ConfigLoader(ctx.obj['config_path']).load()


def engine_settings(ctx, document: Document, **extra) -> EngineSettings:
    return document.settings.with_overrides(**ctx.obj['overrides'], **extra)


def bind_document(
    document: Document,
    var_assignments: Tuple[str, ...],
    var_files: Tuple[str, ...]
) -> Document:
    """Resolve variables from files, --var and the environment, then bind them."""
    overrides: Dict[str, object] = {}
    for var_file in var_files:
        overrides.update(load_var_file(var_file))
    overrides.update(parse_var_assignments(var_assignments))
    values = resolve_variables(document, overrides)
    return bind_variables(document, values)


def create_reconciler(
    document: Document,
    settings: EngineSettings,
    state_manager: StateManager,
    progress_callback=None
) -> Reconciler:
    provider = build_provider(settings)
    return Reconciler(
        document,
        provider,
        state_manager,
        settings=settings,
        progress_callback=progress_callback
    )


def display_plan(plan: Plan, show_unchanged: bool = False) -> None:
    """Render a plan as a table of changes with attribute differences."""
    summary = plan.summary()

    table = Table(show_header=True, header_style="bold", title="Planned changes")
    table.add_column("", width=1)
    table.add_column("Resource", style="cyan")
    table.add_column("Action")
    table.add_column("Changes")

    for change in plan.changes:
        if change.action == ChangeAction.NO_OP and not show_unchanged:
            continue
        symbol, style = ACTION_STYLES[change.action]
        details = "\n".join(
            f"{diff.attribute}: {_display_value(diff.before)} -> {_display_value(diff.after)}"
            for diff in change.diffs
        )
        if change.action == ChangeAction.DESTROY:
            details = change.reason
        table.add_row(f"[{style}]{symbol}[/{style}]", change.address,
                      f"[{style}]{change.action.value}[/{style}]", details)

    if plan.has_changes():
        console.print(table)
    for address in plan.dropped:
        console.print(f"[yellow]{address} was deleted outside converge and will be recreated[/yellow]")

    console.print(
        f"\n[bold]Plan:[/bold] [green]{summary['create']} to create[/green], "
        f"[yellow]{summary['update']} to update[/yellow], "
        f"[red]{summary['destroy']} to destroy[/red], {summary['no-op']} unchanged"
    )


def _display_value(value) -> str:
    if value is None:
        return "(none)"
    shown = render(value)
    if isinstance(shown, (dict, list)):
        return json.dumps(shown, sort_keys=True)
    return str(shown)


def display_result(result: ApplyResult, verb: str) -> None:
    console.print()
    failed = result.failed()
    skipped = result.skipped()
    if result.is_success():
        console.print(Panel.fit(
            f"[green]✓ {verb} complete[/green]\n\n"
            f"Changed: {len(result.applied())}\n"
            f"Duration: {result.duration:.2f}s",
            title=f"{verb} Complete",
            border_style="green"
        ))
        return

    console.print(Panel.fit(
        f"[yellow]⚠ {verb} incomplete[/yellow]\n\n"
        f"Applied: {len(result.applied())}\n"
        f"Failed: {len(failed)}\n"
        f"Skipped: {len(skipped)}\n"
        f"Duration: {result.duration:.2f}s",
        title=f"{verb} Incomplete",
        border_style="red"
    ))
    if failed:
        console.print("\n[bold]Failed Resources:[/bold]")
        for address, message in failed.items():
            console.print(f"  [red]✗[/red] {address}: {message}", highlight=False)
    if skipped:
        console.print("\n[bold]Skipped Resources:[/bold]")
        for address in skipped:
            console.print(f"  [yellow]-[/yellow] {address}: {result.results[address].reason}")
    if result.cancelled:
        console.print("\n[yellow]Run was cancelled; applied changes were kept[/yellow]")


def run_apply(reconciler: Reconciler, plan: Plan, verb: str) -> None:
    """Execute a plan with a progress bar and print the outcome."""
    steps = [change for change in plan.changes if change.is_change()]

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console
    ) as progress:
        task_id = progress.add_task(f"[cyan]{verb}...", total=len(steps))

        def on_progress(address: str, status: ApplyStatus, message: Optional[str]) -> None:
            if status == ApplyStatus.APPLYING:
                progress.update(task_id, description=f"[cyan]Applying:[/cyan] {address}")
            elif plan.get_change(address).is_change():
                mark = "[green]✓[/green]" if status == ApplyStatus.APPLIED else "[red]✗[/red]"
                progress.update(task_id, advance=1, description=f"{mark} {address}")

        reconciler.progress_callback = on_progress
        try:
            result = reconciler.apply(plan)
        except PartialApplyError as e:
            display_result(e.result, verb)
            sys.exit(1)

    display_result(result, verb)


@cli.command()
@var_option
@var_file_option
@click.pass_context
def validate(ctx, var_assignments, var_files):
    """Check the document: syntax, references, variables and cycles."""
    try:
        document = load_document(ctx)
        bind_document(document, var_assignments, var_files)
        graph = DependencyGraph.from_declarations(document.resources)
        order = graph.topological_sort()
    except ConvergeError as e:
        fail(e)

    console.print(Panel.fit(
        f"[green]✓ Configuration is valid[/green]\n\n"
        f"Resources: {len(document.resources)}\n"
        f"Variables: {len(document.variables)}\n"
        f"Outputs: {len(document.outputs)}\n"
        f"Apply order: {' -> '.join(order) if order else '(empty)'}",
        title="Validation",
        border_style="green"
    ))


@cli.command()
@var_option
@var_file_option
@click.option('--destroy', is_flag=True, help='Plan the destruction of every managed resource')
@click.option('--refresh/--no-refresh', default=True, help='Describe resources before diffing')
@click.option('--out', 'out_path', type=click.Path(dir_okay=False), help='Write the plan as JSON')
@click.option('--show-unchanged', is_flag=True, help='List unchanged resources too')
@click.pass_context
def plan(ctx, var_assignments, var_files, destroy, refresh, out_path, show_unchanged):
    """Show the changes apply would make."""
    try:
        document = bind_document(load_document(ctx), var_assignments, var_files)
        settings = engine_settings(ctx, document)
        with StateManager(settings.state_path) as state_manager:
            reconciler = create_reconciler(document, settings, state_manager)
            change_plan = reconciler.plan(destroy=destroy, refresh=refresh)
    except ConvergeError as e:
        fail(e)

    display_plan(change_plan, show_unchanged=show_unchanged)

    if out_path:
        Path(out_path).parent.mkdir(parents=True, exist_ok=True)
        Path(out_path).write_text(json.dumps(change_plan.to_dict(), indent=2, default=str))
        console.print(f"[green]Plan written to {out_path}[/green]")


def _plan_and_apply(ctx, var_assignments, var_files, yes, refresh, destroy, fail_fast):
    verb = "Destroy" if destroy else "Apply"
    try:
        document = bind_document(load_document(ctx), var_assignments, var_files)
        settings = engine_settings(ctx, document, fail_fast=fail_fast or None)
        with StateManager(settings.state_path) as state_manager:
            reconciler = create_reconciler(document, settings, state_manager)
            change_plan = reconciler.plan(destroy=destroy, refresh=refresh)
            display_plan(change_plan)

            if not change_plan.has_changes():
                console.print("[green]No changes. Remote state matches the configuration.[/green]")
                if not destroy:
                    reconciler.apply(change_plan)
                return

            if not yes:
                prompt = ("Destroy all managed resources?" if destroy
                          else "Apply these changes?")
                if not click.confirm(prompt, default=False):
                    console.print(f"[yellow]{verb} cancelled[/yellow]")
                    return

            run_apply(reconciler, change_plan, verb)
    except ConvergeError as e:
        fail(e)
    except Exception as e:
        logger.exception(f"Unexpected error during {verb.lower()}")
        console.print(f"[red]Unexpected error:[/red] {e}")
        sys.exit(1)


@cli.command()
@var_option
@var_file_option
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.option('--refresh/--no-refresh', default=True, help='Describe resources before diffing')
@click.option('--fail-fast', is_flag=True, help='Stop scheduling new operations after the first failure')
@click.pass_context
def apply(ctx, var_assignments, var_files, yes, refresh, fail_fast):
    """Create, update and destroy resources to match the configuration."""
    _plan_and_apply(ctx, var_assignments, var_files, yes, refresh, destroy=False, fail_fast=fail_fast)


@cli.command()
@var_option
@var_file_option
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.option('--refresh/--no-refresh', default=True, help='Describe resources before diffing')
@click.option('--fail-fast', is_flag=True, help='Stop scheduling new operations after the first failure')
@click.pass_context
def destroy(ctx, var_assignments, var_files, yes, refresh, fail_fast):
    """Destroy every resource recorded in state."""
    _plan_and_apply(ctx, var_assignments, var_files, yes, refresh, destroy=True, fail_fast=fail_fast)


@cli.group()
def state():
    """Inspect the state file."""
    pass


def _open_state(ctx):
    settings = engine_settings(ctx, load_document(ctx))
    state_manager = StateManager(settings.state_path)
    if not state_manager.exists():
        console.print(f"[yellow]No state file at {settings.state_path}[/yellow]")
        sys.exit(0)
    return state_manager.load()


@state.command('list')
@click.pass_context
def state_list(ctx):
    """List resources recorded in state."""
    try:
        current = _open_state(ctx)
    except ConvergeError as e:
        fail(e)

    table = Table(show_header=True, header_style="bold")
    table.add_column("Address", style="cyan")
    table.add_column("Physical ID")
    table.add_column("Depends On", style="dim")
    table.add_column("Updated")

    for address, remote in current.resources.items():
        table.add_row(
            address,
            remote.physical_id,
            ", ".join(remote.dependencies),
            remote.updated_at.strftime('%Y-%m-%d %H:%M:%S')
        )

    console.print(table)
    console.print(f"\n[dim]Serial {current.serial}, lineage {current.lineage}[/dim]")


@state.command('show')
@click.argument('address')
@click.pass_context
def state_show(ctx, address):
    """Show the recorded attributes of one resource."""
    try:
        current = _open_state(ctx)
    except ConvergeError as e:
        fail(e)

    remote = current.get_resource(address)
    if remote is None:
        console.print(f"[red]Resource '{address}' is not in state[/red]")
        sys.exit(1)

    console.print(Panel.fit(
        f"[bold]{address}[/bold]\n"
        f"Type: {remote.type}\n"
        f"Physical ID: {remote.physical_id}\n"
        f"Depends on: {', '.join(remote.dependencies) or '(none)'}\n"
        f"Updated: {remote.updated_at.isoformat()}",
        title="Resource",
        border_style="cyan"
    ))
    console.print_json(data=remote.masked_attributes())


if __name__ == '__main__':
    cli()
