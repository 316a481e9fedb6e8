"""Output command for showing recorded outputs."""

import sys
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from converge.config.parser import ConfigLoader
from converge.state.manager import StateManager
from converge.utils.errors import ConvergeError
from converge.utils.logging import get_logger
from converge.utils.sensitive import REDACTED, mask

logger = get_logger(__name__)
console = Console()


@click.command()
@click.argument('name', required=False)
@click.option('--format', 'output_format', type=click.Choice(['table', 'json', 'env']), default='table',
              help='Output format')
@click.pass_context
def output(ctx, name: Optional[str], output_format: str):
    """Show outputs recorded by the last successful apply."""
    try:
        document = ConfigLoader(ctx.obj['config_path']).load()
        settings = document.settings.with_overrides(**ctx.obj['overrides'])
        state_manager = StateManager(settings.state_path)
        if not state_manager.exists():
            console.print(f"[yellow]No state file at {settings.state_path}[/yellow]")
            console.print("[dim]Run converge apply first[/dim]")
            return
        state = state_manager.load()
    except ConvergeError as e:
        console.print(f"[red]{e.to_user_message()}[/red]", highlight=False)
        sys.exit(1)

    outputs = {
        output_name: REDACTED if recorded.sensitive else mask(recorded.value)
        for output_name, recorded in state.outputs.items()
    }

    if not outputs:
        console.print("[dim]No outputs found[/dim]")
        return

    if name:
        if name not in outputs:
            console.print(f"[red]Output '{name}' not found[/red]")
            sys.exit(1)
        click.echo(outputs[name])
        return

    if output_format == 'table':
        _output_table(outputs)
    elif output_format == 'json':
        console.print_json(data=outputs)
    else:
        _output_env(outputs)


def _output_table(outputs: dict):
    console.print(Panel("Outputs", style="bold blue"))
    console.print()

    table = Table(show_header=True, header_style="bold")
    table.add_column("Output Name", style="cyan")
    table.add_column("Value", style="white")

    for output_name, value in sorted(outputs.items()):
        table.add_row(output_name, str(value))

    console.print(table)


def _output_env(outputs: dict):
    """Output in environment variable format."""
    for output_name, value in sorted(outputs.items()):
        env_name = output_name.upper().replace('-', '_').replace('.', '_')
        click.echo(f'export {env_name}="{value}"')
