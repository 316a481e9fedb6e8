"""Graph command for visualizing resource dependencies."""

import sys
from typing import List, Optional, Set

import click
from rich.console import Console
from rich.panel import Panel
from rich.tree import Tree

from converge.config.parser import ConfigLoader
from converge.orchestrator.dependency_graph import DependencyGraph
from converge.utils.errors import ConvergeError
from converge.utils.logging import get_logger

logger = get_logger(__name__)
console = Console()


@click.command()
@click.option('--format', 'output_format', type=click.Choice(['tree', 'ascii', 'dot']), default='tree',
              help='Output format')
@click.option('--output', 'output_path', type=click.Path(dir_okay=False), help='Write dot output to a file')
@click.pass_context
def graph(ctx, output_format: str, output_path: Optional[str]):
    """Visualize the resource dependency graph."""
    try:
        document = ConfigLoader(ctx.obj['config_path']).load()
        dep_graph = DependencyGraph.from_declarations(document.resources)
        dep_graph.validate()
    except ConvergeError as e:
        console.print(f"[red]{e.to_user_message()}[/red]", highlight=False)
        sys.exit(1)

    if output_format == 'tree':
        _output_tree(dep_graph)
    elif output_format == 'ascii':
        _output_ascii(dep_graph)
    else:
        dot_content = generate_dot(dep_graph)
        if output_path:
            with open(output_path, 'w') as f:
                f.write(dot_content)
            console.print(f"[green]Graph saved to {output_path}[/green]")
        else:
            click.echo(dot_content)


def _output_tree(dep_graph: DependencyGraph):
    """Output dependency graph as a tree of dependents under each root."""
    console.print(Panel("Resource Dependency Graph", style="bold blue"))
    console.print()

    roots = dep_graph.roots()
    if not roots:
        console.print("[dim]No resources found[/dim]")
        return

    for root in roots:
        tree = Tree(f"[bold cyan]{root}[/bold cyan]")
        _build_tree_recursive(tree, root, dep_graph, set())
        console.print(tree)
        console.print()


def _build_tree_recursive(tree: Tree, address: str, dep_graph: DependencyGraph, visited: Set[str]):
    visited.add(address)
    for dependent in sorted(dep_graph.get_dependents(address)):
        branch = tree.add(f"[cyan]{dependent}[/cyan]")
        if dependent not in visited:
            _build_tree_recursive(branch, dependent, dep_graph, visited.copy())


def _output_ascii(dep_graph: DependencyGraph):
    """Output dependency graph level by level."""
    console.print(Panel("Resource Dependency Graph", style="bold blue"))
    console.print()

    for level, wave in enumerate(dep_graph.get_apply_waves()):
        console.print(f"[bold]Level {level}:[/bold]")
        for address in wave:
            deps = sorted(dep_graph.get_dependencies(address))
            if deps:
                console.print(f"  ├─ [cyan]{address}[/cyan] [dim]← depends on: {', '.join(deps)}[/dim]")
            else:
                console.print(f"  ├─ [cyan]{address}[/cyan]")
        console.print()


def generate_dot(dep_graph: DependencyGraph) -> str:
    """Generate DOT format graph."""
    lines: List[str] = [
        'digraph ResourceDependencies {',
        '  rankdir=TB;',
        '  node [shape=box, style=rounded, fontname="Arial"];',
        '',
    ]

    order = dep_graph.topological_sort()
    for address in order:
        resource_type = address.split('.', 1)[0]
        color = _get_resource_color(resource_type)
        lines.append(f'  "{address}" [fillcolor="{color}", style="filled,rounded"];')

    lines.append('')

    for address in order:
        for dep in sorted(dep_graph.get_dependencies(address)):
            lines.append(f'  "{dep}" -> "{address}";')

    lines.append('}')
    return '\n'.join(lines)


def _get_resource_color(resource_type: str) -> str:
    color_map = {
        'aws_iam_role': '#DD344C',
        'aws_s3_bucket': '#569A31',
        'aws_codedeploy_app': '#5294CF',
        'aws_codedeploy_deployment_group': '#5294CF',
        'aws_codepipeline': '#FF9900',
        'aws_instance': '#248814',
    }
    return color_map.get(resource_type, '#CCCCCC')
