"""Orchestrator module for planning and applying changes."""

from converge.orchestrator.dependency_graph import DependencyGraph, DependencyNode
from converge.orchestrator.planner import (
    AttributeDiff,
    ChangeAction,
    Plan,
    PlannedChange,
    Planner,
    values_equal
)
from converge.orchestrator.executor import (
    ApplyResult,
    ApplyStatus,
    Executor,
    ProgressCallback,
    ResourceApplyResult
)
from converge.orchestrator.resolver import Resolver
from converge.orchestrator.reconciler import Reconciler

__all__ = [
    # Dependency graph
    'DependencyGraph',
    'DependencyNode',

    # Planning
    'AttributeDiff',
    'ChangeAction',
    'Plan',
    'PlannedChange',
    'Planner',
    'values_equal',

    # Execution
    'ApplyResult',
    'ApplyStatus',
    'Executor',
    'ProgressCallback',
    'ResourceApplyResult',
    'Resolver',

    # Main entry point
    'Reconciler',
]
