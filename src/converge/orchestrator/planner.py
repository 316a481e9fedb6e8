"""Planner: refreshes remote state and diffs it against desired state."""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from converge.config.expressions import contains_unknown, render
from converge.config.models import Document, ResourceDeclaration
from converge.orchestrator.dependency_graph import DependencyGraph
from converge.orchestrator.resolver import Resolver
from converge.providers.base import ProviderClient
from converge.state.models import RemoteState, StateFile, utcnow
from converge.utils.errors import ErrorContext, error_handler
from converge.utils.logging import get_logger
from converge.utils.retry import RetryStrategy
from converge.utils.sensitive import (
    DIGEST_KEY,
    Sensitive,
    carry_sensitivity,
    digest_value,
    is_digest_marker,
    unwrap,
)

logger = get_logger(__name__)


class ChangeAction(str, Enum):
    """What the executor does to a resource."""
    CREATE = "create"
    UPDATE = "update"
    DESTROY = "destroy"
    NO_OP = "no-op"


@dataclass
class AttributeDiff:
    """A single attribute whose observed value differs from the desired one."""

    attribute: str
    before: Any
    after: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"attribute": self.attribute, "before": render(self.before), "after": render(self.after)}


@dataclass
class PlannedChange:
    """Operation planned for one resource."""

    address: str
    resource_type: str
    action: ChangeAction
    rank: int
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    diffs: List[AttributeDiff] = field(default_factory=list)
    reason: str = ""
    physical_id: Optional[str] = None
    dependencies: List[str] = field(default_factory=list)
    declaration: Optional[ResourceDeclaration] = None

    def is_change(self) -> bool:
        return self.action != ChangeAction.NO_OP

    def to_dict(self) -> Dict[str, Any]:
        """Machine-readable form with sensitive values redacted."""
        return {
            "address": self.address,
            "type": self.resource_type,
            "action": self.action.value,
            "rank": self.rank,
            "reason": self.reason,
            "physical_id": self.physical_id,
            "dependencies": list(self.dependencies),
            "before": render(self.before),
            "after": render(self.after),
            "diffs": [diff.to_dict() for diff in self.diffs],
        }


@dataclass
class Plan:
    """Ordered set of planned changes."""

    changes: List[PlannedChange]
    graph: DependencyGraph
    destroy: bool = False
    refreshed: Dict[str, RemoteState] = field(default_factory=dict)
    dropped: List[str] = field(default_factory=list)  # In state, but gone remotely
    created_at: datetime = field(default_factory=utcnow)

    def get_change(self, address: str) -> Optional[PlannedChange]:
        for change in self.changes:
            if change.address == address:
                return change
        return None

    def summary(self) -> Dict[str, int]:
        """Count of changes by action."""
        summary = {action.value: 0 for action in ChangeAction}
        for change in self.changes:
            summary[change.action.value] += 1
        return summary

    def has_changes(self) -> bool:
        return any(change.is_change() for change in self.changes) or bool(self.dropped)

    def is_noop(self) -> bool:
        return not self.has_changes()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "format_version": 1,
            "destroy": self.destroy,
            "created_at": self.created_at.isoformat(),
            "summary": self.summary(),
            "dropped": list(self.dropped),
            "changes": [change.to_dict() for change in self.changes],
        }


def values_equal(observed: Any, desired: Any) -> bool:
    """Structural comparison that understands sensitive wrappers and digests."""
    if isinstance(desired, Sensitive) or isinstance(observed, Sensitive):
        if is_digest_marker(observed):
            return observed[DIGEST_KEY] == digest_value(unwrap(desired))
        if is_digest_marker(desired):
            return desired[DIGEST_KEY] == digest_value(unwrap(observed))
        return values_equal(unwrap(observed), unwrap(desired))
    if is_digest_marker(observed) and not is_digest_marker(desired):
        return observed[DIGEST_KEY] == digest_value(unwrap(desired))
    if isinstance(desired, dict):
        if not isinstance(observed, dict) or set(observed) != set(desired):
            return False
        return all(values_equal(observed[key], desired[key]) for key in desired)
    if isinstance(desired, (list, tuple)):
        if not isinstance(observed, (list, tuple)) or len(observed) != len(desired):
            return False
        return all(values_equal(o, d) for o, d in zip(observed, desired))
    if isinstance(desired, bool) or isinstance(observed, bool):
        return type(desired) is type(observed) and desired == observed
    return observed == desired


def diff_attributes(observed: Dict[str, Any], desired: Dict[str, Any]) -> List[AttributeDiff]:
    """Differences over the declared keys; provider-computed extras are ignored."""
    diffs = []
    for key, after in desired.items():
        before = observed.get(key)
        if key not in observed:
            differs = after is not None
        else:
            differs = contains_unknown(after) or not values_equal(before, after)
        if differs:
            diffs.append(AttributeDiff(attribute=key, before=before, after=after))
    return diffs


class Planner:
    """Creates plans by refreshing state and diffing it against a document."""

    def __init__(
        self,
        provider: ProviderClient,
        retry_strategy: Optional[RetryStrategy] = None,
        parallelism: int = 4
    ):
        """Initialize planner.

        Args:
            provider: Provider used to refresh remote state
            retry_strategy: Retry policy for transient provider errors
            parallelism: Maximum concurrent describe calls
        """
        self.provider = provider
        self.retry_strategy = retry_strategy or RetryStrategy()
        self.parallelism = parallelism

    def refresh(self, state: StateFile) -> Dict[str, Optional[RemoteState]]:
        """Describe every resource recorded in state.

        Returns:
            Address -> refreshed RemoteState, or None when the resource is gone

        Raises:
            ProviderError: If a describe call fails and retries do not help
        """
        stored = state.copy_resources()
        if not stored:
            return {}

        logger.info(f"Refreshing {len(stored)} resources")

        def describe(address: str, remote: RemoteState) -> Optional[RemoteState]:
            try:
                observed = self.retry_strategy.execute_with_retry(
                    self.provider.describe,
                    remote.type,
                    remote.physical_id,
                    description=f"describe {address}"
                )
            except Exception as e:
                error = error_handler.handle_exception(
                    e, ErrorContext(resource_id=address, resource_type=remote.type, operation="describe")
                )
                error.context.resource_id = address
                error.context.resource_type = error.context.resource_type or remote.type
                error.context.additional_info = {
                    **(error.context.additional_info or {}),
                    "physical_id": remote.physical_id,
                }
                logger.error(f"Failed to refresh {address}: {error.message}", extra={"resource_id": address})
                if error is e:
                    raise
                raise error from e
            if observed is None:
                return None
            observed = observed.model_copy(update={
                "attributes": carry_sensitivity(observed.attributes, remote.attributes)
            })
            return observed.bind(address, remote.dependencies)

        with ThreadPoolExecutor(max_workers=self.parallelism) as executor:
            futures = {
                address: executor.submit(describe, address, remote)
                for address, remote in stored.items()
            }
            # Results are collected in state order; the first failure propagates
            return {address: future.result() for address, future in futures.items()}

    def create_plan(
        self,
        document: Document,
        state: StateFile,
        destroy: bool = False,
        refresh: bool = True
    ) -> Plan:
        """Compute the changes that move remote state toward the document.

        Args:
            document: Document with variables already bound
            state: Last recorded state
            destroy: Plan the destruction of every resource in state
            refresh: Describe resources before diffing instead of trusting state

        Returns:
            Plan with changes in rank order

        Raises:
            CyclicDependencyError: If the document's references form a cycle
            ProviderError: If refreshing fails
        """
        graph = DependencyGraph.from_declarations(document.resources)
        order = graph.topological_sort()

        working: Dict[str, RemoteState] = state.copy_resources()
        dropped: List[str] = []
        if refresh:
            for address, remote in self.refresh(state).items():
                if remote is None:
                    logger.warning(f"{address} no longer exists remotely")
                    working.pop(address)
                    dropped.append(address)
                else:
                    working[address] = remote

        changes: List[PlannedChange] = []
        if not destroy:
            changes.extend(self._diff(document, graph, order, working))

        removed = [
            address for address in working
            if destroy or not document.has_resource(address)
        ]
        changes.extend(self._plan_destroys(removed, working, len(changes), destroy))

        plan = Plan(
            changes=changes,
            graph=graph,
            destroy=destroy,
            refreshed=working,
            dropped=dropped
        )

        summary = plan.summary()
        logger.info(
            f"Plan: {summary['create']} to create, {summary['update']} to update, "
            f"{summary['destroy']} to destroy, {summary['no-op']} unchanged"
        )
        return plan

    def _diff(
        self,
        document: Document,
        graph: DependencyGraph,
        order: List[str],
        working: Dict[str, RemoteState]
    ) -> List[PlannedChange]:
        resolver = Resolver(strict=False)
        for address, remote in working.items():
            resolver.set_observed(address, remote.attributes)

        changes = []
        for rank, address in enumerate(order):
            declaration = graph.get_declaration(address)
            desired = resolver.resolve(declaration.attributes, referrer=address)
            resolver.set_desired(address, desired)
            remote = working.get(address)

            change = PlannedChange(
                address=address,
                resource_type=declaration.type,
                action=ChangeAction.NO_OP,
                rank=rank,
                after=desired,
                dependencies=sorted(declaration.dependencies()),
                declaration=declaration
            )

            if remote is None:
                change.action = ChangeAction.CREATE
                change.diffs = [AttributeDiff(key, None, value) for key, value in desired.items()]
                change.reason = "Resource does not exist"
            else:
                observed = carry_sensitivity(remote.attributes, desired)
                change.before = observed
                change.physical_id = remote.physical_id
                change.diffs = diff_attributes(observed, desired)
                if change.diffs:
                    change.action = ChangeAction.UPDATE
                    names = ", ".join(diff.attribute for diff in change.diffs)
                    change.reason = f"Attributes differ: {names}"
                else:
                    change.reason = "Remote state matches desired state"

            logger.debug(
                f"{address}: {change.action.value}",
                extra={"resource_id": address, "resource_type": declaration.type,
                       "operation": change.action.value}
            )
            changes.append(change)

        return changes

    def _plan_destroys(
        self,
        addresses: List[str],
        working: Dict[str, RemoteState],
        start_rank: int,
        destroy: bool
    ) -> List[PlannedChange]:
        if not addresses:
            return []

        # Order by the dependencies recorded at apply time
        graph = DependencyGraph()
        for index, address in enumerate(addresses):
            recorded = working[address].dependencies
            graph.add_node(address, [dep for dep in recorded if dep in addresses], index=index)

        changes = []
        for offset, address in enumerate(graph.get_destruction_order()):
            remote = working[address]
            changes.append(PlannedChange(
                address=address,
                resource_type=remote.type,
                action=ChangeAction.DESTROY,
                rank=start_rank + offset,
                before=remote.attributes,
                reason="Destroy requested" if destroy else "Resource is no longer declared",
                physical_id=remote.physical_id,
                dependencies=list(remote.dependencies),
            ))
        return changes
