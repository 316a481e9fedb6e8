"""Apply executor with dependency-ordered parallel execution."""

import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from converge.orchestrator.planner import ChangeAction, Plan, PlannedChange
from converge.orchestrator.resolver import Resolver
from converge.providers.base import ProviderClient
from converge.state.manager import StateManager
from converge.state.models import RemoteState, utcnow
from converge.utils.errors import ConvergeError, ErrorContext, error_handler
from converge.utils.logging import get_logger
from converge.utils.retry import RetryStrategy
from converge.utils.sensitive import carry_sensitivity, unwrap

logger = get_logger(__name__)


class ApplyStatus(Enum):
    """Per-resource apply status."""
    PLANNED = "planned"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ResourceApplyResult:
    """Result of applying a single planned change."""

    address: str
    action: ChangeAction
    status: ApplyStatus = ApplyStatus.PLANNED
    remote: Optional[RemoteState] = None
    error: Optional[ConvergeError] = None
    reason: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0  # seconds

    def is_done(self) -> bool:
        return self.status in (ApplyStatus.APPLIED, ApplyStatus.FAILED, ApplyStatus.SKIPPED)


@dataclass
class ApplyResult:
    """Outcome of executing a plan."""

    results: Dict[str, ResourceApplyResult] = field(default_factory=dict)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0  # seconds
    cancelled: bool = False

    def _with(self, status: ApplyStatus) -> List[str]:
        return [
            address for address, result in self.results.items()
            if result.status == status and result.action != ChangeAction.NO_OP
        ]

    def applied(self) -> List[str]:
        """Addresses changed by this run, in rank order."""
        return self._with(ApplyStatus.APPLIED)

    def failed(self) -> Dict[str, str]:
        """Failed addresses with their error messages."""
        return {
            address: result.error.message if result.error else (result.reason or "failed")
            for address, result in self.results.items()
            if result.status == ApplyStatus.FAILED
        }

    def skipped(self) -> List[str]:
        return self._with(ApplyStatus.SKIPPED)

    def is_success(self) -> bool:
        return not self.failed() and not self.skipped()


# Called with (address, status, message)
ProgressCallback = Callable[[str, ApplyStatus, Optional[str]], None]


class Executor:
    """Executes a plan against a provider.

    Creates and updates wait for the resources they depend on; destroys wait
    for every change to a resource that depended on them when last applied.
    Independent steps run concurrently, at most ``parallelism`` at a time.
    A failed or skipped prerequisite skips its dependents without a provider
    call; independent branches keep going unless ``fail_fast`` is set.
    """

    def __init__(
        self,
        provider: ProviderClient,
        state_manager: StateManager,
        retry_strategy: Optional[RetryStrategy] = None,
        parallelism: int = 4,
        fail_fast: bool = False,
        resolver: Optional[Resolver] = None,
        progress_callback: Optional[ProgressCallback] = None
    ):
        """Initialize executor.

        Args:
            provider: Provider that performs the operations
            state_manager: State manager with the state loaded and locked
            retry_strategy: Retry policy for transient provider errors
            parallelism: Maximum concurrent provider operations
            fail_fast: Stop scheduling new steps after the first failure
            resolver: Resolver used for apply-time references
            progress_callback: Called on every status change
        """
        self.provider = provider
        self.state_manager = state_manager
        self.retry_strategy = retry_strategy or RetryStrategy()
        self.parallelism = parallelism
        self.fail_fast = fail_fast
        self.resolver = resolver or Resolver(strict=True)
        self.progress_callback = progress_callback
        self._cancel_event = threading.Event()
        self._halted = False

    def cancel(self) -> None:
        """Stop scheduling new steps; in-flight steps finish."""
        logger.warning("Cancellation requested; waiting for in-flight operations")
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def execute(self, plan: Plan) -> ApplyResult:
        """Execute every change in the plan.

        Args:
            plan: Plan produced by the planner

        Returns:
            ApplyResult with a result per planned change
        """
        start = time.monotonic()
        result = ApplyResult(start_time=utcnow())
        changes = sorted(plan.changes, key=lambda change: change.rank)
        for change in changes:
            result.results[change.address] = ResourceApplyResult(change.address, change.action)

        self._sync_state(plan, result)

        steps = {change.address: change for change in changes if change.is_change()}
        prerequisites = self._prerequisites(plan, steps)
        pending = [change.address for change in changes if change.address in steps]

        logger.info(f"Applying {len(steps)} changes with parallelism {self.parallelism}")

        in_flight: Dict[Future, str] = {}
        with ThreadPoolExecutor(max_workers=self.parallelism) as pool:
            while True:
                self._propagate_skips(pending, prerequisites, result)

                if self.cancelled or self._halted:
                    reason = "Run was cancelled" if self.cancelled else "Stopped after an earlier failure"
                    for address in pending:
                        self._mark(result, address, ApplyStatus.SKIPPED, reason=reason)
                    pending = []
                else:
                    for address in list(pending):
                        if len(in_flight) >= self.parallelism:
                            break
                        if all(result.results[dep].status == ApplyStatus.APPLIED
                               for dep in prerequisites[address]):
                            pending.remove(address)
                            self._mark(result, address, ApplyStatus.APPLYING)
                            in_flight[pool.submit(self._apply_step, steps[address])] = address

                if not in_flight:
                    for address in pending:
                        self._mark(result, address, ApplyStatus.SKIPPED,
                                   reason="Prerequisites can never be satisfied")
                    break

                try:
                    done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    self.cancel()
                    continue
                for future in done:
                    address = in_flight.pop(future)
                    self._complete(steps[address], future, result)

        result.cancelled = self.cancelled
        result.end_time = utcnow()
        result.duration = time.monotonic() - start

        logger.info(
            f"Apply finished in {result.duration:.1f}s: {len(result.applied())} applied, "
            f"{len(result.failed())} failed, {len(result.skipped())} skipped"
        )
        return result

    def _sync_state(self, plan: Plan, result: ApplyResult) -> None:
        """Record refresh findings and seed the resolver with unchanged resources."""
        state = self.state_manager.get_state()
        dirty = False

        for address in plan.dropped:
            state.remove_resource(address)
            dirty = True

        for change in plan.changes:
            remote = plan.refreshed.get(change.address)
            if change.action == ChangeAction.NO_OP:
                bound = remote.bind(change.address, change.dependencies)
                state.set_resource(bound)
                dirty = True
                self.resolver.set_desired(change.address, change.after or {})
                self.resolver.set_observed(change.address, bound.attributes)
                self._mark(result, change.address, ApplyStatus.APPLIED, remote=bound)
            elif remote is not None:
                self.resolver.set_observed(change.address, remote.attributes)

        if dirty:
            self.state_manager.save()

    def _prerequisites(self, plan: Plan, steps: Dict[str, PlannedChange]) -> Dict[str, Set[str]]:
        """Addresses each step has to wait for."""
        planned = {change.address for change in plan.changes}
        prerequisites: Dict[str, Set[str]] = {}
        for address, change in steps.items():
            if change.action == ChangeAction.DESTROY:
                waits = set()
                for other, other_change in steps.items():
                    if other == address:
                        continue
                    recorded = plan.refreshed.get(other)
                    depended_on = set(other_change.dependencies)
                    if recorded is not None:
                        depended_on |= set(recorded.dependencies)
                    if address in depended_on:
                        waits.add(other)
                prerequisites[address] = waits
            else:
                prerequisites[address] = {dep for dep in change.dependencies if dep in planned}
        return prerequisites

    def _propagate_skips(
        self,
        pending: List[str],
        prerequisites: Dict[str, Set[str]],
        result: ApplyResult
    ) -> None:
        changed = True
        while changed:
            changed = False
            for address in list(pending):
                blocked = [
                    dep for dep in sorted(prerequisites[address])
                    if result.results[dep].status in (ApplyStatus.FAILED, ApplyStatus.SKIPPED)
                ]
                if blocked:
                    pending.remove(address)
                    self._mark(
                        result, address, ApplyStatus.SKIPPED,
                        reason=f"Prerequisite {blocked[0]} was not applied"
                    )
                    changed = True

    def _apply_step(self, change: PlannedChange) -> Optional[RemoteState]:
        """Run one provider operation; executed on a worker thread."""
        address = change.address
        extra = {"resource_id": address, "resource_type": change.resource_type,
                 "operation": change.action.value}

        if change.action == ChangeAction.DESTROY:
            logger.info(f"Destroying {address}", extra=extra)
            self.retry_strategy.execute_with_retry(
                self.provider.delete,
                change.resource_type,
                change.physical_id,
                description=f"destroy {address}"
            )
            return None

        desired = self.resolver.resolve(change.declaration.attributes, referrer=address)
        plain = unwrap(desired)

        if change.action == ChangeAction.CREATE:
            logger.info(f"Creating {address}", extra=extra)
            remote = self.retry_strategy.execute_with_retry(
                self.provider.create,
                change.resource_type,
                plain,
                description=f"create {address}"
            )
        else:
            logger.info(f"Updating {address}", extra=extra)
            remote = self.retry_strategy.execute_with_retry(
                self.provider.update,
                change.resource_type,
                change.physical_id,
                plain,
                description=f"update {address}"
            )

        remote = remote.model_copy(update={
            "attributes": carry_sensitivity(remote.attributes, desired)
        }).bind(address, change.dependencies)

        self.resolver.set_desired(address, desired)
        self.resolver.set_observed(address, remote.attributes)
        return remote

    def _complete(self, change: PlannedChange, future: Future, result: ApplyResult) -> None:
        """Record the outcome of a finished step; runs on the scheduling thread."""
        address = change.address
        item = result.results[address]
        item.end_time = utcnow()
        item.duration = (item.end_time - item.start_time).total_seconds()
        extra = {"resource_id": address, "resource_type": change.resource_type,
                 "operation": change.action.value, "duration": item.duration}

        try:
            remote = future.result()
        except Exception as e:
            error = error_handler.handle_exception(
                e, ErrorContext(resource_id=address, resource_type=change.resource_type,
                                operation=change.action.value)
            )
            if not error.context.resource_id:
                error.context.resource_id = address
            logger.error(f"Failed to {change.action.value} {address}: {error.message}", extra=extra)
            self._mark(result, address, ApplyStatus.FAILED, error=error)
            if self.fail_fast:
                self._halted = True
            return

        if change.action == ChangeAction.DESTROY:
            self.state_manager.forget(address)
        else:
            self.state_manager.record(remote)
        logger.info(f"{address}: {change.action.value} complete in {item.duration:.1f}s", extra=extra)
        self._mark(result, address, ApplyStatus.APPLIED, remote=remote)

    def _mark(
        self,
        result: ApplyResult,
        address: str,
        status: ApplyStatus,
        remote: Optional[RemoteState] = None,
        error: Optional[ConvergeError] = None,
        reason: Optional[str] = None
    ) -> None:
        item = result.results[address]
        item.status = status
        if status == ApplyStatus.APPLYING:
            item.start_time = utcnow()
        if remote is not None:
            item.remote = remote
        if error is not None:
            item.error = error
        if reason is not None:
            item.reason = reason
            logger.warning(f"Skipping {address}: {reason}", extra={"resource_id": address})

        if self.progress_callback:
            self.progress_callback(address, status, error.message if error else reason)
