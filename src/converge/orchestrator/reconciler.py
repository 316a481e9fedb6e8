"""Reconciler that coordinates planning and execution."""

from typing import Callable, Optional

from converge.config.models import Document, EngineSettings
from converge.orchestrator.executor import ApplyResult, Executor, ProgressCallback
from converge.orchestrator.planner import Plan, Planner
from converge.orchestrator.resolver import Resolver
from converge.providers.base import ProviderClient
from converge.state.manager import StateManager
from converge.state.models import OutputState, StateFile
from converge.utils.errors import PartialApplyError
from converge.utils.logging import get_logger
from converge.utils.retry import RetryStrategy
from converge.utils.sensitive import Sensitive, is_sensitive

logger = get_logger(__name__)


class Reconciler:
    """Moves remote state toward a document's desired state.

    The document must already have its variables bound. The state manager
    should hold the state lock for the whole plan/apply cycle.
    """

    def __init__(
        self,
        document: Document,
        provider: ProviderClient,
        state_manager: StateManager,
        settings: Optional[EngineSettings] = None,
        sleep: Optional[Callable[[float], None]] = None,
        progress_callback: Optional[ProgressCallback] = None
    ):
        """Initialize reconciler.

        Args:
            document: Document with variables bound
            provider: Provider client
            state_manager: State manager for the run's state file
            settings: Engine settings; defaults to the document's
            sleep: Function used to wait between retries
            progress_callback: Called on every resource status change
        """
        self.document = document
        self.provider = provider
        self.state_manager = state_manager
        self.settings = settings or document.settings
        self.retry_strategy = RetryStrategy.from_settings(self.settings.retry, sleep=sleep)
        self.progress_callback = progress_callback
        self.planner = Planner(
            provider,
            retry_strategy=self.retry_strategy,
            parallelism=self.settings.parallelism
        )
        self._executor: Optional[Executor] = None
        self._cancel_requested = False

    def _state(self) -> StateFile:
        if not self.state_manager.is_loaded():
            return self.state_manager.load_or_initialize()
        return self.state_manager.get_state()

    def plan(self, destroy: bool = False, refresh: bool = True) -> Plan:
        """Refresh remote state and compute the changes to make.

        Args:
            destroy: Plan the destruction of every resource in state
            refresh: Describe resources instead of trusting recorded state

        Returns:
            Plan

        Raises:
            CyclicDependencyError: If the document's references form a cycle
            ProviderError: If refreshing fails
        """
        logger.info("Planning destroy..." if destroy else "Planning changes...")
        return self.planner.create_plan(self.document, self._state(), destroy=destroy, refresh=refresh)

    def apply(self, plan: Plan) -> ApplyResult:
        """Execute a plan and record the results.

        Returns:
            ApplyResult when every change was applied

        Raises:
            PartialApplyError: If any resource failed or was skipped
        """
        self._state()
        self._executor = Executor(
            provider=self.provider,
            state_manager=self.state_manager,
            retry_strategy=self.retry_strategy,
            parallelism=self.settings.parallelism,
            fail_fast=self.settings.fail_fast,
            resolver=Resolver(strict=True),
            progress_callback=self.progress_callback
        )
        if self._cancel_requested:
            self._executor.cancel()

        result = self._executor.execute(plan)

        if not result.is_success():
            error = PartialApplyError(
                applied=result.applied(),
                failed=result.failed(),
                skipped=result.skipped(),
                result=result
            )
            logger.error(error.message)
            raise error

        self._record_outputs(plan)
        return result

    def cancel(self) -> None:
        """Stop scheduling new operations; in-flight ones finish."""
        self._cancel_requested = True
        if self._executor is not None:
            self._executor.cancel()

    def _record_outputs(self, plan: Plan) -> None:
        state = self.state_manager.get_state()
        state.outputs = {}

        if not plan.destroy:
            resolver = self._executor.resolver
            for name, output in self.document.outputs.items():
                value = resolver.resolve(output.value, referrer=f"output.{name}")
                sensitive = output.sensitive or is_sensitive(value)
                if sensitive and not isinstance(value, Sensitive):
                    value = Sensitive(value)
                state.outputs[name] = OutputState(value=value, sensitive=sensitive)

        self.state_manager.save()
        logger.info(f"Recorded {len(state.outputs)} outputs")
