"""Example of driving the reconciler programmatically with the in-memory provider."""

from converge.config import ConfigLoader, bind_variables, resolve_variables
from converge.orchestrator import ChangeAction, Reconciler
from converge.providers import InMemoryProvider
from converge.state import StateManager
from converge.utils import PartialApplyError, setup_logging


def example_plan_and_apply():
    """Example: plan, apply, then confirm a second plan is empty."""
    print("=" * 60)
    print("Example 1: Plan and apply")
    print("=" * 60)

    document = ConfigLoader("examples/codepipeline.yaml").load()
    values = resolve_variables(document, overrides={"github_token": "ghp-example-token"})
    document = bind_variables(document, values)

    provider = InMemoryProvider()
    with StateManager(".converge/state/example.json") as state_manager:
        reconciler = Reconciler(document, provider, state_manager)

        plan = reconciler.plan()
        for change in plan.changes:
            print(f"  {change.action.value:8} {change.address}")

        reconciler.apply(plan)

        second = reconciler.plan()
        print(f"\nSecond plan has changes: {second.has_changes()}")

    return provider


def example_partial_failure():
    """Example: a fatal provider error skips dependents but not independent resources."""
    print("\n" + "=" * 60)
    print("Example 2: Partial failure")
    print("=" * 60)

    document = ConfigLoader("examples/codepipeline.yaml").load()
    values = resolve_variables(document, overrides={"github_token": "ghp-example-token"})
    document = bind_variables(document, values)

    provider = InMemoryProvider()
    provider.add_fault("create", resource_type="aws_iam_role", match={"name": "sample-app-codedeploy"})

    with StateManager(".converge/state/example-partial.json") as state_manager:
        reconciler = Reconciler(document, provider, state_manager)
        plan = reconciler.plan()
        try:
            reconciler.apply(plan)
        except PartialApplyError as e:
            print(e.to_user_message())

        retry_plan = reconciler.plan()
        pending = [c.address for c in retry_plan.changes if c.action != ChangeAction.NO_OP]
        print(f"\nStill to apply: {', '.join(pending)}")


if __name__ == "__main__":
    setup_logging("warning", log_dir=None)
    example_plan_and_apply()
    example_partial_failure()
