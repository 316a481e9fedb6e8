"""End-to-end tests for planning and applying with the in-memory provider."""

import pytest

from converge.config import EngineSettings
from converge.orchestrator import ApplyStatus, ChangeAction, Reconciler
from converge.providers import InMemoryProvider
from converge.state import StateManager
from converge.utils.errors import PartialApplyError, ProviderFatalError

BUCKET_AND_ROLE = """
resources:
  aws_s3_bucket:
    bucket_a:
      bucket: artifacts
  aws_iam_role:
    role_b:
      name: deployer
      bucket_arn: ${aws_s3_bucket.bucket_a.arn}
outputs:
  role_arn:
    value: ${aws_iam_role.role_b.arn}
"""

FIVE_RESOURCES = """
settings:
  retry:
    max_retries: 0
resources:
  aws_s3_bucket:
    one:
      bucket: one
    two:
      bucket: two
    three:
      bucket: three
  aws_iam_role:
    four:
      name: four
      bucket_arn: ${aws_s3_bucket.three.arn}
    five:
      name: five
      depends_on: [aws_s3_bucket.three]
"""


def _make_reconciler(document, provider, state_manager, sleeps=None, **settings):
    effective = document.settings.with_overrides(**settings) if settings else document.settings
    return Reconciler(
        document,
        provider,
        state_manager,
        settings=effective,
        sleep=sleeps.append if sleeps is not None else (lambda delay: None)
    )


def _creates(provider):
    return [physical_id for op, _, physical_id in provider.calls if op == "create"]


class TestApply:
    def test_apply_creates_in_dependency_order(self, provider, state_manager, document_from):
        reconciler = _make_reconciler(document_from(BUCKET_AND_ROLE), provider, state_manager)

        result = reconciler.apply(reconciler.plan())

        assert result.is_success()
        assert result.applied() == ["aws_s3_bucket.bucket_a", "aws_iam_role.role_b"]
        assert _creates(provider) == ["artifacts", "deployer"]
        role = provider.objects[("aws_iam_role", "deployer")]
        assert role["bucket_arn"] == "arn:aws:s3:::artifacts"

    def test_state_records_resources_and_outputs(self, provider, state_manager, document_from):
        reconciler = _make_reconciler(document_from(BUCKET_AND_ROLE), provider, state_manager)
        reconciler.apply(reconciler.plan())

        reloaded = StateManager(str(state_manager.state_path)).load()
        assert reloaded.addresses() == ["aws_s3_bucket.bucket_a", "aws_iam_role.role_b"]
        role = reloaded.get_resource("aws_iam_role.role_b")
        assert role.physical_id == "deployer"
        assert role.dependencies == ["aws_s3_bucket.bucket_a"]
        assert reloaded.outputs["role_arn"].value.endswith("role/deployer")

    def test_second_plan_is_a_noop(self, provider, state_manager, document_from):
        reconciler = _make_reconciler(document_from(BUCKET_AND_ROLE), provider, state_manager)
        reconciler.apply(reconciler.plan())

        second = reconciler.plan()

        assert second.is_noop()
        assert second.summary()["no-op"] == 2

    def test_noop_apply_makes_no_provider_writes(self, provider, state_manager, document_from):
        reconciler = _make_reconciler(document_from(BUCKET_AND_ROLE), provider, state_manager)
        reconciler.apply(reconciler.plan())
        provider.calls.clear()

        result = reconciler.apply(reconciler.plan())

        assert result.is_success()
        assert result.applied() == []
        assert all(op == "describe" for op, _, _ in provider.calls)

    def test_update_in_place(self, provider, state_manager, document_from):
        reconciler = _make_reconciler(document_from(BUCKET_AND_ROLE), provider, state_manager)
        reconciler.apply(reconciler.plan())

        changed = document_from(BUCKET_AND_ROLE.replace("name: deployer", "name: deployer\n      description: ci"))
        reconciler = _make_reconciler(changed, provider, state_manager)
        plan = reconciler.plan()

        assert plan.get_change("aws_iam_role.role_b").action == ChangeAction.UPDATE
        reconciler.apply(plan)
        assert provider.objects[("aws_iam_role", "deployer")]["description"] == "ci"
        assert reconciler.plan().is_noop()

    def test_removed_resource_is_destroyed(self, provider, state_manager, document_from):
        reconciler = _make_reconciler(document_from(BUCKET_AND_ROLE), provider, state_manager)
        reconciler.apply(reconciler.plan())

        only_bucket = document_from("""
        resources:
          aws_s3_bucket:
            bucket_a:
              bucket: artifacts
        """)
        reconciler = _make_reconciler(only_bucket, provider, state_manager)
        plan = reconciler.plan()
        assert plan.get_change("aws_iam_role.role_b").action == ChangeAction.DESTROY

        reconciler.apply(plan)
        assert ("aws_iam_role", "deployer") not in provider.objects
        assert not state_manager.get_state().has_resource("aws_iam_role.role_b")

    def test_resource_deleted_outside_is_recreated(self, provider, state_manager, document_from):
        reconciler = _make_reconciler(document_from(BUCKET_AND_ROLE), provider, state_manager)
        reconciler.apply(reconciler.plan())
        del provider.objects[("aws_s3_bucket", "artifacts")]

        plan = reconciler.plan()
        assert plan.dropped == ["aws_s3_bucket.bucket_a"]
        reconciler.apply(plan)

        assert ("aws_s3_bucket", "artifacts") in provider.objects
        assert reconciler.plan().is_noop()


class TestDestroy:
    def test_destroy_runs_in_reverse_order(self, provider, state_manager, document_from):
        reconciler = _make_reconciler(document_from(BUCKET_AND_ROLE), provider, state_manager)
        reconciler.apply(reconciler.plan())
        provider.calls.clear()

        plan = reconciler.plan(destroy=True)
        reconciler.apply(plan)

        deletes = [physical_id for op, _, physical_id in provider.calls if op == "delete"]
        assert deletes == ["deployer", "artifacts"]
        assert provider.objects == {}
        assert state_manager.get_state().resources == {}
        assert state_manager.get_state().outputs == {}

    def test_failed_destroy_keeps_its_dependencies(self, provider, state_manager, document_from):
        reconciler = _make_reconciler(document_from(BUCKET_AND_ROLE), provider, state_manager)
        reconciler.apply(reconciler.plan())
        provider.add_fault("delete", resource_type="aws_iam_role")
        provider.calls.clear()

        with pytest.raises(PartialApplyError) as exc_info:
            reconciler.apply(reconciler.plan(destroy=True))

        error = exc_info.value
        assert list(error.failed) == ["aws_iam_role.role_b"]
        assert error.skipped == ["aws_s3_bucket.bucket_a"]
        assert error.result.results["aws_s3_bucket.bucket_a"].status == ApplyStatus.SKIPPED
        deletes = [physical_id for op, _, physical_id in provider.calls if op == "delete"]
        assert deletes == ["deployer"]
        assert ("aws_s3_bucket", "artifacts") in provider.objects
        assert sorted(state_manager.get_state().addresses()) == ["aws_iam_role.role_b", "aws_s3_bucket.bucket_a"]


class TestPartialFailure:
    def test_failure_skips_only_dependents(self, provider, state_manager, document_from):
        provider.add_fault("create", resource_type="aws_s3_bucket", match={"bucket": "three"})
        reconciler = _make_reconciler(document_from(FIVE_RESOURCES), provider, state_manager)

        with pytest.raises(PartialApplyError) as exc_info:
            reconciler.apply(reconciler.plan())

        error = exc_info.value
        assert error.applied == ["aws_s3_bucket.one", "aws_s3_bucket.two"]
        assert list(error.failed) == ["aws_s3_bucket.three"]
        assert error.skipped == ["aws_iam_role.four", "aws_iam_role.five"]
        assert sorted(_creates(provider)) == ["one", "three", "two"]

        result = error.result
        assert result.results["aws_iam_role.four"].reason == "Prerequisite aws_s3_bucket.three was not applied"
        assert sorted(state_manager.get_state().addresses()) == ["aws_s3_bucket.one", "aws_s3_bucket.two"]

    def test_rerun_after_failure_finishes_the_rest(self, provider, state_manager, document_from):
        fault = provider.add_fault("create", resource_type="aws_s3_bucket", match={"bucket": "three"})
        reconciler = _make_reconciler(document_from(FIVE_RESOURCES), provider, state_manager)
        with pytest.raises(PartialApplyError):
            reconciler.apply(reconciler.plan())

        provider.faults.remove(fault)
        plan = reconciler.plan()
        pending = [c.address for c in plan.changes if c.is_change()]
        assert pending == ["aws_s3_bucket.three", "aws_iam_role.four", "aws_iam_role.five"]

        result = reconciler.apply(plan)
        assert result.is_success()

    def test_fail_fast_stops_independent_work(self, provider, state_manager, document_from):
        provider.add_fault("create", match={"bucket": "one"})
        reconciler = _make_reconciler(
            document_from(FIVE_RESOURCES), provider, state_manager, parallelism=1, fail_fast=True
        )

        with pytest.raises(PartialApplyError) as exc_info:
            reconciler.apply(reconciler.plan())

        assert exc_info.value.applied == []
        assert list(exc_info.value.failed) == ["aws_s3_bucket.one"]
        assert len(exc_info.value.skipped) == 4
        assert _creates(provider) == ["one"]

    def test_cancel_before_apply_skips_everything(self, provider, state_manager, document_from):
        reconciler = _make_reconciler(document_from(BUCKET_AND_ROLE), provider, state_manager)
        plan = reconciler.plan()
        reconciler.cancel()

        with pytest.raises(PartialApplyError) as exc_info:
            reconciler.apply(plan)

        result = exc_info.value.result
        assert result.cancelled
        assert all(r.status == ApplyStatus.SKIPPED for r in result.results.values())
        assert _creates(provider) == []

    def test_cancel_during_run_lets_in_flight_step_finish(self, state_manager, document_from):
        provider = InMemoryProvider(latency=0.05)
        names = "\n".join(f"    b{i}:\n      bucket: b{i}" for i in range(3))
        document = document_from(f"resources:\n  aws_s3_bucket:\n{names}\n")
        reconciler = _make_reconciler(document, provider, state_manager, parallelism=1)

        def cancel_once_started(address, status, message):
            if status == ApplyStatus.APPLYING:
                reconciler.cancel()

        reconciler.progress_callback = cancel_once_started

        with pytest.raises(PartialApplyError) as exc_info:
            reconciler.apply(reconciler.plan())

        result = exc_info.value.result
        assert result.cancelled
        assert result.applied() == ["aws_s3_bucket.b0"]
        assert sorted(result.skipped()) == ["aws_s3_bucket.b1", "aws_s3_bucket.b2"]
        assert result.results["aws_s3_bucket.b1"].reason == "Run was cancelled"
        assert _creates(provider) == ["b0"]
        assert state_manager.get_state().addresses() == ["aws_s3_bucket.b0"]


class TestRefreshErrors:
    def test_describe_failure_names_the_resource(self, provider, state_manager, document_from):
        reconciler = _make_reconciler(document_from(BUCKET_AND_ROLE), provider, state_manager)
        reconciler.apply(reconciler.plan())
        provider.add_fault("describe", resource_type="aws_iam_role")

        with pytest.raises(ProviderFatalError) as exc_info:
            reconciler.plan()

        error = exc_info.value
        assert error.context.resource_id == "aws_iam_role.role_b"
        assert error.context.additional_info["physical_id"] == "deployer"
        message = error.to_user_message()
        assert "Resource: aws_iam_role.role_b" in message
        assert "Operation: describe" in message


class TestRetries:
    def test_transient_errors_are_retried(self, provider, state_manager, document_from, sleeps):
        provider.add_fault("create", resource_type="aws_s3_bucket", transient=True, times=2)
        document = document_from(BUCKET_AND_ROLE)
        reconciler = _make_reconciler(document, provider, state_manager, sleeps=sleeps)

        result = reconciler.apply(reconciler.plan())

        assert result.is_success()
        assert _creates(provider).count("artifacts") == 3
        assert len(sleeps) == 2
        assert sleeps[1] > sleeps[0]

    def test_retries_are_bounded(self, provider, state_manager, document_from, sleeps):
        provider.add_fault("create", resource_type="aws_s3_bucket", transient=True)
        settings = EngineSettings(retry={"max_retries": 2, "base_delay": 0.5, "jitter": False})
        reconciler = Reconciler(
            document_from(BUCKET_AND_ROLE), provider, state_manager,
            settings=settings, sleep=sleeps.append
        )

        with pytest.raises(PartialApplyError) as exc_info:
            reconciler.apply(reconciler.plan())

        assert _creates(provider) == ["artifacts", "artifacts", "artifacts"]
        assert sleeps == [0.5, 1.0]
        assert exc_info.value.skipped == ["aws_iam_role.role_b"]

    def test_fatal_errors_are_not_retried(self, provider, state_manager, document_from, sleeps):
        provider.add_fault("create", resource_type="aws_s3_bucket")
        reconciler = _make_reconciler(document_from(BUCKET_AND_ROLE), provider, state_manager, sleeps=sleeps)

        with pytest.raises(PartialApplyError):
            reconciler.apply(reconciler.plan())

        assert _creates(provider) == ["artifacts"]
        assert sleeps == []


class TestConcurrency:
    def test_parallelism_bounds_in_flight_operations(self, state_manager, document_from):
        provider = InMemoryProvider(latency=0.02)
        names = "\n".join(f"    b{i}:\n      bucket: b{i}" for i in range(6))
        document = document_from(f"resources:\n  aws_s3_bucket:\n{names}\n")
        reconciler = _make_reconciler(document, provider, state_manager, parallelism=2)

        result = reconciler.apply(reconciler.plan())

        assert result.is_success()
        assert provider.max_in_flight <= 2
        assert len(_creates(provider)) == 6

    def test_dependents_wait_for_dependencies(self, state_manager, document_from):
        provider = InMemoryProvider(latency=0.01)
        reconciler = _make_reconciler(document_from(BUCKET_AND_ROLE), provider, state_manager, parallelism=8)

        reconciler.apply(reconciler.plan())

        assert _creates(provider) == ["artifacts", "deployer"]

    def test_progress_callback_sees_every_transition(self, provider, state_manager, document_from):
        events = []
        reconciler = Reconciler(
            document_from(BUCKET_AND_ROLE), provider, state_manager,
            progress_callback=lambda address, status, message: events.append((address, status))
        )

        reconciler.apply(reconciler.plan())

        assert ("aws_s3_bucket.bucket_a", ApplyStatus.APPLYING) in events
        assert ("aws_iam_role.role_b", ApplyStatus.APPLIED) in events
        assert events.index(("aws_s3_bucket.bucket_a", ApplyStatus.APPLIED)) < \
            events.index(("aws_iam_role.role_b", ApplyStatus.APPLYING))
