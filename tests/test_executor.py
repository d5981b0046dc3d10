"""Tests for the executor.

These run real plans against the in-memory provider, which records every
call and can be told to fail, hold or delay specific operations.
"""

import asyncio
import json

import pytest
from driftwood.core.errors import ProviderCallError, StateConflictError, ValidationError
from driftwood.execution import DEPOSED_SUFFIX, NodeStatus
from driftwood.planning.models import ActionType
from driftwood.specs.loader import parse_configuration


def items(*names, **values):
    """Configuration of memory_item declarations; ``values`` overrides value."""
    return {
        "resources": {
            "memory_item": {
                name: {"name": name, "value": values.get(name, f"value-{name}")}
                for name in names
            }
        }
    }


def chain():
    """a <- b <- c, each referencing the previous one's id."""
    return items("a", "b", "c", b="${memory_item.a.id}", c="${memory_item.b.id}")


def replaced_with_dependent(name):
    """a, replaced create-before-destroy when ``name`` changes, and b using its id."""
    return {
        "resources": {
            "memory_item": {
                "a": {"name": name, "lifecycle": {"create_before_destroy": True}},
                "b": {"name": "b", "value": "${memory_item.a.id}"},
            }
        }
    }


def operations(provider, since=0):
    return [(op, key) for op, _, key in provider.calls[since:]]


class TestApply:
    """Tests for dependency-ordered apply and idempotent re-runs."""

    @pytest.mark.asyncio
    async def test_creates_in_dependency_order(self, harness):
        result = await harness.apply(chain())

        assert result.success
        assert result.applied == ["memory_item.a", "memory_item.b", "memory_item.c"]
        assert operations(harness.provider) == [
            ("create", "a"),
            ("create", "b"),
            ("create", "c"),
        ]
        b = harness.store.get("memory_item.b")
        assert b.dependencies == ["memory_item.a"]
        assert harness.store.get("memory_item.c").attributes["value"] == b.identity["id"]

    @pytest.mark.asyncio
    async def test_rerun_is_a_true_no_op(self, harness):
        await harness.apply(chain())
        calls = len(harness.provider.calls)
        serial = harness.store.serial

        config, plan = harness.plan(chain())
        result = await harness.executor().apply(plan, config)

        assert plan.actions == []
        assert result.success
        assert len(harness.provider.calls) == calls
        assert harness.store.serial == serial

    @pytest.mark.asyncio
    async def test_state_is_persisted_after_each_success(self, harness):
        harness.provider.fail("create", "c")

        await harness.apply(chain())

        persisted = json.loads(harness.state_path.read_text())["records"]
        assert sorted(persisted) == ["memory_item.a", "memory_item.b"]

    @pytest.mark.asyncio
    async def test_update_in_place(self, harness):
        await harness.apply(items("a"))
        object_id = harness.store.get("memory_item.a").identity["id"]

        result = await harness.apply(items("a", a="changed"))

        assert result.nodes["memory_item.a"].action == ActionType.UPDATE
        assert harness.provider.objects[object_id]["attributes"]["value"] == "changed"
        assert harness.store.get("memory_item.a").identity["id"] == object_id


class TestFailures:
    """Tests for failure propagation and partial-failure tolerance."""

    @pytest.fixture
    def config(self):
        # b depends on a; c is an independent branch
        return items("a", "b", "c", b="${memory_item.a.id}")

    @pytest.mark.asyncio
    async def test_failure_aborts_run_without_tolerance(self, harness, config):
        harness.provider.fail("create", "a")

        result = await harness.apply(config, parallelism=1, partial_failure_tolerance=False)

        assert not result.success
        assert result.failed == ["memory_item.a"]
        assert result.skipped == ["memory_item.b", "memory_item.c"]
        assert result.nodes["memory_item.b"].error == "skipped: depends on memory_item.a"
        assert result.nodes["memory_item.a"].error_type == "ProviderCallError"
        assert harness.provider.find("c") is None

    @pytest.mark.asyncio
    async def test_independent_branch_continues_with_tolerance(self, harness, config):
        harness.provider.fail("create", "a")

        result = await harness.apply(config, parallelism=1, partial_failure_tolerance=True)

        assert result.failed == ["memory_item.a"]
        assert result.skipped == ["memory_item.b"]
        assert result.applied == ["memory_item.c"]
        assert harness.provider.find("c") is not None
        assert harness.store.get("memory_item.c") is not None

    @pytest.mark.asyncio
    async def test_transitive_dependents_are_skipped(self, harness):
        harness.provider.fail("create", "a")

        result = await harness.apply(chain(), partial_failure_tolerance=True)

        assert result.skipped == ["memory_item.b", "memory_item.c"]
        assert result.nodes["memory_item.c"].error == "skipped: depends on memory_item.b"

    @pytest.mark.asyncio
    async def test_rerun_resumes_after_failure(self, harness):
        harness.provider.fail("create", "c", times=1)
        await harness.apply(chain())

        result = await harness.apply(chain())

        assert result.success
        assert list(result.nodes) == ["memory_item.c"]
        assert operations(harness.provider).count(("create", "a")) == 1

    @pytest.mark.asyncio
    async def test_skip_names_the_nearest_failed_dependency(self, harness):
        config = items(
            "a",
            "b",
            "c",
            "d",
            b="${memory_item.a.id}",
            c="${memory_item.a.id}",
            d="${memory_item.b.id}-${memory_item.c.id}",
        )
        harness.provider.fail("create", "a")

        result = await harness.apply(config, partial_failure_tolerance=True)

        assert result.skipped == ["memory_item.b", "memory_item.c", "memory_item.d"]
        assert result.nodes["memory_item.d"].error == "skipped: depends on memory_item.b"


class TestRetries:
    """Transient failures retry only for idempotent calls."""

    @pytest.mark.asyncio
    async def test_idempotent_create_is_retried(self, harness):
        error = ProviderCallError("503", provider="memory", status=503, retryable=True)
        harness.provider.fail("create", "a", error, times=2)

        result = await harness.apply(items("a"))

        assert result.success
        assert operations(harness.provider) == [("create", "a")] * 3
        assert len(harness.provider.objects) == 1

    @pytest.mark.asyncio
    async def test_create_without_idempotency_key_runs_once(self, make_harness):
        harness = make_harness(idempotent_types=())
        error = ProviderCallError("503", provider="memory", status=503, retryable=True)
        harness.provider.fail("create", "a", error, times=1)

        result = await harness.apply(items("a"))

        assert result.failed == ["memory_item.a"]
        assert operations(harness.provider) == [("create", "a")]

    @pytest.mark.asyncio
    async def test_permanent_errors_are_not_retried(self, harness):
        harness.provider.fail("create", "a", ProviderCallError("403", status=403), times=1)

        result = await harness.apply(items("a"))

        assert result.failed == ["memory_item.a"]
        assert len(harness.provider.calls) == 1


class TestConcurrency:
    """Tests for the parallelism limit and cancellation."""

    @pytest.mark.asyncio
    async def test_parallelism_limit(self, make_harness):
        harness = make_harness(delay=0.01)
        names = [f"n{i}" for i in range(6)]

        result = await harness.apply(items(*names), parallelism=2)

        assert result.success
        assert harness.provider.max_in_flight == 2

    @pytest.mark.asyncio
    async def test_independent_branches_run_concurrently(self, make_harness):
        harness = make_harness(delay=0.01)
        names = [f"n{i}" for i in range(4)]

        await harness.apply(items(*names), parallelism=10)

        assert harness.provider.max_in_flight == 4

    @pytest.mark.asyncio
    async def test_cancel_lets_in_flight_calls_finish(self, harness):
        release = harness.provider.gate("create", "a")
        executor = harness.executor()
        task = asyncio.create_task(harness.apply(chain(), executor=executor))
        while not harness.provider.calls_for("create"):
            await asyncio.sleep(0)

        executor.cancel()
        release.set()
        result = await task

        assert result.cancelled
        assert not result.success
        assert result.nodes["memory_item.a"].status == NodeStatus.APPLIED
        assert result.nodes["memory_item.b"].status == NodeStatus.CANCELLED
        assert harness.store.get("memory_item.a") is not None
        assert harness.provider.find("b") is None

    @pytest.mark.asyncio
    async def test_executor_can_be_reused_after_cancel(self, harness):
        executor = harness.executor()
        executor.cancel()

        result = await harness.apply(items("a"), executor=executor)

        assert result.success
        assert not result.cancelled
        assert harness.provider.find("a") is not None


class TestEventualAttributes:
    """Attributes assigned after create are polled for, within a budget."""

    @pytest.fixture
    def config(self):
        return items("a", "b", b="${memory_item.a.endpoint}")

    @pytest.mark.asyncio
    async def test_polls_until_assigned(self, make_harness, config):
        harness = make_harness(eventual_after=2)

        result = await harness.apply(config)

        assert result.success
        assert harness.store.get("memory_item.b").attributes["value"] == "a.memory.local"
        assert harness.store.get("memory_item.a").computed["endpoint"] == "a.memory.local"
        assert len(harness.provider.calls_for("read")) == 2

    @pytest.mark.asyncio
    async def test_timeout_fails_dependents_only(self, make_harness):
        harness = make_harness(eventual_after=10)
        config = items("a", "b", "c", b="${memory_item.a.endpoint}")

        result = await harness.apply(config, partial_failure_tolerance=True)

        assert result.nodes["memory_item.b"].error_type == "ResolutionTimeoutError"
        assert result.applied == ["memory_item.a", "memory_item.c"]
        assert len(harness.provider.calls_for("read")) == harness.settings.poll_max_attempts


class TestReplaceAndDelete:
    """Tests for replacement ordering and dependents-first deletes."""

    @pytest.mark.asyncio
    async def test_delete_before_create(self, harness):
        await harness.apply(items("a"))
        since = len(harness.provider.calls)

        await harness.apply({"resources": {"memory_item": {"a": {"name": "a2"}}}})

        assert operations(harness.provider, since) == [("delete", "a"), ("create", "a2")]
        assert harness.provider.find("a") is None

    @pytest.mark.asyncio
    async def test_create_before_destroy(self, harness):
        await harness.apply(items("a"))
        since = len(harness.provider.calls)
        config = {
            "resources": {
                "memory_item": {
                    "a": {"name": "a2", "lifecycle": {"create_before_destroy": True}}
                }
            }
        }

        result = await harness.apply(config)

        assert result.success
        assert operations(harness.provider, since) == [("create", "a2"), ("delete", "a")]
        assert harness.store.get("memory_item.a").attributes["name"] == "a2"

    @pytest.mark.asyncio
    async def test_failed_retirement_keeps_deposed_record(self, harness):
        await harness.apply(items("a"))
        harness.provider.fail("delete", "a", times=1)
        config = {
            "resources": {
                "memory_item": {
                    "a": {"name": "a2", "lifecycle": {"create_before_destroy": True}}
                }
            }
        }

        result = await harness.apply(config)

        assert result.failed == ["memory_item.a"]
        deposed = harness.store.get("memory_item.a" + DEPOSED_SUFFIX)
        assert deposed.attributes["name"] == "a"
        assert harness.store.get("memory_item.a").attributes["name"] == "a2"

        _, plan = harness.plan(config)
        assert [(a.action, a.address) for a in plan.actions] == [
            (ActionType.DELETE, "memory_item.a#deposed")
        ]
        result = await harness.apply(config)
        assert result.success
        assert harness.provider.find("a") is None
        assert harness.store.get("memory_item.a#deposed") is None

    @pytest.mark.asyncio
    async def test_old_object_outlives_dependent_updates(self, harness):
        await harness.apply(replaced_with_dependent("a"))
        since = len(harness.provider.calls)

        result = await harness.apply(replaced_with_dependent("a2"))

        assert result.success
        assert operations(harness.provider, since) == [
            ("create", "a2"),
            ("update", "b"),
            ("delete", "a"),
        ]
        new_id = harness.store.get("memory_item.a").identity["id"]
        assert harness.store.get("memory_item.b").attributes["value"] == new_id
        assert harness.store.get("memory_item.a" + DEPOSED_SUFFIX) is None

    @pytest.mark.asyncio
    async def test_old_object_kept_while_a_dependent_fails(self, harness):
        await harness.apply(replaced_with_dependent("a"))
        harness.provider.fail("update", "b", times=1)

        result = await harness.apply(
            replaced_with_dependent("a2"), partial_failure_tolerance=True
        )

        assert result.failed == ["memory_item.b"]
        assert result.nodes["memory_item.a"].status == NodeStatus.APPLIED
        assert harness.provider.find("a") is not None
        deposed = harness.store.get("memory_item.a" + DEPOSED_SUFFIX)
        assert deposed.attributes["name"] == "a"

        since = len(harness.provider.calls)
        result = await harness.apply(replaced_with_dependent("a2"))

        assert result.success
        assert operations(harness.provider, since) == [("update", "b"), ("delete", "a")]
        assert harness.provider.find("a") is None
        assert harness.store.get("memory_item.a" + DEPOSED_SUFFIX) is None

    @pytest.mark.asyncio
    async def test_deletes_run_dependents_first(self, harness):
        await harness.apply(chain())
        since = len(harness.provider.calls)

        result = await harness.apply({})

        assert result.success
        assert operations(harness.provider, since) == [
            ("delete", "c"),
            ("delete", "b"),
            ("delete", "a"),
        ]
        assert harness.store.snapshot().records == {}

    @pytest.mark.asyncio
    async def test_destroy_clears_outputs(self, harness):
        config = items("a")
        config["outputs"] = {"id": {"value": "${memory_item.a.id}"}}
        await harness.apply(config)
        assert harness.store.snapshot().outputs

        result = await harness.apply(config, destroy=True)

        assert result.success
        assert harness.provider.objects == {}
        assert harness.store.snapshot().outputs == {}


class TestDataAndOutputs:
    """Tests for data lookups, ephemeral values and outputs."""

    @pytest.mark.asyncio
    async def test_ephemeral_values_are_not_persisted(self, harness):
        config = {
            "data": {"memory_lookup": {"creds": {"name": "x"}}},
            "resources": {
                "memory_item": {
                    "a": {"name": "a", "value": "${data.memory_lookup.creds.value}"},
                }
            },
        }

        result = await harness.apply(config)

        assert result.success
        record = harness.store.get("data.memory_lookup.creds")
        assert record.computed == {"value": "X"}
        assert "token-" not in harness.state_path.read_text()
        assert harness.store.get("memory_item.a").attributes["value"] == "X"

    @pytest.mark.asyncio
    async def test_ephemeral_value_is_looked_up_when_referenced(self, harness):
        config = {
            "data": {"memory_lookup": {"creds": {"name": "x"}}},
            "resources": {
                "memory_item": {
                    "a": {"name": "a", "value": "${data.memory_lookup.creds.token}"},
                }
            },
        }

        result = await harness.apply(config)

        assert result.success
        assert harness.provider.lookups == 2
        assert harness.store.get("memory_item.a").attributes["value"] == "token-2"

    @pytest.mark.asyncio
    async def test_outputs_are_resolved_and_persisted(self, harness):
        config = items("a")
        config["outputs"] = {
            "endpoint": {"value": "https://${memory_item.a.endpoint}"},
            "id": {"value": "${memory_item.a.id}", "sensitive": True},
        }

        result = await harness.apply(config)

        assert result.outputs["endpoint"] == "https://a.memory.local"
        assert result.sensitive_outputs == ["id"]
        assert result.to_dict()["outputs"]["id"] == "(sensitive)"
        persisted = harness.store.snapshot().outputs
        assert persisted["id"] == {"value": result.outputs["id"], "sensitive": True}

    @pytest.mark.asyncio
    async def test_outputs_of_failed_declarations_are_reported(self, harness):
        harness.provider.fail("create", "b")
        config = items("a", "b")
        config["outputs"] = {
            "a_id": {"value": "${memory_item.a.id}"},
            "b_id": {"value": "${memory_item.b.id}"},
        }

        result = await harness.apply(config, partial_failure_tolerance=True)

        assert "a_id" in result.outputs
        assert result.output_errors == {
            "b_id": "depends on memory_item.b, which did not apply"
        }
        assert not result.success

    @pytest.mark.asyncio
    async def test_removed_outputs_are_dropped(self, harness):
        config = items("a")
        config["outputs"] = {"id": {"value": "${memory_item.a.id}"}}
        await harness.apply(config)

        del config["outputs"]
        await harness.apply(config)

        assert harness.store.snapshot().outputs == {}


class TestStateConflicts:
    """State changed by another run fails fast."""

    @pytest.mark.asyncio
    async def test_stale_plan_is_rejected_before_any_call(self, harness):
        await harness.apply(items("a"))
        config, stale = harness.plan(items("a", "b"))
        await harness.apply(items("a", "c"))
        calls = len(harness.provider.calls)

        with pytest.raises(StateConflictError):
            await harness.executor().apply(stale, config)
        assert len(harness.provider.calls) == calls

    @pytest.mark.asyncio
    async def test_concurrent_writer_halts_the_run(self, harness):
        await harness.apply(items("a"))
        config, plan = harness.plan(chain())
        data = json.loads(harness.state_path.read_text())
        data["serial"] += 10
        harness.state_path.write_text(json.dumps(data))

        with pytest.raises(StateConflictError):
            await harness.executor(partial_failure_tolerance=True).apply(plan, config)

        assert json.loads(harness.state_path.read_text())["serial"] == data["serial"]
        assert harness.provider.find("c") is None


class TestSavedPlans:
    """A plan is applied as it was computed, or not at all."""

    @pytest.mark.asyncio
    async def test_planned_attributes_are_applied(self, harness):
        config, plan = harness.plan(items("a", a="planned"))
        plan.get("memory_item.a").attributes["value"] = "reviewed"

        result = await harness.executor().apply(plan, config)

        assert result.success
        assert harness.provider.find("a")["attributes"]["value"] == "reviewed"
        assert harness.store.get("memory_item.a").attributes["value"] == "reviewed"

    @pytest.mark.asyncio
    async def test_changed_configuration_is_rejected(self, harness):
        _, plan = harness.plan(items("a", a="reviewed"))
        changed = parse_configuration(items("a", a="not-reviewed"))

        with pytest.raises(ValidationError, match="Configuration changed"):
            await harness.executor().apply(plan, changed)

        assert harness.provider.calls == []
        assert harness.store.get("memory_item.a") is None
