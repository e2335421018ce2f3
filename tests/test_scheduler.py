"""Tests for the execution scheduler.

Covers dependency ordering, failure isolation, idempotent re-runs, secret
propagation, destroy ordering, replacement, orphan cleanup, cancellation and
provider instances.
"""

import asyncio
import json

import pytest

from stackrun.core.errors import (
    CycleError,
    DependencyUnresolvedError,
    ReplacementForbiddenError,
    StackDefinitionError,
)
from stackrun.engine.context import cancellation_requested
from stackrun.engine.graph import NodeStatus, ResourceGraph, ResourceId, ResourceNode, StackBuilder
from stackrun.engine.reconciler import Action
from stackrun.engine.scheduler import Scheduler
from stackrun.engine.secrets import REDACTED, Secret
from stackrun.providers.base import BaseProviderAdapter
from stackrun.state.store import MemoryStateStore


def _chain_with_sibling():
    builder = StackBuilder()
    a = builder.declare("stub", "a", {"id": "a"})
    b = builder.declare("stub", "b", lambda: {"id": "b", "upstream": a.output("name")})
    builder.declare("stub", "c", lambda: {"id": "c", "upstream": b.output("name")})
    builder.declare("stub", "d", {"id": "d"})
    return builder.build()


class TestOrdering:
    """Dispatch order respects explicit and implicit edges."""

    @pytest.mark.asyncio
    async def test_edges_respected(self, make_context, stub_adapter, call_log):
        """Every dependency finishes before its dependent starts."""
        stub_adapter.delay = 0.01
        builder = StackBuilder()
        a = builder.declare("stub", "a", {"id": "a"})
        b = builder.declare("stub", "b", lambda: {"id": "b", "upstream": a.output("name")})
        builder.declare("stub", "c", {"id": "c"}, depends_on=[b])
        builder.declare("stub", "d", {"id": "d"})

        report = await Scheduler(make_context(max_parallel=4)).apply(builder.build())

        assert report.success
        assert call_log.finished_before_started("create", "a", "b")
        assert call_log.finished_before_started("create", "b", "c")
        assert sorted(call_log.calls("create")) == ["a", "b", "c", "d"]

    @pytest.mark.asyncio
    async def test_resolved_output_substituted(self, make_context, call_log):
        """A dependent's provider call sees the upstream output value."""
        report = await Scheduler(make_context()).apply(_chain_with_sibling())

        assert report.success
        assert call_log.specs[("create", "b")]["upstream"] == "a-generated"
        assert call_log.specs[("create", "c")]["upstream"] == "b-generated"

    @pytest.mark.asyncio
    async def test_parallelism_bounded(self, make_context, stub_adapter):
        """Independent nodes never exceed max_parallel concurrent calls."""
        stub_adapter.delay = 0.01
        builder = StackBuilder()
        for i in range(6):
            builder.declare("stub", f"n{i}", {"id": f"n{i}"})

        report = await Scheduler(make_context(max_parallel=2)).apply(builder.build())

        assert report.success
        assert stub_adapter.max_in_flight == 2

    @pytest.mark.asyncio
    async def test_independent_nodes_run_concurrently(self, make_context, stub_adapter):
        """Unrelated branches overlap when the pool allows it."""
        stub_adapter.delay = 0.02
        builder = StackBuilder()
        builder.declare("stub", "x", {"id": "x"})
        builder.declare("stub", "y", {"id": "y"})

        await Scheduler(make_context(max_parallel=4)).apply(builder.build())

        assert stub_adapter.max_in_flight == 2


class TestValidation:
    """Static checks abort before any provider call."""

    @pytest.mark.asyncio
    async def test_cycle_makes_no_calls(self, make_context, call_log):
        """A cyclic graph raises CycleError and calls nothing."""
        x, y = ResourceId("stub", "x"), ResourceId("stub", "y")
        graph = ResourceGraph(
            [
                ResourceNode(x, {"id": "x"}, explicit_dependencies=[y]),
                ResourceNode(y, {"id": "y"}, explicit_dependencies=[x]),
            ]
        )

        with pytest.raises(CycleError):
            await Scheduler(make_context()).apply(graph)

        assert call_log.events == []

    @pytest.mark.asyncio
    async def test_graph_is_single_use(self, make_context):
        """Applying the same graph twice is rejected."""
        graph = _chain_with_sibling()
        scheduler = Scheduler(make_context())
        await scheduler.apply(graph)

        with pytest.raises(RuntimeError, match="already used"):
            await scheduler.apply(graph)

    def test_missing_recorded_entry_is_engine_error(self, make_context):
        """Looking up state the plan relied on but that is absent is a typed engine error."""
        scheduler = Scheduler(make_context())

        with pytest.raises(DependencyUnresolvedError, match="stub::ghost"):
            scheduler._require_recorded(ResourceId("stub", "ghost"))


class TestIdempotence:
    """A second run with unchanged specs is all NoOp."""

    @pytest.mark.asyncio
    async def test_second_run_noop(self, make_context, call_log):
        """Unchanged specs produce NoOp and identical outputs."""
        state = MemoryStateStore(secure=True)

        def build():
            builder = StackBuilder()
            pw = builder.declare("random_password", "pw", {"length": 20})
            a = builder.declare("stub", "a", {"id": "a"})
            builder.declare("stub", "b", lambda: {"id": "b", "upstream": a.output("name"), "password": pw["result"]})
            return builder.build()

        first = await Scheduler(make_context(state=state)).apply(build())
        creates = list(call_log.calls("create"))
        second = await Scheduler(make_context(state=state)).apply(build())

        assert first.success and second.success
        assert set(second.actions().values()) == {Action.NOOP}
        assert call_log.calls("create") == creates
        for resource_id, result in first.nodes.items():
            assert second.nodes[resource_id].outputs == result.outputs

    @pytest.mark.asyncio
    async def test_refresh_reads_noop_nodes(self, make_context, call_log):
        """With refresh enabled NoOp nodes call read."""
        state = MemoryStateStore(secure=True)
        await Scheduler(make_context(state=state)).apply(_chain_with_sibling())

        report = await Scheduler(make_context(state=state, refresh=True)).apply(_chain_with_sibling())

        assert report.success
        assert sorted(call_log.calls("read")) == ["a", "b", "c", "d"]


    @pytest.mark.asyncio
    async def test_second_run_noop_with_encrypted_secrets(self, make_context, call_log):
        """A secret kept encrypted in insecure state feeds dependents on a NoOp rerun."""
        state = MemoryStateStore()

        def build():
            builder = StackBuilder()
            pw = builder.declare("random_password", "pw", {"length": 20})
            builder.declare("stub", "cred", lambda: {"id": "cred", "password": pw["result"]})
            builder.declare("stub", "workload", lambda: {"id": "workload", "password": pw["result"]})
            return builder.build()

        first = await Scheduler(make_context(state=state)).apply(build())
        second = await Scheduler(make_context(state=state)).apply(build())

        assert second.success
        assert set(second.actions().values()) == {Action.NOOP}
        assert call_log.calls("read") == []
        payload = first.nodes["random_password::pw"].outputs["result"].payload
        assert second.nodes["stub::workload"].outputs["password"] == Secret(payload)
        assert payload not in state.raw


class TestFailureIsolation:
    """A failure blocks descendants only."""

    @pytest.mark.asyncio
    async def test_chain_with_sibling(self, make_context, stub_adapter, call_log):
        """A applied, B failed, C blocked, D applied."""
        stub_adapter.fail_create = {"b"}

        report = await Scheduler(make_context(max_parallel=1)).apply(_chain_with_sibling())

        statuses = {rid: res.status for rid, res in report.nodes.items()}
        assert statuses == {
            "stub::a": NodeStatus.APPLIED,
            "stub::b": NodeStatus.FAILED,
            "stub::c": NodeStatus.BLOCKED,
            "stub::d": NodeStatus.APPLIED,
        }
        assert "c" not in call_log.calls()
        assert "upstream failure of stub::b" in report.nodes["stub::c"].error
        assert "create of stub::b failed" in report.nodes["stub::b"].error
        assert report.exit_code == 1

    @pytest.mark.asyncio
    async def test_failed_nodes_not_recorded(self, make_context, stub_adapter):
        """Only successful nodes are written to state."""
        stub_adapter.fail_create = {"b"}
        state = MemoryStateStore()

        await Scheduler(make_context(state=state)).apply(_chain_with_sibling())

        assert set(json.loads(state.raw)["resources"]) == {"stub::a", "stub::d"}

    @pytest.mark.asyncio
    async def test_missing_output_fails_owner(self, make_context, stub_adapter):
        """A requested output the adapter never returned fails its owner."""
        builder = StackBuilder()
        a = builder.declare("stub", "a", {"id": "a"})
        builder.declare("stub", "b", lambda: {"id": "b", "endpoint": a.output("endpoint")})

        report = await Scheduler(make_context()).apply(builder.build())

        assert report.nodes["stub::a"].status == NodeStatus.FAILED
        assert "endpoint" in report.nodes["stub::a"].error
        assert report.nodes["stub::b"].status == NodeStatus.BLOCKED

    @pytest.mark.asyncio
    async def test_transform_error_fails_consumer(self, make_context):
        """A raising derived-cell transform fails the node that reads it."""

        def explode(_value):
            raise ValueError("bad transform")

        builder = StackBuilder()
        a = builder.declare("stub", "a", {"id": "a"})
        builder.declare("stub", "b", lambda: {"id": "b", "derived": a.output("name").apply(explode)})

        report = await Scheduler(make_context()).apply(builder.build())

        assert report.nodes["stub::a"].status == NodeStatus.APPLIED
        assert report.nodes["stub::b"].status == NodeStatus.FAILED
        assert "bad transform" in report.nodes["stub::b"].error


class TestSecrets:
    """Secret payloads reach providers but never displays or insecure state."""

    @pytest.mark.asyncio
    async def test_secret_redacted_but_propagated(self, make_context, call_log):
        """Dependents receive the raw payload; reports and state do not."""
        state = MemoryStateStore(secure=False)
        builder = StackBuilder()
        pw = builder.declare("random_password", "pw", {"length": 24})
        builder.declare("stub", "app", lambda: {"id": "app", "password": pw.output("result")})

        report = await Scheduler(make_context(state=state)).apply(builder.build())

        secret = report.nodes["random_password::pw"].outputs["result"]
        assert isinstance(secret, Secret)
        payload = secret.payload
        assert call_log.specs[("create", "app")]["password"] == payload
        assert str(secret) == REDACTED
        assert payload not in repr(report.nodes["random_password::pw"])
        assert payload not in json.dumps(report.to_dict(), default=str)
        assert payload not in state.raw
        # The echoed value is re-tagged as secret
        assert isinstance(report.nodes["stub::app"].outputs["password"], Secret)

    @pytest.mark.asyncio
    async def test_secure_state_keeps_payload(self, make_context):
        """A secure store persists the raw payload."""
        state = MemoryStateStore(secure=True)
        builder = StackBuilder()
        builder.declare("random_password", "pw", {"length": 12})

        report = await Scheduler(make_context(state=state)).apply(builder.build())

        payload = report.nodes["random_password::pw"].outputs["result"].payload
        assert payload in state.raw

    @pytest.mark.asyncio
    async def test_secret_feeds_two_concurrent_dependents(self, make_context, stub_adapter, call_log):
        """Both dependents see the identical payload."""
        stub_adapter.delay = 0.01
        builder = StackBuilder()
        pw = builder.declare("random_password", "pw", {"length": 32})
        builder.declare("stub", "credential", lambda: {"id": "credential", "value": pw["result"]})
        builder.declare("stub", "workload", lambda: {"id": "workload", "env": {"DB_PASSWORD": pw["result"]}})

        report = await Scheduler(make_context(max_parallel=4)).apply(builder.build())

        assert report.success
        credential = call_log.specs[("create", "credential")]["value"]
        workload = call_log.specs[("create", "workload")]["env"]["DB_PASSWORD"]
        assert credential == workload
        assert isinstance(credential, str) and len(credential) == 32
        assert stub_adapter.max_in_flight == 2


class TestScenario:
    """Namespace, CRD, Controller and CustomResource wiring."""

    @pytest.mark.asyncio
    async def test_controller_stack(self, make_context, call_log):
        """All nodes apply and the custom resource sees the controller name."""
        builder = StackBuilder()
        namespace = builder.declare("stub", "namespace", {"id": "namespace"})
        crd = builder.declare("stub", "crd", {"id": "crd"})
        controller = builder.declare(
            "stub",
            "controller",
            lambda: {"id": "controller", "namespace": namespace.output("name")},
            depends_on=[crd],
        )
        builder.declare(
            "stub",
            "custom-resource",
            lambda: {"id": "custom-resource", "controller": controller.output("name")},
        )

        report = await Scheduler(make_context()).apply(builder.build())

        assert report.success
        assert len(report.applied) == 4
        assert call_log.specs[("create", "custom-resource")]["controller"] == "controller-generated"
        assert call_log.finished_before_started("create", "crd", "controller")
        assert call_log.finished_before_started("create", "namespace", "controller")


class TestDestroy:
    """Destroy runs the reverse graph from recorded state."""

    @pytest.mark.asyncio
    async def test_dependents_deleted_first(self, make_context, call_log):
        """B (depends on A) is deleted before A."""
        state = MemoryStateStore(secure=True)
        builder = StackBuilder()
        a = builder.declare("stub", "a", {"id": "a"})
        builder.declare("stub", "b", lambda: {"id": "b", "upstream": a.output("name")})
        await Scheduler(make_context(state=state)).apply(builder.build())

        report = await Scheduler(make_context(state=state)).destroy()

        assert report.success
        assert report.deleted == ["stub::a", "stub::b"]
        assert call_log.finished_before_started("delete", "b", "a")
        assert json.loads(state.raw)["resources"] == {}

    @pytest.mark.asyncio
    async def test_delete_failure_keeps_dependencies(self, make_context, stub_adapter):
        """A failed delete blocks deletion of what it depends on."""
        state = MemoryStateStore(secure=True)
        await Scheduler(make_context(state=state)).apply(_chain_with_sibling())
        stub_adapter.fail_delete = {"b"}

        report = await Scheduler(make_context(state=state)).destroy()

        assert report.nodes["stub::c"].status == NodeStatus.DELETED
        assert report.nodes["stub::b"].status == NodeStatus.FAILED
        assert report.nodes["stub::a"].status == NodeStatus.BLOCKED
        assert report.nodes["stub::d"].status == NodeStatus.DELETED
        resources = json.loads(state.raw)["resources"]
        assert set(resources) == {"stub::a", "stub::b"}
        assert resources["stub::b"]["status"] == "delete_failed"


class TestReplace:
    """Update versus replace and deferred cleanup."""

    @staticmethod
    def _single(spec):
        builder = StackBuilder()
        builder.declare("stub", "r", {"id": "r", **spec})
        return builder.build()

    @pytest.mark.asyncio
    async def test_updatable_field_updates(self, make_context, stub_adapter, call_log):
        """Changing an updatable field calls update."""
        stub_adapter.updatable_fields = frozenset({"size"})
        state = MemoryStateStore(secure=True)
        await Scheduler(make_context(state=state)).apply(self._single({"size": 1, "zone": "a"}))

        report = await Scheduler(make_context(state=state)).apply(self._single({"size": 2, "zone": "a"}))

        assert report.actions() == {"stub::r": Action.UPDATE}
        assert call_log.specs[("update", "r")]["old"]["size"] == 1

    @pytest.mark.asyncio
    async def test_create_before_delete(self, make_context, stub_adapter, call_log):
        """A replace creates the new instance before deleting the old one."""
        stub_adapter.updatable_fields = frozenset({"size"})
        state = MemoryStateStore(secure=True)
        await Scheduler(make_context(state=state)).apply(self._single({"size": 1, "zone": "a"}))

        report = await Scheduler(make_context(state=state)).apply(self._single({"size": 1, "zone": "b"}))

        assert report.success
        assert report.actions() == {"stub::r": Action.REPLACE}
        creates = [i for i, event in enumerate(call_log.events) if event == ("start", "create", "r")]
        assert creates[-1] < call_log.position("start", "delete", "r")
        assert call_log.specs[("delete", "r")]["zone"] == "a"
        assert "pending_deletes" not in json.loads(state.raw)["resources"]["stub::r"]

    @pytest.mark.asyncio
    async def test_delete_before_replace(self, make_context, stub_adapter, call_log):
        """Kinds that cannot coexist delete first."""
        stub_adapter.delete_before_replace = True
        state = MemoryStateStore(secure=True)
        await Scheduler(make_context(state=state)).apply(self._single({"zone": "a"}))

        await Scheduler(make_context(state=state)).apply(self._single({"zone": "b"}))

        assert call_log.events[-4:] == [
            ("start", "delete", "r"),
            ("end", "delete", "r"),
            ("start", "create", "r"),
            ("end", "create", "r"),
        ]

    @pytest.mark.asyncio
    async def test_replacement_forbidden(self, make_context, stub_adapter):
        """A kind that forbids replacement fails the node."""
        stub_adapter.allow_replace = False
        state = MemoryStateStore(secure=True)
        await Scheduler(make_context(state=state)).apply(self._single({"zone": "a"}))

        report = await Scheduler(make_context(state=state)).apply(self._single({"zone": "b"}))

        assert report.nodes["stub::r"].status == NodeStatus.FAILED
        assert "forbids" in report.nodes["stub::r"].error
        assert report.exit_code == ReplacementForbiddenError.exit_code == 1

    @pytest.mark.asyncio
    async def test_failed_old_delete_retried(self, make_context, stub_adapter, call_log):
        """An old instance that could not be deleted is retried next run."""
        stub_adapter.updatable_fields = frozenset({"size"})
        state = MemoryStateStore(secure=True)
        await Scheduler(make_context(state=state)).apply(self._single({"zone": "a"}))
        stub_adapter.fail_delete = {"r"}

        report = await Scheduler(make_context(state=state)).apply(self._single({"zone": "b"}))

        assert not report.success
        assert report.errors
        pending = json.loads(state.raw)["resources"]["stub::r"]["pending_deletes"]
        assert pending[0]["spec"]["zone"] == "a"

        stub_adapter.fail_delete = set()
        retry = await Scheduler(make_context(state=state)).apply(self._single({"zone": "b"}))

        assert retry.success
        assert retry.actions() == {"stub::r": Action.NOOP}
        assert "pending_deletes" not in json.loads(state.raw)["resources"]["stub::r"]


    @pytest.mark.asyncio
    async def test_old_instance_kept_while_dependent_lags(self, make_context, stub_adapter, call_log):
        """A replaced instance is not deleted while a dependent still uses it."""
        state = MemoryStateStore(secure=True)

        def build(size):
            builder = StackBuilder()
            a = builder.declare("stub", "a", {"id": "a", "size": size})
            builder.declare("stub", "b", lambda: {"id": "b", "upstream": a.output("size")})
            return builder.build()

        await Scheduler(make_context(state=state)).apply(build(1))
        stub_adapter.fail_create = {"b"}

        report = await Scheduler(make_context(state=state)).apply(build(2))

        assert report.nodes["stub::a"].status == NodeStatus.APPLIED
        assert report.nodes["stub::b"].status == NodeStatus.FAILED
        assert call_log.calls("delete") == []
        pending = json.loads(state.raw)["resources"]["stub::a"]["pending_deletes"]
        assert pending[0]["spec"]["size"] == 1

        stub_adapter.fail_create = set()
        retry = await Scheduler(make_context(state=state)).apply(build(2))

        assert retry.success
        assert retry.actions() == {"stub::a": Action.NOOP, "stub::b": Action.REPLACE}
        assert call_log.calls("delete") == ["b", "a"]
        assert call_log.specs[("delete", "a")]["size"] == 1
        assert "pending_deletes" not in json.loads(state.raw)["resources"]["stub::a"]


class TestOrphans:
    """Recorded resources no longer declared are deleted during up."""

    @pytest.mark.asyncio
    async def test_orphan_deleted(self, make_context, call_log):
        """Dropping a declaration deletes the resource."""
        state = MemoryStateStore(secure=True)
        builder = StackBuilder()
        builder.declare("stub", "keep", {"id": "keep"})
        builder.declare("stub", "gone", {"id": "gone"})
        await Scheduler(make_context(state=state)).apply(builder.build())

        builder = StackBuilder()
        builder.declare("stub", "keep", {"id": "keep"})
        report = await Scheduler(make_context(state=state)).apply(builder.build())

        assert report.success
        assert report.nodes["stub::gone"].status == NodeStatus.DELETED
        assert report.nodes["stub::gone"].action == Action.DELETE
        assert call_log.calls("delete") == ["gone"]
        assert set(json.loads(state.raw)["resources"]) == {"stub::keep"}


    @pytest.mark.asyncio
    async def test_orphan_kept_while_referenced(self, make_context, stub_adapter, call_log):
        """An orphan the old instance of a failed node still uses is kept."""
        state = MemoryStateStore(secure=True)
        builder = StackBuilder()
        a = builder.declare("stub", "a", {"id": "a"})
        builder.declare("stub", "b", lambda: {"id": "b", "upstream": a.output("name")})
        await Scheduler(make_context(state=state)).apply(builder.build())
        stub_adapter.fail_create = {"b"}

        builder = StackBuilder()
        builder.declare("stub", "b", {"id": "b", "upstream": "elsewhere"})
        report = await Scheduler(make_context(state=state)).apply(builder.build())

        assert report.nodes["stub::b"].status == NodeStatus.FAILED
        assert report.nodes["stub::a"].status == NodeStatus.BLOCKED
        assert "still referenced by stub::b" in report.nodes["stub::a"].error
        assert call_log.calls("delete") == []
        assert "stub::a" in json.loads(state.raw)["resources"]

    @pytest.mark.asyncio
    async def test_failed_orphan_delete_stays_recorded(self, make_context, stub_adapter, call_log):
        """An orphan whose delete fails stays in state and is retried next run."""
        state = MemoryStateStore(secure=True)
        builder = StackBuilder()
        builder.declare("stub", "keep", {"id": "keep"})
        builder.declare("stub", "gone", {"id": "gone"})
        await Scheduler(make_context(state=state)).apply(builder.build())
        stub_adapter.fail_delete = {"gone"}

        def keep_only():
            builder = StackBuilder()
            builder.declare("stub", "keep", {"id": "keep"})
            return builder.build()

        report = await Scheduler(make_context(state=state)).apply(keep_only())

        assert not report.success
        assert report.nodes["stub::gone"].status == NodeStatus.FAILED
        assert "delete refused" in report.nodes["stub::gone"].error
        assert json.loads(state.raw)["resources"]["stub::gone"]["status"] == "delete_failed"

        stub_adapter.fail_delete = set()
        retry = await Scheduler(make_context(state=state)).apply(keep_only())

        assert retry.success
        assert call_log.calls("delete") == ["gone", "gone"]
        assert set(json.loads(state.raw)["resources"]) == {"stub::keep"}


class TestCancellation:
    """Cancel stops dispatch; in-flight nodes finish."""

    @pytest.mark.asyncio
    async def test_cancel_stops_dispatch(self, make_context, stub_adapter, call_log):
        """A node in flight completes; its dependent never starts."""
        state = MemoryStateStore(secure=True)
        scheduler = Scheduler(make_context(state=state, max_parallel=1))
        seen = []

        def on_start(operation, key):
            if key == "a":
                scheduler.cancel()
                seen.append(cancellation_requested())

        stub_adapter.on_start = on_start
        builder = StackBuilder()
        a = builder.declare("stub", "a", {"id": "a"})
        builder.declare("stub", "b", lambda: {"id": "b", "upstream": a.output("name")})

        report = await scheduler.apply(builder.build())

        assert report.cancelled
        assert report.nodes["stub::a"].status == NodeStatus.APPLIED
        assert report.skipped == ["stub::b"]
        assert call_log.calls("create") == ["a"]
        assert "stub::a" in json.loads(state.raw)["resources"]
        assert report.exit_code == 1
        assert seen == [True]

    @pytest.mark.asyncio
    async def test_timeout_cancels(self, make_context, stub_adapter, call_log):
        """run_timeout cancels the run once it elapses."""
        stub_adapter.delay = 0.2
        builder = StackBuilder()
        a = builder.declare("stub", "a", {"id": "a"})
        builder.declare("stub", "b", lambda: {"id": "b", "upstream": a.output("name")})

        report = await Scheduler(make_context(run_timeout=0.05)).apply(builder.build())

        assert report.cancelled
        assert call_log.calls("create") == ["a"]
        assert report.nodes["stub::b"].cancelled

    @pytest.mark.asyncio
    async def test_cancel_from_other_thread(self, make_context, stub_adapter):
        """cancel() is safe to call from a worker thread."""
        scheduler = Scheduler(make_context())
        stub_adapter.delay = 0.05

        async def cancel_soon():
            await asyncio.sleep(0.01)
            await asyncio.to_thread(scheduler.cancel)

        builder = StackBuilder()
        a = builder.declare("stub", "a", {"id": "a"})
        builder.declare("stub", "b", lambda: {"id": "b", "upstream": a.output("name")})
        report, _ = await asyncio.gather(scheduler.apply(builder.build()), cancel_soon())

        assert report.cancelled
        assert report.nodes["stub::b"].cancelled


class Greeter(BaseProviderAdapter):
    """Adapter whose behaviour depends on its provider config."""

    kind = "greeter"

    def __init__(self, greeting, deleted):
        self.greeting = greeting
        self.deleted = deleted

    async def create(self, spec):
        return {"message": f"{self.greeting} {spec['target']}"}

    async def delete(self, spec, outputs):
        self.deleted.append(self.greeting)


class TestProviderInstances:
    """Resources can select a configured provider instance."""

    @pytest.fixture
    def deleted(self, registry):
        deleted = []

        def factory(greeting="hello"):
            return Greeter(greeting, deleted)

        registry.register("greeter", factory)
        return deleted

    @staticmethod
    def _build(config=None):
        builder = StackBuilder()
        src = builder.declare("stub", "src", {"id": "src"})
        polite = builder.provider("greeter", "polite", config or (lambda: {"greeting": src.output("name")}))
        builder.declare("greeter", "hi", {"target": "world"}, provider=polite)
        builder.declare("greeter", "plain", {"target": "there"})
        return builder.build()

    @pytest.mark.asyncio
    async def test_config_from_upstream_output(self, make_context, deleted):
        """The instance is configured from another resource's output."""
        state = MemoryStateStore(secure=True)
        graph = self._build()

        assert graph.nodes[ResourceId("greeter", "hi")].dependencies == {ResourceId("stub", "src")}
        report = await Scheduler(make_context(state=state)).apply(graph)

        assert report.success
        assert report.nodes["greeter::hi"].outputs == {"message": "src-generated world"}
        assert report.nodes["greeter::plain"].outputs == {"message": "hello there"}
        recorded = json.loads(state.raw)["resources"]["greeter::hi"]["provider"]
        assert recorded == {"name": "polite", "config": {"greeting": "src-generated"}}

    @pytest.mark.asyncio
    async def test_destroy_uses_recorded_config(self, make_context, deleted, call_log):
        """Deletes run through the instance the resource was created with."""
        state = MemoryStateStore(secure=True)
        await Scheduler(make_context(state=state)).apply(self._build())

        report = await Scheduler(make_context(state=state)).destroy()

        assert report.success
        assert sorted(deleted) == ["hello", "src-generated"]
        assert call_log.calls("delete") == ["src"]

    @pytest.mark.asyncio
    async def test_rejected_config_fails_node(self, make_context, deleted):
        """Config the kind does not accept fails only the resources using it."""
        report = await Scheduler(make_context()).apply(self._build({"volume": 11}))

        assert report.nodes["greeter::hi"].status == NodeStatus.FAILED
        assert "rejected its config" in report.nodes["greeter::hi"].error
        assert report.nodes["greeter::plain"].status == NodeStatus.APPLIED

    def test_unknown_provider_name(self):
        """Selecting an undeclared instance by name is a definition error."""
        builder = StackBuilder()

        with pytest.raises(StackDefinitionError, match="No provider 'polite'"):
            builder.declare("greeter", "hi", {}, provider="polite")

    def test_provider_kind_must_match(self):
        """An instance only serves its own kind."""
        builder = StackBuilder()
        instance = builder.provider("stub", "p", {})

        with pytest.raises(StackDefinitionError, match="cannot serve"):
            builder.declare("greeter", "hi", {}, provider=instance)
