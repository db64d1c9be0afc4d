"""
Tests for the diff/plan engine.
"""

import json

import pytest

from stackwright.core.errors import DestroyBlockedError
from stackwright.declarations import InstanceAddress, Profile, load_declarations
from stackwright.declarations.models import LifecyclePolicy, ResourceKindSchema
from stackwright.graph import build_graph, expand
from stackwright.graph.models import ResourceInstance
from stackwright.planning import ActionKind, Plan, PlanEngine
from stackwright.planning.engine import delete_order
from stackwright.planning.models import KNOWN_AFTER_APPLY
from stackwright.state import ResourceState, StateSnapshot

VPC = InstanceAddress.parse("networking.vpc[0]")
SERVER = InstanceAddress.parse("compute.server[0]")
VPC_ID = "${ref:networking.vpc[0].id}"


def applied(plan):
    """Snapshot as it would look after every create/update of ``plan`` succeeded."""
    snapshot = StateSnapshot("dev", lineage="l1", serial=1)
    for action in plan.actions:
        if action.desired is not None:
            snapshot = snapshot.with_resource(
                ResourceState(
                    address=action.address,
                    kind=action.desired.kind,
                    attributes=action.desired.attributes,
                    dependencies=action.dependencies,
                )
            )
    return snapshot


@pytest.fixture
def planner(stack_file):
    declarations = load_declarations(stack_file)
    expansion = expand(declarations, Profile("dev", {"environment": "dev"}))
    graph = build_graph(expansion)
    engine = PlanEngine(declarations.kinds)

    def run(snapshot=None):
        return engine.plan(expansion, graph, snapshot or StateSnapshot.empty("dev"), "dev")

    return run


def with_vpc(snapshot, **attributes):
    current = snapshot.get(VPC)
    return snapshot.with_resource(
        ResourceState(
            address=VPC,
            kind=attributes.pop("kind", current.kind),
            attributes={**current.attributes, **attributes},
            prevent_destroy=current.prevent_destroy,
        )
    )


class TestPlanActions:
    """Action classification against the sample stack."""

    def test_empty_state_creates_everything(self, planner):
        plan = planner()

        assert [(str(a.address), a.kind) for a in plan.actions] == [
            ("networking.vpc[0]", ActionKind.CREATE),
            ("compute.server[0]", ActionKind.CREATE),
            ("compute.server[1]", ActionKind.CREATE),
        ]
        assert plan.serial == 0
        assert plan.digest == StateSnapshot.empty("dev").digest
        assert plan.profile == "dev"
        assert plan.summary()["create"] == 3
        assert plan.actions[1].dependencies == (VPC,)

    def test_applied_state_is_noop(self, planner):
        snapshot = applied(planner())
        plan = planner(snapshot)

        assert {a.kind for a in plan.actions} == {ActionKind.NOOP}
        assert not plan.has_changes
        assert plan.digest == snapshot.digest

    def test_mutable_change_is_update(self, planner):
        snapshot = with_vpc(applied(planner()), name="old-vpc")
        action = planner(snapshot).actions[0]

        assert action.kind is ActionKind.UPDATE
        assert [(c.name, c.before, c.after) for c in action.changes] == [("name", "old-vpc", "dev-vpc")]

    def test_immutable_change_is_replace(self, planner):
        snapshot = with_vpc(applied(planner()), cidr_block="10.1.0.0/16")
        assert planner(snapshot).actions[0].kind is ActionKind.REPLACE

    def test_kind_change_is_replace(self, planner):
        snapshot = with_vpc(applied(planner()), kind="legacy_network")
        action = planner(snapshot).actions[0]
        assert action.kind is ActionKind.REPLACE
        assert action.prior.kind == "legacy_network"

    def test_removed_attribute_is_a_change(self, planner):
        snapshot = with_vpc(applied(planner()), tags={"team": "net"})
        action = planner(snapshot).actions[0]
        assert action.kind is ActionKind.UPDATE
        assert [(c.name, c.after) for c in action.changes] == [("tags", None)]

    def test_orphans_are_deleted_last(self, planner):
        snapshot = applied(planner()).with_resource(
            ResourceState(address=InstanceAddress.parse("compute.server[2]"), kind="instance")
        )
        plan = planner(snapshot)

        assert plan.actions[-1].kind is ActionKind.DELETE
        assert str(plan.actions[-1].address) == "compute.server[2]"
        assert plan.summary() == {"create": 0, "update": 0, "replace": 0, "delete": 1, "noop": 3}

    def test_deposed_objects_are_deleted_before_orphans(self, planner):
        orphan = ResourceState(address=InstanceAddress.parse("compute.server[2]"), kind="instance")
        deposed = ResourceState(address=VPC, kind="network", attributes={"cidr_block": "10.9.0.0/16"})
        snapshot = applied(planner()).with_resource(orphan).with_deposed(deposed)

        plan = planner(snapshot)

        assert plan.actions[0].kind is ActionKind.NOOP
        assert [(str(a.address), a.kind, a.deposed) for a in plan.actions[-2:]] == [
            ("networking.vpc[0]", ActionKind.DELETE, True),
            ("compute.server[2]", ActionKind.DELETE, False),
        ]
        assert plan.actions[-2].prior == deposed

        restored = Plan.from_dict(json.loads(json.dumps(plan.to_dict())))
        assert [a.deposed for a in restored.actions] == [a.deposed for a in plan.actions]


class TestLifecycle:
    """prevent_destroy and ignore_on_update."""

    def test_protected_orphan_blocks_plan(self, planner):
        snapshot = applied(planner()).with_resource(
            ResourceState(address=InstanceAddress.parse("old.db[0]"), kind="db", prevent_destroy=True)
        )
        with pytest.raises(DestroyBlockedError, match="old.db\\[0\\]") as excinfo:
            planner(snapshot)
        assert excinfo.value.exit_code == 2

    def test_protected_deposed_object_blocks_plan(self, planner):
        snapshot = applied(planner()).with_deposed(
            ResourceState(address=VPC, kind="network", prevent_destroy=True)
        )
        with pytest.raises(DestroyBlockedError, match="networking.vpc\\[0\\]"):
            planner(snapshot)

    def test_protected_replace_blocks_plan(self, planner):
        snapshot = applied(planner())
        protected = snapshot.get(VPC)
        snapshot = snapshot.with_resource(
            ResourceState(
                address=VPC,
                kind=protected.kind,
                attributes={**protected.attributes, "cidr_block": "10.9.0.0/16"},
                prevent_destroy=True,
            )
        )
        with pytest.raises(DestroyBlockedError, match="replace"):
            planner(snapshot)

    def test_ignore_on_update_pins_recorded_value(self):
        instance = ResourceInstance(
            address=VPC,
            kind="network",
            attributes={"name": "vpc", "tags": {"owner": "new"}},
            lifecycle=LifecyclePolicy(ignore_on_update=frozenset({"tags"})),
        )
        prior = ResourceState(address=VPC, kind="network", attributes={"name": "vpc", "tags": {"owner": "old"}})

        action = PlanEngine().diff(instance, prior)

        assert action.kind is ActionKind.NOOP
        assert action.desired.attributes["tags"] == {"owner": "old"}

    def test_ignored_attribute_still_set_on_create(self):
        instance = ResourceInstance(
            address=VPC,
            kind="network",
            attributes={"tags": {"owner": "new"}},
            lifecycle=LifecyclePolicy(ignore_on_update=frozenset({"tags"})),
        )
        action = PlanEngine().diff(instance, None)
        assert action.kind is ActionKind.CREATE
        assert action.desired.attributes == {"tags": {"owner": "new"}}

    def test_immutable_only_with_schema(self):
        instance = ResourceInstance(address=VPC, kind="network", attributes={"cidr_block": "b"})
        prior = ResourceState(address=VPC, kind="network", attributes={"cidr_block": "a"})

        assert PlanEngine().diff(instance, prior).kind is ActionKind.UPDATE
        schemas = {"network": ResourceKindSchema("network", frozenset({"cidr_block"}))}
        assert PlanEngine(schemas).diff(instance, prior).kind is ActionKind.REPLACE


class TestReferenceChanges:
    """Referencing attributes are compared with what the provider last received."""

    def server(self, **overrides):
        fields = {"address": SERVER, "kind": "instance", "attributes": {"vpc": VPC_ID}}
        fields.update(overrides)
        return ResourceInstance(**fields)

    def prior(self, vpc_id="vpc-1"):
        return ResourceState(
            address=SERVER, kind="instance", attributes={"vpc": VPC_ID}, resolved={"vpc": vpc_id}
        )

    def snapshot(self, vpc_id="vpc-1"):
        vpc = ResourceState(address=VPC, kind="network", observed={"id": vpc_id})
        return StateSnapshot("dev").with_resource(vpc).with_resource(self.prior())

    def test_unchanged_upstream_is_noop(self):
        action = PlanEngine().diff(self.server(), self.prior(), snapshot=self.snapshot())
        assert action.kind is ActionKind.NOOP

    def test_changed_upstream_value_is_update(self):
        action = PlanEngine().diff(self.server(), self.prior(), snapshot=self.snapshot("vpc-2"))

        assert action.kind is ActionKind.UPDATE
        assert [(c.name, c.before, c.after) for c in action.changes] == [("vpc", "vpc-1", "vpc-2")]

    def test_upstream_replaced_in_same_plan(self):
        action = PlanEngine().diff(self.server(), self.prior(), snapshot=self.snapshot(), pending={VPC: None})

        assert action.kind is ActionKind.UPDATE
        assert action.changes[0].after == KNOWN_AFTER_APPLY

    def test_upstream_update_of_other_attributes(self):
        engine = PlanEngine()
        quiet = engine.diff(self.server(), self.prior(), snapshot=self.snapshot(), pending={VPC: frozenset({"name"})})
        loud = engine.diff(self.server(), self.prior(), snapshot=self.snapshot(), pending={VPC: frozenset({"id"})})

        assert quiet.kind is ActionKind.NOOP
        assert loud.kind is ActionKind.UPDATE

    def test_missing_upstream_is_known_after_apply(self):
        snapshot = StateSnapshot("dev").with_resource(self.prior())
        action = PlanEngine().diff(self.server(), self.prior(), snapshot=snapshot)
        assert action.changes[0].after == KNOWN_AFTER_APPLY

    def test_immutable_reference_change_is_replace(self):
        schemas = {"instance": ResourceKindSchema("instance", frozenset({"vpc"}))}
        action = PlanEngine(schemas).diff(self.server(), self.prior(), snapshot=self.snapshot("vpc-2"))
        assert action.kind is ActionKind.REPLACE

    def test_skipped_without_recorded_values(self):
        prior = ResourceState(address=SERVER, kind="instance", attributes={"vpc": VPC_ID})
        action = PlanEngine().diff(self.server(), prior, snapshot=self.snapshot("vpc-2"))
        assert action.kind is ActionKind.NOOP

    def test_self_referential_attributes_are_skipped(self):
        server = self.server(self_referential=frozenset({"vpc"}))
        action = PlanEngine().diff(server, self.prior(), snapshot=self.snapshot("vpc-2"))
        assert action.kind is ActionKind.NOOP


class TestDeleteOrder:
    """Dependents are deleted before their dependencies."""

    def test_chain(self):
        a, b, c = (InstanceAddress("m", name, 0) for name in "abc")
        resources = {
            a: ResourceState(address=a, kind="k"),
            b: ResourceState(address=b, kind="k", dependencies=(a,)),
            c: ResourceState(address=c, kind="k", dependencies=(b,)),
        }
        assert delete_order(resources) == [c, b, a]

    def test_dependencies_outside_the_set_are_ignored(self):
        a, b = InstanceAddress("m", "a", 0), InstanceAddress("m", "b", 0)
        kept = InstanceAddress("m", "kept", 0)
        resources = {
            a: ResourceState(address=a, kind="k", dependencies=(kept,)),
            b: ResourceState(address=b, kind="k"),
        }
        assert set(delete_order(resources)) == {a, b}


class TestPlanSerialization:
    """Saved plan files."""

    def test_round_trip(self, planner):
        plan = planner()
        restored = Plan.from_dict(json.loads(json.dumps(plan.to_dict())))

        assert restored.digest == plan.digest
        assert restored.serial == plan.serial
        assert [a.address for a in restored.actions] == [a.address for a in plan.actions]
        assert [a.desired for a in restored.actions] == [a.desired for a in plan.actions]
        assert [a.dependencies for a in restored.actions] == [a.dependencies for a in plan.actions]

    def test_sensitive_changes_are_masked(self, planner):
        data = planner().to_dict()
        server = data["actions"][1]
        password = next(c for c in server["changes"] if c["name"] == "password")

        assert password == {"name": "password", "before": "(sensitive)", "after": "(sensitive)", "sensitive": True}
        assert "hunter2" not in json.dumps(server["changes"])

    def test_outputs_carry_reference_tokens(self, planner):
        outputs = planner().to_dict()["outputs"]
        assert outputs["networking"]["vpc_id"].startswith("${ref:networking.vpc[0]")

    def test_unknown_format_version(self, planner):
        data = planner().to_dict()
        data["format_version"] = 99
        with pytest.raises(ValueError, match="Unsupported plan format"):
            Plan.from_dict(data)
