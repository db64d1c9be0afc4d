"""
Tests for applying plans: checkpointing, failures, cancellation and locking.
"""

import asyncio

import pytest
from conftest import write_stack

from stackwright.core.errors import (
    ApplyCancelled,
    ConfigurationError,
    LockBusyError,
    PartialApplyError,
    ProviderEffectError,
    StalePlanError,
    StaleWriteError,
)
from stackwright.declarations import InstanceAddress
from stackwright.execution import ApplyExecutor, ApplyReport, ApplyStatus, CancellationToken
from stackwright.orchestrator import Orchestrator
from stackwright.planning import ActionKind, PlanAction
from stackwright.planning.models import KNOWN_AFTER_APPLY
from stackwright.providers import NullProvider, ProviderRegistry


class RecordingProvider(NullProvider):
    """Null provider that records calls and can fail or stall on chosen addresses."""

    def __init__(self, fail_on=(), delay=0.0, on_create=None, fail_updates=(), fail_deletes=()):
        self.fail_on = set(fail_on)
        self.fail_updates = set(fail_updates)
        self.fail_deletes = set(fail_deletes)
        self.delay = delay
        self.on_create = on_create
        self.calls = []

    async def create(self, request):
        self.calls.append(("create", str(request.address), dict(request.attributes)))
        if self.delay:
            await asyncio.sleep(self.delay)
        if str(request.address) in self.fail_on:
            raise ProviderEffectError("quota exceeded", address=str(request.address))
        if self.on_create is not None:
            await self.on_create(request)
        return await super().create(request)

    async def update(self, request, prior):
        self.calls.append(("update", str(request.address), dict(request.attributes)))
        if str(request.address) in self.fail_updates:
            raise ProviderEffectError("update rejected", address=str(request.address))
        return await super().update(request, prior)

    async def delete(self, state):
        self.calls.append(("delete", str(state.address), dict(state.attributes)))
        if str(state.address) in self.fail_deletes:
            raise ProviderEffectError("still in use", address=str(state.address))
        await super().delete(state)


def orchestrator_for(stack_file, settings, backends, provider=None, kind="instance"):
    registry = ProviderRegistry(default=NullProvider)
    if provider is not None:
        for name in [kind] if isinstance(kind, str) else kind:
            registry.register(name, lambda: provider)
    return Orchestrator(settings, backends=backends, providers=registry, declarations_file=stack_file)


def addresses(actions):
    return [str(a.address) for a in actions]


class TestApply:
    """Successful applies and idempotence."""

    @pytest.mark.asyncio
    async def test_apply_then_replan_is_noop(self, stack_file, memory_settings, memory_backends):
        orchestrator = orchestrator_for(stack_file, memory_settings, memory_backends)

        report = await orchestrator.apply("dev", "dev")

        assert report.status is ApplyStatus.SUCCEEDED
        assert addresses(report.applied) == ["networking.vpc[0]", "compute.server[0]", "compute.server[1]"]
        assert report.serial == 3
        assert await orchestrator.lock_status("dev") is None

        plan = await orchestrator.plan("dev", "dev")
        assert [a.kind for a in plan.actions] == [ActionKind.NOOP] * 3

        again = await orchestrator.apply("dev", "dev", plan=plan)
        assert again.success
        assert again.applied == []
        assert (await memory_backends.store.read("dev")).serial == 3

    @pytest.mark.asyncio
    async def test_references_resolved_for_provider(self, stack_file, memory_settings, memory_backends):
        provider = RecordingProvider()
        orchestrator = orchestrator_for(stack_file, memory_settings, memory_backends, provider)

        await orchestrator.apply("dev", "dev")

        snapshot = await memory_backends.store.read("dev")
        vpc_id = snapshot.get(InstanceAddress.parse("networking.vpc[0]")).observed["id"]
        _, address, attributes = provider.calls[0]
        assert address == "compute.server[0]"
        assert attributes == {"name": "server-0", "vpc": vpc_id, "password": "hunter2"}

        # state keeps the reference, not the resolved value
        server = snapshot.get(InstanceAddress.parse("compute.server[0]"))
        assert server.attributes["vpc"].startswith("${ref:")
        assert server.dependencies == (InstanceAddress.parse("networking.vpc[0]"),)

    @pytest.mark.asyncio
    async def test_outputs_resolve_against_state(self, stack_file, memory_settings, memory_backends):
        orchestrator = orchestrator_for(stack_file, memory_settings, memory_backends)
        await orchestrator.apply("dev", "dev")

        outputs = await orchestrator.outputs("dev", "dev")
        resources = await orchestrator.state_resources("dev")

        vpc = resources[InstanceAddress.parse("networking.vpc[0]")]
        assert outputs["networking"]["vpc_id"] == vpc.observed["id"]
        assert len(outputs["compute"]["server_ids"]) == 2
        assert await orchestrator.state_keys() == ["dev"]

    @pytest.mark.asyncio
    async def test_scale_down_deletes(self, stack_file, memory_settings, memory_backends):
        provider = RecordingProvider()
        orchestrator = orchestrator_for(stack_file, memory_settings, memory_backends, provider)
        await orchestrator.apply("env", "prod")

        # dev has two servers where prod has four
        plan = await orchestrator.plan("env", "dev")
        deletes = [a for a in plan.actions if a.kind is ActionKind.DELETE]
        assert addresses(deletes) == ["compute.server[3]", "compute.server[2]"]
        assert plan.actions[0].kind is ActionKind.UPDATE

        report = await orchestrator.apply("env", "dev", plan=plan)
        assert report.success
        assert [c[:2] for c in provider.calls if c[0] == "delete"] == [
            ("delete", "compute.server[3]"),
            ("delete", "compute.server[2]"),
        ]
        assert len(await orchestrator.state_resources("env")) == 3


class TestFailures:
    """Partial applies checkpoint what was done."""

    @pytest.mark.asyncio
    async def test_failure_mid_plan_is_partial(self, stack_file, memory_settings, memory_backends):
        provider = RecordingProvider(fail_on={"compute.server[1]"})
        orchestrator = orchestrator_for(stack_file, memory_settings, memory_backends, provider)

        report = await orchestrator.apply("prod", "prod")

        assert report.status is ApplyStatus.PARTIAL
        assert addresses(report.completed) == ["networking.vpc[0]", "compute.server[0]"]
        assert str(report.failed.address) == "compute.server[1]"
        assert addresses(report.not_attempted) == ["compute.server[2]", "compute.server[3]"]
        assert "quota exceeded" in report.error.message
        assert await orchestrator.lock_status("prod") is None

        recorded = await orchestrator.state_resources("prod")
        assert [str(a) for a in recorded] == ["compute.server[0]", "networking.vpc[0]"]

        with pytest.raises(PartialApplyError) as excinfo:
            report.raise_for_status()
        assert excinfo.value.exit_code == 20
        assert excinfo.value.remaining == [
            "compute.server[1]",
            "compute.server[2]",
            "compute.server[3]",
        ]

    @pytest.mark.asyncio
    async def test_replan_after_failure_resumes(self, stack_file, memory_settings, memory_backends):
        provider = RecordingProvider(fail_on={"compute.server[1]"})
        orchestrator = orchestrator_for(stack_file, memory_settings, memory_backends, provider)
        await orchestrator.apply("prod", "prod")

        provider.fail_on.clear()
        plan = await orchestrator.plan("prod", "prod")
        assert [a.kind for a in plan.actions] == [ActionKind.NOOP] * 2 + [ActionKind.CREATE] * 3

        report = await orchestrator.apply("prod", "prod", plan=plan)
        assert report.success
        assert len(await orchestrator.state_resources("prod")) == 5

    @pytest.mark.asyncio
    async def test_first_action_failing_is_failed(self, stack_file, memory_settings, memory_backends):
        provider = RecordingProvider(fail_on={"networking.vpc[0]"})
        orchestrator = orchestrator_for(stack_file, memory_settings, memory_backends, provider, kind="network")

        report = await orchestrator.apply("dev", "dev")

        assert report.status is ApplyStatus.FAILED
        assert report.completed == []
        assert report.serial == 0
        with pytest.raises(ProviderEffectError) as excinfo:
            report.raise_for_status()
        assert excinfo.value.exit_code == 21

    @pytest.mark.asyncio
    async def test_unregistered_kind(self, stack_file, memory_settings, memory_backends):
        orchestrator = Orchestrator(
            memory_settings,
            backends=memory_backends,
            providers=ProviderRegistry(),
            declarations_file=stack_file,
        )
        report = await orchestrator.apply("dev", "dev")

        assert report.status is ApplyStatus.FAILED
        assert "No provider for kind 'network'" in report.error.message

    @pytest.mark.asyncio
    async def test_provider_exception_is_wrapped(self, stack_file, memory_settings, memory_backends):
        class Broken(NullProvider):
            async def create(self, request):
                raise RuntimeError("connection reset")

        registry = ProviderRegistry(default=Broken)
        orchestrator = Orchestrator(
            memory_settings, backends=memory_backends, providers=registry, declarations_file=stack_file
        )
        report = await orchestrator.apply("dev", "dev")

        assert isinstance(report.error, ProviderEffectError)
        assert "create of networking.vpc[0] failed: connection reset" in report.error.message


class TestStaleness:
    """Optimistic concurrency on state."""

    @pytest.mark.asyncio
    async def test_stale_plan_is_rejected(self, stack_file, memory_settings, memory_backends):
        orchestrator = orchestrator_for(stack_file, memory_settings, memory_backends)
        plan = await orchestrator.plan("dev", "dev")
        await orchestrator.apply("dev", "dev")

        with pytest.raises(StalePlanError, match="plan again"):
            await orchestrator.apply("dev", "dev", plan=plan)
        assert await orchestrator.lock_status("dev") is None

    @pytest.mark.asyncio
    async def test_lost_lease_stops_apply(self, stack_file, memory_settings, memory_backends):
        locks = memory_backends.locks

        async def steal(request):
            if str(request.address) == "compute.server[0]":
                await locks.force_release("dev")
                await locks.acquire("dev", "intruder", 60)

        provider = RecordingProvider(on_create=steal)
        orchestrator = orchestrator_for(stack_file, memory_settings, memory_backends, provider)

        report = await orchestrator.apply("dev", "dev")

        assert report.status is ApplyStatus.STALE
        assert str(report.failed.address) == "compute.server[0]"
        assert (await locks.status("dev")).holder == "intruder"
        with pytest.raises(StaleWriteError) as excinfo:
            report.raise_for_status()
        assert excinfo.value.exit_code == 4

    @pytest.mark.asyncio
    async def test_plan_for_another_key(self, stack_file, memory_settings, memory_backends):
        orchestrator = orchestrator_for(stack_file, memory_settings, memory_backends)
        plan = await orchestrator.plan("dev", "dev")
        with pytest.raises(ConfigurationError, match="computed for state 'dev'"):
            await orchestrator.apply("other", "dev", plan=plan)


class TestCancellation:
    """Cancellation is honoured between actions."""

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, stack_file, memory_settings, memory_backends):
        orchestrator = orchestrator_for(stack_file, memory_settings, memory_backends)
        cancel = CancellationToken()
        cancel.cancel()

        report = await orchestrator.apply("dev", "dev", cancel=cancel)

        assert report.status is ApplyStatus.CANCELLED
        assert len(report.not_attempted) == 3
        assert await orchestrator.lock_status("dev") is None
        with pytest.raises(ApplyCancelled) as excinfo:
            report.raise_for_status()
        assert excinfo.value.exit_code == 5

    @pytest.mark.asyncio
    async def test_cancelled_mid_apply(self, stack_file, memory_settings, memory_backends):
        cancel = CancellationToken()

        async def stop(request):
            cancel.cancel("operator request")

        provider = RecordingProvider(on_create=stop)
        orchestrator = orchestrator_for(stack_file, memory_settings, memory_backends, provider)

        report = await orchestrator.apply("dev", "dev", cancel=cancel)

        assert report.status is ApplyStatus.CANCELLED
        assert addresses(report.completed) == ["networking.vpc[0]", "compute.server[0]"]
        assert addresses(report.not_attempted) == ["compute.server[1]"]
        assert len(await orchestrator.state_resources("dev")) == 2


class TestConcurrentApplies:
    """Two applies on one key never interleave."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("first, second", [("alice", "bob"), ("ci", "ci")])
    async def test_second_apply_is_locked_out(self, stack_file, memory_settings, memory_backends, first, second):
        orchestrator = orchestrator_for(
            stack_file, memory_settings, memory_backends, RecordingProvider(delay=0.01)
        )

        results = await asyncio.gather(
            orchestrator.apply("dev", "dev", holder=first),
            orchestrator.apply("dev", "dev", holder=second),
            return_exceptions=True,
        )

        reports = [r for r in results if isinstance(r, ApplyReport)]
        busy = [r for r in results if isinstance(r, LockBusyError)]
        assert len(reports) == 1 and len(busy) == 1
        assert busy[0].holder == first
        assert reports[0].success
        assert (await memory_backends.store.read("dev")).serial == 3

    @pytest.mark.asyncio
    async def test_waiter_plans_after_holder(self, stack_file, memory_settings, memory_backends):
        provider = RecordingProvider(delay=0.01)
        orchestrator = orchestrator_for(stack_file, memory_settings, memory_backends, provider)

        first, second = await asyncio.gather(
            orchestrator.apply("dev", "dev", holder="alice"),
            orchestrator.apply("dev", "dev", holder="bob", lock_timeout=5),
        )

        assert first.success and len(first.applied) == 3
        assert second.success and second.applied == []
        assert len([c for c in provider.calls if c[0] == "create"]) == 2

    @pytest.mark.asyncio
    async def test_saved_plans_under_one_holder_name_do_not_share_the_lock(
        self, stack_file, memory_settings, memory_backends
    ):
        provider = RecordingProvider(delay=0.05)
        orchestrator = orchestrator_for(stack_file, memory_settings, memory_backends, provider, kind="network")
        first = await orchestrator.plan("dev", "dev")
        second = await orchestrator.plan("dev", "dev")

        results = await asyncio.gather(
            orchestrator.apply("dev", "dev", plan=first, holder="ci"),
            orchestrator.apply("dev", "dev", plan=second, holder="ci"),
            return_exceptions=True,
        )

        reports = [r for r in results if isinstance(r, ApplyReport)]
        busy = [r for r in results if isinstance(r, LockBusyError)]
        assert len(reports) == 1 and len(busy) == 1
        assert reports[0].success
        assert [c[:2] for c in provider.calls] == [("create", "networking.vpc[0]")]
        assert await orchestrator.lock_status("dev") is None

    @pytest.mark.asyncio
    async def test_lock_record_from_an_earlier_lease_is_not_reused(
        self, stack_file, memory_settings, memory_backends
    ):
        locks = memory_backends.locks
        orchestrator = orchestrator_for(stack_file, memory_settings, memory_backends)
        plan = await orchestrator.plan("dev", "dev")
        earlier = await locks.acquire("dev", "ci", 60)
        await locks.force_release("dev")
        current = await locks.acquire("dev", "ci", 60)

        executor = ApplyExecutor(memory_backends.store, locks, ProviderRegistry(default=NullProvider))
        with pytest.raises(LockBusyError):
            await executor.apply(plan, "ci", lock=earlier)

        assert (await locks.status("dev")).lock_id == current.lock_id
        assert (await memory_backends.store.read("dev")).is_empty

    @pytest.mark.asyncio
    async def test_live_lock_record_is_reused_and_released(self, stack_file, memory_settings, memory_backends):
        locks = memory_backends.locks
        orchestrator = orchestrator_for(stack_file, memory_settings, memory_backends)
        plan = await orchestrator.plan("dev", "dev")
        record = await locks.acquire("dev", "ci", 60)

        executor = ApplyExecutor(memory_backends.store, locks, ProviderRegistry(default=NullProvider))
        report = await executor.apply(plan, "ci", lock=record)

        assert report.success
        assert await locks.status("dev") is None


CBD_STACK = """
parameters:
  - name: cidr
    type: string

kinds:
  network:
    immutable: [cidr_block]

modules:
  - name: net
    resources:
      - id: vpc
        kind: network
        attributes:
          cidr_block: "${param.cidr}"
        lifecycle:
          create_before_destroy: %s
"""

REF_STACK = """
parameters:
  - name: cidr
    type: string

kinds:
  network:
    immutable: [cidr_block]

modules:
  - name: net
    resources:
      - id: vpc
        kind: network
        attributes:
          cidr_block: "${param.cidr}"
      - id: subnet
        kind: subnet
        attributes:
          vpc_id: "${resource.vpc.id}"
"""

CIDR_PROFILES = {
    "old": "parameters:\n  cidr: 10.0.0.0/16\n",
    "new": "parameters:\n  cidr: 10.1.0.0/16\n",
}

VPC = InstanceAddress.parse("net.vpc[0]")
SUBNET = InstanceAddress.parse("net.subnet[0]")


class TestReplace:
    """Replacement ordering."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "create_before_destroy, expected",
        [
            ("true", [("create", "10.1.0.0/16"), ("delete", "10.0.0.0/16")]),
            ("false", [("delete", "10.0.0.0/16"), ("create", "10.1.0.0/16")]),
        ],
    )
    async def test_replace_order(self, tmp_path, memory_settings, memory_backends, create_before_destroy, expected):
        stack_file = write_stack(tmp_path, stack=CBD_STACK % create_before_destroy, profiles=CIDR_PROFILES)
        provider = RecordingProvider()
        orchestrator = orchestrator_for(stack_file, memory_settings, memory_backends, provider, kind="network")
        await orchestrator.apply("net", "old")
        provider.calls.clear()

        plan = await orchestrator.plan("net", "new")
        assert plan.actions[0].kind is ActionKind.REPLACE

        report = await orchestrator.apply("net", "new", plan=plan)

        assert report.success
        assert [(c[0], c[2]["cidr_block"]) for c in provider.calls] == expected
        vpc = (await orchestrator.state_resources("net"))[VPC]
        assert vpc.attributes == {"cidr_block": "10.1.0.0/16"}

    @pytest.mark.asyncio
    async def test_failed_delete_keeps_old_object_as_deposed(self, tmp_path, memory_settings, memory_backends):
        stack_file = write_stack(tmp_path, stack=CBD_STACK % "true", profiles=CIDR_PROFILES)
        provider = RecordingProvider()
        orchestrator = orchestrator_for(stack_file, memory_settings, memory_backends, provider, kind="network")
        await orchestrator.apply("net", "old")
        old = (await orchestrator.state_resources("net"))[VPC]
        provider.fail_deletes.add("net.vpc[0]")

        report = await orchestrator.apply("net", "new")

        assert report.status is ApplyStatus.PARTIAL
        assert report.failed_recorded
        assert report.deposed == [VPC]
        assert "still in use" in report.error.message
        with pytest.raises(PartialApplyError, match="partly applied replace") as excinfo:
            report.raise_for_status()
        assert excinfo.value.exit_code == 20
        assert excinfo.value.remaining == ["net.vpc[0]"]

        snapshot = await memory_backends.store.read("net")
        assert snapshot.get(VPC).attributes == {"cidr_block": "10.1.0.0/16"}
        assert [r.observed["id"] for r in snapshot.deposed[VPC]] == [old.observed["id"]]
        assert [r.address for r in await orchestrator.deposed_resources("net")] == [VPC]

        plan = await orchestrator.plan("net", "new")
        assert [(a.kind, a.deposed) for a in plan.actions] == [
            (ActionKind.NOOP, False),
            (ActionKind.DELETE, True),
        ]
        assert plan.actions[1].prior.observed["id"] == old.observed["id"]

        provider.fail_deletes.clear()
        provider.calls.clear()
        report = await orchestrator.apply("net", "new", plan=plan)

        assert report.success
        assert [(c[0], c[2]["cidr_block"]) for c in provider.calls] == [("delete", "10.0.0.0/16")]
        assert (await memory_backends.store.read("net")).deposed == {}
        assert not (await orchestrator.plan("net", "new")).has_changes

    @pytest.mark.asyncio
    async def test_failed_create_after_delete_is_partial(self, tmp_path, memory_settings, memory_backends):
        stack_file = write_stack(tmp_path, stack=CBD_STACK % "false", profiles=CIDR_PROFILES)
        provider = RecordingProvider()
        orchestrator = orchestrator_for(stack_file, memory_settings, memory_backends, provider, kind="network")
        await orchestrator.apply("net", "old")
        provider.fail_on.add("net.vpc[0]")

        report = await orchestrator.apply("net", "new")

        assert report.status is ApplyStatus.PARTIAL
        assert report.failed_recorded
        assert VPC not in await orchestrator.state_resources("net")

        plan = await orchestrator.plan("net", "new")
        assert [a.kind for a in plan.actions] == [ActionKind.CREATE]


class TestReferenceDrift:
    """Dependents see the new values of resources replaced upstream."""

    async def _applied(self, tmp_path, memory_settings, memory_backends, provider):
        stack_file = write_stack(tmp_path, stack=REF_STACK, profiles=CIDR_PROFILES)
        orchestrator = orchestrator_for(
            stack_file, memory_settings, memory_backends, provider, kind=("network", "subnet")
        )
        await orchestrator.apply("net", "old")
        return orchestrator

    @pytest.mark.asyncio
    async def test_replace_updates_dependents(self, tmp_path, memory_settings, memory_backends):
        provider = RecordingProvider()
        orchestrator = await self._applied(tmp_path, memory_settings, memory_backends, provider)
        old_id = (await orchestrator.state_resources("net"))[VPC].observed["id"]

        plan = await orchestrator.plan("net", "new")
        assert [(str(a.address), a.kind) for a in plan.actions] == [
            ("net.vpc[0]", ActionKind.REPLACE),
            ("net.subnet[0]", ActionKind.UPDATE),
        ]
        (change,) = plan.actions[1].changes
        assert (change.name, change.before, change.after) == ("vpc_id", old_id, KNOWN_AFTER_APPLY)

        report = await orchestrator.apply("net", "new", plan=plan)

        assert report.success
        resources = await orchestrator.state_resources("net")
        new_id = resources[VPC].observed["id"]
        assert new_id != old_id
        assert resources[SUBNET].resolved == {"vpc_id": new_id}
        assert provider.calls[-1] == ("update", "net.subnet[0]", {"vpc_id": new_id})
        assert not (await orchestrator.plan("net", "new")).has_changes

    @pytest.mark.asyncio
    async def test_failed_dependent_update_is_planned_again(self, tmp_path, memory_settings, memory_backends):
        provider = RecordingProvider()
        orchestrator = await self._applied(tmp_path, memory_settings, memory_backends, provider)
        old_id = (await orchestrator.state_resources("net"))[VPC].observed["id"]
        provider.fail_updates.add("net.subnet[0]")

        report = await orchestrator.apply("net", "new")

        assert report.status is ApplyStatus.PARTIAL
        assert str(report.failed.address) == "net.subnet[0]"

        new_id = (await orchestrator.state_resources("net"))[VPC].observed["id"]
        plan = await orchestrator.plan("net", "new")
        assert [a.kind for a in plan.actions] == [ActionKind.NOOP, ActionKind.UPDATE]
        (change,) = plan.actions[1].changes
        assert (change.before, change.after) == (old_id, new_id)

        provider.fail_updates.clear()
        assert (await orchestrator.apply("net", "new", plan=plan)).success
        assert not (await orchestrator.plan("net", "new")).has_changes


class TestApplyReport:
    """Report status and exit code mapping."""

    def test_success(self):
        report = ApplyReport(key="dev")
        report.raise_for_status()
        assert report.to_dict()["status"] == "succeeded"

    def test_to_dict(self):
        action = PlanAction(address=InstanceAddress.parse("net.vpc[0]"), kind=ActionKind.CREATE)
        report = ApplyReport(
            key="dev",
            status=ApplyStatus.FAILED,
            failed=action,
            error=ProviderEffectError("boom"),
        )
        data = report.to_dict()
        assert data["failed"] == {"address": "net.vpc[0]", "action": "create"}
        assert data["error"] == "boom"
        assert report.remaining == [action]
