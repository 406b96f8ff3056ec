from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

import pytest

from converge.adapters.memory import InMemoryStateStore
from converge.domain.errors import (
    ConfigError,
    ConflictError,
    LockError,
    PartialApplyError,
    PermanentProviderError,
    PreventDestroyError,
)
from converge.domain.model import InstanceStatus
from converge.domain.reconciliation import Action, CancellationToken, ChangeReason
from tests.helpers.declarations import addr, configuration, declare, network_and_server, ref

if TYPE_CHECKING:
    from converge.domain.model import StateSnapshot
    from converge.domain.reconciliation import ReconciliationEngine
    from tests.helpers.providers import FakeProvider, World


def current(store: InMemoryStateStore) -> StateSnapshot:
    snapshot = store.get("test")
    assert snapshot is not None
    return snapshot


def hold_lock(store: InMemoryStateStore, holder: str = "other@elsewhere") -> None:
    store.lock("test", holder=holder, operation="apply", ttl=timedelta(minutes=5))


def test_show_is_empty_before_the_first_apply(engine: ReconciliationEngine) -> None:
    assert engine.show() is None


def test_apply_then_plan_is_empty(
    engine: ReconciliationEngine, memory_store: InMemoryStateStore
) -> None:
    result = engine.apply(network_and_server())

    assert result.applied == [addr("network.main"), addr("server.web")]
    assert current(memory_store).serial == 2
    assert engine.plan(network_and_server()).empty
    assert memory_store.current_lock("test") is None


def test_second_apply_changes_nothing(
    engine: ReconciliationEngine, memory_store: InMemoryStateStore, world: World
) -> None:
    engine.apply(network_and_server())
    world.journal.clear()

    result = engine.apply(network_and_server())

    assert result.writes == 0
    assert sorted(world.journal) == ["read network.main", "read server.web"]
    assert current(memory_store).serial == 2


def test_drift_is_planned_back(engine: ReconciliationEngine, servers: FakeProvider) -> None:
    engine.apply(network_and_server())
    servers.objects["id-server-1"]["size"] = "huge"

    plan = engine.plan(network_and_server())

    assert plan.actions() == [(Action.UPDATE, addr("server.web"))]
    assert plan.changes[0].before is not None
    assert plan.changes[0].before["size"] == "huge"


def test_plan_without_refresh_trusts_recorded_state(
    engine: ReconciliationEngine, servers: FakeProvider
) -> None:
    engine.apply(network_and_server())
    servers.objects["id-server-1"]["size"] = "huge"

    assert engine.plan(network_and_server(), refresh=False).empty


def test_deleted_object_is_recreated(
    engine: ReconciliationEngine, servers: FakeProvider, memory_store: InMemoryStateStore
) -> None:
    engine.apply(network_and_server())
    servers.objects.clear()

    result = engine.apply(network_and_server())

    assert result.applied == [addr("server.web")]
    server = current(memory_store).resources[addr("server.web")]
    assert server.attributes["id"] == "id-server-2"


def test_plan_reports_disappeared_objects(
    engine: ReconciliationEngine, servers: FakeProvider
) -> None:
    engine.apply(network_and_server())
    servers.objects.clear()

    plan = engine.plan(network_and_server())

    assert plan.actions() == [(Action.CREATE, addr("server.web"))]
    assert ChangeReason.DISAPPEARED in plan.changes[0].reasons


def test_busy_lock_fails_without_mutation(
    engine: ReconciliationEngine, memory_store: InMemoryStateStore, world: World
) -> None:
    hold_lock(memory_store)

    with pytest.raises(LockError) as exc:
        engine.apply(network_and_server())

    assert exc.value.held_by is not None
    assert exc.value.held_by.holder == "other@elsewhere"
    assert world.journal == []
    assert memory_store.get("test") is None


def test_unlocked_plan_ignores_a_held_lock(
    engine: ReconciliationEngine, memory_store: InMemoryStateStore
) -> None:
    hold_lock(memory_store)

    plan = engine.plan(network_and_server(), lock=False)

    assert len(plan.changes) == 2


def test_saved_plan_is_applied(
    engine: ReconciliationEngine, memory_store: InMemoryStateStore
) -> None:
    plan = engine.plan(network_and_server())

    result = engine.apply_plan(plan)

    assert result.ok
    assert current(memory_store).lineage == plan.lineage


def test_stale_plan_is_refused(
    engine: ReconciliationEngine, memory_store: InMemoryStateStore, world: World
) -> None:
    stale = engine.plan(network_and_server(size="large"))
    engine.apply(network_and_server())
    world.journal.clear()

    with pytest.raises(ConflictError, match="stale"):
        engine.apply_plan(stale)

    assert world.journal == []
    assert current(memory_store).serial == 2


def test_plan_against_removed_state_is_refused(
    engine: ReconciliationEngine, memory_store: InMemoryStateStore
) -> None:
    engine.apply(network_and_server())
    plan = engine.plan(network_and_server(size="large"))
    engine.store = InMemoryStateStore()

    with pytest.raises(ConflictError, match="no longer exists"):
        engine.apply_plan(plan)


def test_taint_forces_replacement_until_untainted(
    engine: ReconciliationEngine, memory_store: InMemoryStateStore
) -> None:
    engine.apply(network_and_server())

    engine.taint(addr("network.main"))

    assert current(memory_store).resources[addr("network.main")].tainted
    assert engine.plan(network_and_server()).actions() == [
        (Action.REPLACE, addr("network.main")),
        (Action.UPDATE, addr("server.web")),
    ]

    engine.untaint(addr("network.main"))

    assert engine.plan(network_and_server()).empty


def test_tainted_instance_is_replaced_on_apply(
    engine: ReconciliationEngine, memory_store: InMemoryStateStore, world: World
) -> None:
    engine.apply(configuration(declare("network.main", name="main")))
    engine.taint(addr("network.main"))
    world.journal.clear()

    engine.apply(configuration(declare("network.main", name="main")), refresh=False)

    assert world.journal == ["delete network.main", "create network.main"]
    network = current(memory_store).resources[addr("network.main")]
    assert not network.tainted
    assert network.attributes["id"] == "id-network-2"


def test_editing_unknown_instances_is_rejected(engine: ReconciliationEngine) -> None:
    with pytest.raises(ConfigError, match="not in state"):
        engine.taint(addr("network.main"))


def test_forget_keeps_the_real_object(
    engine: ReconciliationEngine, memory_store: InMemoryStateStore, servers: FakeProvider
) -> None:
    engine.apply(network_and_server())

    engine.forget(addr("server.web"))

    assert addr("server.web") not in current(memory_store)
    assert servers.by_name("web") is not None
    assert engine.plan(network_and_server()).actions() == [(Action.CREATE, addr("server.web"))]


def test_import_tracks_an_existing_object(
    engine: ReconciliationEngine, memory_store: InMemoryStateStore, networks: FakeProvider
) -> None:
    existing = networks.add_object(name="main", cidr="10.0.0.0/16")

    imported = engine.import_instance(addr("network.main"), {"id": existing["id"]})

    assert imported.attributes == existing
    assert current(memory_store).resources[addr("network.main")].provider == "fake"
    plan = engine.plan(configuration(declare("network.main", name="main", cidr="10.0.0.0/16")))
    assert not plan.has_changes


def test_import_refuses_managed_addresses(
    engine: ReconciliationEngine, networks: FakeProvider
) -> None:
    existing = networks.add_object(name="main")
    engine.import_instance(addr("network.main"), {"id": existing["id"]})

    with pytest.raises(ConfigError, match="already managed"):
        engine.import_instance(addr("network.main"), {"id": existing["id"]})


def test_import_of_missing_object_fails(engine: ReconciliationEngine) -> None:
    with pytest.raises(ConfigError, match="does not exist"):
        engine.import_instance(addr("network.main"), {"id": "id-network-404"})


def test_force_unlock_breaks_a_stuck_lock(
    engine: ReconciliationEngine, memory_store: InMemoryStateStore
) -> None:
    hold_lock(memory_store, holder="crashed@ci")

    broken = engine.force_unlock()

    assert broken is not None
    assert broken.holder == "crashed@ci"
    assert engine.apply(network_and_server()).ok


def test_force_unlock_checks_the_lock_id(
    engine: ReconciliationEngine, memory_store: InMemoryStateStore
) -> None:
    hold_lock(memory_store)

    with pytest.raises(LockError):
        engine.force_unlock("not-the-id")

    assert memory_store.current_lock("test") is not None


def test_force_unlock_without_lock_is_a_noop(engine: ReconciliationEngine) -> None:
    assert engine.force_unlock() is None


def test_partial_apply_persists_progress(
    engine: ReconciliationEngine, memory_store: InMemoryStateStore, networks: FakeProvider
) -> None:
    config = configuration(
        declare("network.a", name="a"),
        declare("network.b", name="b"),
        declare("server.web", name="web", network_id=ref("network.a.id")),
    )
    networks.fail("create", "a", PermanentProviderError("quota"))

    with pytest.raises(PartialApplyError) as exc:
        engine.apply(config)

    result = exc.value.result
    assert list(result.errored) == [addr("network.a")]
    assert result.skipped == [addr("server.web")]
    assert result.applied == [addr("network.b")]
    assert current(memory_store).addresses == (addr("network.b"),)
    assert memory_store.current_lock("test") is None


def test_rerunning_after_partial_failure_converges(
    engine: ReconciliationEngine, memory_store: InMemoryStateStore, networks: FakeProvider
) -> None:
    networks.fail("create", "main", PermanentProviderError("try later"))
    with pytest.raises(PartialApplyError):
        engine.apply(network_and_server())

    result = engine.apply(network_and_server())

    assert result.applied == [addr("network.main"), addr("server.web")]
    assert len(current(memory_store)) == 2


def test_errored_instance_is_refreshed_and_recovered(
    engine: ReconciliationEngine, memory_store: InMemoryStateStore, servers: FakeProvider
) -> None:
    engine.apply(network_and_server())
    servers.fail("update", "web", PermanentProviderError("busy"))
    with pytest.raises(PartialApplyError):
        engine.apply(network_and_server(size="large"))
    assert current(memory_store).resources[addr("server.web")].errored

    plan = engine.plan(network_and_server(size="large"), refresh=False)
    assert plan.actions() == [(Action.UPDATE, addr("server.web"))]

    engine.apply(network_and_server(size="large"), refresh=False)

    server = current(memory_store).resources[addr("server.web")]
    assert server.status is InstanceStatus.MANAGED
    assert server.attributes["size"] == "large"


def test_destroy_removes_everything_dependents_first(
    engine: ReconciliationEngine, memory_store: InMemoryStateStore, world: World
) -> None:
    engine.apply(network_and_server())
    world.journal.clear()

    engine.destroy(refresh=False)

    assert world.journal == ["delete server.web", "delete network.main"]
    assert len(current(memory_store)) == 0


def test_prevent_destroy_aborts_without_mutation(
    engine: ReconciliationEngine, memory_store: InMemoryStateStore, world: World
) -> None:
    engine.apply(
        configuration(declare("network.main", name="main", prevent_destroy=True)),
    )
    world.journal.clear()

    with pytest.raises(PreventDestroyError):
        engine.destroy(refresh=False)

    assert world.journal == []
    assert current(memory_store).serial == 1


def test_outputs_are_stored(
    engine: ReconciliationEngine, memory_store: InMemoryStateStore
) -> None:
    config = network_and_server()
    config.outputs["server_ip"] = ref("server.web.ip")

    engine.apply(config)

    assert current(memory_store).outputs == {"server_ip": "ip-server-1"}


def test_cancelled_apply_returns_what_was_done(
    engine: ReconciliationEngine, memory_store: InMemoryStateStore
) -> None:
    token = CancellationToken()
    token.cancel()

    result = engine.apply(network_and_server(), cancel=token)

    assert result.cancelled == [addr("network.main"), addr("server.web")]
    assert memory_store.get("test") is None
    assert memory_store.current_lock("test") is None


def test_first_apply_writes_onto_an_empty_store(
    engine: ReconciliationEngine, memory_store: InMemoryStateStore
) -> None:
    assert memory_store.get("test") is None

    plan = engine.plan(network_and_server())
    result = engine.apply_plan(plan)

    assert plan.base_serial is None
    assert result.applied == [addr("network.main"), addr("server.web")]
    assert current(memory_store).serial == 2
