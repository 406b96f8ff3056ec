from __future__ import annotations

from datetime import UTC, datetime, timedelta

from converge.domain.model import (
    InstanceStatus,
    Lock,
    ResourceAddress,
    ResourceInstanceState,
    StateSnapshot,
    can_transition,
)


def _instance(text: str, **attributes: object) -> ResourceInstanceState:
    return ResourceInstanceState(
        address=ResourceAddress.parse(text), attributes=dict(attributes), provider="fake"
    )


def test_lifecycle_transitions() -> None:
    assert can_transition(InstanceStatus.UNMANAGED, InstanceStatus.CREATING)
    assert can_transition(InstanceStatus.CREATING, InstanceStatus.MANAGED)
    assert can_transition(InstanceStatus.MANAGED, InstanceStatus.UPDATING)
    assert can_transition(InstanceStatus.DELETING, InstanceStatus.UNMANAGED)
    assert can_transition(InstanceStatus.UPDATING, InstanceStatus.ERRORED)
    assert not can_transition(InstanceStatus.UNMANAGED, InstanceStatus.MANAGED)
    assert not can_transition(InstanceStatus.ERRORED, InstanceStatus.MANAGED)


def test_successor_is_an_independent_copy() -> None:
    snapshot = StateSnapshot()
    snapshot.put(_instance("network.main", id="net-1", tags={"env": "dev"}))

    successor = snapshot.successor()
    tags = successor.resources[ResourceAddress("network", "main")].attributes["tags"]
    assert isinstance(tags, dict)
    tags["env"] = "prod"

    assert successor.serial == snapshot.serial + 1
    assert successor.lineage == snapshot.lineage
    assert snapshot.resources[ResourceAddress("network", "main")].attributes["tags"] == {
        "env": "dev"
    }


def test_resources_stay_sorted() -> None:
    snapshot = StateSnapshot()
    snapshot.put(_instance("server.web[1]"))
    snapshot.put(_instance("network.main"))
    snapshot.put(_instance("server.web[0]"))

    assert [str(item) for item in snapshot.addresses] == [
        "network.main",
        "server.web[0]",
        "server.web[1]",
    ]


def test_depose_moves_the_current_object() -> None:
    snapshot = StateSnapshot()
    snapshot.put(_instance("network.main", id="net-1"))

    deposed = snapshot.depose(ResourceAddress("network", "main"), "abcd1234")

    assert ResourceAddress("network", "main") not in snapshot
    assert deposed.deposed_key == "abcd1234"
    assert snapshot.deposed["abcd1234"].attributes == {"id": "net-1"}


def test_lock_expiry_and_renewal() -> None:
    acquired = datetime(2026, 1, 1, tzinfo=UTC)
    lock = Lock(
        key="default",
        lock_id="l1",
        holder="someone",
        operation="apply",
        acquired_at=acquired,
        ttl=timedelta(minutes=5),
    )

    assert not lock.is_expired(acquired + timedelta(minutes=4))
    assert lock.is_expired(acquired + timedelta(minutes=5))
    assert not lock.renewed(acquired + timedelta(minutes=4)).is_expired(
        acquired + timedelta(minutes=6)
    )
