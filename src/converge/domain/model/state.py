"""Recorded state: instances, snapshots and locks."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from .address import sorted_addresses

if TYPE_CHECKING:
    from .address import ResourceAddress


class InstanceStatus(StrEnum):
    """Lifecycle status of one instance.

    Only ``MANAGED`` and ``ERRORED`` are ever persisted; the in-flight values
    exist while the executor works on an instance.
    """

    UNMANAGED = "unmanaged"
    CREATING = "creating"
    MANAGED = "managed"
    UPDATING = "updating"
    DELETING = "deleting"
    ERRORED = "errored"


_TRANSITIONS: dict[InstanceStatus, frozenset[InstanceStatus]] = {
    InstanceStatus.UNMANAGED: frozenset({InstanceStatus.CREATING}),
    InstanceStatus.CREATING: frozenset(
        {InstanceStatus.MANAGED, InstanceStatus.DELETING, InstanceStatus.ERRORED}
    ),
    InstanceStatus.MANAGED: frozenset(
        {InstanceStatus.UPDATING, InstanceStatus.DELETING, InstanceStatus.CREATING}
    ),
    InstanceStatus.UPDATING: frozenset({InstanceStatus.MANAGED, InstanceStatus.ERRORED}),
    InstanceStatus.DELETING: frozenset(
        {InstanceStatus.UNMANAGED, InstanceStatus.MANAGED, InstanceStatus.ERRORED}
    ),
    InstanceStatus.ERRORED: frozenset(),
}


def can_transition(current: InstanceStatus, target: InstanceStatus) -> bool:
    return target in _TRANSITIONS[current]


@dataclass(slots=True, kw_only=True)
class ResourceInstanceState:
    """Recorded attributes of one managed instance.

    ``dependencies`` and the lifecycle flags are recorded so that instances
    which disappear from the configuration can still be destroyed in order and
    stay protected by ``prevent_destroy``. ``deposed_key`` is set only on the
    old object of a create-before-destroy replacement.
    """

    address: ResourceAddress
    attributes: dict[str, object] = field(default_factory=dict[str, object])
    provider: str
    schema_version: int = 0
    dependencies: tuple[ResourceAddress, ...] = ()
    prevent_destroy: bool = False
    create_before_destroy: bool = False
    tainted: bool = False
    status: InstanceStatus = InstanceStatus.MANAGED
    deposed_key: str | None = None

    @property
    def errored(self) -> bool:
        return self.status is InstanceStatus.ERRORED

    def evolve(self, **changes: object) -> ResourceInstanceState:
        """Return a deep copy with ``changes`` applied."""

        return replace(copy.deepcopy(self), **changes)  # type: ignore[arg-type]


@dataclass(slots=True, kw_only=True)
class StateSnapshot:
    """All managed instances of one workspace at one serial."""

    lineage: UUID = field(default_factory=uuid4)
    serial: int = 0
    resources: dict[ResourceAddress, ResourceInstanceState] = field(
        default_factory=dict["ResourceAddress", "ResourceInstanceState"]
    )
    deposed: dict[str, ResourceInstanceState] = field(
        default_factory=dict[str, "ResourceInstanceState"]
    )
    outputs: dict[str, object] = field(default_factory=dict[str, object])

    def get(self, address: ResourceAddress) -> ResourceInstanceState | None:
        return self.resources.get(address)

    def __contains__(self, address: object) -> bool:
        return address in self.resources

    def __len__(self) -> int:
        return len(self.resources)

    @property
    def addresses(self) -> tuple[ResourceAddress, ...]:
        return tuple(self.resources)

    def put(self, instance: ResourceInstanceState) -> None:
        self.resources[instance.address] = instance
        self._reorder()

    def remove(self, address: ResourceAddress) -> ResourceInstanceState | None:
        return self.resources.pop(address, None)

    def depose(self, address: ResourceAddress, deposed_key: str) -> ResourceInstanceState:
        """Move the current object at ``address`` into the deposed set."""

        instance = self.resources.pop(address)
        instance.deposed_key = deposed_key
        self.deposed[deposed_key] = instance
        return instance

    def copy(self) -> StateSnapshot:
        return copy.deepcopy(self)

    def successor(self) -> StateSnapshot:
        """Return a deep copy carrying the next serial."""

        successor = self.copy()
        successor.serial = self.serial + 1
        return successor

    def _reorder(self) -> None:
        ordered = sorted_addresses(self.resources)
        self.resources = {address: self.resources[address] for address in ordered}


@dataclass(frozen=True, slots=True, kw_only=True)
class Lock:
    """Advisory lock held on one state key."""

    key: str
    lock_id: str
    holder: str
    operation: str
    acquired_at: datetime
    ttl: timedelta

    @property
    def expires_at(self) -> datetime:
        return self.acquired_at + self.ttl

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(UTC)) >= self.expires_at

    def renewed(self, now: datetime | None = None) -> Lock:
        return replace(self, acquired_at=now or datetime.now(UTC))
