"""Plan types shared by the planner, the executor and serializers.

A :class:`Plan` lists the actionable :class:`Change` objects in execution
order and carries the step graph that orders them. Each change expands into
one or two :class:`StepKey` nodes (a replacement has a create and a delete
step); the executor schedules steps, not changes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from .graph import DependencyGraph

if TYPE_CHECKING:
    from uuid import UUID

    from converge.domain.model import ResourceAddress, ResourceInstanceState

    from .diff import AttributeChange


class Action(StrEnum):
    NOOP = "no-op"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    REPLACE = "replace"


class ChangeReason(StrEnum):
    FORCES_REPLACEMENT = "forces_replacement"
    TAINTED = "tainted"
    DISAPPEARED = "disappeared"
    ORPHANED = "orphaned"
    DEPOSED = "deposed"
    DESTROY = "destroy"


class StepKind(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


_STEP_ORDER = {StepKind.DELETE: 0, StepKind.CREATE: 1, StepKind.UPDATE: 2}


@dataclass(frozen=True, slots=True)
class StepKey:
    """One adapter call in the execution graph."""

    address: ResourceAddress
    kind: StepKind
    deposed_key: str | None = None

    def __str__(self) -> str:
        suffix = f" deposed {self.deposed_key}" if self.deposed_key else ""
        return f"{self.kind} {self.address}{suffix}"

    def sort_key(self) -> tuple[object, ...]:
        return (*self.address.sort_key(), _STEP_ORDER[self.kind], self.deposed_key or "")


type StepGraph = DependencyGraph[StepKey]


@dataclass(slots=True, kw_only=True)
class Change:
    """Planned change for one instance (or one deposed object).

    ``config`` holds the attribute expressions evaluated by the executor right
    before the adapter call; ``after`` holds the planned values, which may
    contain ``UNKNOWN``. Recorded metadata (dependencies, lifecycle flags) is
    carried so the executor can write complete state records.
    """

    address: ResourceAddress
    action: Action
    provider: str
    before: dict[str, object] | None = None
    after: dict[str, object] | None = None
    config: dict[str, object] | None = None
    attribute_changes: tuple[AttributeChange, ...] = ()
    reasons: frozenset[ChangeReason] = frozenset()
    create_before_destroy: bool = False
    prevent_destroy: bool = False
    dependencies: tuple[ResourceAddress, ...] = ()
    schema_version: int = 0
    deposed_key: str | None = None

    def __str__(self) -> str:
        suffix = f" (deposed {self.deposed_key})" if self.deposed_key else ""
        return f"{self.action} {self.address}{suffix}"

    @property
    def identity(self) -> tuple[ResourceAddress, str | None]:
        return (self.address, self.deposed_key)

    @property
    def create_step(self) -> StepKey | None:
        if self.action in {Action.CREATE, Action.REPLACE}:
            return StepKey(self.address, StepKind.CREATE)
        return None

    @property
    def update_step(self) -> StepKey | None:
        if self.action is Action.UPDATE:
            return StepKey(self.address, StepKind.UPDATE)
        return None

    @property
    def delete_step(self) -> StepKey | None:
        if self.action in {Action.DELETE, Action.REPLACE}:
            return StepKey(self.address, StepKind.DELETE, self.deposed_key)
        return None

    @property
    def steps(self) -> tuple[StepKey, ...]:
        """Steps of this change in their required relative order."""

        create, update, delete = self.create_step, self.update_step, self.delete_step
        if create is not None and delete is not None:
            return (create, delete) if self.create_before_destroy else (delete, create)
        return tuple(step for step in (create, update, delete) if step is not None)

    @property
    def forward_step(self) -> StepKey | None:
        """Step after which the live object matches the configuration."""

        return self.create_step or self.update_step


@dataclass(slots=True, kw_only=True)
class Plan:
    """Ordered changes plus the step DAG used to execute them.

    ``state_updates`` are record replacements (``None`` = removal) applied
    without any adapter call, e.g. for changed recorded dependencies or for
    orphans that disappeared from the real world.
    """

    lineage: UUID
    base_serial: int | None
    changes: list[Change] = field(default_factory=list["Change"])
    graph: StepGraph = field(default_factory=DependencyGraph["StepKey"])
    steps: list[StepKey] = field(default_factory=list["StepKey"])
    unchanged: tuple[ResourceAddress, ...] = ()
    state_updates: dict[ResourceAddress, ResourceInstanceState | None] = field(
        default_factory=dict["ResourceAddress", "ResourceInstanceState | None"]
    )
    outputs: dict[str, object] = field(default_factory=dict[str, object])
    destroy: bool = False
    refreshed: bool = False

    @property
    def empty(self) -> bool:
        return not self.changes and not self.state_updates

    @property
    def has_changes(self) -> bool:
        return bool(self.changes)

    def change_for_step(self, step: StepKey) -> Change:
        for change in self.changes:
            if change.address == step.address and change.deposed_key == step.deposed_key:
                return change
        raise KeyError(f"No change for step {step}")

    def changes_for(self, address: ResourceAddress) -> list[Change]:
        return [change for change in self.changes if change.address == address]

    def actions(self) -> list[tuple[Action, ResourceAddress]]:
        return [(change.action, change.address) for change in self.changes]

    def summary(self) -> dict[Action, int]:
        counts = dict.fromkeys(Action, 0)
        counts[Action.NOOP] = len(self.unchanged)
        for change in self.changes:
            counts[change.action] += 1
        return counts
