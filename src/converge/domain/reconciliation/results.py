"""Run results handed back to callers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from converge.domain.model import ResourceAddress, StateSnapshot

    from .plan import Action, StepKind


@dataclass(slots=True, kw_only=True)
class ChangeFailure:
    """Failed step: address, action and the wrapped adapter error."""

    address: ResourceAddress
    action: Action
    step: StepKind
    error: BaseException
    attempts: int = 1
    deposed_key: str | None = None

    def __str__(self) -> str:
        target = str(self.address)
        if self.deposed_key:
            target += f" (deposed {self.deposed_key})"
        return f"{self.action} {target} failed during {self.step}: {self.error}"


@dataclass(slots=True, kw_only=True)
class ApplyResult:
    """Outcome of one apply.

    ``snapshot`` is the last snapshot written (or the prior one when nothing
    was written). An address appears in exactly one of ``applied``,
    ``errored``, ``skipped`` and ``cancelled``; ``errored`` lists every failed
    change of an address, since a deposed object can fail next to the current one.
    """

    snapshot: StateSnapshot
    applied: list[ResourceAddress] = field(default_factory=list["ResourceAddress"])
    errored: dict[ResourceAddress, list[ChangeFailure]] = field(
        default_factory=dict["ResourceAddress", "list[ChangeFailure]"]
    )
    skipped: list[ResourceAddress] = field(default_factory=list["ResourceAddress"])
    cancelled: list[ResourceAddress] = field(default_factory=list["ResourceAddress"])
    writes: int = 0

    @property
    def ok(self) -> bool:
        return not self.errored and not self.skipped and not self.cancelled

    @property
    def failures(self) -> list[ChangeFailure]:
        return [failure for failures in self.errored.values() for failure in failures]


@dataclass(slots=True, kw_only=True)
class RefreshResult:
    """Real-world values read by the drift detector.

    ``snapshot`` is a refreshed copy of the prior snapshot with disappeared
    instances removed; the persisted state is left untouched.
    """

    snapshot: StateSnapshot
    updated: dict[ResourceAddress, dict[str, object]] = field(
        default_factory=dict["ResourceAddress", "dict[str, object]"]
    )
    drifted: tuple[ResourceAddress, ...] = ()
    disappeared: tuple[ResourceAddress, ...] = ()

    @property
    def read(self) -> frozenset[ResourceAddress]:
        return frozenset(self.updated) | frozenset(self.disappeared)
