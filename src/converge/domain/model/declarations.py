"""Desired-state declarations handed over by a configuration loader."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .expressions import iter_references

if TYPE_CHECKING:
    from collections.abc import Iterator

    from .address import ResourceAddress
    from .expressions import Reference


@dataclass(frozen=True, slots=True, kw_only=True)
class Lifecycle:
    prevent_destroy: bool = False
    create_before_destroy: bool = False
    ignore_changes: frozenset[str] = frozenset()


@dataclass(slots=True, kw_only=True)
class ResourceDeclaration:
    """One expanded resource instance of the desired configuration.

    ``attributes`` holds expressions; ``provider`` defaults to the resource type
    when the loader does not name one explicitly.
    """

    address: ResourceAddress
    attributes: dict[str, object] = field(default_factory=dict[str, object])
    depends_on: tuple[ResourceAddress, ...] = ()
    lifecycle: Lifecycle = field(default_factory=Lifecycle)
    tainted: bool = False
    provider: str | None = None

    @property
    def provider_name(self) -> str:
        return self.provider or self.address.type

    def references(self) -> Iterator[Reference]:
        yield from iter_references(self.attributes)


@dataclass(slots=True, kw_only=True)
class Configuration:
    """Declarations plus output expressions for one workspace."""

    resources: list[ResourceDeclaration] = field(default_factory=list["ResourceDeclaration"])
    outputs: dict[str, object] = field(default_factory=dict[str, object])

    def declaration_for(self, address: ResourceAddress) -> ResourceDeclaration | None:
        for declaration in self.resources:
            if declaration.address == address:
                return declaration
        return None

    @property
    def addresses(self) -> tuple[ResourceAddress, ...]:
        return tuple(declaration.address for declaration in self.resources)
