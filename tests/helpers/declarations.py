"""Builders for declarations and configurations."""

from __future__ import annotations

from converge.domain.model import (
    Configuration,
    Interpolation,
    Lifecycle,
    Reference,
    ResourceAddress,
    ResourceDeclaration,
)


def addr(text: str) -> ResourceAddress:
    return ResourceAddress.parse(text)


def ref(text: str) -> Reference:
    return Reference.parse(text)


def template(*parts: str | Reference) -> Interpolation:
    return Interpolation(tuple(parts))


def declare(
    address: str,
    *,
    depends_on: tuple[str, ...] = (),
    prevent_destroy: bool = False,
    create_before_destroy: bool = False,
    ignore_changes: frozenset[str] = frozenset(),
    tainted: bool = False,
    **attributes: object,
) -> ResourceDeclaration:
    return ResourceDeclaration(
        address=addr(address),
        attributes=dict(attributes),
        depends_on=tuple(addr(item) for item in depends_on),
        lifecycle=Lifecycle(
            prevent_destroy=prevent_destroy,
            create_before_destroy=create_before_destroy,
            ignore_changes=ignore_changes,
        ),
        tainted=tainted,
    )


def configuration(
    *declarations: ResourceDeclaration, outputs: dict[str, object] | None = None
) -> Configuration:
    return Configuration(resources=list(declarations), outputs=dict(outputs or {}))


def network_and_server(
    *,
    cidr: str = "10.0.0.0/16",
    size: str = "small",
    create_before_destroy: bool = False,
) -> Configuration:
    """Network ``A`` plus server ``B`` referencing ``A.id``."""

    return configuration(
        declare("network.main", name="main", cidr=cidr),
        declare(
            "server.web",
            name="web",
            network_id=ref("network.main.id"),
            size=size,
            create_before_destroy=create_before_destroy,
        ),
    )
