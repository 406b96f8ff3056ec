"""Resource addresses: the identity of one managed resource instance."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from collections.abc import Iterable

type InstanceKey = int | str | None

_ADDRESS_PATTERN: Final = re.compile(
    r"""
    ^(?P<type>[A-Za-z_][\w-]*)
    \.(?P<name>[A-Za-z_][\w-]*)
    (?:\[(?P<key>\d+|"(?:[^"\\]|\\.)*")\])?$
    """,
    re.VERBOSE,
)


@dataclass(frozen=True, slots=True)
class ResourceAddress:
    """Type + name + instance key.

    ``key`` is ``None`` for a resource that is not expanded, an ``int`` for
    ``count`` expansion and a ``str`` for ``for_each`` expansion.
    """

    type: str
    name: str
    key: InstanceKey = None

    def __post_init__(self) -> None:
        if not self.type or not self.name:
            raise ValueError("Resource address requires a type and a name")
        if isinstance(self.key, bool):
            raise TypeError("Instance keys must be int or str, not bool")

    def __str__(self) -> str:
        base = f"{self.type}.{self.name}"
        if self.key is None:
            return base
        if isinstance(self.key, int):
            return f"{base}[{self.key}]"
        return f"{base}[{json.dumps(self.key)}]"

    @property
    def resource(self) -> ResourceAddress:
        """Return the address of the (unexpanded) resource this instance belongs to."""

        return ResourceAddress(self.type, self.name)

    @property
    def is_expanded(self) -> bool:
        return self.key is not None

    def instance(self, key: InstanceKey) -> ResourceAddress:
        return ResourceAddress(self.type, self.name, key)

    def sort_key(self) -> tuple[str, str, int, int, str]:
        """Total ordering that tolerates mixed ``int``/``str`` keys."""

        if self.key is None:
            return (self.type, self.name, 0, 0, "")
        if isinstance(self.key, int):
            return (self.type, self.name, 1, self.key, "")
        return (self.type, self.name, 2, 0, self.key)

    @classmethod
    def parse(cls, text: str) -> ResourceAddress:
        match = _ADDRESS_PATTERN.match(text.strip())
        if match is None:
            raise ValueError(f"Invalid resource address: {text!r}")
        raw_key = match.group("key")
        key: InstanceKey
        if raw_key is None:
            key = None
        elif raw_key.startswith('"'):
            key = json.loads(raw_key)
        else:
            key = int(raw_key)
        return cls(match.group("type"), match.group("name"), key)


def sorted_addresses(addresses: Iterable[ResourceAddress]) -> list[ResourceAddress]:
    """Return ``addresses`` sorted deterministically."""

    return sorted(addresses, key=lambda address: address.sort_key())
