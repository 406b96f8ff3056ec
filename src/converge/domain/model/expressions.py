"""Attribute expressions and the placeholder values used while planning.

Declarations carry attribute *expressions*: plain JSON-like values that may
embed :class:`Reference` objects (``type.name.attribute``) or
:class:`Interpolation` templates. The planner evaluates them against planned
values of the referenced instances (which may still be :data:`UNKNOWN`), the
executor evaluates them again against the live snapshot.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final

from .address import ResourceAddress

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator


class _Placeholder:
    __slots__ = ("_label",)

    def __init__(self, label: str) -> None:
        self._label = label

    def __repr__(self) -> str:
        return self._label

    def __copy__(self) -> _Placeholder:
        return self

    def __deepcopy__(self, memo: dict[int, object]) -> _Placeholder:
        return self


UNKNOWN: Final = _Placeholder("(known after apply)")
"""Value not known until a dependency has been created or replaced."""

ABSENT: Final = _Placeholder("(absent)")
"""Attribute missing from a mapping; distinct from an explicit ``None``."""

_REFERENCE_PATTERN: Final = re.compile(r"^(?P<address>.+)\.(?P<attribute>[A-Za-z_][\w-]*)$")


@dataclass(frozen=True, slots=True)
class Reference:
    """Reference to one attribute of another resource instance."""

    address: ResourceAddress
    attribute: str

    def __str__(self) -> str:
        return f"{self.address}.{self.attribute}"

    @classmethod
    def parse(cls, text: str) -> Reference:
        match = _REFERENCE_PATTERN.match(text.strip())
        if match is None:
            raise ValueError(f"Invalid reference: {text!r}")
        return cls(ResourceAddress.parse(match.group("address")), match.group("attribute"))


@dataclass(frozen=True, slots=True)
class Interpolation:
    """String template mixing literal text and references."""

    parts: tuple[str | Reference, ...]


def is_unknown(value: object) -> bool:
    return value is UNKNOWN


def iter_references(value: object) -> Iterator[Reference]:
    """Yield every reference embedded in ``value`` (depth first)."""

    if isinstance(value, Reference):
        yield value
    elif isinstance(value, Interpolation):
        for part in value.parts:
            if isinstance(part, Reference):
                yield part
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, list | tuple | set | frozenset):
        for item in value:
            yield from iter_references(item)


def contains_unknown(value: object) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(item) for item in value.values())
    if isinstance(value, list | tuple | set | frozenset):
        return any(contains_unknown(item) for item in value)
    return False


def evaluate(value: object, resolve: Callable[[Reference], object]) -> object:
    """Return ``value`` with every reference replaced by ``resolve(reference)``.

    Containers are rebuilt (lists stay lists, dicts stay dicts); an
    interpolation that touches an unknown value evaluates to :data:`UNKNOWN`.
    """

    if isinstance(value, Reference):
        return resolve(value)
    if isinstance(value, Interpolation):
        rendered: list[str] = []
        for part in value.parts:
            if isinstance(part, str):
                rendered.append(part)
                continue
            resolved = resolve(part)
            if contains_unknown(resolved):
                return UNKNOWN
            rendered.append(_render(resolved))
        return "".join(rendered)
    if isinstance(value, dict):
        return {key: evaluate(item, resolve) for key, item in value.items()}
    if isinstance(value, list):
        return [evaluate(item, resolve) for item in value]
    if isinstance(value, tuple):
        return tuple(evaluate(item, resolve) for item in value)
    return value


def _render(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int | float):
        return str(value)
    return json.dumps(value, sort_keys=True, default=str)
