"""Attribute-level diffing between recorded and desired values.

Rules:
- list attributes compare in order, set attributes by membership only
- ``None`` and an absent attribute are different values
- ``True`` and ``1`` are different values, ``1`` and ``1.0`` are not
- anything that is (or contains) ``UNKNOWN`` counts as changed
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from converge.domain.model import ABSENT, UNKNOWN, AttributeType, contains_unknown

_SEQUENCES = (list, tuple)
_COLLECTIONS = (list, tuple, set, frozenset)

if TYPE_CHECKING:
    from collections.abc import Collection, Iterable, Mapping

    from converge.domain.model import ResourceSchema


@dataclass(frozen=True, slots=True, kw_only=True)
class AttributeChange:
    """Before/after pair for one attribute; either side may be ``ABSENT``."""

    name: str
    before: object
    after: object
    forces_replacement: bool = False

    @property
    def after_unknown(self) -> bool:
        return contains_unknown(self.after)


def values_equal(
    before: object,
    after: object,
    attribute_type: AttributeType = AttributeType.ANY,
    element_type: AttributeType = AttributeType.ANY,
) -> bool:
    if contains_unknown(before) or contains_unknown(after):
        return False
    if before is ABSENT or after is ABSENT or before is None or after is None:
        return before is after
    if attribute_type is AttributeType.SET and isinstance(before, _COLLECTIONS) and isinstance(
        after, _COLLECTIONS
    ):
        return _membership(before) == _membership(after)
    if attribute_type is AttributeType.LIST and isinstance(before, _SEQUENCES) and isinstance(
        after, _SEQUENCES
    ):
        return len(before) == len(after) and all(
            values_equal(left, right, element_type)
            for left, right in zip(before, after, strict=True)
        )
    if attribute_type is AttributeType.MAP and isinstance(before, dict) and isinstance(after, dict):
        return before.keys() == after.keys() and all(
            values_equal(before[key], after[key], element_type) for key in before
        )
    return _canonical(before) == _canonical(after)


def diff_attributes(
    prior: Mapping[str, object],
    desired: Mapping[str, object],
    schema: ResourceSchema,
    *,
    ignore_changes: Collection[str] = (),
) -> list[AttributeChange]:
    """Return the attribute changes needed to move ``prior`` to ``desired``.

    Computed attributes missing from ``desired`` belong to the provider and are
    not compared. Names listed in ``ignore_changes`` are skipped entirely.
    """

    names = set(desired) | {name for name in prior if not schema.is_computed(name)}
    changes: list[AttributeChange] = []
    for name in sorted(names):
        if name in ignore_changes:
            continue
        before = prior.get(name, ABSENT)
        after = desired.get(name, ABSENT)
        attribute = schema.attribute(name)
        attribute_type = attribute.type if attribute is not None else AttributeType.ANY
        element_type = attribute.element_type if attribute is not None else AttributeType.ANY
        if values_equal(before, after, attribute_type, element_type):
            continue
        changes.append(
            AttributeChange(
                name=name,
                before=before,
                after=after,
                forces_replacement=schema.forces_replacement(name),
            )
        )
    return changes


def _membership(values: Iterable[object]) -> frozenset[object]:
    return frozenset(_canonical(value) for value in values)


def _canonical(value: object) -> object:
    """Hashable, type-tagged form used for equality and set membership."""

    if value is None:
        return ("null",)
    if value is UNKNOWN or value is ABSENT:
        return ("placeholder", id(value))
    if isinstance(value, bool):
        return ("bool", value)
    if isinstance(value, int | float):
        # int and float compare exactly and hash alike when equal
        return ("number", value)
    if isinstance(value, str):
        return ("string", value)
    if isinstance(value, dict):
        items = sorted(((str(key), _canonical(item)) for key, item in value.items()), key=_first)
        return ("map", tuple(items))
    if isinstance(value, list | tuple):
        return ("list", tuple(_canonical(item) for item in value))
    if isinstance(value, set | frozenset):
        return ("set", _membership(value))
    return ("other", repr(value))


def _first(item: tuple[str, object]) -> str:
    return item[0]
