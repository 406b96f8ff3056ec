"""Resource schemas published by provider adapters."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from .expressions import UNKNOWN, Interpolation, Reference

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping


class AttributeType(StrEnum):
    STRING = "string"
    NUMBER = "number"
    BOOL = "bool"
    LIST = "list"
    SET = "set"
    MAP = "map"
    ANY = "any"


class Severity(StrEnum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True, slots=True, kw_only=True)
class Diagnostic:
    """Validation finding reported by the core or by a provider adapter."""

    severity: Severity
    summary: str
    attribute: str | None = None

    def __str__(self) -> str:
        location = f" ({self.attribute})" if self.attribute else ""
        return f"{self.severity}: {self.summary}{location}"


@dataclass(frozen=True, slots=True, kw_only=True)
class AttributeSchema:
    """Schema of one attribute.

    An attribute that is neither ``required``, ``optional`` nor ``computed`` is
    treated as optional. ``computed`` without ``optional`` means the attribute
    is owned by the provider and may not appear in configuration.
    """

    name: str
    type: AttributeType = AttributeType.ANY
    element_type: AttributeType = AttributeType.ANY
    required: bool = False
    optional: bool = False
    computed: bool = False
    forces_replacement: bool = False

    def __post_init__(self) -> None:
        if self.required and self.computed:
            raise ValueError(f"Attribute {self.name!r} cannot be both required and computed")
        if not (self.required or self.optional or self.computed):
            object.__setattr__(self, "optional", True)

    @property
    def configurable(self) -> bool:
        return self.required or self.optional

    @property
    def computed_only(self) -> bool:
        return self.computed and not self.configurable


@dataclass(frozen=True, slots=True)
class ResourceSchema:
    resource_type: str
    attributes: Mapping[str, AttributeSchema] = field(default_factory=dict)
    version: int = 0

    @classmethod
    def of(
        cls, resource_type: str, *attributes: AttributeSchema, version: int = 0
    ) -> ResourceSchema:
        return cls(resource_type, {attribute.name: attribute for attribute in attributes}, version)

    def attribute(self, name: str) -> AttributeSchema | None:
        return self.attributes.get(name)

    def type_of(self, name: str) -> AttributeType:
        attribute = self.attributes.get(name)
        return attribute.type if attribute is not None else AttributeType.ANY

    def forces_replacement(self, name: str) -> bool:
        attribute = self.attributes.get(name)
        return attribute is not None and attribute.forces_replacement

    def is_computed(self, name: str) -> bool:
        attribute = self.attributes.get(name)
        return attribute is not None and attribute.computed

    def validate_config(self, config: Mapping[str, object]) -> list[Diagnostic]:
        """Check ``config`` (possibly holding unknowns) against this schema."""

        diagnostics: list[Diagnostic] = []
        for name, value in config.items():
            attribute = self.attributes.get(name)
            if attribute is None:
                diagnostics.append(_error(f"Unsupported attribute for {self.resource_type}", name))
                continue
            if attribute.computed_only:
                diagnostics.append(_error("Attribute is computed by the provider", name))
                continue
            if value is None and attribute.required:
                diagnostics.append(_error("Required attribute must not be null", name))
                continue
            if not conforms(value, attribute.type, attribute.element_type):
                diagnostics.append(_error(f"Expected a value of type {attribute.type}", name))
        for name, attribute in self.attributes.items():
            if attribute.required and name not in config:
                diagnostics.append(_error("Missing required attribute", name))
        return diagnostics


def conforms(
    value: object,
    expected: AttributeType,
    element_type: AttributeType = AttributeType.ANY,
) -> bool:
    """Return whether a (possibly unknown) value matches ``expected``."""

    if value is None or value is UNKNOWN or isinstance(value, Reference | Interpolation):
        return True
    match expected:
        case AttributeType.ANY:
            return True
        case AttributeType.STRING:
            return isinstance(value, str)
        case AttributeType.NUMBER:
            return isinstance(value, int | float) and not isinstance(value, bool)
        case AttributeType.BOOL:
            return isinstance(value, bool)
        case AttributeType.LIST:
            return isinstance(value, list | tuple) and _elements_conform(value, element_type)
        case AttributeType.SET:
            return isinstance(value, list | tuple | set | frozenset) and _elements_conform(
                value, element_type
            )
        case AttributeType.MAP:
            return isinstance(value, dict) and _elements_conform(value.values(), element_type)
    return False


def _elements_conform(values: Iterable[object], element_type: AttributeType) -> bool:
    if element_type is AttributeType.ANY:
        return True
    return all(conforms(item, element_type) for item in values)


def _error(summary: str, attribute: str | None = None) -> Diagnostic:
    return Diagnostic(severity=Severity.ERROR, summary=summary, attribute=attribute)
