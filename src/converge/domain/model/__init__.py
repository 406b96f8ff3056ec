"""Public domain model surface."""

from __future__ import annotations

from converge.domain.model.address import InstanceKey, ResourceAddress, sorted_addresses
from converge.domain.model.declarations import Configuration, Lifecycle, ResourceDeclaration
from converge.domain.model.expressions import (
    ABSENT,
    UNKNOWN,
    Interpolation,
    Reference,
    contains_unknown,
    evaluate,
    is_unknown,
    iter_references,
)
from converge.domain.model.schema import (
    AttributeSchema,
    AttributeType,
    Diagnostic,
    ResourceSchema,
    Severity,
    conforms,
)
from converge.domain.model.state import (
    InstanceStatus,
    Lock,
    ResourceInstanceState,
    StateSnapshot,
    can_transition,
)

__all__ = [
    "ABSENT",
    "UNKNOWN",
    "AttributeSchema",
    "AttributeType",
    "Configuration",
    "Diagnostic",
    "InstanceKey",
    "InstanceStatus",
    "Interpolation",
    "Lifecycle",
    "Lock",
    "Reference",
    "ResourceAddress",
    "ResourceDeclaration",
    "ResourceInstanceState",
    "ResourceSchema",
    "Severity",
    "StateSnapshot",
    "can_transition",
    "conforms",
    "contains_unknown",
    "evaluate",
    "is_unknown",
    "iter_references",
    "sorted_addresses",
]
