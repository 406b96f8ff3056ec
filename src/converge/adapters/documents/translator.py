"""Translate snapshots and plans to and from their JSON documents.

Values are plain JSON except for a few tagged objects:

- ``{"$unknown": true}`` and ``{"$absent": true}`` for the placeholders
- ``{"$ref": "type.name.attr"}`` for references
- ``{"$template": [...]}`` for interpolations
- ``{"$set": [...]}`` for sets
- ``{"$map": {...}}`` for mappings whose keys start with ``$``
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, cast

from converge.domain.model import (
    ABSENT,
    UNKNOWN,
    Interpolation,
    Reference,
    ResourceAddress,
    ResourceInstanceState,
    StateSnapshot,
)
from converge.domain.reconciliation import (
    AttributeChange,
    Change,
    DependencyGraph,
    Plan,
    StepKey,
)

from .schema import (
    AttributeChangeDocument,
    ChangeDocument,
    InstanceDocument,
    PlanDocument,
    SnapshotDocument,
    StepDocument,
)

if TYPE_CHECKING:
    from collections.abc import Mapping

    from converge.domain.reconciliation import StepGraph

_TAGS = frozenset({"$unknown", "$absent", "$ref", "$template", "$set", "$map"})


class DocumentFormatError(ValueError):
    """Raised when a document holds a value that cannot be decoded."""


def encode_value(value: object) -> Any:
    if value is UNKNOWN:
        return {"$unknown": True}
    if value is ABSENT:
        return {"$absent": True}
    if isinstance(value, Reference):
        return {"$ref": str(value)}
    if isinstance(value, Interpolation):
        return {
            "$template": [
                part if isinstance(part, str) else {"$ref": str(part)} for part in value.parts
            ]
        }
    if isinstance(value, set | frozenset):
        return {"$set": [encode_value(item) for item in cast("set[object]", value)]}
    if isinstance(value, list | tuple):
        return [encode_value(item) for item in cast("list[object]", value)]
    if isinstance(value, dict):
        mapping = cast("dict[object, object]", value)
        encoded = {str(key): encode_value(item) for key, item in mapping.items()}
        if any(key.startswith("$") for key in encoded):
            return {"$map": encoded}
        return encoded
    if value is None or isinstance(value, str | int | float | bool):
        return value
    raise DocumentFormatError(f"Cannot encode value of type {type(value).__name__}")


def decode_value(value: Any) -> object:
    if isinstance(value, list):
        return [decode_value(item) for item in cast("list[Any]", value)]
    if not isinstance(value, dict):
        return value
    mapping = cast("dict[str, Any]", value)
    if len(mapping) == 1:
        ((tag, payload),) = mapping.items()
        if tag in _TAGS:
            return _decode_tagged(tag, payload)
    return {key: decode_value(item) for key, item in mapping.items()}


def _decode_tagged(tag: str, payload: Any) -> object:
    if tag == "$unknown":
        return UNKNOWN
    if tag == "$absent":
        return ABSENT
    if tag == "$ref":
        return Reference.parse(str(payload))
    if tag == "$template":
        parts: list[str | Reference] = []
        for part in cast("list[Any]", payload):
            decoded = decode_value(part)
            if not isinstance(decoded, str | Reference):
                raise DocumentFormatError(f"Invalid template part: {part!r}")
            parts.append(decoded)
        return Interpolation(tuple(parts))
    if tag == "$set":
        return {decode_value(item) for item in cast("list[Any]", payload)}
    return {key: decode_value(item) for key, item in cast("dict[str, Any]", payload).items()}


def _encode_attributes(attributes: Mapping[str, object] | None) -> dict[str, Any] | None:
    if attributes is None:
        return None
    return {name: encode_value(value) for name, value in attributes.items()}


def _decode_attributes(attributes: Mapping[str, Any] | None) -> dict[str, object] | None:
    if attributes is None:
        return None
    return {name: decode_value(value) for name, value in attributes.items()}


# Snapshots --------------------------------------------------------------------


def instance_to_document(instance: ResourceInstanceState) -> InstanceDocument:
    return InstanceDocument(
        address=str(instance.address),
        provider=instance.provider,
        schema_version=instance.schema_version,
        attributes=_encode_attributes(instance.attributes) or {},
        dependencies=[str(address) for address in instance.dependencies],
        prevent_destroy=instance.prevent_destroy,
        create_before_destroy=instance.create_before_destroy,
        tainted=instance.tainted,
        status=instance.status,
        deposed_key=instance.deposed_key,
    )


def instance_from_document(document: InstanceDocument) -> ResourceInstanceState:
    return ResourceInstanceState(
        address=ResourceAddress.parse(document.address),
        attributes=_decode_attributes(document.attributes) or {},
        provider=document.provider,
        schema_version=document.schema_version,
        dependencies=tuple(ResourceAddress.parse(item) for item in document.dependencies),
        prevent_destroy=document.prevent_destroy,
        create_before_destroy=document.create_before_destroy,
        tainted=document.tainted,
        status=document.status,
        deposed_key=document.deposed_key,
    )


def snapshot_to_document(snapshot: StateSnapshot) -> SnapshotDocument:
    return SnapshotDocument(
        lineage=snapshot.lineage,
        serial=snapshot.serial,
        resources=[instance_to_document(item) for item in snapshot.resources.values()],
        deposed=[instance_to_document(item) for item in snapshot.deposed.values()],
        outputs=_encode_attributes(snapshot.outputs) or {},
    )


def snapshot_from_document(document: SnapshotDocument) -> StateSnapshot:
    snapshot = StateSnapshot(
        lineage=document.lineage,
        serial=document.serial,
        outputs=_decode_attributes(document.outputs) or {},
    )
    for item in document.resources:
        instance = instance_from_document(item)
        if instance.address in snapshot:
            raise DocumentFormatError(f"Duplicate address in snapshot: {instance.address}")
        snapshot.put(instance)
    for item in document.deposed:
        instance = instance_from_document(item)
        if instance.deposed_key is None:
            raise DocumentFormatError(f"Deposed object of {instance.address} has no key")
        snapshot.deposed[instance.deposed_key] = instance
    return snapshot


def dump_snapshot(snapshot: StateSnapshot, *, indent: int | None = None) -> str:
    return snapshot_to_document(snapshot).model_dump_json(indent=indent)


def load_snapshot(payload: str | bytes) -> StateSnapshot:
    return snapshot_from_document(SnapshotDocument.model_validate_json(payload))


# Plans ------------------------------------------------------------------------


def _step_to_document(step: StepKey) -> StepDocument:
    return StepDocument(address=str(step.address), kind=step.kind, deposed_key=step.deposed_key)


def _step_from_document(document: StepDocument) -> StepKey:
    return StepKey(ResourceAddress.parse(document.address), document.kind, document.deposed_key)


def _change_to_document(change: Change) -> ChangeDocument:
    return ChangeDocument(
        address=str(change.address),
        action=change.action,
        provider=change.provider,
        before=_encode_attributes(change.before),
        after=_encode_attributes(change.after),
        config=_encode_attributes(change.config),
        attribute_changes=[
            AttributeChangeDocument(
                name=item.name,
                before=encode_value(item.before),
                after=encode_value(item.after),
                forces_replacement=item.forces_replacement,
            )
            for item in change.attribute_changes
        ],
        reasons=sorted(change.reasons),
        create_before_destroy=change.create_before_destroy,
        prevent_destroy=change.prevent_destroy,
        dependencies=[str(address) for address in change.dependencies],
        schema_version=change.schema_version,
        deposed_key=change.deposed_key,
    )


def _change_from_document(document: ChangeDocument) -> Change:
    return Change(
        address=ResourceAddress.parse(document.address),
        action=document.action,
        provider=document.provider,
        before=_decode_attributes(document.before),
        after=_decode_attributes(document.after),
        config=_decode_attributes(document.config),
        attribute_changes=tuple(
            AttributeChange(
                name=item.name,
                before=decode_value(item.before),
                after=decode_value(item.after),
                forces_replacement=item.forces_replacement,
            )
            for item in document.attribute_changes
        ),
        reasons=frozenset(document.reasons),
        create_before_destroy=document.create_before_destroy,
        prevent_destroy=document.prevent_destroy,
        dependencies=tuple(ResourceAddress.parse(item) for item in document.dependencies),
        schema_version=document.schema_version,
        deposed_key=document.deposed_key,
    )


def plan_to_document(plan: Plan) -> PlanDocument:
    return PlanDocument(
        lineage=plan.lineage,
        base_serial=plan.base_serial,
        destroy=plan.destroy,
        refreshed=plan.refreshed,
        changes=[_change_to_document(change) for change in plan.changes],
        steps=[_step_to_document(step) for step in plan.steps],
        edges=[
            (_step_to_document(dependency), _step_to_document(dependent))
            for dependency, dependent in plan.graph.edges
        ],
        unchanged=[str(address) for address in plan.unchanged],
        state_updates={
            str(address): None if instance is None else instance_to_document(instance)
            for address, instance in plan.state_updates.items()
        },
        outputs=_encode_attributes(plan.outputs) or {},
    )


def plan_from_document(document: PlanDocument) -> Plan:
    graph: StepGraph = DependencyGraph()
    steps = [_step_from_document(item) for item in document.steps]
    for step in steps:
        graph.add_node(step)
    for dependency, dependent in document.edges:
        graph.add_edge(_step_from_document(dependency), _step_from_document(dependent))
    graph.validate()
    return Plan(
        lineage=document.lineage,
        base_serial=document.base_serial,
        changes=[_change_from_document(item) for item in document.changes],
        graph=graph,
        steps=steps,
        unchanged=tuple(ResourceAddress.parse(item) for item in document.unchanged),
        state_updates={
            ResourceAddress.parse(address): None
            if instance is None
            else instance_from_document(instance)
            for address, instance in document.state_updates.items()
        },
        outputs=_decode_attributes(document.outputs) or {},
        destroy=document.destroy,
        refreshed=document.refreshed,
    )


def dump_plan(plan: Plan, *, indent: int | None = 2) -> str:
    return plan_to_document(plan).model_dump_json(indent=indent)


def load_plan(payload: str | bytes) -> Plan:
    return plan_from_document(PlanDocument.model_validate_json(payload))
