from __future__ import annotations

import pytest

from converge.domain.model import (
    UNKNOWN,
    AttributeSchema,
    AttributeType,
    Reference,
    ResourceSchema,
    conforms,
)
from tests.helpers.providers import server_schema


def test_unflagged_attributes_are_optional() -> None:
    attribute = AttributeSchema(name="size")

    assert attribute.optional
    assert attribute.configurable
    assert not attribute.computed_only


def test_required_and_computed_are_exclusive() -> None:
    with pytest.raises(ValueError, match="both required and computed"):
        AttributeSchema(name="id", required=True, computed=True)


def test_validate_config_reports_each_problem() -> None:
    schema = server_schema()

    diagnostics = schema.validate_config(
        {"id": "x", "size": 3, "colour": "red", "ports": [80, "443"]}
    )

    found = {(item.attribute, item.summary) for item in diagnostics}
    assert ("id", "Attribute is computed by the provider") in found
    assert ("size", "Expected a value of type string") in found
    assert ("colour", "Unsupported attribute for server") in found
    assert ("ports", "Expected a value of type set") in found
    assert ("name", "Missing required attribute") in found


def test_validate_config_accepts_placeholders() -> None:
    schema = server_schema()

    diagnostics = schema.validate_config(
        {"name": "web", "network_id": UNKNOWN, "size": Reference.parse("network.main.id")}
    )

    assert diagnostics == []


@pytest.mark.parametrize(
    ("value", "expected", "result"),
    [
        (True, AttributeType.NUMBER, False),
        (1.5, AttributeType.NUMBER, True),
        ({"a": 1}, AttributeType.MAP, True),
        ([1, 2], AttributeType.STRING, False),
        (None, AttributeType.STRING, True),
    ],
)
def test_conforms(value: object, expected: AttributeType, result: bool) -> None:
    assert conforms(value, expected) is result


def test_schema_lookup_helpers() -> None:
    schema = ResourceSchema.of(
        "disk",
        AttributeSchema(name="size", type=AttributeType.NUMBER, forces_replacement=True),
        version=2,
    )

    assert schema.version == 2
    assert schema.forces_replacement("size")
    assert not schema.forces_replacement("label")
    assert schema.type_of("label") is AttributeType.ANY
