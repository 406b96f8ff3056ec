from __future__ import annotations

import copy

import pytest

from converge.domain.model import (
    UNKNOWN,
    Interpolation,
    Reference,
    ResourceAddress,
    contains_unknown,
    evaluate,
    iter_references,
)


def _values(reference: Reference) -> object:
    table: dict[str, object] = {
        "network.main.id": "net-1",
        "network.main.cidr": "10.0.0.0/16",
        "server.web[0].ip": UNKNOWN,
        "server.web[0].port": 8080,
    }
    return table[str(reference)]


def test_reference_parse_handles_instance_keys() -> None:
    reference = Reference.parse('server.web["a.b"].ip')

    assert reference.address == ResourceAddress("server", "web", "a.b")
    assert reference.attribute == "ip"


def test_reference_parse_rejects_missing_attribute() -> None:
    with pytest.raises(ValueError, match="Invalid"):
        Reference.parse("network")


def test_evaluate_replaces_nested_references() -> None:
    value = {
        "network_id": Reference.parse("network.main.id"),
        "rules": [{"cidr": Reference.parse("network.main.cidr")}],
        "label": "static",
    }

    assert evaluate(value, _values) == {
        "network_id": "net-1",
        "rules": [{"cidr": "10.0.0.0/16"}],
        "label": "static",
    }


def test_interpolation_renders_text() -> None:
    value = Interpolation(
        ("http://", Reference.parse("network.main.id"), ":", Reference.parse("server.web[0].port"))
    )

    assert evaluate(value, _values) == "http://net-1:8080"


def test_interpolation_touching_unknown_is_unknown() -> None:
    value = Interpolation(("ip=", Reference.parse("server.web[0].ip")))

    assert evaluate(value, _values) is UNKNOWN


def test_iter_references_walks_containers() -> None:
    value = {
        "a": [Reference.parse("network.main.id")],
        "b": Interpolation(("x", Reference.parse("server.web[0].ip"))),
    }

    assert [str(item) for item in iter_references(value)] == [
        "network.main.id",
        "server.web[0].ip",
    ]


def test_unknown_survives_copies_and_is_detected_in_containers() -> None:
    value = {"nested": [1, {"ip": UNKNOWN}]}

    assert copy.deepcopy(UNKNOWN) is UNKNOWN
    assert contains_unknown(copy.deepcopy(value))
    assert not contains_unknown({"nested": [1, 2]})
