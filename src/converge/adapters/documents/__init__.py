"""JSON documents for persisted snapshots and saved plans."""

from __future__ import annotations

from .schema import FORMAT_VERSION, PlanDocument, SnapshotDocument
from .translator import (
    DocumentFormatError,
    decode_value,
    dump_plan,
    dump_snapshot,
    encode_value,
    load_plan,
    load_snapshot,
    plan_from_document,
    plan_to_document,
    snapshot_from_document,
    snapshot_to_document,
)

__all__ = [
    "FORMAT_VERSION",
    "DocumentFormatError",
    "PlanDocument",
    "SnapshotDocument",
    "decode_value",
    "dump_plan",
    "dump_snapshot",
    "encode_value",
    "load_plan",
    "load_snapshot",
    "plan_from_document",
    "plan_to_document",
    "snapshot_from_document",
    "snapshot_to_document",
]
