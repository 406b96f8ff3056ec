"""Pydantic models describing persisted snapshot and saved plan documents."""

from __future__ import annotations

from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from converge.domain.model import InstanceStatus
from converge.domain.reconciliation import Action, ChangeReason, StepKind

FORMAT_VERSION = 1


class DocumentModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class InstanceDocument(DocumentModel):
    address: str
    provider: str
    schema_version: int = 0
    attributes: dict[str, Any] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)
    prevent_destroy: bool = False
    create_before_destroy: bool = False
    tainted: bool = False
    status: InstanceStatus = InstanceStatus.MANAGED
    deposed_key: str | None = None


class SnapshotDocument(DocumentModel):
    format_version: Literal[1] = FORMAT_VERSION
    lineage: UUID
    serial: int = Field(ge=0)
    resources: list[InstanceDocument] = Field(default_factory=list)
    deposed: list[InstanceDocument] = Field(default_factory=list)
    outputs: dict[str, Any] = Field(default_factory=dict)


class AttributeChangeDocument(DocumentModel):
    name: str
    before: Any = None
    after: Any = None
    forces_replacement: bool = False


class StepDocument(DocumentModel):
    address: str
    kind: StepKind
    deposed_key: str | None = None


class ChangeDocument(DocumentModel):
    address: str
    action: Action
    provider: str
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    config: dict[str, Any] | None = None
    attribute_changes: list[AttributeChangeDocument] = Field(default_factory=list)
    reasons: list[ChangeReason] = Field(default_factory=list)
    create_before_destroy: bool = False
    prevent_destroy: bool = False
    dependencies: list[str] = Field(default_factory=list)
    schema_version: int = 0
    deposed_key: str | None = None


class PlanDocument(DocumentModel):
    format_version: Literal[1] = FORMAT_VERSION
    lineage: UUID
    base_serial: int | None = None
    destroy: bool = False
    refreshed: bool = False
    changes: list[ChangeDocument] = Field(default_factory=list)
    steps: list[StepDocument] = Field(default_factory=list)
    edges: list[tuple[StepDocument, StepDocument]] = Field(default_factory=list)
    unchanged: list[str] = Field(default_factory=list)
    state_updates: dict[str, InstanceDocument | None] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)
