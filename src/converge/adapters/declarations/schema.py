"""Pydantic models describing a declaration document.

Example::

    {
      "providers": {
        "inventory": {
          "base_url": "https://inventory.example.com/api",
          "headers_from_env": {"Authorization": "INVENTORY_TOKEN"},
          "resources": {
            "inventory_network": {
              "path": "/networks",
              "attributes": {
                "id": {"type": "string", "computed": true},
                "cidr": {"type": "string", "required": true, "forces_replacement": true}
              }
            }
          }
        }
      },
      "resources": {
        "inventory_network": {
          "main": {"attributes": {"cidr": "10.0.0.0/16"}}
        }
      },
      "outputs": {"network_id": "${inventory_network.main.id}"}
    }
"""

from __future__ import annotations

from typing import Any, Literal, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

from converge.config import DEFAULT_TRANSIENT_STATUSES
from converge.domain.model import AttributeType

FORMAT_VERSION = 1


class DeclarationModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class RateLimitDocument(DeclarationModel):
    max_calls: int = Field(gt=0)
    per_seconds: float = Field(gt=0)


class AttributeSchemaDocument(DeclarationModel):
    type: AttributeType = AttributeType.ANY
    element_type: AttributeType = AttributeType.ANY
    required: bool = False
    optional: bool = False
    computed: bool = False
    forces_replacement: bool = False

    @model_validator(mode="after")
    def _check_flags(self) -> Self:
        if self.required and self.computed:
            raise ValueError("an attribute cannot be both required and computed")
        return self


class ResourceTypeDocument(DeclarationModel):
    path: str
    id_attribute: str = "id"
    version: int = Field(default=0, ge=0)
    attributes: dict[str, AttributeSchemaDocument] = Field(default_factory=dict)


class ProviderDocument(DeclarationModel):
    type: Literal["http"] = "http"
    base_url: str
    timeout_seconds: float = Field(default=30.0, gt=0)
    ratelimit: RateLimitDocument | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    headers_from_env: dict[str, str] = Field(default_factory=dict)
    transient_statuses: list[int] = Field(
        default_factory=lambda: sorted(DEFAULT_TRANSIENT_STATUSES)
    )
    resources: dict[str, ResourceTypeDocument] = Field(default_factory=dict)


class LifecycleDocument(DeclarationModel):
    prevent_destroy: bool = False
    create_before_destroy: bool = False
    ignore_changes: list[str] = Field(default_factory=list)


class ResourceDocument(DeclarationModel):
    count: int | None = Field(default=None, ge=0)
    for_each: list[str] | dict[str, Any] | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list)
    lifecycle: LifecycleDocument = Field(default_factory=LifecycleDocument)
    tainted: bool = False

    @model_validator(mode="after")
    def _check_expansion(self) -> Self:
        if self.count is not None and self.for_each is not None:
            raise ValueError("count and for_each are mutually exclusive")
        if isinstance(self.for_each, list) and len(set(self.for_each)) != len(self.for_each):
            raise ValueError("for_each keys must be unique")
        return self


class DeclarationDocument(DeclarationModel):
    format_version: Literal[1] = FORMAT_VERSION
    providers: dict[str, ProviderDocument] = Field(default_factory=dict)
    resources: dict[str, dict[str, ResourceDocument]] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)
