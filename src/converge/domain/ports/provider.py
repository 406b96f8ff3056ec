"""Provider adapter port: per-resource-type CRUD plus schema."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from converge.domain.errors import ConfigError

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

    from converge.domain.model import Diagnostic, ResourceSchema

type Attributes = dict[str, object]


@runtime_checkable
class ProviderAdapter(Protocol):
    """CRUD contract for one resource type.

    Implementations signal retryable failures with
    :class:`~converge.domain.errors.TransientProviderError`; every other
    exception fails the change immediately. ``timeout`` is the per-change
    timeout configured on the executor and is only advisory.
    """

    @property
    def schema(self) -> ResourceSchema: ...

    def validate(self, config: Mapping[str, object]) -> list[Diagnostic]: ...

    async def create(self, config: Attributes, *, timeout: float | None = None) -> Attributes: ...

    async def read(self, prior: Attributes, *, timeout: float | None = None) -> Attributes | None:
        """Return current attributes, or ``None`` when the object no longer exists."""
        ...

    async def update(
        self,
        prior: Attributes,
        desired: Attributes,
        *,
        timeout: float | None = None,
    ) -> Attributes: ...

    async def delete(self, prior: Attributes, *, timeout: float | None = None) -> None: ...


@dataclass(slots=True)
class ProviderRegistry:
    """Resource type -> adapter lookup, with the provider name recorded in state."""

    _adapters: dict[str, ProviderAdapter] = field(
        default_factory=dict[str, "ProviderAdapter"], repr=False
    )
    _provider_names: dict[str, str] = field(default_factory=dict[str, str], repr=False)

    def register(
        self,
        resource_type: str,
        adapter: ProviderAdapter,
        *,
        provider_name: str | None = None,
    ) -> None:
        if resource_type in self._adapters:
            raise ValueError(f"Adapter already registered for resource type {resource_type!r}")
        self._adapters[resource_type] = adapter
        self._provider_names[resource_type] = provider_name or resource_type

    def adapter_for(self, resource_type: str) -> ProviderAdapter:
        adapter = self._adapters.get(resource_type)
        if adapter is None:
            raise ConfigError(f"No provider adapter registered for resource type {resource_type!r}")
        return adapter

    def schema_for(self, resource_type: str) -> ResourceSchema:
        return self.adapter_for(resource_type).schema

    def provider_name(self, resource_type: str) -> str:
        self.adapter_for(resource_type)
        return self._provider_names[resource_type]

    def __contains__(self, resource_type: object) -> bool:
        return resource_type in self._adapters

    def __iter__(self) -> Iterator[str]:
        return iter(self._adapters)
