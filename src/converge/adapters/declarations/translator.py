"""Translate declaration documents into a configuration and provider registry."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from logging import getLogger
from typing import TYPE_CHECKING, Final, cast

from pydantic import ValidationError

from converge.adapters.http import HttpResourceProvider
from converge.config import HttpProviderConfig, RateLimit, require_env_vars
from converge.domain.errors import ConfigError
from converge.domain.model import (
    AttributeSchema,
    Configuration,
    Interpolation,
    Lifecycle,
    Reference,
    ResourceAddress,
    ResourceDeclaration,
    ResourceSchema,
)
from converge.domain.ports import ProviderRegistry

from .schema import DeclarationDocument, ProviderDocument, ResourceDocument

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping
    from pathlib import Path

    from converge.domain.model import InstanceKey

log = getLogger(__name__)

_PLACEHOLDER: Final = re.compile(r"\$\$\{|\$\{([^}]*)\}")
_SCOPE_PREFIXES: Final = ("count.", "each.")


class DeclarationFormatError(ConfigError):
    """Raised when a declaration document cannot be parsed or expanded."""


@dataclass(frozen=True, slots=True)
class LoadedDeclarations:
    configuration: Configuration
    providers: ProviderRegistry


def parse_expression(value: object, scope: Mapping[str, object] | None = None) -> object:
    """Turn ``${...}`` placeholders inside ``value`` into references.

    A string that is exactly one placeholder becomes the referenced value
    itself; placeholders embedded in text become an :class:`Interpolation`.
    ``count.index``, ``each.key`` and ``each.value`` are substituted from
    ``scope``. ``$${`` escapes a literal ``${``.
    """

    scope = scope or {}
    if isinstance(value, str):
        return _parse_string(value, scope)
    if isinstance(value, dict):
        return {str(key): parse_expression(item, scope) for key, item in value.items()}
    if isinstance(value, list):
        return [parse_expression(item, scope) for item in value]
    return value


def _parse_string(text: str, scope: Mapping[str, object]) -> object:
    parts: list[str | Reference] = []
    position = 0
    for match in _PLACEHOLDER.finditer(text):
        if match.start() > position:
            parts.append(text[position : match.start()])
        position = match.end()
        if match.group(0) == "$${":
            parts.append("${")
            continue
        expression = match.group(1).strip()
        if match.start() == 0 and match.end() == len(text):
            return _resolve_placeholder(expression, scope)
        resolved = _resolve_placeholder(expression, scope)
        parts.append(resolved if isinstance(resolved, Reference) else _render(resolved))
    if position < len(text):
        parts.append(text[position:])

    merged: list[str | Reference] = []
    for part in parts:
        if isinstance(part, str) and merged and isinstance(merged[-1], str):
            merged[-1] = merged[-1] + part
        else:
            merged.append(part)
    if not any(isinstance(part, Reference) for part in merged):
        return "".join(part for part in merged if isinstance(part, str))
    return Interpolation(tuple(merged))


def _resolve_placeholder(expression: str, scope: Mapping[str, object]) -> object:
    if expression in scope:
        return scope[expression]
    if expression.startswith(_SCOPE_PREFIXES):
        raise DeclarationFormatError(f"${{{expression}}} is not available here")
    try:
        return Reference.parse(expression)
    except ValueError as exc:
        raise DeclarationFormatError(f"Invalid reference ${{{expression}}}") from exc


def _render(value: object) -> str:
    return value if isinstance(value, str) else json.dumps(value)


def _expand(resource: ResourceDocument) -> Iterator[tuple[InstanceKey, dict[str, object]]]:
    if resource.count is not None:
        for index in range(resource.count):
            yield index, {"count.index": index}
    elif isinstance(resource.for_each, dict):
        for key, item in resource.for_each.items():
            yield key, {"each.key": key, "each.value": item}
    elif resource.for_each is not None:
        for key in resource.for_each:
            yield key, {"each.key": key, "each.value": key}
    else:
        yield None, {}


def _parse_address(text: str, *, context: str) -> ResourceAddress:
    try:
        return ResourceAddress.parse(text)
    except ValueError as exc:
        raise DeclarationFormatError(f"{context}: {exc}") from exc


def build_configuration(
    document: DeclarationDocument,
    *,
    provider_names: Mapping[str, str] | None = None,
) -> Configuration:
    """Expand ``count``/``for_each`` and parse every expression of ``document``."""

    provider_names = provider_names or {}
    declarations: list[ResourceDeclaration] = []
    for resource_type, named in document.resources.items():
        for name, resource in named.items():
            base = _parse_address(f"{resource_type}.{name}", context="resources")
            depends_on = tuple(
                _parse_address(entry, context=f"{base}.depends_on")
                for entry in resource.depends_on
            )
            lifecycle = Lifecycle(
                prevent_destroy=resource.lifecycle.prevent_destroy,
                create_before_destroy=resource.lifecycle.create_before_destroy,
                ignore_changes=frozenset(resource.lifecycle.ignore_changes),
            )
            for key, scope in _expand(resource):
                attributes = cast(
                    "dict[str, object]", parse_expression(resource.attributes, scope)
                )
                declarations.append(
                    ResourceDeclaration(
                        address=base.instance(key),
                        attributes=attributes,
                        depends_on=depends_on,
                        lifecycle=lifecycle,
                        tainted=resource.tainted,
                        provider=provider_names.get(resource_type),
                    )
                )
    outputs = {name: parse_expression(value) for name, value in document.outputs.items()}
    log.debug("Expanded %s declaration(s)", len(declarations))
    return Configuration(resources=declarations, outputs=outputs)


def provider_config(name: str, provider: ProviderDocument) -> HttpProviderConfig:
    headers = dict(provider.headers)
    if provider.headers_from_env:
        values = require_env_vars(list(provider.headers_from_env.values()))
        for header, variable in provider.headers_from_env.items():
            headers[header] = values[variable]
    ratelimit = (
        RateLimit(provider.ratelimit.max_calls, provider.ratelimit.per_seconds)
        if provider.ratelimit is not None
        else None
    )
    return HttpProviderConfig(
        name=name,
        base_url=provider.base_url,
        timeout_seconds=provider.timeout_seconds,
        ratelimit=ratelimit,
        default_headers=headers or None,
        transient_statuses=frozenset(provider.transient_statuses),
    )


def build_providers(
    document: DeclarationDocument,
    *,
    registry: ProviderRegistry | None = None,
) -> ProviderRegistry:
    """Register one :class:`HttpResourceProvider` per declared resource type."""

    registry = registry if registry is not None else ProviderRegistry()
    for name, provider in document.providers.items():
        config = provider_config(name, provider)
        for resource_type, resource in provider.resources.items():
            schema = ResourceSchema.of(
                resource_type,
                *(
                    AttributeSchema(
                        name=attribute_name,
                        type=attribute.type,
                        element_type=attribute.element_type,
                        required=attribute.required,
                        optional=attribute.optional,
                        computed=attribute.computed,
                        forces_replacement=attribute.forces_replacement,
                    )
                    for attribute_name, attribute in resource.attributes.items()
                ),
                version=resource.version,
            )
            try:
                adapter = HttpResourceProvider(
                    schema=schema,
                    config=config,
                    collection_path=resource.path,
                    id_attribute=resource.id_attribute,
                )
                registry.register(resource_type, adapter, provider_name=name)
            except ValueError as exc:
                raise DeclarationFormatError(f"providers.{name}.{resource_type}: {exc}") from exc
    return registry


def translate_document(
    document: DeclarationDocument,
    *,
    registry: ProviderRegistry | None = None,
) -> LoadedDeclarations:
    providers = build_providers(document, registry=registry)
    provider_names = {
        resource_type: name
        for name, provider in document.providers.items()
        for resource_type in provider.resources
    }
    configuration = build_configuration(document, provider_names=provider_names)
    return LoadedDeclarations(configuration=configuration, providers=providers)


def load_declarations(
    text: str | bytes,
    *,
    registry: ProviderRegistry | None = None,
) -> LoadedDeclarations:
    try:
        document = DeclarationDocument.model_validate_json(text)
    except ValidationError as exc:
        raise DeclarationFormatError(f"Invalid declaration document: {exc}") from exc
    return translate_document(document, registry=registry)


def read_declarations(
    path: Path,
    *,
    registry: ProviderRegistry | None = None,
) -> LoadedDeclarations:
    log.info("Loading declarations from %s", path)
    return load_declarations(path.read_bytes(), registry=registry)
