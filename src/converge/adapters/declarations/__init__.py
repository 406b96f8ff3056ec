"""Public interface for the JSON declaration loader."""

from __future__ import annotations

from .schema import DeclarationDocument, ProviderDocument, ResourceDocument
from .translator import (
    DeclarationFormatError,
    LoadedDeclarations,
    build_configuration,
    build_providers,
    load_declarations,
    parse_expression,
    read_declarations,
    translate_document,
)

__all__ = [
    "DeclarationDocument",
    "DeclarationFormatError",
    "LoadedDeclarations",
    "ProviderDocument",
    "ResourceDocument",
    "build_configuration",
    "build_providers",
    "load_declarations",
    "parse_expression",
    "read_declarations",
    "translate_document",
]
