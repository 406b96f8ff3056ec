"""Public interface for the REST provider adapter."""

from __future__ import annotations

from .provider import HttpResourceProvider
from .schema import ErrorResponse, ObjectResponse
from .translator import merge_attributes, raise_for_status, request_body, retry_after_seconds

__all__ = [
    "ErrorResponse",
    "HttpResourceProvider",
    "ObjectResponse",
    "merge_attributes",
    "raise_for_status",
    "request_body",
    "retry_after_seconds",
]
