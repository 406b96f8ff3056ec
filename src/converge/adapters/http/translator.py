"""Translate between engine attributes and REST payloads."""

from __future__ import annotations

from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from logging import getLogger
from typing import TYPE_CHECKING

from pydantic import ValidationError

from converge.domain.errors import PermanentProviderError, TransientProviderError

from .schema import ErrorResponse, ObjectResponse

if TYPE_CHECKING:
    from collections.abc import Mapping

    import httpx

    from converge.domain.model import ResourceSchema
    from converge.domain.ports import Attributes

log = getLogger(__name__)


def request_body(schema: ResourceSchema, config: Mapping[str, object]) -> dict[str, object]:
    """Return the configurable attributes of ``config`` as a JSON body."""

    body: dict[str, object] = {}
    for name, value in config.items():
        attribute = schema.attribute(name)
        if attribute is None or attribute.computed_only:
            continue
        body[name] = sorted(value, key=repr) if isinstance(value, set | frozenset) else value
    return body


def parse_object(response: httpx.Response) -> dict[str, object]:
    try:
        return ObjectResponse.model_validate(response.json()).attributes
    except (ValueError, ValidationError) as exc:
        raise PermanentProviderError(
            f"{response.request.method} {response.request.url} returned an unreadable body"
        ) from exc


def merge_attributes(
    schema: ResourceSchema,
    base: Mapping[str, object],
    remote: Mapping[str, object],
) -> Attributes:
    """Overlay the remote view of an object on ``base``, keeping only schema attributes.

    Attributes absent from ``remote`` keep their ``base`` value (write-only
    fields such as secrets are never echoed back by most APIs).
    """

    merged: Attributes = {name: value for name, value in base.items() if name in schema.attributes}
    for name, value in remote.items():
        if name in schema.attributes:
            merged[name] = value
    return merged


def retry_after_seconds(value: str | None, *, now: datetime | None = None) -> float | None:
    """Parse a ``Retry-After`` header given as delta-seconds or an HTTP date."""

    if value is None or not value.strip():
        return None
    text = value.strip()
    try:
        return max(0.0, float(text))
    except ValueError:
        pass
    try:
        moment = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        log.debug("Ignoring malformed Retry-After header %r", value)
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return max(0.0, (moment - (now or datetime.now(UTC))).total_seconds())


def error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = response.text
    prefix = f"{response.request.method} {response.request.url} failed with {response.status_code}"
    try:
        detail = ErrorResponse.model_validate(payload)
    except ValidationError:
        return prefix
    return f"{prefix}: {detail.message}" if detail.message else prefix


def raise_for_status(response: httpx.Response, *, transient_statuses: frozenset[int]) -> None:
    """Map an unsuccessful response onto the provider error taxonomy."""

    if response.is_success:
        return
    message = error_message(response)
    if response.status_code in transient_statuses:
        raise TransientProviderError(
            message,
            retry_after=retry_after_seconds(response.headers.get("Retry-After")),
        )
    raise PermanentProviderError(message)
