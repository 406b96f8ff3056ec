"""Provider adapter mapping resource CRUD onto a REST collection."""

from __future__ import annotations

from dataclasses import dataclass, field
from logging import getLogger
from typing import TYPE_CHECKING

import httpx

from converge.adapters.http_resilience import ResilientClient, build_limiter
from converge.domain.errors import PermanentProviderError, TransientProviderError
from converge.domain.model import Diagnostic, Severity

from .translator import merge_attributes, parse_object, raise_for_status, request_body

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from aiolimiter import AsyncLimiter

    from converge.config import HttpProviderConfig
    from converge.domain.model import ResourceSchema
    from converge.domain.ports import Attributes, ProviderAdapter

    ClientFactory = Callable[[HttpProviderConfig, AsyncLimiter | None], ResilientClient]

log = getLogger(__name__)

_NOT_SENT = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)
_UNKNOWN_OUTCOME = (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)


def _default_client_factory(
    config: HttpProviderConfig, limiter: AsyncLimiter | None
) -> ResilientClient:
    return ResilientClient(config, limiter=limiter)


@dataclass(slots=True)
class HttpResourceProvider:
    """One resource type served as ``<collection_path>/<id>`` by a REST API.

    ``POST`` creates, ``GET`` reads (404 means the object is gone), ``PUT``
    replaces the configurable attributes and ``DELETE`` removes (404 counts
    as already deleted). The schema must declare ``id_attribute`` as computed.
    """

    schema: ResourceSchema
    config: HttpProviderConfig
    collection_path: str
    id_attribute: str = "id"
    client_factory: ClientFactory = field(default=_default_client_factory)
    _limiter: AsyncLimiter | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        attribute = self.schema.attribute(self.id_attribute)
        if attribute is None or not attribute.computed:
            raise ValueError(
                f"Schema of {self.schema.resource_type} must declare a computed "
                f"{self.id_attribute!r} attribute"
            )
        self.collection_path = "/" + self.collection_path.strip("/")
        self._limiter = build_limiter(self.config.ratelimit)

    def validate(self, config: Mapping[str, object]) -> list[Diagnostic]:
        if self.id_attribute in config:
            return [
                Diagnostic(
                    severity=Severity.ERROR,
                    summary="Identifier is assigned by the remote API",
                    attribute=self.id_attribute,
                )
            ]
        return []

    async def create(self, config: Attributes, *, timeout: float | None = None) -> Attributes:
        response = await self._call(
            lambda client: client.post(
                self.collection_path,
                json=request_body(self.schema, config),
                timeout=self._timeout(timeout),
            ),
            idempotent=False,
        )
        created = merge_attributes(self.schema, config, parse_object(response))
        if created.get(self.id_attribute) is None:
            raise PermanentProviderError(
                f"Create of {self.schema.resource_type} returned no {self.id_attribute!r}"
            )
        log.info("Created %s %s", self.schema.resource_type, created[self.id_attribute])
        return created

    async def read(self, prior: Attributes, *, timeout: float | None = None) -> Attributes | None:
        response = await self._call(
            lambda client: client.get(self._item_path(prior), timeout=self._timeout(timeout)),
            missing_ok=True,
        )
        if response.status_code == httpx.codes.NOT_FOUND:
            return None
        return merge_attributes(self.schema, prior, parse_object(response))

    async def update(
        self,
        prior: Attributes,
        desired: Attributes,
        *,
        timeout: float | None = None,
    ) -> Attributes:
        path = self._item_path(prior)
        response = await self._call(
            lambda client: client.put(
                path,
                json=request_body(self.schema, desired),
                timeout=self._timeout(timeout),
            )
        )
        base = {**desired, self.id_attribute: prior[self.id_attribute]}
        body = parse_object(response) if response.content else {}
        return merge_attributes(self.schema, base, body)

    async def delete(self, prior: Attributes, *, timeout: float | None = None) -> None:
        response = await self._call(
            lambda client: client.delete(self._item_path(prior), timeout=self._timeout(timeout)),
            missing_ok=True,
        )
        if response.status_code == httpx.codes.NOT_FOUND:
            log.info(
                "%s %s was already gone", self.schema.resource_type, prior.get(self.id_attribute)
            )

    async def _call(
        self,
        send: Callable[[ResilientClient], Awaitable[httpx.Response]],
        *,
        missing_ok: bool = False,
        idempotent: bool = True,
    ) -> httpx.Response:
        """Send one request and classify failures.

        Transport errors are transient, except that a non-idempotent request
        may only be retried when it never left this process.
        """

        try:
            async with self.client_factory(self.config, self._limiter) as client:
                response = await send(client)
        except _NOT_SENT as exc:
            raise TransientProviderError(
                f"{self.config.name}: {type(exc).__name__}: {exc}"
            ) from exc
        except _UNKNOWN_OUTCOME as exc:
            if not idempotent:
                raise PermanentProviderError(
                    f"{self.config.name}: {type(exc).__name__} after the request was sent, "
                    f"its outcome is unknown: {exc}"
                ) from exc
            raise TransientProviderError(
                f"{self.config.name}: {type(exc).__name__}: {exc}"
            ) from exc
        except httpx.HTTPError as exc:
            raise PermanentProviderError(f"{self.config.name}: {exc}") from exc
        if missing_ok and response.status_code == httpx.codes.NOT_FOUND:
            return response
        raise_for_status(response, transient_statuses=self.config.transient_statuses)
        return response

    def _item_path(self, prior: Mapping[str, object]) -> str:
        identifier = prior.get(self.id_attribute)
        if identifier is None:
            raise PermanentProviderError(
                f"Recorded {self.schema.resource_type} has no {self.id_attribute!r}"
            )
        return f"{self.collection_path}/{identifier}"

    def _timeout(self, timeout: float | None) -> float:
        return timeout if timeout is not None else self.config.timeout_seconds


if TYPE_CHECKING:
    _provider_check: type[ProviderAdapter] = HttpResourceProvider
