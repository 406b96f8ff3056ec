from __future__ import annotations

import asyncio
import json
from collections.abc import Callable  # noqa: TC003
from dataclasses import dataclass, field

import httpx
import pytest

from converge.adapters.http import HttpResourceProvider
from converge.adapters.http_resilience import ResilientClient
from converge.config import HttpProviderConfig, RateLimit
from converge.domain.errors import PermanentProviderError, TransientProviderError
from converge.domain.model import AttributeSchema, AttributeType, ResourceSchema
from converge.domain.reconciliation import RetryPolicy, call_with_retry

CONFIG = HttpProviderConfig(
    name="cloud",
    base_url="https://api.example.test/v1",
    default_headers={"Authorization": "Bearer token"},
)


def bucket_schema() -> ResourceSchema:
    return ResourceSchema.of(
        "bucket",
        AttributeSchema(name="id", type=AttributeType.STRING, computed=True),
        AttributeSchema(name="name", type=AttributeType.STRING, required=True),
        AttributeSchema(name="region", type=AttributeType.STRING, optional=True),
        AttributeSchema(
            name="readers",
            type=AttributeType.SET,
            element_type=AttributeType.STRING,
            optional=True,
        ),
        AttributeSchema(name="url", type=AttributeType.STRING, computed=True),
    )


@dataclass
class FakeApi:
    """In-memory REST collection at ``/v1/buckets``."""

    objects: dict[str, dict[str, object]] = field(default_factory=dict[str, "dict[str, object]"])
    requests: list[httpx.Request] = field(default_factory=list[httpx.Request])
    queued: list[httpx.Response] = field(default_factory=list[httpx.Response])
    counter: int = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.queued:
            return self.queued.pop(0)
        path = request.url.path.removeprefix("/v1/buckets").strip("/")
        if request.method == "POST" and not path:
            self.counter += 1
            body = json.loads(request.content)
            created = {
                **body,
                "id": f"b-{self.counter}",
                "url": f"https://b-{self.counter}.example.test",
            }
            self.objects[created["id"]] = created
            return httpx.Response(201, json=created)
        current = self.objects.get(path)
        if current is None:
            return httpx.Response(404, json={"error": "not found"})
        if request.method == "GET":
            return httpx.Response(200, json={"data": current})
        if request.method == "PUT":
            current.update(json.loads(request.content))
            return httpx.Response(200, json=current)
        if request.method == "DELETE":
            del self.objects[path]
            return httpx.Response(204)
        return httpx.Response(405)


def _make_client_factory(
    handler: Callable[[httpx.Request], httpx.Response],
) -> Callable[..., ResilientClient]:
    async def async_handler(request: httpx.Request) -> httpx.Response:
        return handler(request)

    def factory(config: HttpProviderConfig, limiter: object) -> ResilientClient:
        return ResilientClient(
            config,
            limiter=limiter,  # type: ignore[arg-type]
            transport=httpx.MockTransport(async_handler),
        )

    return factory


@pytest.fixture
def api() -> FakeApi:
    return FakeApi()


@pytest.fixture
def provider(api: FakeApi) -> HttpResourceProvider:
    return HttpResourceProvider(
        schema=bucket_schema(),
        config=CONFIG,
        collection_path="buckets/",
        client_factory=_make_client_factory(api),
    )


def test_create_posts_configurable_attributes(provider: HttpResourceProvider, api: FakeApi) -> None:
    created = asyncio.run(
        provider.create({"name": "logs", "readers": {"ops", "dev"}, "colour": "blue"})
    )

    assert created == {
        "id": "b-1",
        "name": "logs",
        "readers": ["dev", "ops"],
        "url": "https://b-1.example.test",
    }
    request = api.requests[0]
    assert request.method == "POST"
    assert str(request.url) == "https://api.example.test/v1/buckets"
    assert request.headers["Authorization"] == "Bearer token"
    assert json.loads(request.content) == {"name": "logs", "readers": ["dev", "ops"]}


def test_read_unwraps_the_object(provider: HttpResourceProvider, api: FakeApi) -> None:
    api.objects["b-7"] = {"id": "b-7", "name": "logs", "region": "eu", "owner": "someone"}

    current = asyncio.run(provider.read({"id": "b-7", "name": "logs", "url": "https://b-7"}))

    assert current == {"id": "b-7", "name": "logs", "region": "eu", "url": "https://b-7"}
    assert str(api.requests[0].url) == "https://api.example.test/v1/buckets/b-7"


def test_read_of_missing_object_returns_none(provider: HttpResourceProvider) -> None:
    assert asyncio.run(provider.read({"id": "b-404"})) is None


def test_update_puts_desired_attributes(provider: HttpResourceProvider, api: FakeApi) -> None:
    api.objects["b-1"] = {"id": "b-1", "name": "logs", "region": "eu", "url": "https://b-1"}

    updated = asyncio.run(
        provider.update({"id": "b-1", "name": "logs"}, {"name": "logs", "region": "us"})
    )

    assert updated == {"id": "b-1", "name": "logs", "region": "us", "url": "https://b-1"}
    assert api.requests[0].method == "PUT"
    assert json.loads(api.requests[0].content) == {"name": "logs", "region": "us"}


def test_update_accepts_an_empty_response(provider: HttpResourceProvider, api: FakeApi) -> None:
    api.queued.append(httpx.Response(204))

    updated = asyncio.run(provider.update({"id": "b-1"}, {"name": "logs"}))

    assert updated == {"id": "b-1", "name": "logs"}


def test_delete_tolerates_missing_objects(provider: HttpResourceProvider, api: FakeApi) -> None:
    api.objects["b-1"] = {"id": "b-1", "name": "logs"}

    asyncio.run(provider.delete({"id": "b-1"}))
    asyncio.run(provider.delete({"id": "b-1"}))

    assert api.objects == {}
    assert [request.method for request in api.requests] == ["DELETE", "DELETE"]


def test_rate_limited_responses_are_transient(
    provider: HttpResourceProvider, api: FakeApi
) -> None:
    api.queued.append(httpx.Response(429, headers={"Retry-After": "3"}, json={"detail": "slow"}))

    with pytest.raises(TransientProviderError) as exc:
        asyncio.run(provider.create({"name": "logs"}))

    assert exc.value.retry_after == 3.0
    assert "failed with 429: slow" in str(exc.value)


def test_client_errors_are_permanent(provider: HttpResourceProvider, api: FakeApi) -> None:
    api.queued.append(httpx.Response(422, json={"message": "name taken", "code": "E_TAKEN"}))

    with pytest.raises(PermanentProviderError, match="name taken"):
        asyncio.run(provider.create({"name": "logs"}))


def test_unreadable_bodies_are_permanent(provider: HttpResourceProvider, api: FakeApi) -> None:
    api.queued.append(httpx.Response(201, text="created!"))

    with pytest.raises(PermanentProviderError, match="unreadable body"):
        asyncio.run(provider.create({"name": "logs"}))


def test_create_without_identifier_fails(provider: HttpResourceProvider, api: FakeApi) -> None:
    api.queued.append(httpx.Response(201, json={"name": "logs"}))

    with pytest.raises(PermanentProviderError, match="returned no 'id'"):
        asyncio.run(provider.create({"name": "logs"}))


def test_network_failures_are_transient(provider: HttpResourceProvider) -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    provider.client_factory = _make_client_factory(refuse)

    with pytest.raises(TransientProviderError, match="ConnectError"):
        asyncio.run(provider.read({"id": "b-1"}))


def test_create_with_unknown_outcome_is_not_retried(
    provider: HttpResourceProvider, api: FakeApi
) -> None:
    def create_then_time_out(request: httpx.Request) -> httpx.Response:
        response = api(request)
        if len(api.objects) == 1:
            raise httpx.ReadTimeout("no response", request=request)
        return response

    provider.client_factory = _make_client_factory(create_then_time_out)
    policy = RetryPolicy(max_attempts=3, backoff_factor=0.0, jitter=0.0)

    with pytest.raises(PermanentProviderError, match="outcome is unknown"):
        asyncio.run(
            call_with_retry(
                lambda: provider.create({"name": "logs"}), policy=policy, description="create"
            )
        )

    assert list(api.objects) == ["b-1"]


def test_create_that_never_connected_is_transient(provider: HttpResourceProvider) -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("connect timed out", request=request)

    provider.client_factory = _make_client_factory(refuse)

    with pytest.raises(TransientProviderError, match="ConnectTimeout"):
        asyncio.run(provider.create({"name": "logs"}))


def test_read_timeouts_are_transient(provider: HttpResourceProvider) -> None:
    def time_out(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("no response", request=request)

    provider.client_factory = _make_client_factory(time_out)

    with pytest.raises(TransientProviderError, match="ReadTimeout"):
        asyncio.run(provider.read({"id": "b-1"}))


def test_recorded_object_needs_an_identifier(provider: HttpResourceProvider) -> None:
    with pytest.raises(PermanentProviderError, match="has no 'id'"):
        asyncio.run(provider.delete({"name": "logs"}))


def test_validate_rejects_assigned_identifiers(provider: HttpResourceProvider) -> None:
    (diagnostic,) = provider.validate({"id": "mine", "name": "logs"})

    assert diagnostic.attribute == "id"
    assert provider.validate({"name": "logs"}) == []


def test_schema_must_compute_the_identifier() -> None:
    schema = ResourceSchema.of(
        "bucket", AttributeSchema(name="id", type=AttributeType.STRING, optional=True)
    )

    with pytest.raises(ValueError, match="computed 'id'"):
        HttpResourceProvider(schema=schema, config=CONFIG, collection_path="buckets")


def test_rate_limit_is_shared_between_calls(api: FakeApi) -> None:
    limited = HttpProviderConfig(
        name="cloud",
        base_url="https://api.example.test/v1",
        ratelimit=RateLimit(max_calls=5, per_seconds=1.0),
    )
    seen: list[object] = []
    factory = _make_client_factory(api)

    def recording_factory(config: HttpProviderConfig, limiter: object) -> ResilientClient:
        seen.append(limiter)
        return factory(config, limiter)

    provider = HttpResourceProvider(
        schema=bucket_schema(),
        config=limited,
        collection_path="buckets",
        client_factory=recording_factory,
    )

    asyncio.run(provider.create({"name": "a"}))
    asyncio.run(provider.create({"name": "b"}))

    assert len(seen) == 2
    assert seen[0] is not None
    assert seen[0] is seen[1]
