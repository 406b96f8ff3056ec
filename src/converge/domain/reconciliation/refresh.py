"""Drift detection: re-read tracked instances through their adapters."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from logging import getLogger
from typing import TYPE_CHECKING

from .diff import values_equal
from .results import RefreshResult
from .retry import RetryPolicy, call_with_retry

if TYPE_CHECKING:
    from collections.abc import Iterable

    from converge.domain.model import ResourceAddress, StateSnapshot
    from converge.domain.ports import Attributes, ProviderRegistry

log = getLogger(__name__)


@dataclass(slots=True)
class Refresher:
    """Read real-world attributes for tracked instances.

    Reads run concurrently, bounded by ``parallelism``. The input snapshot is
    never modified and nothing is written to a store.
    """

    providers: ProviderRegistry
    parallelism: int = 10
    timeout: float | None = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    async def refresh(
        self,
        snapshot: StateSnapshot,
        *,
        addresses: Iterable[ResourceAddress] | None = None,
    ) -> RefreshResult:
        targets = [
            address
            for address in (snapshot.addresses if addresses is None else addresses)
            if address in snapshot
        ]
        semaphore = asyncio.Semaphore(max(1, self.parallelism))

        async def read_one(address: ResourceAddress) -> tuple[ResourceAddress, Attributes | None]:
            instance = snapshot.resources[address]
            adapter = self.providers.adapter_for(address.type)
            async with semaphore:
                attributes, _attempts = await call_with_retry(
                    lambda: adapter.read(dict(instance.attributes), timeout=self.timeout),
                    policy=self.retry,
                    description=f"read {address}",
                )
            return address, attributes

        outcomes = await asyncio.gather(*(read_one(address) for address in targets))

        refreshed = snapshot.copy()
        updated: dict[ResourceAddress, dict[str, object]] = {}
        drifted: list[ResourceAddress] = []
        disappeared: list[ResourceAddress] = []
        for address, attributes in outcomes:
            if attributes is None:
                log.info("Instance %s no longer exists", address)
                refreshed.remove(address)
                disappeared.append(address)
                continue
            prior = snapshot.resources[address].attributes
            if not values_equal(prior, attributes):
                log.info("Drift detected on %s", address)
                drifted.append(address)
            refreshed.resources[address].attributes = dict(attributes)
            updated[address] = dict(attributes)

        return RefreshResult(
            snapshot=refreshed,
            updated=updated,
            drifted=tuple(drifted),
            disappeared=tuple(disappeared),
        )
