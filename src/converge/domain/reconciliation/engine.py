"""Synchronous facade over refresh, plan and apply for one state key."""

from __future__ import annotations

import asyncio
import getpass
import socket
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from logging import getLogger
from typing import TYPE_CHECKING

from converge.domain.errors import ConfigError, ConflictError, PartialApplyError
from converge.domain.model import Configuration, ResourceInstanceState, StateSnapshot

from .executor import CancellationToken, Executor
from .planner import Planner
from .refresh import Refresher
from .retry import RetryPolicy

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from converge.domain.model import Lock, ResourceAddress
    from converge.domain.ports import ProviderRegistry, StateStore

    from .plan import Plan
    from .results import ApplyResult, RefreshResult

log = getLogger(__name__)


def default_holder() -> str:
    return f"{getpass.getuser()}@{socket.gethostname()}"


@dataclass(slots=True, kw_only=True)
class ReconciliationEngine:
    """Refresh, plan and apply against one workspace of a state store.

    Mutating operations hold the store lock for their whole duration. Plans
    may be computed without the lock (``lock=False``); such a plan can go stale
    and is then refused by :meth:`apply_plan`.
    """

    store: StateStore
    providers: ProviderRegistry
    workspace: str = "default"
    parallelism: int = 10
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    change_timeout: float | None = None
    deadline: float | None = None
    lock_ttl: timedelta = timedelta(minutes=15)
    lock_timeout: float = 0.0
    holder: str = field(default_factory=default_holder)

    # ------------------------------------------------------------------
    # read-only operations
    def show(self) -> StateSnapshot | None:
        return self.store.get(self.workspace)

    def refresh(self) -> RefreshResult:
        """Read every tracked instance; the stored state is not modified."""

        snapshot = self.store.get(self.workspace) or StateSnapshot()
        return asyncio.run(self._refresher().refresh(snapshot))

    def plan(
        self,
        configuration: Configuration,
        *,
        refresh: bool = True,
        destroy: bool = False,
        lock: bool = True,
    ) -> Plan:
        if not lock:
            log.info("Planning without the state lock; the plan may go stale")
            return self._plan(configuration, refresh=refresh, destroy=destroy)[0]
        with self._locked("plan"):
            return self._plan(configuration, refresh=refresh, destroy=destroy)[0]

    # ------------------------------------------------------------------
    # mutating operations
    def apply(
        self,
        configuration: Configuration,
        *,
        refresh: bool = True,
        destroy: bool = False,
        cancel: CancellationToken | None = None,
    ) -> ApplyResult:
        """Plan and apply in one locked run.

        Raises :class:`PartialApplyError` (after the progress was written) when
        a change failed.
        """

        with self._locked("apply") as held:
            plan, stored = self._plan(configuration, refresh=refresh, destroy=destroy)
            return self._execute(plan, stored, held, cancel)

    def apply_plan(self, plan: Plan, *, cancel: CancellationToken | None = None) -> ApplyResult:
        """Apply a previously saved plan if the state has not moved since."""

        with self._locked("apply") as held:
            stored = self.store.get(self.workspace)
            if stored is None:
                if plan.base_serial is not None:
                    raise ConflictError(
                        "Plan was made against a state that no longer exists",
                        key=self.workspace,
                        expected_serial=plan.base_serial,
                    )
            elif stored.lineage != plan.lineage or stored.serial != plan.base_serial:
                raise ConflictError(
                    f"Plan is stale: it was made at serial {plan.base_serial}, "
                    f"state is at serial {stored.serial}",
                    key=self.workspace,
                    expected_serial=plan.base_serial,
                    actual_serial=stored.serial,
                )
            snapshot = stored or StateSnapshot(lineage=plan.lineage)
            return self._execute(plan, snapshot, held, cancel)

    def destroy(
        self,
        configuration: Configuration | None = None,
        *,
        refresh: bool = True,
        cancel: CancellationToken | None = None,
    ) -> ApplyResult:
        return self.apply(
            configuration or Configuration(), refresh=refresh, destroy=True, cancel=cancel
        )

    def taint(self, address: ResourceAddress) -> StateSnapshot:
        return self._edit_instance(address, "taint", lambda instance: instance.evolve(tainted=True))

    def untaint(self, address: ResourceAddress) -> StateSnapshot:
        return self._edit_instance(
            address, "untaint", lambda instance: instance.evolve(tainted=False)
        )

    def forget(self, address: ResourceAddress) -> StateSnapshot:
        """Drop an instance from state without touching the real object."""

        return self._edit_instance(address, "forget", lambda _instance: None)

    def import_instance(
        self, address: ResourceAddress, identity: dict[str, object]
    ) -> ResourceInstanceState:
        """Read an existing object through its adapter and start tracking it."""

        adapter = self.providers.adapter_for(address.type)
        with self._locked("import"):
            stored = self.store.get(self.workspace)
            snapshot = stored or StateSnapshot()
            if address in snapshot:
                raise ConfigError(f"{address} is already managed", addresses=[address])
            attributes = asyncio.run(adapter.read(dict(identity), timeout=self.change_timeout))
            if attributes is None:
                raise ConfigError(
                    f"Object to import as {address} does not exist", addresses=[address]
                )
            instance = ResourceInstanceState(
                address=address,
                attributes=dict(attributes),
                provider=self.providers.provider_name(address.type),
                schema_version=adapter.schema.version,
            )
            successor = snapshot.successor()
            successor.put(instance)
            self.store.write(
                self.workspace,
                successor,
                expected_serial=None if stored is None else stored.serial,
            )
            log.info("Imported %s", address)
            return instance

    def force_unlock(self, lock_id: str | None = None) -> Lock | None:
        broken = self.store.force_unlock(self.workspace, lock_id)
        if broken is not None:
            log.warning("Broke lock %s held by %s", broken.lock_id, broken.holder)
        return broken

    # ------------------------------------------------------------------
    def _plan(
        self, configuration: Configuration, *, refresh: bool, destroy: bool
    ) -> tuple[Plan, StateSnapshot]:
        stored = self.store.get(self.workspace)
        snapshot = stored or StateSnapshot()
        refresher = self._refresher()
        if refresh:
            refreshed = asyncio.run(refresher.refresh(snapshot))
        else:
            errored = [address for address, item in snapshot.resources.items() if item.errored]
            refreshed = (
                asyncio.run(refresher.refresh(snapshot, addresses=errored)) if errored else None
            )
        plan = Planner(self.providers).plan(
            configuration,
            snapshot,
            refresh=refreshed,
            destroy=destroy,
            base_serial=None if stored is None else stored.serial,
        )
        return plan, snapshot

    def _execute(
        self,
        plan: Plan,
        snapshot: StateSnapshot,
        held: Lock,
        cancel: CancellationToken | None,
    ) -> ApplyResult:
        executor = Executor(
            self.providers,
            parallelism=self.parallelism,
            retry=self.retry,
            change_timeout=self.change_timeout,
            deadline=self.deadline,
        )
        result = asyncio.run(
            executor.execute(
                plan, snapshot, store=self.store, key=self.workspace, lock=held, cancel=cancel
            )
        )
        if result.errored or result.skipped:
            raise PartialApplyError(result)
        if result.cancelled:
            log.warning("Apply cancelled, %s change(s) not started", len(result.cancelled))
        return result

    def _edit_instance(
        self,
        address: ResourceAddress,
        operation: str,
        edit: Callable[[ResourceInstanceState], ResourceInstanceState | None],
    ) -> StateSnapshot:
        with self._locked(operation):
            stored = self.store.get(self.workspace)
            instance = stored.get(address) if stored is not None else None
            if stored is None or instance is None:
                raise ConfigError(f"{address} is not in state", addresses=[address])
            successor = stored.successor()
            edited = edit(instance)
            if edited is None:
                successor.remove(address)
            else:
                successor.put(edited)
            self.store.write(self.workspace, successor, expected_serial=stored.serial)
            log.info("%s %s", operation.capitalize(), address)
            return successor

    def _refresher(self) -> Refresher:
        return Refresher(
            self.providers,
            parallelism=self.parallelism,
            timeout=self.change_timeout,
            retry=self.retry,
        )

    @contextmanager
    def _locked(self, operation: str) -> Iterator[Lock]:
        held = self.store.lock(
            self.workspace,
            holder=self.holder,
            operation=operation,
            ttl=self.lock_ttl,
            timeout=self.lock_timeout,
        )
        log.debug("Acquired lock %s on %s", held.lock_id, self.workspace)
        try:
            yield held
        finally:
            current = self.store.current_lock(self.workspace)
            if current is not None and current.lock_id == held.lock_id:
                self.store.unlock(current)
                log.debug("Released lock %s on %s", held.lock_id, self.workspace)
