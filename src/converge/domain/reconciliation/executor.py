"""Executor: walk a plan's step graph and apply it through provider adapters.

Scheduling and bookkeeping happen on the event loop; the only suspension
points are adapter calls. Every completed step is written to the state store
before anything else is scheduled from its completion, so a crash loses at
most the steps that were in flight.
"""

from __future__ import annotations

import asyncio
import threading
import uuid
from dataclasses import dataclass, field
from logging import getLogger
from typing import TYPE_CHECKING, cast

from converge.domain.errors import ConfigError, PermanentProviderError, ProviderError
from converge.domain.model import (
    InstanceStatus,
    ResourceInstanceState,
    can_transition,
    contains_unknown,
    evaluate,
)

from .plan import Action, StepKind
from .results import ApplyResult, ChangeFailure
from .retry import RetryPolicy, call_with_retry

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from converge.domain.model import Lock, Reference, ResourceAddress, StateSnapshot
    from converge.domain.ports import Attributes, ProviderAdapter, ProviderRegistry, StateStore

    from .plan import Change, Plan, StepKey

log = getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation flag, safe to set from a signal handler or thread."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(slots=True)
class Executor:
    """Apply plans with at most ``parallelism`` adapter calls in flight.

    ``change_timeout`` bounds one step (all of its attempts) and is passed to
    the adapter; ``deadline`` (seconds) stops scheduling new steps once the
    run has lasted that long.
    """

    providers: ProviderRegistry
    parallelism: int = 10
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    change_timeout: float | None = None
    deadline: float | None = None

    async def execute(
        self,
        plan: Plan,
        snapshot: StateSnapshot,
        *,
        store: StateStore,
        key: str,
        lock: Lock | None = None,
        cancel: CancellationToken | None = None,
    ) -> ApplyResult:
        """Apply ``plan`` on top of ``snapshot`` (the stored state the plan was made from)."""

        run = _Run(
            executor=self,
            plan=plan,
            store=store,
            key=key,
            lock=lock,
            cancel=cancel or CancellationToken(),
            current=snapshot,
            expected_serial=plan.base_serial,
        )
        return await run.execute()


@dataclass(slots=True, kw_only=True)
class _StepOutcome:
    step: StepKey
    attributes: Attributes | None = None
    attempts: int = 1
    error: BaseException | None = None


@dataclass(slots=True, kw_only=True)
class _Run:
    executor: Executor
    plan: Plan
    store: StateStore
    key: str
    lock: Lock | None
    cancel: CancellationToken
    current: StateSnapshot
    expected_serial: int | None
    result: ApplyResult = field(init=False)
    status: dict[tuple[ResourceAddress, str | None], InstanceStatus] = field(
        default_factory=dict["tuple[ResourceAddress, str | None]", "InstanceStatus"]
    )
    deposed_keys: dict[ResourceAddress, str] = field(
        default_factory=dict["ResourceAddress", str]
    )
    completed: set[StepKey] = field(default_factory=set["StepKey"])
    failed: set[StepKey] = field(default_factory=set["StepKey"])
    blocked: set[StepKey] = field(default_factory=set["StepKey"])

    def __post_init__(self) -> None:
        self.result = ApplyResult(snapshot=self.current)
        for change in self.plan.changes:
            creating = change.action is Action.CREATE
            self.status[change.identity] = (
                InstanceStatus.UNMANAGED if creating else InstanceStatus.MANAGED
            )

    async def execute(self) -> ApplyResult:
        if self.plan.state_updates:
            self._persist(self._apply_state_updates)

        await self._schedule()
        self._classify()
        self._write_outputs()
        self.result.snapshot = self.current
        log.info(
            "Apply finished: %s applied, %s errored, %s skipped, %s cancelled, %s writes",
            len(self.result.applied),
            len(self.result.errored),
            len(self.result.skipped),
            len(self.result.cancelled),
            self.result.writes,
        )
        return self.result

    # ------------------------------------------------------------------
    # scheduling
    async def _schedule(self) -> None:
        graph = self.plan.graph
        waiting = {step: set(graph.dependencies_of(step)) for step in self.plan.steps}
        ready = [step for step in self.plan.steps if not waiting[step]]
        running: dict[asyncio.Task[_StepOutcome], StepKey] = {}
        loop = asyncio.get_running_loop()
        deadline = self.executor.deadline
        stop_at = loop.time() + deadline if deadline is not None else None
        limit = max(1, self.executor.parallelism)

        try:
            while ready or running:
                if stop_at is not None and loop.time() >= stop_at and not self.cancel.cancelled:
                    log.warning("Run deadline reached, no new changes will be started")
                    self.cancel.cancel("deadline")
                while ready and len(running) < limit and not self.cancel.cancelled:
                    step = ready.pop(0)
                    waiting.pop(step, None)
                    task = asyncio.create_task(self._run_step(step), name=str(step))
                    running[task] = step
                if not running:
                    break

                timeout = None
                if stop_at is not None and not self.cancel.cancelled:
                    timeout = max(0.0, stop_at - loop.time())
                done, _pending = await asyncio.wait(
                    running, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
                )
                for task in sorted(done, key=lambda item: running[item].sort_key()):
                    step = running.pop(task)
                    outcome = task.result()
                    if outcome.error is not None:
                        self._fail(step, outcome)
                        self.blocked.update(graph.transitive_dependents(step))
                        ready = [item for item in ready if item not in self.blocked]
                        continue
                    self._complete(step, outcome)
                    for dependent in graph.dependents_of(step):
                        pending = waiting.get(dependent)
                        if pending is None or dependent in self.blocked:
                            continue
                        pending.discard(step)
                        if not pending:
                            ready.append(dependent)
        except BaseException:
            # a failed store write ends the run; in-flight calls still get to finish
            if running:
                await asyncio.wait(running)
            raise

    async def _run_step(self, step: StepKey) -> _StepOutcome:
        change = self.plan.change_for_step(step)
        adapter = self.executor.providers.adapter_for(change.address.type)
        timeout = self.executor.change_timeout
        log.info("Starting %s", step)
        try:
            operation = self._operation(step, change, adapter, timeout)
            async with asyncio.timeout(timeout):
                attributes, attempts = await call_with_retry(
                    operation,
                    policy=self.executor.retry,
                    description=str(step),
                )
        except TimeoutError:
            error = PermanentProviderError(f"{step} timed out after {timeout}s")
            log.warning("%s", error)
            return _StepOutcome(step=step, error=error)
        except ProviderError as exc:
            log.warning("%s failed after %s attempt(s): %s", step, exc.attempts, exc)
            return _StepOutcome(step=step, error=exc, attempts=exc.attempts)
        except ConfigError as exc:
            log.warning("%s cannot run: %s", step, exc)
            return _StepOutcome(step=step, error=exc)
        except Exception as exc:
            log.exception("%s failed", step)
            return _StepOutcome(step=step, error=exc)
        log.info("Finished %s", step)
        return _StepOutcome(step=step, attributes=attributes, attempts=attempts)

    def _operation(
        self,
        step: StepKey,
        change: Change,
        adapter: ProviderAdapter,
        timeout: float | None,
    ) -> Callable[[], Awaitable[Attributes | None]]:
        if step.kind is StepKind.CREATE:
            self._transition(change, InstanceStatus.CREATING)
            config = self._evaluate(change)
            return lambda: adapter.create(dict(config), timeout=timeout)
        if step.kind is StepKind.UPDATE:
            self._transition(change, InstanceStatus.UPDATING)
            prior = self._current_record(change.address)
            desired = self._evaluate(change)
            return lambda: adapter.update(dict(prior.attributes), dict(desired), timeout=timeout)

        self._transition(change, InstanceStatus.DELETING)
        prior = self._record_to_delete(change)

        async def delete() -> None:
            await adapter.delete(dict(prior.attributes), timeout=timeout)

        return delete

    # ------------------------------------------------------------------
    # outcomes
    def _complete(self, step: StepKey, outcome: _StepOutcome) -> None:
        change = self.plan.change_for_step(step)
        self.completed.add(step)
        if step.kind is StepKind.DELETE:
            replaced = change.action is Action.REPLACE and change.create_before_destroy
            self._transition(
                change, InstanceStatus.MANAGED if replaced else InstanceStatus.UNMANAGED
            )
            self._persist(lambda snapshot: self._forget_deleted(snapshot, change))
        else:
            attributes = dict(outcome.attributes or {})
            self._persist(lambda snapshot: self._record_success(snapshot, change, attributes))
            if not (change.action is Action.REPLACE and change.create_before_destroy):
                self._transition(change, InstanceStatus.MANAGED)
        if all(item in self.completed for item in change.steps):
            self.result.applied.append(change.address)

    def _fail(self, step: StepKey, outcome: _StepOutcome) -> None:
        change = self.plan.change_for_step(step)
        error = cast("BaseException", outcome.error)
        self.failed.add(step)
        self._transition(change, InstanceStatus.ERRORED)
        failure = ChangeFailure(
            address=change.address,
            action=change.action,
            step=step.kind,
            error=error,
            attempts=outcome.attempts,
            deposed_key=change.deposed_key,
        )
        self.result.errored.setdefault(change.address, []).append(failure)
        if step.kind is StepKind.CREATE:
            # a failed create leaves nothing behind worth recording
            return
        self._persist(lambda snapshot: self._record_errored(snapshot, change, step))

    def _classify(self) -> None:
        handled = set(self.result.applied) | set(self.result.errored)
        for change in self.plan.changes:
            if change.address in handled:
                continue
            steps = change.steps
            if any(step in self.blocked for step in steps):
                self.result.skipped.append(change.address)
            elif not all(step in self.completed for step in steps):
                self.result.cancelled.append(change.address)
            handled.add(change.address)

    # ------------------------------------------------------------------
    # snapshot mutation
    def _persist(self, mutate: Callable[[StateSnapshot], None]) -> None:
        successor = self.current.successor()
        mutate(successor)
        if self.lock is not None:
            self.lock = self.store.refresh_lock(self.lock)
        self.store.write(self.key, successor, expected_serial=self.expected_serial)
        self.current = successor
        self.expected_serial = successor.serial
        self.result.writes += 1
        self.result.snapshot = successor
        log.debug("Wrote state %s serial %s", self.key, successor.serial)

    def _apply_state_updates(self, snapshot: StateSnapshot) -> None:
        for address, instance in self.plan.state_updates.items():
            if instance is None:
                snapshot.remove(address)
            else:
                snapshot.put(instance.evolve())

    def _record_success(
        self, snapshot: StateSnapshot, change: Change, attributes: dict[str, object]
    ) -> None:
        if change.action is Action.REPLACE and change.create_before_destroy:
            if change.address in snapshot:
                deposed_key = uuid.uuid4().hex[:8]
                snapshot.depose(change.address, deposed_key)
                self.deposed_keys[change.address] = deposed_key
        snapshot.put(
            ResourceInstanceState(
                address=change.address,
                attributes=attributes,
                provider=change.provider,
                schema_version=change.schema_version,
                dependencies=change.dependencies,
                prevent_destroy=change.prevent_destroy,
                create_before_destroy=change.create_before_destroy,
            )
        )

    def _forget_deleted(self, snapshot: StateSnapshot, change: Change) -> None:
        deposed_key = self._deposed_key_for(change)
        if deposed_key is not None:
            snapshot.deposed.pop(deposed_key, None)
        else:
            snapshot.remove(change.address)

    def _record_errored(self, snapshot: StateSnapshot, change: Change, step: StepKey) -> None:
        deposed_key = self._deposed_key_for(change) if step.kind is StepKind.DELETE else None
        if deposed_key is not None:
            instance = snapshot.deposed.get(deposed_key)
            if instance is not None:
                instance.status = InstanceStatus.ERRORED
            return
        instance = snapshot.get(change.address)
        if instance is not None:
            instance.status = InstanceStatus.ERRORED

    def _write_outputs(self) -> None:
        outputs: dict[str, object] = {}
        for name, expression in self.plan.outputs.items():
            try:
                value = evaluate(expression, self._resolve)
            except ConfigError as exc:
                log.warning("Output %s not available: %s", name, exc)
                continue
            if not contains_unknown(value):
                outputs[name] = value
        if outputs == self.current.outputs:
            return

        def replace_outputs(snapshot: StateSnapshot) -> None:
            snapshot.outputs = outputs

        self._persist(replace_outputs)

    # ------------------------------------------------------------------
    # helpers
    def _evaluate(self, change: Change) -> dict[str, object]:
        config = cast("dict[str, object]", evaluate(change.config or {}, self._resolve))
        if contains_unknown(config):
            raise ConfigError(f"{change.address}: configuration still contains unknown values")
        return config

    def _resolve(self, reference: Reference) -> object:
        instance = self.current.get(reference.address)
        if instance is None:
            raise ConfigError(
                f"Reference {reference}: {reference.address} is not in state",
                addresses=[reference.address],
            )
        return instance.attributes.get(reference.attribute)

    def _current_record(self, address: ResourceAddress) -> ResourceInstanceState:
        instance = self.current.get(address)
        if instance is None:
            raise ConfigError(f"{address} is not in state", addresses=[address])
        return instance

    def _record_to_delete(self, change: Change) -> ResourceInstanceState:
        deposed_key = self._deposed_key_for(change)
        if deposed_key is not None:
            instance = self.current.deposed.get(deposed_key)
            if instance is None:
                raise ConfigError(
                    f"Deposed object {deposed_key} of {change.address} is not in state",
                    addresses=[change.address],
                )
            return instance
        return self._current_record(change.address)

    def _deposed_key_for(self, change: Change) -> str | None:
        if change.deposed_key is not None:
            return change.deposed_key
        if change.action is Action.REPLACE and change.create_before_destroy:
            return self.deposed_keys.get(change.address)
        return None

    def _transition(self, change: Change, target: InstanceStatus) -> None:
        current = self.status[change.identity]
        if current is target:
            return
        if not can_transition(current, target):
            raise RuntimeError(f"{change.address}: invalid transition {current} -> {target}")
        self.status[change.identity] = target
