"""Error taxonomy of the reconciliation engine."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

    from converge.domain.model import Diagnostic, Lock, ResourceAddress
    from converge.domain.reconciliation.results import ApplyResult


class ConvergeError(RuntimeError):
    """Base class for all engine errors."""


class ConfigError(ConvergeError):
    """Declarations are invalid; raised before any mutation."""

    def __init__(
        self,
        message: str,
        *,
        diagnostics: Iterable[Diagnostic] = (),
        addresses: Iterable[ResourceAddress] = (),
    ) -> None:
        self.diagnostics = tuple(diagnostics)
        self.addresses = tuple(addresses)
        if self.diagnostics:
            details = "; ".join(str(diagnostic) for diagnostic in self.diagnostics)
            message = f"{message}: {details}"
        super().__init__(message)


class CycleError(ConfigError):
    """Dependency cycle between declarations; ``path`` starts and ends on the same node."""

    def __init__(self, path: Iterable[object]) -> None:
        self.path = tuple(path)
        rendered = " -> ".join(str(node) for node in self.path)
        super().__init__(f"Dependency cycle detected: {rendered}")


class LockError(ConvergeError):
    """State lock is held by somebody else, stale, or does not match."""

    def __init__(self, message: str, *, key: str, held_by: Lock | None = None) -> None:
        super().__init__(message)
        self.key = key
        self.held_by = held_by


class ConflictError(ConvergeError):
    """Optimistic concurrency check failed; re-read the state and re-plan."""

    def __init__(
        self,
        message: str,
        *,
        key: str,
        expected_serial: int | None = None,
        actual_serial: int | None = None,
    ) -> None:
        super().__init__(message)
        self.key = key
        self.expected_serial = expected_serial
        self.actual_serial = actual_serial


class ProviderError(ConvergeError):
    """Failure reported by a provider adapter."""

    transient: bool = False
    attempts: int = 1


class TransientProviderError(ProviderError):
    """Retryable adapter failure such as rate limiting."""

    transient = True

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class PermanentProviderError(ProviderError):
    """Non-retryable adapter failure."""


class PreventDestroyError(ConvergeError):
    """Plan would delete or replace instances protected by ``prevent_destroy``."""

    def __init__(self, addresses: Iterable[ResourceAddress]) -> None:
        self.addresses = tuple(addresses)
        rendered = ", ".join(str(address) for address in self.addresses)
        super().__init__(
            f"Instances protected by prevent_destroy would be destroyed: {rendered}"
        )


class PartialApplyError(ConvergeError):
    """At least one change failed; ``result`` describes the persisted progress."""

    def __init__(self, result: ApplyResult) -> None:
        self.result = result
        super().__init__(
            f"Apply finished with errors: applied={len(result.applied)}, "
            f"errored={len(result.errored)}, skipped={len(result.skipped)}, "
            f"cancelled={len(result.cancelled)}"
        )
