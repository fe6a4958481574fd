#!/usr/bin/env python3
"""Error taxonomy for the vault keeper.

Every error carries the structured context needed to root-cause cross-chain
divergence (per-endpoint results, per-chain step state) and exposes it via
``to_dict()``.
"""

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models import ConsensusOutcome, QueryResult
    from .run_state import RunState


class VaultKeeperError(Exception):
    """Base class for all keeper errors."""

    def to_dict(self) -> dict[str, Any]:
        return {"error": type(self).__name__, "message": str(self)}


class AllEndpointsUnreachable(VaultKeeperError):
    """No endpoint answered a query within the timeout."""

    def __init__(self, chain: str, label: str, results: "list[QueryResult]") -> None:
        self.chain = chain
        self.label = label
        self.results = list(results)
        failures = "\n".join(f"  {r.endpoint}: {r.error}" for r in self.results)
        super().__init__(f"All {len(self.results)} endpoints failed for {chain} ({label}):\n{failures}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "chain": self.chain,
            "query": self.label,
            "results": [r.to_dict() for r in self.results],
        }


class ConsensusNotReached(VaultKeeperError):
    """Endpoints answered but the most common value failed the threshold."""

    def __init__(self, label: str, outcome: "ConsensusOutcome", reason: str) -> None:
        self.chain = outcome.chain
        self.label = label
        self.outcome = outcome
        self.reason = reason
        lines = "\n".join(
            f"  {g['count']}x: {g['value']}" for g in outcome.distribution()
        )
        super().__init__(f"Consensus not reached for {self.chain} ({label}): {reason}. Responses:\n{lines}")

    @property
    def distribution(self) -> list[dict[str, Any]]:
        return self.outcome.distribution()

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "query": self.label,
            "reason": self.reason,
            **self.outcome.to_dict(),
        }


class WriteConfirmationTimeout(VaultKeeperError):
    """A write was submitted but the expected state was not observed in time."""

    def __init__(
        self,
        chain: str,
        operation: str,
        expected: Any,
        observed: Any = None,
        last_error: Exception | None = None,
    ) -> None:
        self.chain = chain
        self.operation = operation
        self.expected = expected
        self.observed = observed
        self.last_error = last_error
        message = f"{operation} on {chain} not confirmed: expected {expected!r}, last observed {observed!r}"
        if last_error is not None:
            message += f" (last read error: {last_error})"
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "chain": self.chain,
            "operation": self.operation,
            "expected": self.expected,
            "observed": self.observed,
            "last_error": self.last_error.to_dict() if isinstance(self.last_error, VaultKeeperError)
            else (str(self.last_error) if self.last_error else None),
        }


class TransactionFailed(VaultKeeperError):
    """A write was rejected by the node or reverted on chain."""

    def __init__(self, chain: str, function: str, reason: str, tx_hash: str | None = None) -> None:
        self.chain = chain
        self.function = function
        self.reason = reason
        self.tx_hash = tx_hash
        super().__init__(f"{function} on {chain} failed: {reason}" + (f" (tx {tx_hash})" if tx_hash else ""))

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "chain": self.chain,
            "function": self.function,
            "reason": self.reason,
            "tx_hash": self.tx_hash,
        }


class PartialRunHalted(VaultKeeperError):
    """A synchronization run stopped mid-sequence.

    Completed steps are never reversed; ``run_state`` tells the operator
    exactly which chain reached which step.
    """

    def __init__(self, run_state: "RunState", chain: str | None, reason: str, cause: Exception | None = None) -> None:
        self.run_state = run_state
        self.chain = chain
        self.reason = reason
        self.cause = cause
        steps = ", ".join(f"{name}={step.value}" for name, step in run_state.chain_steps.items())
        where = f" at {chain}" if chain else ""
        super().__init__(
            f"Run {run_state.run_id} halted in {run_state.stage.value}{where}: {reason} [{steps}]"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "chain": self.chain,
            "reason": self.reason,
            "cause": self.cause.to_dict() if isinstance(self.cause, VaultKeeperError)
            else (str(self.cause) if self.cause else None),
            "run": self.run_state.to_dict(),
        }


class RouteMisconfigured(VaultKeeperError):
    """A route is still not correctly configured after repair."""

    def __init__(self, source: str, destination: str, expected: str, actual: str | None, supported: bool) -> None:
        self.source = source
        self.destination = destination
        self.expected = expected
        self.actual = actual
        self.supported = supported
        super().__init__(
            f"Route {source} → {destination} misconfigured: supported={supported}, "
            f"expected remote pool {expected}, registered {actual or 'none'}"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "source": self.source,
            "destination": self.destination,
            "supported": self.supported,
            "expected": self.expected,
            "actual": self.actual,
        }
