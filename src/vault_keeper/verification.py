#!/usr/bin/env python3
"""Caller-side policies around the quorum engine.

The QuorumReader never retries and never waits for state to change. The
controllers use ``VerifiedReads`` for both, so retry and confirmation
semantics are defined once and testable in isolation.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from .config import ConfirmationPolicy, RetryPolicy
from .errors import AllEndpointsUnreachable, ConsensusNotReached, WriteConfirmationTimeout
from .quorum import Query, QuorumReader

logger = logging.getLogger(__name__)

T = TypeVar("T")

QUORUM_ERRORS = (ConsensusNotReached, AllEndpointsUnreachable)


class VerifiedReads:
    """Quorum reads with the keeper's retry and write-confirmation policies."""

    def __init__(
        self,
        reader: QuorumReader,
        retry: RetryPolicy | None = None,
        confirmation: ConfirmationPolicy | None = None,
    ) -> None:
        self.reader = reader
        self.retry = retry or RetryPolicy()
        self.confirmation = confirmation or ConfirmationPolicy()

    async def read(self, chain: str, query: Query[T], label: str) -> T:
        """
        Quorum-verified read, re-issued per the retry policy.

        Raises:
            ConsensusNotReached | AllEndpointsUnreachable: From the last attempt
        """
        for attempt in range(1, self.retry.attempts + 1):
            try:
                return await self.reader.read(chain, query, label)
            except QUORUM_ERRORS as e:
                if attempt == self.retry.attempts:
                    logger.error(f"{chain} {label}: giving up after {attempt} attempts")
                    raise
                delay = self.retry.delay(attempt)
                logger.warning(
                    f"{chain} {label}: attempt {attempt}/{self.retry.attempts} failed "
                    f"({type(e).__name__}), retrying in {delay}s"
                )
                await asyncio.sleep(delay)

        raise AssertionError("unreachable")

    async def confirm(
        self,
        chain: str,
        query: Query[T],
        label: str,
        done: Callable[[T], bool],
        operation: str,
        expected: Any,
    ) -> T:
        """
        Poll a quorum read until ``done(value)`` holds.

        Reads that fail the quorum are treated as "not yet visible": lagging
        nodes are expected right after a write. The value is only ever taken
        from a read that passed the quorum.

        Returns:
            The first verified value for which ``done`` holds; the caller
            decides whether it is the expected one

        Raises:
            WriteConfirmationTimeout: If ``done`` never held within the policy timeout
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.confirmation.timeout
        observed: Any = None
        last_error: Exception | None = None

        while True:
            try:
                observed = await self.reader.read(chain, query, label)
                last_error = None
                if done(observed):
                    logger.debug(f"{chain} {label}: confirmed {observed!r}")
                    return observed
            except QUORUM_ERRORS as e:
                last_error = e
                logger.debug(f"{chain} {label}: not yet verifiable ({type(e).__name__})")

            if loop.time() + self.confirmation.poll_interval > deadline:
                break
            await asyncio.sleep(self.confirmation.poll_interval)

        logger.error(f"✗ {operation} on {chain} not confirmed within {self.confirmation.timeout}s")
        raise WriteConfirmationTimeout(chain, operation, expected, observed, last_error)

    async def ensure_flag(
        self,
        chain: str,
        query_factory: Callable[[], Query[bool]],
        label: str,
        value: bool,
        write: Callable[[], Awaitable[str]],
        operation: str,
    ) -> bool:
        """
        Bring an on-chain boolean to ``value``, writing only when it differs.

        Returns:
            Whether a write was needed

        Raises:
            WriteConfirmationTimeout: If the written value never became visible
        """
        current = await self.read(chain, query_factory(), label)
        if current is value:
            return False

        await write()
        await self.confirm(
            chain,
            query_factory(),
            label,
            done=lambda observed: observed is value,
            operation=operation,
            expected=value,
        )
        return True
