"""Wait for a StatefulSet to roll out a target generation.

Each poll iteration is a suspension point. The wait returns as soon as the
shared cancel event is set (operator shutdown, or a newer spec superseding
the in-flight pass), so a cancelled wait never leaves partially applied
state behind it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from kubernetes_asyncio.client import V1StatefulSet

from .kube import PLATFORM_ERRORS, KubeClients, StatefulSetCache, is_not_found, read_statefulset
from .status import has_reached_generation, status_string

logger = logging.getLogger(__name__)

# Progress is only logged at INFO after this long, to keep polling quiet
DEGRADED_LOG_GRACE_SECONDS = 60


class WaitOutcome(str, Enum):
    """How a wait for generation ended."""

    CONVERGED = "Converged"
    TIMED_OUT = "TimedOut"
    ERROR = "Error"
    CANCELLED = "Cancelled"


@dataclass
class WaitResult:
    """Result of one wait for generation."""

    outcome: WaitOutcome
    statefulset: V1StatefulSet | None = None
    error: Exception | None = None
    elapsed_seconds: float = 0.0
    polls: int = 0

    @property
    def converged(self) -> bool:
        return self.outcome == WaitOutcome.CONVERGED


class ConvergenceWaiter:
    """Polls a StatefulSet until a target generation is fully rolled out."""

    def __init__(
        self,
        clients: KubeClients,
        *,
        timeout_seconds: float,
        poll_interval_seconds: float,
        lister: StatefulSetCache | None = None,
        cancel_event: asyncio.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        """Initialize the waiter.

        Args:
            clients: Kubernetes API handles.
            timeout_seconds: Give up after this long.
            poll_interval_seconds: Pause between status reads.
            lister: Optional cache used instead of direct reads.
            cancel_event: Set to abandon the wait.
            clock: Monotonic time source, injectable for tests.
            sleep: Replaces the cancellable pause between polls, for tests.
        """
        self._clients = clients
        self._timeout = timeout_seconds
        self._poll_interval = poll_interval_seconds
        self._lister = lister
        self._cancel_event = cancel_event or asyncio.Event()
        self._clock = clock
        self._sleep = sleep

    @property
    def cancel_event(self) -> asyncio.Event:
        return self._cancel_event

    async def wait_for_generation(
        self, namespace: str, name: str, target_generation: int
    ) -> WaitResult:
        """Poll until the StatefulSet reaches target_generation.

        "Not found" is not an error here: a just-created object may not have
        reached the cache yet. Any other read failure ends the wait at once.

        Args:
            namespace: StatefulSet namespace.
            name: StatefulSet name.
            target_generation: Generation returned by the create/update call.

        Returns:
            WaitResult describing how the wait ended.
        """
        start = self._clock()
        polls = 0
        last_seen: V1StatefulSet | None = None

        while True:
            if self._cancel_event.is_set():
                return self._finish(
                    WaitOutcome.CANCELLED, namespace, name, start, polls, last_seen
                )

            polls += 1
            try:
                statefulset = await read_statefulset(
                    self._clients, namespace, name, self._lister
                )
            except PLATFORM_ERRORS as e:
                if not is_not_found(e):
                    logger.error(
                        "StatefulSet read failed while waiting for generation",
                        extra={
                            "namespace": namespace,
                            "statefulset": name,
                            "generation": target_generation,
                            "error": str(e) or type(e).__name__,
                        },
                    )
                    return self._finish(
                        WaitOutcome.ERROR, namespace, name, start, polls, last_seen, error=e
                    )
                logger.debug(
                    "StatefulSet not yet created, waiting",
                    extra={"namespace": namespace, "statefulset": name},
                )
            else:
                last_seen = statefulset
                if has_reached_generation(statefulset, target_generation):
                    logger.info(
                        "StatefulSet reached generation",
                        extra={
                            "namespace": namespace,
                            "statefulset": name,
                            "generation": target_generation,
                            "status": status_string(statefulset.status),
                        },
                    )
                    return self._finish(
                        WaitOutcome.CONVERGED, namespace, name, start, polls, last_seen
                    )
                self._log_progress(namespace, name, target_generation, statefulset, start)

            if self._clock() - start >= self._timeout:
                logger.warning(
                    "Timed out waiting for StatefulSet generation",
                    extra={
                        "namespace": namespace,
                        "statefulset": name,
                        "generation": target_generation,
                        "timeout_seconds": self._timeout,
                        "status": status_string(last_seen.status if last_seen else None),
                    },
                )
                return self._finish(
                    WaitOutcome.TIMED_OUT, namespace, name, start, polls, last_seen
                )

            await self._pause()

    async def _pause(self) -> None:
        if self._sleep is not None:
            await self._sleep(self._poll_interval)
            return
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=self._poll_interval)
        except TimeoutError:
            # Normal timeout, poll again
            pass

    def _log_progress(
        self,
        namespace: str,
        name: str,
        target_generation: int,
        statefulset: V1StatefulSet,
        start: float,
    ) -> None:
        elapsed = self._clock() - start
        extra = {
            "namespace": namespace,
            "statefulset": name,
            "generation": target_generation,
            "elapsed_seconds": elapsed,
            "status": status_string(statefulset.status),
        }
        if elapsed >= DEGRADED_LOG_GRACE_SECONDS:
            logger.info("Waiting for StatefulSet generation", extra=extra)
        else:
            logger.debug("Waiting for StatefulSet generation", extra=extra)

    def _finish(
        self,
        outcome: WaitOutcome,
        namespace: str,
        name: str,
        start: float,
        polls: int,
        statefulset: V1StatefulSet | None,
        error: Exception | None = None,
    ) -> WaitResult:
        if outcome == WaitOutcome.CANCELLED:
            logger.info(
                "Wait for StatefulSet generation cancelled",
                extra={"namespace": namespace, "statefulset": name},
            )
        return WaitResult(
            outcome=outcome,
            statefulset=statefulset,
            error=error,
            elapsed_seconds=self._clock() - start,
            polls=polls,
        )
