"""Create and update paths for host StatefulSets.

Within one host the submit call and its wait for generation are strictly
sequential. Every attempt is counted on the installation status whatever
its outcome, so partial progress stays visible if the pass aborts.
"""

from __future__ import annotations

import copy
import logging
from enum import Enum

from kubernetes_asyncio.client import ApiException, V1StatefulSet

from .failure_policy import (
    PHASE_CREATE,
    PHASE_UPDATE,
    FailurePolicyEngine,
    ReconcileCancelledError,
    capture_rollback,
)
from .kube import KubeClients, StatefulSetCache, is_not_found, read_statefulset
from .models import HostHandle
from .recorder import ClusterStatusRecorder
from .waiter import ConvergenceWaiter, WaitOutcome

logger = logging.getLogger(__name__)


class HostOutcome(str, Enum):
    """How a host reconcile ended when no failure policy stopped it."""

    CONVERGED = "converged"
    # Not converged; deleted or rolled back, and the pass continues
    REMEDIATED = "remediated"


class StatefulSetReconciler:
    """Drives one host's StatefulSet to its desired spec."""

    def __init__(
        self,
        clients: KubeClients,
        waiter: ConvergenceWaiter,
        policy_engine: FailurePolicyEngine,
        recorder: ClusterStatusRecorder,
        lister: StatefulSetCache | None = None,
    ) -> None:
        self._clients = clients
        self._waiter = waiter
        self._policy_engine = policy_engine
        self._recorder = recorder
        self._lister = lister

    async def reconcile(self, desired: V1StatefulSet, host: HostHandle) -> HostOutcome:
        """Create or update the host's StatefulSet and wait for the rollout.

        Returns:
            CONVERGED, or REMEDIATED when the failure policy repaired the host
            and allows the pass to continue.

        Raises:
            ApiException: Reading the current StatefulSet failed with anything
                other than "not found".
            ReconcileError: Rollout failed and the failure policy says stop.
        """
        namespace = desired.metadata.namespace
        name = desired.metadata.name

        try:
            current = await read_statefulset(self._clients, namespace, name, self._lister)
        except ApiException as e:
            if not is_not_found(e):
                raise
            return await self.create_and_converge(desired, host)

        return await self.update_and_converge(current, desired)

    async def create_and_converge(
        self, desired: V1StatefulSet, host: HostHandle
    ) -> HostOutcome:
        """Create a StatefulSet and wait until it has rolled out.

        An "already exists" rejection is propagated: existence is checked by
        the caller before this path is taken.

        Raises:
            ApiException: The create call was rejected.
            ReconcileError: Not converged and the create failure policy says stop.
        """
        namespace = desired.metadata.namespace
        name = desired.metadata.name
        logger.info(
            "Creating StatefulSet",
            extra={"namespace": namespace, "statefulset": name, "host": host.name},
        )

        try:
            created = await self._clients.apps_api.create_namespaced_stateful_set(
                namespace, desired
            )
            result = await self._waiter.wait_for_generation(
                namespace, name, created.metadata.generation
            )
        finally:
            await self._recorder.record_added()

        if result.converged:
            return HostOutcome.CONVERGED
        if result.outcome == WaitOutcome.CANCELLED:
            raise ReconcileCancelledError(namespace, name, PHASE_CREATE)

        logger.warning(
            "StatefulSet create did not converge",
            extra={
                "namespace": namespace,
                "statefulset": name,
                "outcome": result.outcome.value,
                "elapsed_seconds": result.elapsed_seconds,
            },
        )
        await self._policy_engine.on_create_failed(created)
        return HostOutcome.REMEDIATED

    async def update_and_converge(
        self, current: V1StatefulSet, desired: V1StatefulSet
    ) -> HostOutcome:
        """Update a StatefulSet and wait until the new generation has rolled out.

        Whether the update is worth making is the caller's decision. If the
        platform reports an unchanged generation, nothing in .spec changed
        and there is nothing to wait for.

        Raises:
            ValueError: desired does not name the same object as current.
            ApiException: The update call was rejected.
            ReconcileError: Not converged and the update failure policy says stop.
        """
        namespace = current.metadata.namespace
        name = current.metadata.name
        if desired.metadata.namespace != namespace or desired.metadata.name != name:
            raise ValueError(
                f"Cannot update {namespace}/{name} with "
                f"{desired.metadata.namespace}/{desired.metadata.name}"
            )

        # Captured before submitting so later reuse of current cannot leak in
        rollback = capture_rollback(current)

        submitted = copy.deepcopy(desired)
        if submitted.metadata.resource_version is None:
            submitted.metadata.resource_version = current.metadata.resource_version

        try:
            updated = await self._clients.apps_api.replace_namespaced_stateful_set(
                name, namespace, submitted
            )

            if updated.metadata.generation == current.metadata.generation:
                logger.debug(
                    "StatefulSet update made no generation change",
                    extra={"namespace": namespace, "statefulset": name},
                )
                return HostOutcome.CONVERGED

            logger.info(
                "StatefulSet generation changed",
                extra={
                    "namespace": namespace,
                    "statefulset": name,
                    "from_generation": current.metadata.generation,
                    "to_generation": updated.metadata.generation,
                },
            )
            result = await self._waiter.wait_for_generation(
                namespace, name, updated.metadata.generation
            )
        finally:
            await self._recorder.record_updated()

        if result.converged:
            return HostOutcome.CONVERGED
        if result.outcome == WaitOutcome.CANCELLED:
            raise ReconcileCancelledError(namespace, name, PHASE_UPDATE)

        logger.warning(
            "StatefulSet update did not converge",
            extra={
                "namespace": namespace,
                "statefulset": name,
                "outcome": result.outcome.value,
                "elapsed_seconds": result.elapsed_seconds,
            },
        )
        await self._policy_engine.on_update_failed(rollback)
        return HostOutcome.REMEDIATED
