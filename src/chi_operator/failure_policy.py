"""Remediation of StatefulSets whose rollout did not converge.

Two independent policies:
- create failure: abort, or delete the failed StatefulSet
- update failure: abort, or roll the StatefulSet back to its pre-update spec

Remediation is a best-effort recovery from an earlier failure, so a failing
delete/rollback call is logged and swallowed. After remediation the
continuation verdict decides whether the pass may move on to the next host.
"""

from __future__ import annotations

import copy
import logging

from kubernetes_asyncio.client import ApiException, V1StatefulSet

from .config import (
    ConfigurationError,
    FailurePolicyConfig,
    OnCreateFailureAction,
    OnUpdateFailureAction,
)
from .kube import KubeClients, StatefulSetCache, read_statefulset

logger = logging.getLogger(__name__)

PHASE_CREATE = "create"
PHASE_UPDATE = "update"


class ReconcileError(Exception):
    """Raised when a host's StatefulSet could not be reconciled."""

    def __init__(self, message: str, *, namespace: str, name: str, phase: str) -> None:
        super().__init__(message)
        self.namespace = namespace
        self.name = name
        self.phase = phase


class CreateFailedError(ReconcileError):
    """A newly created StatefulSet did not converge and the policy is abort."""

    def __init__(self, namespace: str, name: str) -> None:
        super().__init__(
            f"Create failed on {namespace}/{name}",
            namespace=namespace,
            name=name,
            phase=PHASE_CREATE,
        )


class UpdateFailedError(ReconcileError):
    """An updated StatefulSet did not converge and the policy is abort."""

    def __init__(self, namespace: str, name: str) -> None:
        super().__init__(
            f"Update failed on {namespace}/{name}",
            namespace=namespace,
            name=name,
            phase=PHASE_UPDATE,
        )


class ReconcileStoppedError(ReconcileError):
    """Remediation was applied and the pass must not continue."""

    def __init__(self, namespace: str, name: str, phase: str) -> None:
        super().__init__(
            f"{phase} stopped due to previous errors on {namespace}/{name}",
            namespace=namespace,
            name=name,
            phase=phase,
        )


class ReconcileCancelledError(ReconcileError):
    """The wait for generation was cancelled; no remediation was applied."""

    def __init__(self, namespace: str, name: str, phase: str) -> None:
        super().__init__(
            f"{phase} of {namespace}/{name} cancelled while waiting for rollout",
            namespace=namespace,
            name=name,
            phase=phase,
        )


def capture_rollback(statefulset: V1StatefulSet) -> V1StatefulSet:
    """Take an independent copy of a StatefulSet to roll back to later."""
    return copy.deepcopy(statefulset)


def pod_name(statefulset: V1StatefulSet) -> str:
    """Name of the single pod driven by a host StatefulSet."""
    return f"{statefulset.metadata.name}-0"


class FailurePolicyEngine:
    """Applies the configured failure policy to a non-converged StatefulSet."""

    def __init__(
        self,
        clients: KubeClients,
        policy: FailurePolicyConfig,
        lister: StatefulSetCache | None = None,
    ) -> None:
        self._clients = clients
        self._policy = policy
        self._lister = lister

    @property
    def policy(self) -> FailurePolicyConfig:
        return self._policy

    async def on_create_failed(self, failed: V1StatefulSet) -> None:
        """Handle a StatefulSet that did not converge after create.

        Raises:
            CreateFailedError: Policy is abort.
            ReconcileStoppedError: Deleted, and the pass must stop.
        """
        namespace = failed.metadata.namespace
        name = failed.metadata.name
        action = self._policy.on_create_failure

        match action:
            case OnCreateFailureAction.ABORT:
                logger.error(
                    "StatefulSet create failed, aborting",
                    extra={"namespace": namespace, "statefulset": name},
                )
                raise CreateFailedError(namespace, name)

            case OnCreateFailureAction.DELETE:
                logger.warning(
                    "StatefulSet create failed, deleting failed StatefulSet",
                    extra={"namespace": namespace, "statefulset": name},
                )
                await self._delete_statefulset(namespace, name)
                self.continuation_verdict(PHASE_CREATE, namespace, name)

            case _:
                self._unknown_action(PHASE_CREATE, action, namespace, name)

    async def on_update_failed(self, rollback: V1StatefulSet) -> None:
        """Handle a StatefulSet that did not converge after update.

        Args:
            rollback: Copy of the StatefulSet as it was before the update.

        Raises:
            UpdateFailedError: Policy is abort.
            ReconcileStoppedError: Rolled back, and the pass must stop.
        """
        namespace = rollback.metadata.namespace
        name = rollback.metadata.name
        action = self._policy.on_update_failure

        match action:
            case OnUpdateFailureAction.ABORT:
                logger.error(
                    "StatefulSet update failed, aborting",
                    extra={"namespace": namespace, "statefulset": name},
                )
                raise UpdateFailedError(namespace, name)

            case OnUpdateFailureAction.ROLLBACK:
                logger.warning(
                    "StatefulSet update failed, rolling back",
                    extra={"namespace": namespace, "statefulset": name},
                )
                await self._rollback(rollback)
                self.continuation_verdict(PHASE_UPDATE, namespace, name)

            case _:
                self._unknown_action(PHASE_UPDATE, action, namespace, name)

    def continuation_verdict(self, phase: str, namespace: str, name: str) -> None:
        """Decide whether the pass may continue after remediation.

        Raises:
            ReconcileStoppedError: continue_on_failure is not set.
        """
        if self._policy.continue_on_failure:
            logger.info(
                "Continuing pass after remediation",
                extra={"namespace": namespace, "statefulset": name, "phase": phase},
            )
            return
        raise ReconcileStoppedError(namespace, name, phase)

    async def _delete_statefulset(self, namespace: str, name: str) -> None:
        try:
            await self._clients.apps_api.delete_namespaced_stateful_set(name, namespace)
        except ApiException as e:
            logger.warning(
                "Failed to delete failed StatefulSet",
                extra={"namespace": namespace, "statefulset": name, "error": str(e)},
            )
            return
        logger.info("Failed StatefulSet deleted", extra={"namespace": namespace, "statefulset": name})

    async def _rollback(self, rollback: V1StatefulSet) -> None:
        namespace = rollback.metadata.namespace
        name = rollback.metadata.name

        try:
            live = await read_statefulset(self._clients, namespace, name, self._lister)
        except ApiException as e:
            logger.warning(
                "Cannot read StatefulSet for rollback",
                extra={"namespace": namespace, "statefulset": name, "error": str(e)},
            )
            return

        # Revert .spec only; metadata keeps the live resourceVersion
        live.spec = copy.deepcopy(rollback.spec)
        try:
            live = await self._clients.apps_api.replace_namespaced_stateful_set(
                name, namespace, live
            )
        except ApiException as e:
            logger.warning(
                "StatefulSet rollback update failed",
                extra={"namespace": namespace, "statefulset": name, "error": str(e)},
            )

        # A broken pod may never pick up the reverted spec on its own; deleting
        # it makes the StatefulSet controller recreate it from the current spec
        target_pod = pod_name(live)
        try:
            await self._clients.core_api.delete_namespaced_pod(target_pod, namespace)
        except ApiException as e:
            logger.warning(
                "Failed to delete pod after rollback",
                extra={"namespace": namespace, "pod": target_pod, "error": str(e)},
            )
            return
        logger.info(
            "StatefulSet rolled back",
            extra={"namespace": namespace, "statefulset": name, "pod": target_pod},
        )

    def _unknown_action(self, phase: str, action: object, namespace: str, name: str) -> None:
        logger.error(
            "Unknown failure action",
            extra={"namespace": namespace, "statefulset": name, "phase": phase, "action": str(action)},
        )
        raise ConfigurationError(f"Unknown {phase} failure action: {action!r}")
