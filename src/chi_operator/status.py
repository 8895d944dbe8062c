"""StatefulSet rollout status inspection.

After an accepted create or update:
1. metadata.generation is the target generation
2. status.observedGeneration may still be lower than metadata.generation

A rollout is complete only when the StatefulSet controller has observed the
target generation AND every replica is ready, current and updated AND the
current revision is the update revision. Waiting on generation (rather than
readiness alone) keeps an earlier rollout's readiness from being mistaken
for the new one's.
"""

from __future__ import annotations

from kubernetes_asyncio.client import V1StatefulSet, V1StatefulSetStatus


def desired_replicas(statefulset: V1StatefulSet) -> int:
    """Get spec.replicas, which the platform defaults to 1 when unset."""
    if statefulset.spec is None or statefulset.spec.replicas is None:
        return 1
    return statefulset.spec.replicas


def has_reached_generation(statefulset: V1StatefulSet | None, generation: int) -> bool:
    """Check whether a StatefulSet has fully rolled out the given generation.

    Args:
        statefulset: Observed StatefulSet, or None if it could not be fetched.
        generation: Target generation returned by the create/update call.

    Returns:
        True if the target generation is observed and fully rolled out.
    """
    if statefulset is None or statefulset.metadata is None:
        return False

    status = statefulset.status
    if status is None:
        return False

    # The platform omits zero-valued counters from the status
    replicas = desired_replicas(statefulset)
    ready = status.ready_replicas or 0
    current = status.current_replicas or 0
    updated = status.updated_replicas or 0

    return (
        statefulset.metadata.generation == generation
        and status.observed_generation == generation
        and ready == replicas
        and current == replicas
        and updated == replicas
        and status.current_revision == status.update_revision
    )


def status_string(status: V1StatefulSetStatus | None) -> str:
    """Render a StatefulSet status on one line for logs."""
    if status is None:
        return "<no status>"
    return (
        f"ObservedGeneration:{status.observed_generation} "
        f"Replicas:{status.replicas} "
        f"ReadyReplicas:{status.ready_replicas or 0} "
        f"CurrentReplicas:{status.current_replicas or 0} "
        f"UpdatedReplicas:{status.updated_replicas or 0} "
        f"CurrentRevision:{status.current_revision} "
        f"UpdateRevision:{status.update_revision}"
    )
