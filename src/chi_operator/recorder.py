"""Progress bookkeeping on the ClickHouseInstallation status.

Counters are incremented in memory under a lock and the whole status is
then persisted. A failed persist is logged and swallowed: the in-memory
counters stay correct and the next successful persist carries the
cumulative values.
"""

from __future__ import annotations

import asyncio
import logging

from pydantic import ValidationError

from .kube import PLATFORM_ERRORS, KubeClients
from .models import (
    CHI_GROUP,
    CHI_PLURAL,
    CHI_VERSION,
    ClusterInstallation,
    ClusterStatus,
    PassState,
)

logger = logging.getLogger(__name__)


class ClusterStatusRecorder:
    """Records added/updated hosts on one installation's status."""

    def __init__(self, clients: KubeClients, cluster: ClusterInstallation) -> None:
        self._clients = clients
        self._cluster = cluster
        self._lock = asyncio.Lock()

    @property
    def cluster(self) -> ClusterInstallation:
        return self._cluster

    async def record_added(self) -> None:
        """Count one host whose StatefulSet create was attempted."""
        async with self._lock:
            self._cluster.status.added_hosts_count += 1
            await self._persist()

    async def record_updated(self) -> None:
        """Count one host whose StatefulSet update was attempted."""
        async with self._lock:
            self._cluster.status.updated_hosts_count += 1
            await self._persist()

    async def record_pass_started(self, hosts_count: int) -> None:
        async with self._lock:
            self._cluster.status.status = PassState.IN_PROGRESS
            self._cluster.status.hosts_count = hosts_count
            self._cluster.status.errors = []
            await self._persist()

    async def record_pass_finished(self, errors: list[str]) -> None:
        """Persist the final outcome of a pass."""
        async with self._lock:
            self._cluster.status.status = PassState.ABORTED if errors else PassState.COMPLETED
            self._cluster.status.errors = list(errors)
            await self._persist()

    async def load_status(self) -> None:
        """Seed the counters from the status persisted on the platform.

        Counters are cumulative across passes and operator restarts, so a
        fresh process resumes from what is already recorded. A counter never
        moves backwards: if the last persist failed, the in-memory value is
        the higher one and wins. Unreadable status leaves memory untouched.
        """
        async with self._lock:
            try:
                obj = await self._clients.custom_api.get_namespaced_custom_object_status(
                    CHI_GROUP,
                    CHI_VERSION,
                    self._cluster.namespace,
                    CHI_PLURAL,
                    self._cluster.name,
                )
                persisted = ClusterStatus.model_validate((obj or {}).get("status") or {})
            except (*PLATFORM_ERRORS, ValidationError) as e:
                logger.warning(
                    "Failed to load installation status",
                    extra={
                        "namespace": self._cluster.namespace,
                        "cluster": self._cluster.name,
                        "error": str(e) or type(e).__name__,
                    },
                )
                return

            status = self._cluster.status
            status.added_hosts_count = max(status.added_hosts_count, persisted.added_hosts_count)
            status.updated_hosts_count = max(
                status.updated_hosts_count, persisted.updated_hosts_count
            )
            logger.debug(
                "Installation status loaded",
                extra={
                    "cluster": self._cluster.name,
                    "added_hosts_count": status.added_hosts_count,
                    "updated_hosts_count": status.updated_hosts_count,
                },
            )

    async def _persist(self) -> None:
        body = {"status": self._cluster.status.to_body()}
        try:
            await self._clients.custom_api.patch_namespaced_custom_object_status(
                CHI_GROUP,
                CHI_VERSION,
                self._cluster.namespace,
                CHI_PLURAL,
                self._cluster.name,
                body,
            )
        except PLATFORM_ERRORS as e:
            logger.warning(
                "Failed to persist installation status",
                extra={
                    "namespace": self._cluster.namespace,
                    "cluster": self._cluster.name,
                    "error": str(e) or type(e).__name__,
                },
            )
