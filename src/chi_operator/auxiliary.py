"""Create-or-update of ConfigMaps and Services.

These objects are applied synchronously from the caller's point of view;
there is no generation tracking and no rollback.
"""

from __future__ import annotations

import logging

from kubernetes_asyncio.client import ApiException, V1ConfigMap, V1Service

from .kube import KubeClients, is_not_found

logger = logging.getLogger(__name__)


class AuxiliaryReconciler:
    """Idempotent upsert of stateless installation resources."""

    def __init__(self, clients: KubeClients) -> None:
        self._clients = clients

    async def reconcile_config_map(self, desired: V1ConfigMap) -> None:
        """Create the ConfigMap, or replace it if it already exists.

        Raises:
            ApiException: Any failure other than "not found" on read, or a
                rejected create/replace.
        """
        namespace = desired.metadata.namespace
        name = desired.metadata.name
        core_api = self._clients.core_api

        try:
            await core_api.read_namespaced_config_map(name, namespace)
        except ApiException as e:
            if not is_not_found(e):
                raise
            logger.info("Creating ConfigMap", extra={"namespace": namespace, "resource": name})
            await core_api.create_namespaced_config_map(namespace, desired)
            return

        logger.debug("Updating ConfigMap", extra={"namespace": namespace, "resource": name})
        await core_api.replace_namespaced_config_map(name, namespace, desired)

    async def reconcile_service(self, desired: V1Service) -> None:
        """Create the Service, or replace it if it already exists.

        spec.clusterIP is immutable once assigned and replace requires the
        live resourceVersion, so both are carried over from the live object
        into desired before the replace call.

        Raises:
            ApiException: Any failure other than "not found" on read, or a
                rejected create/replace.
        """
        namespace = desired.metadata.namespace
        name = desired.metadata.name
        core_api = self._clients.core_api

        try:
            live = await core_api.read_namespaced_service(name, namespace)
        except ApiException as e:
            if not is_not_found(e):
                raise
            logger.info("Creating Service", extra={"namespace": namespace, "resource": name})
            await core_api.create_namespaced_service(namespace, desired)
            return

        desired.metadata.resource_version = live.metadata.resource_version
        if live.spec is not None and desired.spec is not None:
            desired.spec.cluster_ip = live.spec.cluster_ip

        logger.debug(
            "Updating Service",
            extra={
                "namespace": namespace,
                "resource": name,
                "cluster_ip": desired.spec.cluster_ip if desired.spec else None,
            },
        )
        await core_api.replace_namespaced_service(name, namespace, desired)
