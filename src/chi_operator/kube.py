"""Kubernetes API access.

A single KubeClients handle is created at startup and passed explicitly to
every component. There is no module-level client.

StatefulSetCache is a watch-fed lister used on the read side of rollout
polling so that waiting on many hosts does not hammer the API server. Reads
fall back to direct API calls while the cache is not synced.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass
from typing import Any

import aiohttp
from kubernetes_asyncio import client, config, watch
from kubernetes_asyncio.client import ApiException, V1StatefulSet
from kubernetes_asyncio.config import ConfigException

logger = logging.getLogger(__name__)

HTTP_NOT_FOUND = 404
HTTP_CONFLICT = 409
HTTP_GONE = 410

# Server-side watch timeout; the watch is re-established after it expires
WATCH_TIMEOUT_SECONDS = 300
WATCH_RETRY_BACKOFF_SECONDS = 5

# Failures below the API layer: dropped connections, DNS, request timeouts
TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (aiohttp.ClientError, TimeoutError)

# Everything a Kubernetes call can raise that a reconcile pass treats as a
# recoverable platform failure
PLATFORM_ERRORS: tuple[type[BaseException], ...] = (ApiException, *TRANSPORT_ERRORS)


@dataclass
class KubeClients:
    """Kubernetes API handles shared by all components of one operator."""

    apps_api: client.AppsV1Api
    core_api: client.CoreV1Api
    custom_api: client.CustomObjectsApi
    api_client: client.ApiClient | None = None

    async def close(self) -> None:
        """Release the underlying HTTP session."""
        if self.api_client is not None:
            await self.api_client.close()


async def create_kube_clients(kubeconfig: str | None = None) -> KubeClients:
    """Create API handles from in-cluster config, falling back to kubeconfig.

    Args:
        kubeconfig: Optional kubeconfig path used outside a cluster.

    Returns:
        KubeClients bound to an isolated Configuration.
    """
    configuration = client.Configuration()
    try:
        config.load_incluster_config(client_configuration=configuration)
        source = "in-cluster"
    except ConfigException:
        await config.load_kube_config(config_file=kubeconfig, client_configuration=configuration)
        source = kubeconfig or "default kubeconfig"

    api_client = client.ApiClient(configuration=configuration)
    logger.info(
        "Kubernetes client initialized",
        extra={"config_source": source, "host": configuration.host},
    )
    return KubeClients(
        apps_api=client.AppsV1Api(api_client),
        core_api=client.CoreV1Api(api_client),
        custom_api=client.CustomObjectsApi(api_client),
        api_client=api_client,
    )


def is_not_found(error: BaseException) -> bool:
    """Check whether an error is the API server's "not found"."""
    return isinstance(error, ApiException) and error.status == HTTP_NOT_FOUND


def is_conflict(error: BaseException) -> bool:
    """Check whether an error is "already exists" or a stale resourceVersion."""
    return isinstance(error, ApiException) and error.status == HTTP_CONFLICT


def not_found_error(namespace: str, name: str) -> ApiException:
    """Build the error a lister raises for a missing object."""
    return ApiException(status=HTTP_NOT_FOUND, reason=f"StatefulSet {namespace}/{name} not found")


class StatefulSetCache:
    """Watch-fed cache of the StatefulSets in one namespace."""

    def __init__(self, apps_api: client.AppsV1Api, namespace: str) -> None:
        self._apps_api = apps_api
        self._namespace = namespace
        self._items: dict[str, V1StatefulSet] = {}
        self._synced = False
        self._stop_event = asyncio.Event()

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def synced(self) -> bool:
        """True once the initial list has populated the cache."""
        return self._synced

    def __len__(self) -> int:
        return len(self._items)

    def get(self, namespace: str, name: str) -> V1StatefulSet:
        """Get a cached StatefulSet.

        Returns a copy so callers may mutate it freely.

        Raises:
            ApiException: 404 if the object is not in the cache.
        """
        if namespace != self._namespace:
            raise not_found_error(namespace, name)
        item = self._items.get(name)
        if item is None:
            raise not_found_error(namespace, name)
        return copy.deepcopy(item)

    def replace_all(self, items: list[V1StatefulSet]) -> None:
        """Reset the cache from a full list."""
        self._items = {item.metadata.name: item for item in items}
        self._synced = True

    def apply_event(self, event: dict[str, Any]) -> None:
        """Apply one watch event to the cache."""
        event_type = event.get("type")
        obj = event.get("object")
        if obj is None or getattr(obj, "metadata", None) is None:
            return

        name = obj.metadata.name
        match event_type:
            case "ADDED" | "MODIFIED":
                self._items[name] = obj
            case "DELETED":
                self._items.pop(name, None)
            case _:
                logger.debug(
                    "Ignoring watch event",
                    extra={"event_type": event_type, "namespace": self._namespace},
                )

    def stop(self) -> None:
        """Signal run() to exit after the current watch event."""
        self._stop_event.set()

    async def run(self) -> None:
        """List then watch StatefulSets until stop() is called.

        Any break in the watch marks the cache unsynced so that reads fall
        back to the API until the next list succeeds.
        """
        while not self._stop_event.is_set():
            try:
                await self._list_and_watch()
            except ApiException as e:
                self._synced = False
                if e.status == HTTP_GONE:
                    logger.info(
                        "Watch expired, relisting",
                        extra={"namespace": self._namespace},
                    )
                    continue
                logger.warning(
                    "StatefulSet watch failed, retrying",
                    extra={"namespace": self._namespace, "error": str(e)},
                )
                await self._backoff()
            except TRANSPORT_ERRORS as e:
                self._synced = False
                logger.warning(
                    "StatefulSet watch connection lost, retrying",
                    extra={"namespace": self._namespace, "error": str(e) or type(e).__name__},
                )
                await self._backoff()

        logger.info("StatefulSet cache stopped", extra={"namespace": self._namespace})

    async def _backoff(self) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=WATCH_RETRY_BACKOFF_SECONDS)
        except TimeoutError:
            pass

    async def _list_and_watch(self) -> None:
        listing = await self._apps_api.list_namespaced_stateful_set(self._namespace)
        self.replace_all(list(listing.items))
        logger.debug(
            "StatefulSet cache synced",
            extra={"namespace": self._namespace, "count": len(self._items)},
        )

        async with watch.Watch().stream(
            self._apps_api.list_namespaced_stateful_set,
            namespace=self._namespace,
            resource_version=listing.metadata.resource_version,
            timeout_seconds=WATCH_TIMEOUT_SECONDS,
        ) as stream:
            async for event in stream:
                self.apply_event(event)
                if self._stop_event.is_set():
                    break


async def read_statefulset(
    clients: KubeClients,
    namespace: str,
    name: str,
    lister: StatefulSetCache | None = None,
) -> V1StatefulSet:
    """Get a StatefulSet via the cache when usable, otherwise from the API.

    Raises:
        ApiException: 404 if not found, any other API failure unchanged.
    """
    if lister is not None and lister.synced and lister.namespace == namespace:
        return lister.get(namespace, name)
    return await clients.apps_api.read_namespaced_stateful_set(name, namespace)
