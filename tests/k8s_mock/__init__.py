"""Kubernetes API Mock for Integration Testing.

In-memory stand-in for the parts of the kubernetes_asyncio API surface the
operator uses, so reconciliation can be tested without a cluster.

Key Features:
- In-memory StatefulSets, Services, ConfigMaps, pods and installation status
- Server-side generation bumping on spec changes, resourceVersion conflicts
- Scripted rollout behavior (immediate, stalled, eventual)
- Error injection per operation
- Call recording for assertions
- Fake clock for the convergence waiter

Usage:
    from k8s_mock import MockKubeState, create_mock_clients, make_statefulset

    state = MockKubeState()
    clients = create_mock_clients(state)
    await clients.apps_api.create_namespaced_stateful_set("ch", make_statefulset("host-0"))
    assert state.calls_for("create_statefulset")
"""

from .apis import (
    MockAppsV1Api,
    MockCoreV1Api,
    MockCustomObjectsApi,
    create_mock_clients,
)
from .clock import FakeClock
from .objects import make_config_map, make_service, make_statefulset
from .state import MockKubeState, RecordedCall, RolloutBehavior

__all__ = [
    "FakeClock",
    "MockAppsV1Api",
    "MockCoreV1Api",
    "MockCustomObjectsApi",
    "MockKubeState",
    "RecordedCall",
    "RolloutBehavior",
    "create_mock_clients",
    "make_config_map",
    "make_service",
    "make_statefulset",
]
