"""Cluster-level models.

ClusterStatus mirrors the status subresource of a ClickHouseInstallation.
Field aliases are the camelCase keys stored on the platform object.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

CHI_GROUP = "clickhouse.altinity.com"
CHI_VERSION = "v1"
CHI_PLURAL = "clickhouseinstallations"


class PassState(str, Enum):
    """Outcome of the latest reconciliation pass, as shown on the status."""

    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    ABORTED = "Aborted"


class ClusterStatus(BaseModel):
    """Reconciliation progress of one installation.

    added_hosts_count and updated_hosts_count only ever grow; they are the
    durable record of how far a pass got even when it aborts midway.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    status: PassState | None = None
    hosts_count: int = Field(0, alias="hostsCount")
    added_hosts_count: int = Field(0, alias="addedHostsCount")
    updated_hosts_count: int = Field(0, alias="updatedHostsCount")
    errors: list[str] = Field(default_factory=list)

    def to_body(self) -> dict[str, Any]:
        """Serialize for the status subresource."""
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class ClusterInstallation(BaseModel):
    """In-memory handle on a ClickHouseInstallation custom resource."""

    model_config = {"extra": "ignore"}

    namespace: str
    name: str
    status: ClusterStatus = Field(default_factory=ClusterStatus)

    @property
    def ref(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class HostHandle:
    """Back-reference from a host's StatefulSet to its owning installation.

    Never owns the StatefulSet lifecycle.
    """

    namespace: str
    name: str
    cluster: ClusterInstallation

    @property
    def statefulset_ref(self) -> str:
        return f"{self.namespace}/{self.name}"
