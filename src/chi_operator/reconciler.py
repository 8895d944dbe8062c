"""Reconciliation loop for one ClickHouseInstallation.

Each pass:
1. Loads the failure policy (hot-reloaded between passes, never during one)
2. Loads the rendered desired objects
3. Upserts ConfigMaps, then Services
4. Creates or updates each host's StatefulSet and waits for its rollout
5. Records the pass outcome on the installation status

Hosts are independent and run on a bounded worker pool. Within a host the
submit and the wait are strictly sequential. Once a host fails, hosts that
have not started yet are skipped; hosts already in flight run to completion.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from kubernetes_asyncio.client import ApiException, V1StatefulSet

from .auxiliary import AuxiliaryReconciler
from .config import Config, ConfigurationError, FailurePolicyConfig, PolicySource
from .failure_policy import FailurePolicyEngine, ReconcileError
from .kube import TRANSPORT_ERRORS, KubeClients, StatefulSetCache
from .manifests import DesiredState, ManifestLoadError, load_manifests
from .models import ClusterInstallation, HostHandle
from .recorder import ClusterStatusRecorder
from .waiter import ConvergenceWaiter
from .workload import HostOutcome, StatefulSetReconciler

logger = logging.getLogger(__name__)


@dataclass
class PassResult:
    """Result of a single reconciliation pass."""

    cluster: str
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    hosts_total: int = 0
    hosts_succeeded: int = 0
    hosts_failed: int = 0
    hosts_skipped: int = 0
    hosts_remediated: int = 0
    errors: list[str] = field(default_factory=list)
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if every host was reconciled."""
        return self.error is None and not self.errors and self.hosts_skipped == 0


class Reconciler:
    """Runs reconciliation passes for one installation until shutdown."""

    def __init__(
        self,
        config: Config,
        clients: KubeClients,
        *,
        policy_source: PolicySource | None = None,
        lister: StatefulSetCache | None = None,
    ) -> None:
        """Initialize reconciler.

        Args:
            config: Validated operator configuration.
            clients: Kubernetes API handles.
            policy_source: Supplies the failure policy before each pass.
            lister: Optional StatefulSet cache for rollout polling.
        """
        self._config = config
        self._clients = clients
        self._policy_source = policy_source or PolicySource(config.policy, config.policy_file)
        self._lister = lister
        self._cluster = ClusterInstallation(namespace=config.namespace, name=config.cluster_name)
        self._shutdown_event = asyncio.Event()

    @property
    def config(self) -> Config:
        return self._config

    @property
    def cluster(self) -> ClusterInstallation:
        return self._cluster

    async def run(self) -> None:
        """Run reconciliation passes at the configured interval until shutdown."""
        logger.info(
            "Starting reconciler",
            extra={
                "cluster": self._cluster.ref,
                "interval_seconds": self._config.reconcile_interval_seconds,
                "max_concurrent_hosts": self._config.max_concurrent_hosts,
            },
        )

        while not self._shutdown_event.is_set():
            result = await self._reconcile_once()
            self._log_result(result)

            # Wait for next pass or shutdown
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self._config.reconcile_interval_seconds,
                )
            except TimeoutError:
                pass

        logger.info("Reconciler shutdown complete", extra={"cluster": self._cluster.ref})

    def shutdown(self) -> None:
        """Signal the reconciler to stop; in-flight rollout waits return at once."""
        logger.info("Shutdown requested", extra={"cluster": self._cluster.ref})
        self._shutdown_event.set()

    async def _reconcile_once(self) -> PassResult:
        try:
            desired = await load_manifests(
                self._config.manifests_dir, self._config.namespace, self._clients.api_client
            )
        except ManifestLoadError as e:
            logger.error("Failed to load manifests", extra={"error": str(e)})
            result = PassResult(cluster=self._cluster.ref, error=e)
            result.end_time = datetime.now(UTC)
            return result
        return await self.reconcile_pass(desired)

    async def reconcile_pass(self, desired: DesiredState) -> PassResult:
        """Reconcile all desired objects once.

        The pass outcome is recorded on the installation status whatever
        happens during the pass.

        Args:
            desired: Rendered objects for this installation.

        Returns:
            PassResult with per-host counts and error messages.
        """
        result = PassResult(cluster=self._cluster.ref, hosts_total=desired.hosts_count)
        policy = self._policy_source.load()
        recorder = ClusterStatusRecorder(self._clients, self._cluster)
        await recorder.load_status()
        await recorder.record_pass_started(desired.hosts_count)

        try:
            await self._reconcile_auxiliary(desired)
            await self._reconcile_hosts(desired.statefulsets, policy, recorder, result)
        except ApiException as e:
            logger.error(
                "Kubernetes API error",
                extra={"cluster": self._cluster.ref, "error": str(e), "status_code": e.status},
            )
            result.error = e
            result.errors.append(str(e))
        except TRANSPORT_ERRORS as e:
            logger.error(
                "Kubernetes API unreachable",
                extra={"cluster": self._cluster.ref, "error": str(e) or type(e).__name__},
            )
            result.error = e
            result.errors.append(str(e) or type(e).__name__)
        except ConfigurationError as e:
            logger.error("Configuration error", extra={"error": str(e)})
            result.error = e
            result.errors.append(str(e))
        except Exception as e:
            logger.exception("Unexpected error during pass", extra={"cluster": self._cluster.ref})
            result.error = e
            result.errors.append(str(e) or type(e).__name__)
        finally:
            await recorder.record_pass_finished(result.errors)
            result.end_time = datetime.now(UTC)

        return result

    async def _reconcile_auxiliary(self, desired: DesiredState) -> None:
        auxiliary = AuxiliaryReconciler(self._clients)
        for config_map in desired.config_maps:
            await auxiliary.reconcile_config_map(config_map)
        for service in desired.services:
            await auxiliary.reconcile_service(service)

    def _build_workload_reconciler(
        self, policy: FailurePolicyConfig, recorder: ClusterStatusRecorder
    ) -> StatefulSetReconciler:
        waiter = ConvergenceWaiter(
            self._clients,
            timeout_seconds=policy.convergence_timeout_seconds,
            poll_interval_seconds=policy.convergence_poll_interval_seconds,
            lister=self._lister,
            cancel_event=self._shutdown_event,
        )
        policy_engine = FailurePolicyEngine(self._clients, policy, self._lister)
        return StatefulSetReconciler(
            self._clients, waiter, policy_engine, recorder, self._lister
        )

    async def _reconcile_hosts(
        self,
        statefulsets: list[V1StatefulSet],
        policy: FailurePolicyConfig,
        recorder: ClusterStatusRecorder,
        result: PassResult,
    ) -> None:
        workload = self._build_workload_reconciler(policy, recorder)
        semaphore = asyncio.Semaphore(self._config.max_concurrent_hosts)
        stop_pass = asyncio.Event()

        async def reconcile_host(desired: V1StatefulSet) -> None:
            async with semaphore:
                if stop_pass.is_set() or self._shutdown_event.is_set():
                    result.hosts_skipped += 1
                    return

                host = HostHandle(
                    namespace=desired.metadata.namespace,
                    name=desired.metadata.name,
                    cluster=self._cluster,
                )
                try:
                    outcome = await workload.reconcile(desired, host)
                except (ReconcileError, ApiException) as e:
                    self._host_failed(host, result, stop_pass, str(e))
                    return
                except TRANSPORT_ERRORS as e:
                    self._host_failed(host, result, stop_pass, str(e) or type(e).__name__)
                    return
                except Exception as e:
                    logger.exception(
                        "Unexpected error reconciling host",
                        extra={"host": host.statefulset_ref},
                    )
                    self._host_failed(host, result, stop_pass, str(e) or type(e).__name__)
                    return

                if outcome == HostOutcome.REMEDIATED:
                    result.hosts_remediated += 1
                    result.errors.append(
                        f"{host.statefulset_ref} did not converge and was remediated"
                    )
                    return
                result.hosts_succeeded += 1

        await asyncio.gather(*(reconcile_host(sts) for sts in statefulsets))

    @staticmethod
    def _host_failed(
        host: HostHandle, result: PassResult, stop_pass: asyncio.Event, error: str
    ) -> None:
        stop_pass.set()
        result.hosts_failed += 1
        result.errors.append(error)
        logger.error(
            "Host reconciliation failed",
            extra={"host": host.statefulset_ref, "error": error},
        )

    def _log_result(self, result: PassResult) -> None:
        """Log pass result with structured data."""
        extra: dict[str, Any] = {
            "cluster": result.cluster,
            "duration_seconds": result.duration_seconds,
            "hosts_total": result.hosts_total,
            "hosts_succeeded": result.hosts_succeeded,
            "hosts_failed": result.hosts_failed,
            "hosts_skipped": result.hosts_skipped,
            "hosts_remediated": result.hosts_remediated,
            "added_hosts_count": self._cluster.status.added_hosts_count,
            "updated_hosts_count": self._cluster.status.updated_hosts_count,
        }

        if result.errors:
            extra["errors"] = result.errors
            logger.error("Reconciliation pass failed", extra=extra)
        elif result.hosts_skipped:
            logger.warning("Reconciliation pass interrupted", extra=extra)
        else:
            logger.info("Reconciliation pass result", extra=extra)
