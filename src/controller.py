"""
Operator Controller - Main reconciliation loop.

Similar to Kubernetes controllers, continuously reconciles each EMQX cluster's
desired state with the platform's actual state. Work arrives through a
coalescing queue (watch events, periodic resync, manual triggers) and is
processed by a fixed pool of workers, one pass per cluster at a time.
"""

import asyncio
import copy
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from admin import BrokerAdminClient
from builder import build_desired_state
from clusters import CLUSTER_KINDS, Cluster, cluster_from_object
from config import ControllerConfig, PluginLifecycleConfig
from context import ReconcileContext
from errors import ConflictError, InternalError, ReconcileCancelled, ReconcileError
from events import EventBus, EventRecorder
from kube import Platform
from models import (
    ClusterKey,
    ClusterStatus,
    ConditionStatus,
    ConditionType,
    format_time,
    utcnow,
)
from plugin_manager import PluginLifecycleManager, PluginOutcome
from status import StatusAggregator
from synchronizer import ApplyOutcome, ResourceSynchronizer
from workqueue import ShutDown, WorkQueue

logger = logging.getLogger(__name__)

REASON_RECONCILE_SUCCESS = "ReconcileSuccess"


@dataclass
class ReconcileResult:
    """Result of one reconcile pass."""

    success: bool = False
    message: str = ""
    requeue_after: Optional[float] = None
    backoff: bool = False
    reconciled_at: Optional[str] = None


class Controller:
    """
    Main controller that implements the reconciliation loop.

    Each pass runs build -> sync -> aggregate -> plugins -> persist status.
    A retryable failure ends the pass early and schedules a retry; a
    non-retryable one is recorded in the Reconciled condition and waits for
    the spec to change.
    """

    def __init__(
        self,
        platform: Platform,
        admin: BrokerAdminClient,
        config: Optional[ControllerConfig] = None,
        plugin_config: Optional[PluginLifecycleConfig] = None,
        event_bus: Optional[EventBus] = None,
        namespace: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.platform = platform
        self.config = config or ControllerConfig()
        self.namespace = namespace
        self.clock = clock or utcnow
        self.running = False

        self.queue: WorkQueue[ClusterKey] = WorkQueue(
            base_delay=self.config.backoff_base_delay,
            max_delay=self.config.backoff_max_delay,
            jitter_factor=self.config.backoff_jitter_factor,
        )
        self._shutdown_event = asyncio.Event()
        self.recorder = EventRecorder(platform, event_bus)
        self.ctx = ReconcileContext(
            platform, admin, recorder=self.recorder, shutdown_event=self._shutdown_event
        )

        self.synchronizer = ResourceSynchronizer(platform)
        self.aggregator = StatusAggregator(admin, clock=self.clock)
        self.plugin_manager = PluginLifecycleManager(plugin_config, clock=self.clock)

        self.last_results: Dict[ClusterKey, ReconcileResult] = {}
        self._tasks: List[asyncio.Task] = []

    async def start(self):
        """Start the worker pool and the periodic resync loop."""
        logger.info("Starting Operator Controller")
        self.running = True
        self._shutdown_event.clear()

        self._tasks = [
            asyncio.create_task(self._worker(i))
            for i in range(self.config.max_concurrent_reconciles)
        ]
        self._tasks.append(asyncio.create_task(self._resync_loop()))

        try:
            await asyncio.gather(*self._tasks)
        except Exception as e:
            logger.error(f"Controller error: {e}")
            raise

    async def stop(self):
        """Stop the controller gracefully; in-flight passes abort at their next check."""
        logger.info("Stopping Operator Controller")
        self.running = False
        self._shutdown_event.set()
        await self.queue.shutdown()

    # ==================== Work scheduling ====================

    async def enqueue(self, key: ClusterKey) -> None:
        await self.queue.add(key)

    async def trigger_reconciliation(self, key: ClusterKey) -> None:
        """Manually trigger reconciliation for a specific cluster."""
        logger.info(f"Manually triggering reconciliation for {key}")
        await self.queue.add(key)

    async def list_clusters(self, namespace: Optional[str] = None) -> List[Cluster]:
        """List every cluster object of every known kind."""
        clusters = []
        for kind in CLUSTER_KINDS:
            for obj in await self.platform.list(kind, namespace=namespace or self.namespace):
                obj.setdefault("kind", kind)
                clusters.append(cluster_from_object(obj))
        return clusters

    async def get_cluster(self, key: ClusterKey) -> Optional[Cluster]:
        obj = await self.platform.get(key.kind, key.namespace, key.name)
        if obj is None:
            return None
        obj.setdefault("kind", key.kind)
        return cluster_from_object(obj)

    async def resync(self) -> int:
        """
        Enqueue every cluster and release orphaned plugin finalizers.

        Returns:
            Number of clusters enqueued
        """
        clusters = await self.list_clusters()
        for cluster in clusters:
            await self.queue.add(cluster.identity.key)
        released = await self.plugin_manager.release_orphans(clusters, self.ctx)
        if released:
            logger.info(f"Released {released} orphaned plugin(s)")
        return len(clusters)

    async def _resync_loop(self):
        """Periodic full resync so every cluster is revisited without events."""
        while self.running:
            try:
                count = await self.resync()
                logger.debug(f"Resync enqueued {count} clusters")
            except ReconcileCancelled:
                return
            except Exception as e:
                logger.error(f"Error in resync loop: {e}", exc_info=True)

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(), timeout=self.config.reconcile_interval
                )
            except asyncio.TimeoutError:
                pass

    async def _worker(self, worker_id: int):
        """Process keys until the queue shuts down. Never dies on an error."""
        while True:
            try:
                key = await self.queue.get()
            except ShutDown:
                logger.debug(f"Worker {worker_id} exiting")
                return

            try:
                result = await self.reconcile(key)
                self._schedule(key, result)
            except Exception as e:
                logger.error(f"Error reconciling {key}: {e}", exc_info=True)
                self.queue.add_rate_limited(key)
            finally:
                await self.queue.done(key)

    def _schedule(self, key: ClusterKey, result: ReconcileResult) -> None:
        self.last_results[key] = result
        if result.backoff:
            delay = self.queue.add_rate_limited(key)
            logger.info(f"Requeued {key} in {delay:.1f}s after failure")
            return
        self.queue.forget(key)
        if result.requeue_after is not None:
            self.queue.add_after(key, result.requeue_after)
            logger.debug(f"Requeued {key} in {result.requeue_after:.1f}s")

    # ==================== Reconcile pass ====================

    async def reconcile(self, key: ClusterKey) -> ReconcileResult:
        """
        Run one reconcile pass for a cluster.

        This is the core reconciliation logic similar to Kubernetes controllers.

        Args:
            key: The cluster to reconcile

        Returns:
            ReconcileResult with the requeue decision for this cluster
        """
        start_time = time.monotonic()
        try:
            cluster = await self.get_cluster(key)
        except ReconcileError as e:
            logger.warning(f"Could not read {key}: {e}")
            return self._failure_result(e)

        if cluster is None:
            logger.info(f"{key} no longer exists")
            self.last_results.pop(key, None)
            return ReconcileResult(success=True, message="Cluster no longer exists")
        if cluster.deleting:
            logger.info(f"{key} is being deleted; children are garbage collected")
            return ReconcileResult(success=True, message="Cluster is being deleted")

        previous = cluster.get_status()
        try:
            self.ctx.check_cancelled()
            spec = cluster.get_spec()
            desired = build_desired_state(cluster.identity, spec)

            self.ctx.check_cancelled()
            sync = await self.synchronizer.sync(desired, self.ctx)
            sync.raise_for_error()

            self.ctx.check_cancelled()
            observation = await self.aggregator.observe(
                cluster.identity, spec, previous, self.ctx
            )

            self.ctx.check_cancelled()
            outcomes = await self.plugin_manager.reconcile_plugins(
                cluster, observation.members, self.ctx
            )

            status = observation.status
            message = (
                f"created {sync.count(ApplyOutcome.CREATED)}, "
                f"patched {sync.count(ApplyOutcome.PATCHED)}, "
                f"unchanged {sync.count(ApplyOutcome.UNCHANGED)}"
            )
            status.set_condition(
                ConditionType.RECONCILED,
                ConditionStatus.TRUE,
                REASON_RECONCILE_SUCCESS,
                message,
                now=self.clock(),
            )

            self.ctx.check_cancelled()
            await self._persist_status(cluster, status)
        except ReconcileCancelled:
            logger.info(f"Pass for {key} cancelled by shutdown")
            return ReconcileResult(success=False, message="Cancelled")
        except ReconcileError as e:
            return await self._record_failure(cluster, previous, e)
        except Exception as e:
            logger.error(f"Unexpected error reconciling {key}: {e}", exc_info=True)
            return await self._record_failure(
                cluster, previous, InternalError(f"{type(e).__name__}: {e}")
            )

        if sync.changed:
            await self.recorder.normal(
                key.kind, key.namespace, key.name, "Reconciled", f"Child resources {message}"
            )
        await self._record_running_transition(cluster, previous, status)

        duration = time.monotonic() - start_time
        logger.info(f"Reconciled {key} in {duration:.2f}s ({message})")
        return ReconcileResult(
            success=True,
            message=message,
            requeue_after=self._requeue_after(status, outcomes),
            reconciled_at=format_time(self.clock()),
        )

    def _failure_result(self, error: ReconcileError) -> ReconcileResult:
        if isinstance(error, ConflictError):
            return ReconcileResult(
                success=False,
                message=error.message,
                requeue_after=self.config.conflict_requeue_delay,
            )
        return ReconcileResult(
            success=False, message=error.message, backoff=error.retryable
        )

    async def _record_failure(
        self, cluster: Cluster, previous: ClusterStatus, error: ReconcileError
    ) -> ReconcileResult:
        key = cluster.identity.key
        if error.retryable:
            logger.warning(f"Retryable failure reconciling {key}: {error}")
        else:
            logger.error(f"Failed to reconcile {key}: {error}")

        status = copy.deepcopy(previous)
        status.set_condition(
            ConditionType.RECONCILED,
            ConditionStatus.FALSE,
            error.reason,
            error.message,
            now=self.clock(),
        )
        try:
            await self._persist_status(cluster, status)
        except ReconcileError as e:
            logger.warning(f"Could not record failure on {key}: {e}")

        await self.recorder.warning(
            key.kind, key.namespace, key.name, "ReconcileFailed", error.message
        )
        return self._failure_result(error)

    async def _persist_status(self, cluster: Cluster, status: ClusterStatus) -> None:
        """Write the status subresource, skipping the write when nothing changed."""
        current = cluster.to_object().get("status") or {}
        desired = status.to_dict()
        if current == desired:
            return
        await self.platform.patch_status(
            cluster.kind, cluster.namespace, cluster.name, desired
        )
        cluster.set_status(status)

    async def _record_running_transition(
        self, cluster: Cluster, previous: ClusterStatus, status: ClusterStatus
    ) -> None:
        if previous.is_running() == status.is_running():
            return
        key = cluster.identity.key
        condition = status.get_condition(ConditionType.RUNNING)
        if status.is_running():
            await self.recorder.normal(
                key.kind, key.namespace, key.name, "ClusterRunning", condition.message
            )
        elif previous.get_condition(ConditionType.RUNNING) is not None:
            await self.recorder.warning(
                key.kind, key.namespace, key.name, "ClusterNotRunning", condition.message
            )

    def _requeue_after(
        self, status: ClusterStatus, outcomes: List[PluginOutcome]
    ) -> Optional[float]:
        delays = []
        if not status.is_running():
            delays.append(self.config.status_poll_interval)
        for outcome in outcomes:
            if outcome.requeue_after is not None:
                delays.append(outcome.requeue_after)
            elif outcome.error is not None and outcome.error.retryable:
                if isinstance(outcome.error, ConflictError):
                    delays.append(self.config.conflict_requeue_delay)
                else:
                    delays.append(self.plugin_manager.backoff(1))
        return min(delays) if delays else None

    def describe(self, cluster: Cluster) -> Dict[str, Any]:
        """Summary of a cluster for the HTTP surface."""
        status = cluster.get_status()
        key = cluster.identity.key
        last = self.last_results.get(key)
        running = status.get_condition(ConditionType.RUNNING)
        reconciled = status.get_condition(ConditionType.RECONCILED)
        return {
            "kind": key.kind,
            "namespace": key.namespace,
            "name": key.name,
            "replicas": status.replicas,
            "ready_replicas": status.ready_replicas,
            "running": status.is_running(),
            "running_reason": running.reason if running else None,
            "reconciled_reason": reconciled.reason if reconciled else None,
            "status": status.to_dict(),
            "last_result": last.message if last else None,
            "last_reconciled_at": last.reconciled_at if last else None,
        }
