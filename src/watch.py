"""
Watcher - Turns platform watch streams into work-queue keys.

Watches cluster objects, plugin objects and the StatefulSets and Pods the
operator manages. Every event is mapped to the cluster(s) it affects and
those keys are enqueued; the queue coalesces bursts.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from clusters import CLUSTER_KINDS, cluster_from_object
from errors import ReconcileError
from kube import Platform, WatchExpired
from models import (
    INSTANCE_LABEL,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    ClusterKey,
    labels_match,
)

logger = logging.getLogger(__name__)

Handler = Callable[[str, Dict[str, Any]], Awaitable[None]]


class Watcher:
    """
    Maps watch events to cluster keys.

    Keeps a small index of known clusters (kind and labels by namespace and
    name) so that pod, StatefulSet and plugin events can be routed.
    """

    def __init__(
        self,
        platform: Platform,
        enqueue: Callable[[ClusterKey], Awaitable[None]],
        namespace: Optional[str] = None,
        retry_delay: float = 5.0,
    ):
        self.platform = platform
        self.enqueue = enqueue
        self.namespace = namespace
        self.retry_delay = retry_delay
        self.running = False
        self._clusters: Dict[Tuple[str, str], Tuple[str, Dict[str, str]]] = {}
        self._tasks: List[asyncio.Task] = []

    def streams(self) -> List[Tuple[str, Optional[Dict[str, str]], Handler]]:
        managed = {MANAGED_BY_LABEL: MANAGED_BY_VALUE}
        streams: List[Tuple[str, Optional[Dict[str, str]], Handler]] = [
            (kind, None, self.on_cluster_event) for kind in CLUSTER_KINDS
        ]
        streams.append(("EmqxPlugin", None, self.on_plugin_event))
        streams.append(("StatefulSet", managed, self.on_child_event))
        streams.append(("Pod", managed, self.on_child_event))
        return streams

    async def start(self) -> None:
        """Run every watch stream until stopped."""
        logger.info("Starting watches")
        self.running = True
        self._tasks = [
            asyncio.create_task(self._run_stream(kind, labels, handler))
            for kind, labels, handler in self.streams()
        ]
        await asyncio.gather(*self._tasks, return_exceptions=True)

    async def stop(self) -> None:
        logger.info("Stopping watches")
        self.running = False
        for task in self._tasks:
            if not task.done():
                task.cancel()
        self._tasks.clear()

    async def _run_stream(
        self, kind: str, labels: Optional[Dict[str, str]], handler: Handler
    ) -> None:
        while self.running:
            try:
                async for event_type, obj in self.platform.watch(
                    kind, namespace=self.namespace, labels=labels
                ):
                    await handler(event_type, obj)
            except WatchExpired:
                logger.info(f"Watch for {kind} expired, restarting")
                continue
            except ReconcileError as e:
                logger.warning(f"Watch for {kind} failed: {e}")
            except Exception as e:
                logger.error(f"Error in {kind} watch: {e}", exc_info=True)
            else:
                # Server closed the stream at its timeout; reopen it.
                await asyncio.sleep(0)
                continue
            await asyncio.sleep(self.retry_delay)

    # ==================== Event mapping ====================

    async def on_cluster_event(self, event_type: str, obj: Dict[str, Any]) -> None:
        cluster = cluster_from_object(obj)
        index = (cluster.namespace, cluster.name)
        if event_type == "DELETED":
            self._clusters.pop(index, None)
        else:
            self._clusters[index] = (cluster.kind, cluster.labels)
        await self.enqueue(cluster.identity.key)

    async def on_plugin_event(self, event_type: str, obj: Dict[str, Any]) -> None:
        metadata = obj.get("metadata") or {}
        namespace = metadata.get("namespace", "")
        selector = (obj.get("spec") or {}).get("selector") or {}
        for key in self.clusters_selected(namespace, selector):
            await self.enqueue(key)

    async def on_child_event(self, event_type: str, obj: Dict[str, Any]) -> None:
        key = self.owner_of(obj)
        if key is not None:
            await self.enqueue(key)

    def clusters_selected(
        self, namespace: str, selector: Dict[str, str]
    ) -> List[ClusterKey]:
        return [
            ClusterKey(kind, ns, name)
            for (ns, name), (kind, labels) in sorted(self._clusters.items())
            if ns == namespace and labels_match(selector, labels)
        ]

    def owner_of(self, obj: Dict[str, Any]) -> Optional[ClusterKey]:
        """The cluster a managed StatefulSet or Pod belongs to, if known."""
        metadata = obj.get("metadata") or {}
        namespace = metadata.get("namespace", "")
        for owner in metadata.get("ownerReferences") or []:
            if owner.get("kind") in CLUSTER_KINDS:
                return ClusterKey(owner["kind"], namespace, owner["name"])

        name = (metadata.get("labels") or {}).get(INSTANCE_LABEL)
        if not name:
            return None
        known = self._clusters.get((namespace, name))
        if known is None:
            return None
        return ClusterKey(known[0], namespace, name)
