"""
Status Aggregator - Turns observed broker pods into a ClusterStatus.

Every pass recomputes the status from scratch: node statuses are a
snapshot of the pods seen now, and the Running condition reflects only the
latest observation.
"""

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from admin import BrokerAdminClient
from builder import node_name, selector_labels
from context import ReconcileContext
from models import (
    ClusterIdentity,
    ClusterSpec,
    ClusterStatus,
    ConditionStatus,
    ConditionType,
    Member,
    NodeStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

CRASH_REASONS = {
    "CrashLoopBackOff",
    "Error",
    "RunContainerError",
    "CreateContainerError",
    "ImagePullBackOff",
    "ErrImagePull",
}

REASON_CLUSTER_READY = "ClusterReady"
REASON_NO_REPLICAS = "NoReplicas"
REASON_REPLICAS_NOT_READY = "ReplicasNotReady"
REASON_NODE_CRASHING = "NodeCrashing"


@dataclass
class Observation:
    """What one pass saw: the recomputed status and the members behind it."""

    status: ClusterStatus
    members: List[Member] = field(default_factory=list)


def _ordinal(pod_name: str):
    suffix = pod_name.rsplit("-", 1)[-1]
    return (0, int(suffix), pod_name) if suffix.isdigit() else (1, 0, pod_name)


def pod_ready(pod: Dict[str, Any]) -> bool:
    """Platform readiness: the pod's Ready condition is True."""
    for condition in (pod.get("status") or {}).get("conditions") or []:
        if condition.get("type") == "Ready":
            return condition.get("status") == "True"
    return False


def pod_crashing(pod: Dict[str, Any]) -> bool:
    """True when the pod failed or any container is crashing or restarting."""
    status = pod.get("status") or {}
    if status.get("phase") == "Failed":
        return True
    for container in status.get("containerStatuses") or []:
        state = container.get("state") or {}
        waiting = state.get("waiting")
        if waiting and waiting.get("reason") in CRASH_REASONS:
            return True
        if state.get("terminated"):
            return True
    return False


def member_from_pod(pod: Dict[str, Any], identity: ClusterIdentity) -> Member:
    metadata = pod.get("metadata") or {}
    pod_name = metadata.get("name", "")
    return Member(
        pod_name=pod_name,
        node=node_name(pod_name, identity.name, identity.namespace),
        host=(pod.get("status") or {}).get("podIP"),
        uid=metadata.get("uid"),
        labels=dict(metadata.get("labels") or {}),
        platform_ready=pod_ready(pod),
        crashing=pod_crashing(pod),
    )


class StatusAggregator:
    """Computes cluster status from pod readiness and member health checks."""

    def __init__(
        self,
        admin: BrokerAdminClient,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.admin = admin
        self.clock = clock or utcnow

    async def observe(
        self,
        identity: ClusterIdentity,
        spec: ClusterSpec,
        previous: ClusterStatus,
        ctx: ReconcileContext,
    ) -> Observation:
        """List the cluster's pods and aggregate them into a status."""
        ctx.check_cancelled()
        pods = await ctx.platform.list(
            "Pod", namespace=identity.namespace, labels=selector_labels(identity.name)
        )
        return await self.aggregate(identity, spec, pods, previous, ctx)

    async def aggregate(
        self,
        identity: ClusterIdentity,
        spec: ClusterSpec,
        pods: List[Dict[str, Any]],
        previous: ClusterStatus,
        ctx: ReconcileContext,
    ) -> Observation:
        """
        Build a ClusterStatus from observed pods.

        Only platform-ready members are health-checked; a failed health
        check marks the member not ready without failing the pass.

        Args:
            identity: The cluster's identity
            spec: The normalized cluster spec (for the desired replica count)
            pods: Pods currently observed for the cluster
            previous: Last persisted status, used to keep transition times
            ctx: Reconcile context

        Returns:
            Observation with the new status and the members it was built from
        """
        members = sorted(
            (member_from_pod(pod, identity) for pod in pods),
            key=lambda m: _ordinal(m.pod_name),
        )

        probed = [m for m in members if m.platform_ready and not m.crashing]
        if probed:
            ctx.check_cancelled()
            results = await asyncio.gather(*(self.admin.is_healthy(m) for m in probed))
            for member, healthy in zip(probed, results):
                member.healthy = healthy

        status = ClusterStatus(
            replicas=spec.replicas,
            ready_replicas=min(sum(1 for m in members if m.ready), spec.replicas),
            node_statuses=[self._node_status(m) for m in members],
            conditions=copy.deepcopy(previous.conditions),
        )
        self._set_running(status, members)
        return Observation(status=status, members=members)

    def _node_status(self, member: Member) -> NodeStatus:
        info = member.node_info
        return NodeStatus(
            node=info.get("node") or member.node,
            pod_name=member.pod_name,
            node_status=info.get("node_status", "Unknown"),
            otp_release=info.get("otp_release", ""),
            version=info.get("version", ""),
            ready=member.ready,
        )

    def _set_running(self, status: ClusterStatus, members: List[Member]) -> None:
        now = self.clock()
        crashing = [m.pod_name for m in members if m.crashing]
        ready = sum(1 for m in members if m.ready)

        if status.replicas == 0:
            status.set_condition(
                ConditionType.RUNNING,
                ConditionStatus.FALSE,
                REASON_NO_REPLICAS,
                "Cluster is scaled to zero",
                now=now,
            )
        elif crashing:
            status.set_condition(
                ConditionType.RUNNING,
                ConditionStatus.FALSE,
                REASON_NODE_CRASHING,
                f"Members crashing: {', '.join(crashing)}",
                now=now,
            )
        elif ready == status.replicas and all(m.ready for m in members):
            status.set_condition(
                ConditionType.RUNNING,
                ConditionStatus.TRUE,
                REASON_CLUSTER_READY,
                f"All {ready} members are ready",
                now=now,
            )
        else:
            status.set_condition(
                ConditionType.RUNNING,
                ConditionStatus.FALSE,
                REASON_REPLICAS_NOT_READY,
                f"{ready}/{status.replicas} members ready",
                now=now,
            )
