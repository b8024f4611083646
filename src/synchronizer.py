"""
Resource Synchronizer - Create-or-patch of desired child resources.

Resources are applied in dependency order (storage, workload, network,
configuration). Nothing is ever deleted: a resource the builder no longer
emits is left alone.
"""

import copy
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from builder import desired_hash
from context import ReconcileContext
from errors import ReconcileError
from kube import Platform
from models import DESIRED_HASH_ANNOTATION

logger = logging.getLogger(__name__)

KIND_ORDER = {
    "PersistentVolumeClaim": 0,
    "StatefulSet": 1,
    "Service": 2,
    "ConfigMap": 3,
}

# Spec fields the platform refuses to change after creation.
IMMUTABLE_SPEC_FIELDS = {
    "StatefulSet": ("selector", "serviceName", "volumeClaimTemplates", "podManagementPolicy"),
    "Service": ("clusterIP", "clusterIPs"),
}


class ApplyOutcome(Enum):
    CREATED = "Created"
    PATCHED = "Patched"
    UNCHANGED = "Unchanged"
    ERROR = "Error"


@dataclass
class ApplyResult:
    """Outcome of applying one desired resource."""

    kind: str
    name: str
    outcome: ApplyOutcome
    error: Optional[ReconcileError] = None


@dataclass
class SyncResult:
    """Outcome of applying a full desired-state list."""

    results: List[ApplyResult] = field(default_factory=list)
    error: Optional[ReconcileError] = None

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def changed(self) -> bool:
        return any(
            r.outcome in (ApplyOutcome.CREATED, ApplyOutcome.PATCHED)
            for r in self.results
        )

    def count(self, outcome: ApplyOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error


def dependency_order(resources: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Stable sort of manifests into storage, workload, network, configuration."""
    return sorted(resources, key=lambda r: KIND_ORDER.get(r["kind"], len(KIND_ORDER)))


def strip_immutable(kind: str, body: Dict[str, Any]) -> Dict[str, Any]:
    """Drop fields from a patch body that cannot change after creation."""
    patch = copy.deepcopy(body)
    spec = patch.get("spec")
    if spec is None:
        return patch

    if kind == "PersistentVolumeClaim":
        patch["spec"] = {"resources": spec["resources"]} if "resources" in spec else {}
        if not patch["spec"]:
            del patch["spec"]
        return patch

    for name in IMMUTABLE_SPEC_FIELDS.get(kind, ()):
        spec.pop(name, None)
    return patch


def contains(observed: Any, desired: Any) -> bool:
    """
    True when every field of ``desired`` is present in ``observed`` with the
    same value. Extra observed fields (server defaults) are ignored; lists
    must match element by element.
    """
    if isinstance(desired, dict):
        if not isinstance(observed, dict):
            return False
        return all(
            key in observed and contains(observed[key], value)
            for key, value in desired.items()
        )
    if isinstance(desired, list):
        if not isinstance(observed, list) or len(observed) != len(desired):
            return False
        return all(contains(o, d) for o, d in zip(observed, desired))
    return observed == desired


class ResourceSynchronizer:
    """
    Applies desired resources against the platform.

    Change detection compares a hash of the desired manifest, stored as an
    annotation on the live object, and then checks the live object still
    carries every mutable desired field. Server-side defaults are ignored;
    edits made outside the operator are patched back.
    """

    def __init__(self, platform: Platform):
        self.platform = platform

    async def apply(self, desired: Dict[str, Any]) -> ApplyResult:
        """
        Create the resource if absent, patch it if it drifted.

        Args:
            desired: The desired manifest as produced by the builder

        Returns:
            ApplyResult with outcome Created, Patched or Unchanged

        Raises:
            ConflictError: If the observed object was modified concurrently
            ResourceError: If the platform call failed
            ValidationError: If the platform rejected the manifest
        """
        kind = desired["kind"]
        metadata = desired["metadata"]
        namespace = metadata["namespace"]
        name = metadata["name"]

        digest = desired_hash(desired)
        body = copy.deepcopy(desired)
        annotations = body["metadata"].setdefault("annotations", {})
        annotations[DESIRED_HASH_ANNOTATION] = digest

        observed = await self.platform.get(kind, namespace, name)
        if observed is None:
            await self.platform.create(body)
            logger.info(f"Created {kind} {namespace}/{name}")
            return ApplyResult(kind, name, ApplyOutcome.CREATED)

        observed_metadata = observed.get("metadata") or {}
        observed_annotations = observed_metadata.get("annotations") or {}
        patch = strip_immutable(kind, body)
        patch.pop("apiVersion", None)
        patch.pop("kind", None)
        patch["metadata"].pop("name", None)
        patch["metadata"].pop("namespace", None)

        if observed_annotations.get(DESIRED_HASH_ANNOTATION) == digest:
            if contains(observed, patch):
                logger.debug(f"{kind} {namespace}/{name} is up to date")
                return ApplyResult(kind, name, ApplyOutcome.UNCHANGED)
            logger.info(f"{kind} {namespace}/{name} was modified outside the operator")

        if observed_metadata.get("resourceVersion"):
            patch["metadata"]["resourceVersion"] = observed_metadata["resourceVersion"]

        await self.platform.patch(kind, namespace, name, patch)
        logger.info(f"Patched {kind} {namespace}/{name}")
        return ApplyResult(kind, name, ApplyOutcome.PATCHED)

    async def sync(
        self, desired: List[Dict[str, Any]], ctx: ReconcileContext
    ) -> SyncResult:
        """
        Apply every desired resource in dependency order.

        Stops at the first failing resource; later resources keep their
        last applied state until the next pass.

        Raises:
            ReconcileCancelled: If shutdown is requested between applies
        """
        result = SyncResult()
        for resource in dependency_order(desired):
            ctx.check_cancelled()
            try:
                result.results.append(await self.apply(resource))
            except ReconcileError as e:
                kind = resource["kind"]
                name = resource["metadata"]["name"]
                logger.warning(f"Failed to apply {kind} {name}: {e}")
                result.results.append(ApplyResult(kind, name, ApplyOutcome.ERROR, e))
                result.error = e
                break
        return result
