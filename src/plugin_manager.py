"""
Plugin Lifecycle Manager - Loads and unloads EMQX plugins on cluster members.

Each EmqxPlugin moves through Pending -> Loading -> Loaded / LoadFailed and,
once marked for deletion, Unloading -> gone. A finalizer keeps the object
around until unload has been attempted; after a bounded number of failed
unload attempts the finalizer is released anyway and a warning recorded.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from clusters import Cluster
from config import PluginLifecycleConfig
from context import ReconcileContext
from errors import (
    AdminAPIError,
    ConnectivityError,
    ReconcileCancelled,
    ReconcileError,
    ValidationError,
)
from models import (
    PLUGIN_FINALIZER,
    Member,
    PluginPhase,
    PluginResource,
    format_time,
    labels_match,
    parse_time,
    utcnow,
)
from validation import validate_plugin_spec

logger = logging.getLogger(__name__)

PLUGIN_KIND = "EmqxPlugin"


@dataclass
class PluginOutcome:
    """Result of one plugin's progress within a pass."""

    name: str
    namespace: str
    phase: PluginPhase
    requeue_after: Optional[float] = None
    error: Optional[ReconcileError] = None
    released: bool = False


def config_hash(plugin_name: str, plugin_config: Dict[str, str]) -> str:
    payload = json.dumps(
        {"pluginName": plugin_name, "config": plugin_config},
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode()).hexdigest()[:16]


def selected_members(plugin: PluginResource, members: List[Member]) -> List[Member]:
    return [m for m in members if labels_match(plugin.selector, m.labels)]


class PluginLifecycleManager:
    """
    Drives every plugin selecting a cluster through its state machine.

    Failures are scoped to the plugin they occur in: one plugin's conflict
    or unreachable member never stops the others.
    """

    def __init__(
        self,
        config: Optional[PluginLifecycleConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or PluginLifecycleConfig()
        self.clock = clock or utcnow

    def backoff(self, attempts: int) -> float:
        """Delay before the next attempt after ``attempts`` failed ones."""
        if attempts <= 0:
            return 0.0
        delay = self.config.backoff_base_delay * (2 ** (attempts - 1))
        return float(min(delay, self.config.backoff_max_delay))

    def _remaining_backoff(self, attempts: int, last_attempt: Optional[str]) -> float:
        last = parse_time(last_attempt)
        if attempts <= 0 or last is None:
            return 0.0
        due = last + timedelta(seconds=self.backoff(attempts))
        return max((due - self.clock()).total_seconds(), 0.0)

    async def reconcile_plugins(
        self, cluster: Cluster, members: List[Member], ctx: ReconcileContext
    ) -> List[PluginOutcome]:
        """
        Progress every plugin whose selector matches the cluster.

        Args:
            cluster: The cluster whose pass is running
            members: Members observed in this pass, with health filled in
            ctx: Reconcile context

        Returns:
            One outcome per plugin handled

        Raises:
            ReconcileCancelled: If shutdown is requested mid-pass
        """
        ctx.check_cancelled()
        objects = await ctx.platform.list(PLUGIN_KIND, namespace=cluster.namespace)
        outcomes = []
        for obj in sorted(objects, key=lambda o: o["metadata"]["name"]):
            plugin = PluginResource.from_object(obj)
            if not labels_match(plugin.selector, cluster.labels):
                continue
            outcomes.append(await self._reconcile_one(obj, plugin, members, ctx))
        return outcomes

    async def _reconcile_one(
        self,
        obj: Dict[str, Any],
        plugin: PluginResource,
        members: List[Member],
        ctx: ReconcileContext,
    ) -> PluginOutcome:
        try:
            try:
                validate_plugin_spec(obj.get("spec") or {})
            except ValidationError as e:
                return await self._invalid(plugin, e, ctx)

            if plugin.deleting:
                if not plugin.has_finalizer:
                    return PluginOutcome(plugin.name, plugin.namespace, plugin.phase, released=True)
                return await self._unload(plugin, members, ctx)

            if not plugin.has_finalizer:
                await self._attach_finalizer(plugin, ctx)
            return await self._load(plugin, members, ctx)
        except ReconcileCancelled:
            raise
        except ReconcileError as e:
            logger.warning(
                f"Plugin {plugin.namespace}/{plugin.name} failed this pass: {e}"
            )
            return PluginOutcome(plugin.name, plugin.namespace, plugin.phase, error=e)

    async def _invalid(
        self, plugin: PluginResource, error: ValidationError, ctx: ReconcileContext
    ) -> PluginOutcome:
        if plugin.deleting:
            if plugin.has_finalizer:
                await self._release_finalizer(plugin, ctx)
            return PluginOutcome(plugin.name, plugin.namespace, plugin.phase, released=True)

        original = plugin.status_dict()
        plugin.phase = PluginPhase.LOAD_FAILED
        plugin.message = f"Invalid plugin spec: {error.message}"
        await self._write_status(plugin, original, ctx)
        return PluginOutcome(plugin.name, plugin.namespace, plugin.phase, error=error)

    async def _attach_finalizer(self, plugin: PluginResource, ctx: ReconcileContext) -> None:
        finalizers = plugin.finalizers + [PLUGIN_FINALIZER]
        updated = await ctx.platform.patch(
            PLUGIN_KIND,
            plugin.namespace,
            plugin.name,
            {
                "metadata": {
                    "finalizers": finalizers,
                    "resourceVersion": plugin.resource_version,
                }
            },
        )
        plugin.finalizers = finalizers
        plugin.resource_version = updated["metadata"].get("resourceVersion")
        logger.info(f"Attached finalizer to plugin {plugin.namespace}/{plugin.name}")

    async def _release_finalizer(self, plugin: PluginResource, ctx: ReconcileContext) -> None:
        finalizers = [f for f in plugin.finalizers if f != PLUGIN_FINALIZER]
        await ctx.platform.patch(
            PLUGIN_KIND,
            plugin.namespace,
            plugin.name,
            {
                "metadata": {
                    "finalizers": finalizers,
                    "resourceVersion": plugin.resource_version,
                }
            },
        )
        plugin.finalizers = finalizers
        logger.info(f"Released finalizer of plugin {plugin.namespace}/{plugin.name}")

    async def _write_status(
        self, plugin: PluginResource, original: Dict[str, Any], ctx: ReconcileContext
    ) -> None:
        status = plugin.status_dict()
        if status == original:
            return
        updated = await ctx.platform.patch_status(
            PLUGIN_KIND,
            plugin.namespace,
            plugin.name,
            status,
            resource_version=plugin.resource_version,
        )
        plugin.resource_version = updated["metadata"].get("resourceVersion")

    async def _load(
        self, plugin: PluginResource, members: List[Member], ctx: ReconcileContext
    ) -> PluginOutcome:
        original = plugin.status_dict()
        previous_phase = plugin.phase

        digest = config_hash(plugin.plugin_name, plugin.config)
        if plugin.config_hash != digest:
            if plugin.config_hash:
                logger.info(
                    f"Configuration of plugin {plugin.namespace}/{plugin.name} changed"
                )
            plugin.config_hash = digest
            plugin.loaded_members = []
            plugin.loaded_pods = {}
            plugin.rejected_members = {}
            plugin.failed_members = {}
            plugin.load_attempts = 0
            plugin.last_attempt_time = None

        targets = selected_members(plugin, members)
        target_nodes = {m.node for m in targets}
        plugin.failed_members = {
            node: message
            for node, message in plugin.failed_members.items()
            if node in target_nodes
        }

        if plugin.phase == PluginPhase.LOAD_FAILED:
            wait = self._remaining_backoff(plugin.load_attempts, plugin.last_attempt_time)
            if wait > 0:
                await self._write_status(plugin, original, ctx)
                return PluginOutcome(
                    plugin.name, plugin.namespace, plugin.phase, requeue_after=wait
                )

        # A pod replaced under the same node name starts without runtime plugins.
        for member in targets:
            if member.node not in plugin.loaded_members:
                continue
            if plugin.loaded_pods.get(member.node) != member.uid:
                logger.info(
                    f"Member {member.pod_name} restarted; reloading plugin "
                    f"{plugin.namespace}/{plugin.name}"
                )
                plugin.loaded_members.remove(member.node)
                plugin.loaded_pods.pop(member.node, None)

        pending = [
            m
            for m in targets
            if m.node not in plugin.loaded_members
            and m.node not in plugin.rejected_members
        ]
        failed_now = False
        for member in pending:
            ctx.check_cancelled()
            if not member.ready:
                plugin.failed_members[member.node] = "Member is not ready"
                failed_now = True
                continue
            try:
                await ctx.admin.load_plugin(member, plugin.plugin_name, plugin.config)
            except ConnectivityError as e:
                plugin.failed_members[member.node] = e.message
                failed_now = True
            except AdminAPIError as e:
                plugin.failed_members.pop(member.node, None)
                plugin.rejected_members[member.node] = e.message
            else:
                plugin.failed_members.pop(member.node, None)
                plugin.loaded_members.append(member.node)
                if member.uid:
                    plugin.loaded_pods[member.node] = member.uid

        if pending:
            plugin.last_attempt_time = format_time(self.clock())
            plugin.load_attempts = plugin.load_attempts + 1 if failed_now else 0

        rejected = sorted(n for n in plugin.rejected_members if n in target_nodes)
        failed = sorted(plugin.failed_members)
        requeue_after = None
        if not targets:
            plugin.phase = PluginPhase.LOADING
            plugin.message = "No cluster members match the plugin selector"
        elif failed or rejected:
            plugin.phase = PluginPhase.LOAD_FAILED
            parts = []
            if failed:
                parts.append(f"unreachable: {', '.join(failed)}")
            if rejected:
                parts.append(f"rejected: {', '.join(rejected)}")
            plugin.message = f"Load failed on {len(failed) + len(rejected)} member(s); " + "; ".join(parts)
            if failed:
                requeue_after = self.backoff(plugin.load_attempts)
        elif target_nodes.issubset(plugin.loaded_members):
            plugin.phase = PluginPhase.LOADED
            plugin.message = f"Loaded on {len(target_nodes)} member(s)"
        else:
            plugin.phase = PluginPhase.LOADING
            plugin.message = "Waiting for members"

        await self._write_status(plugin, original, ctx)

        if plugin.phase != previous_phase:
            if plugin.phase == PluginPhase.LOADED:
                await ctx.recorder.normal(
                    PLUGIN_KIND, plugin.namespace, plugin.name, "PluginLoaded", plugin.message
                )
            elif plugin.phase == PluginPhase.LOAD_FAILED:
                await ctx.recorder.warning(
                    PLUGIN_KIND, plugin.namespace, plugin.name, "PluginLoadFailed", plugin.message
                )

        return PluginOutcome(
            plugin.name, plugin.namespace, plugin.phase, requeue_after=requeue_after
        )

    async def _unload(
        self, plugin: PluginResource, members: List[Member], ctx: ReconcileContext
    ) -> PluginOutcome:
        original = plugin.status_dict()
        if plugin.phase != PluginPhase.UNLOADING:
            plugin.phase = PluginPhase.UNLOADING
            plugin.message = "Unloading"
            plugin.failed_members = {}
            plugin.unload_attempts = 0
            plugin.last_attempt_time = None

        wait = self._remaining_backoff(plugin.unload_attempts, plugin.last_attempt_time)
        if wait > 0:
            await self._write_status(plugin, original, ctx)
            return PluginOutcome(
                plugin.name, plugin.namespace, plugin.phase, requeue_after=wait
            )

        failures: Dict[str, str] = {}
        for member in selected_members(plugin, members):
            ctx.check_cancelled()
            try:
                await ctx.admin.unload_plugin(member, plugin.plugin_name)
            except (ConnectivityError, AdminAPIError) as e:
                failures[member.node] = e.message

        plugin.unload_attempts += 1
        plugin.last_attempt_time = format_time(self.clock())
        plugin.failed_members = failures

        if not failures:
            await self._release_finalizer(plugin, ctx)
            await ctx.recorder.normal(
                PLUGIN_KIND,
                plugin.namespace,
                plugin.name,
                "PluginUnloaded",
                f"Unloaded {plugin.plugin_name}",
            )
            return PluginOutcome(plugin.name, plugin.namespace, plugin.phase, released=True)

        members_text = ", ".join(sorted(failures))
        if plugin.unload_attempts >= self.config.max_unload_attempts:
            logger.warning(
                f"Giving up unloading plugin {plugin.namespace}/{plugin.name} "
                f"after {plugin.unload_attempts} attempts; still failing on {members_text}"
            )
            await self._release_finalizer(plugin, ctx)
            await ctx.recorder.warning(
                PLUGIN_KIND,
                plugin.namespace,
                plugin.name,
                "UnloadAbandoned",
                f"Released finalizer after {plugin.unload_attempts} failed unload "
                f"attempts; plugin may still be loaded on {members_text}",
            )
            return PluginOutcome(plugin.name, plugin.namespace, plugin.phase, released=True)

        plugin.message = (
            f"Unload attempt {plugin.unload_attempts}/"
            f"{self.config.max_unload_attempts} failed on {members_text}"
        )
        await self._write_status(plugin, original, ctx)
        await ctx.recorder.warning(
            PLUGIN_KIND, plugin.namespace, plugin.name, "PluginUnloadFailed", plugin.message
        )
        return PluginOutcome(
            plugin.name,
            plugin.namespace,
            plugin.phase,
            requeue_after=self.backoff(plugin.unload_attempts),
        )

    async def release_orphans(
        self, clusters: List[Cluster], ctx: ReconcileContext
    ) -> int:
        """
        Release finalizers of deleted plugins that select no existing cluster.

        With no cluster there are no members to unload from, so nothing else
        would ever let such a plugin go.

        Returns:
            Number of plugins released
        """
        released = 0
        for obj in await ctx.platform.list(PLUGIN_KIND):
            ctx.check_cancelled()
            plugin = PluginResource.from_object(obj)
            if not (plugin.deleting and plugin.has_finalizer):
                continue
            if any(
                c.namespace == plugin.namespace and labels_match(plugin.selector, c.labels)
                for c in clusters
            ):
                continue
            try:
                await self._release_finalizer(plugin, ctx)
            except ReconcileCancelled:
                raise
            except ReconcileError as e:
                logger.warning(
                    f"Could not release orphaned plugin {plugin.namespace}/{plugin.name}: {e}"
                )
                continue
            await ctx.recorder.normal(
                PLUGIN_KIND,
                plugin.namespace,
                plugin.name,
                "PluginUnloaded",
                "No cluster selects this plugin; nothing to unload",
            )
            released += 1
        return released
