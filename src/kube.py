"""
Platform Access - Kubernetes API operations used by the reconcile engine.

Platform is the capability interface handed to every stage through the
reconcile context. KubernetesPlatform implements it with kubernetes_asyncio
and translates API failures into the reconcile error taxonomy.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import aiohttp
from kubernetes_asyncio import client, config, watch
from kubernetes_asyncio.client.exceptions import ApiException

from errors import ConflictError, ResourceError, ValidationError
from models import GROUP, VERSION

logger = logging.getLogger(__name__)

MERGE_PATCH = "application/merge-patch+json"


class WatchExpired(Exception):
    """The watch resource version is too old; the stream must restart."""


def label_selector(labels: Optional[Dict[str, str]]) -> Optional[str]:
    if not labels:
        return None
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


def translate_api_exception(e: ApiException, kind: str, name: str) -> Exception:
    """Map a Kubernetes API failure onto the reconcile error taxonomy."""
    target = f"{kind} {name}"
    if e.status == 409:
        return ConflictError(f"{target} was modified concurrently: {e.reason}")
    if e.status == 422:
        return ValidationError(f"{target} rejected as invalid: {e.body or e.reason}")
    return ResourceError(f"{target} API call failed: {e.status} {e.reason}", status=e.status)


class Platform(ABC):
    """Abstract access to the orchestration platform's resource API."""

    @abstractmethod
    async def get(self, kind: str, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        """Read one object, or None if it does not exist."""
        pass

    @abstractmethod
    async def list(
        self,
        kind: str,
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        """List objects of a kind, optionally scoped by namespace and labels."""
        pass

    @abstractmethod
    async def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def patch(
        self, kind: str, namespace: str, name: str, patch: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Apply a JSON merge patch."""
        pass

    @abstractmethod
    async def patch_status(
        self,
        kind: str,
        namespace: str,
        name: str,
        status: Dict[str, Any],
        resource_version: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Merge-patch the status subresource of a custom object."""
        pass

    @abstractmethod
    async def create_event(self, event: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def watch(
        self,
        kind: str,
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> AsyncIterator[Tuple[str, Dict[str, Any]]]:
        """
        Stream (event_type, object) pairs for a kind.

        Raises:
            WatchExpired: When the stream must be restarted from a fresh list
        """
        pass


@dataclass
class KindInfo:
    """How a kind maps onto the generated Kubernetes API classes."""

    api: str
    resource: str
    namespaced: bool = True


KINDS: Dict[str, KindInfo] = {
    "Pod": KindInfo("core", "pod"),
    "PersistentVolumeClaim": KindInfo("core", "persistent_volume_claim"),
    "Service": KindInfo("core", "service"),
    "ConfigMap": KindInfo("core", "config_map"),
    "Event": KindInfo("core", "event"),
    "StatefulSet": KindInfo("apps", "stateful_set"),
    "EmqxBroker": KindInfo("custom", "emqxbrokers"),
    "EmqxEnterprise": KindInfo("custom", "emqxenterprises"),
    "EmqxPlugin": KindInfo("custom", "emqxplugins"),
}


class KubernetesPlatform(Platform):
    """Platform implementation backed by kubernetes_asyncio."""

    def __init__(
        self,
        kubeconfig: Optional[str] = None,
        in_cluster: bool = True,
        request_timeout: float = 30.0,
        watch_timeout: int = 300,
    ):
        self.kubeconfig = kubeconfig
        self.in_cluster = in_cluster
        self.request_timeout = request_timeout
        self.watch_timeout = watch_timeout
        self.api_client: Optional[client.ApiClient] = None
        self._apis: Dict[str, Any] = {}

    async def connect(self) -> None:
        """Load credentials and create the API clients."""
        if self.in_cluster and not self.kubeconfig:
            config.load_incluster_config()
        else:
            await config.load_kube_config(config_file=self.kubeconfig)

        self.api_client = client.ApiClient()
        self._apis = {
            "core": client.CoreV1Api(self.api_client),
            "apps": client.AppsV1Api(self.api_client),
            "custom": client.CustomObjectsApi(self.api_client),
        }
        logger.info("Connected to Kubernetes API")

    async def close(self) -> None:
        if self.api_client:
            await self.api_client.close()
            logger.info("Closed Kubernetes API client")

    def _ensure_connected(self) -> None:
        if self.api_client is None:
            raise RuntimeError(
                "Platform not connected. Call connect() before performing operations."
            )

    def _info(self, kind: str) -> KindInfo:
        if kind not in KINDS:
            raise ValueError(f"Unsupported kind: {kind}")
        return KINDS[kind]

    def _to_dict(self, kind: str, obj: Any) -> Dict[str, Any]:
        if not isinstance(obj, dict):
            obj = self.api_client.sanitize_for_serialization(obj)
        obj.setdefault("kind", kind)
        return obj

    async def _call(self, kind: str, name: str, coro) -> Any:
        try:
            return await coro
        except ApiException as e:
            raise translate_api_exception(e, kind, name) from e
        except (asyncio.TimeoutError, aiohttp.ClientError) as e:
            raise ResourceError(f"{kind} {name} API call failed: {e}") from e

    async def get(self, kind: str, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        self._ensure_connected()
        info = self._info(kind)
        api = self._apis[info.api]
        try:
            if info.api == "custom":
                obj = await api.get_namespaced_custom_object(
                    GROUP, VERSION, namespace, info.resource, name,
                    _request_timeout=self.request_timeout,
                )
            else:
                read = getattr(api, f"read_namespaced_{info.resource}")
                obj = await read(name, namespace, _request_timeout=self.request_timeout)
        except ApiException as e:
            if e.status == 404:
                return None
            raise translate_api_exception(e, kind, name) from e
        except (asyncio.TimeoutError, aiohttp.ClientError) as e:
            raise ResourceError(f"{kind} {name} read failed: {e}") from e
        return self._to_dict(kind, obj)

    async def list(
        self,
        kind: str,
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        self._ensure_connected()
        func, args = self._list_call(kind, namespace)
        kwargs: Dict[str, Any] = {"_request_timeout": self.request_timeout}
        selector = label_selector(labels)
        if selector:
            kwargs["label_selector"] = selector

        result = await self._call(kind, "list", func(*args, **kwargs))
        items = result["items"] if isinstance(result, dict) else result.items
        return [self._to_dict(kind, item) for item in items]

    def _list_call(self, kind: str, namespace: Optional[str]):
        info = self._info(kind)
        api = self._apis[info.api]
        if info.api == "custom":
            if namespace:
                return api.list_namespaced_custom_object, (
                    GROUP, VERSION, namespace, info.resource,
                )
            return api.list_cluster_custom_object, (GROUP, VERSION, info.resource)
        if namespace:
            return getattr(api, f"list_namespaced_{info.resource}"), (namespace,)
        return getattr(api, f"list_{info.resource}_for_all_namespaces"), ()

    async def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        self._ensure_connected()
        kind = obj["kind"]
        info = self._info(kind)
        api = self._apis[info.api]
        namespace = obj["metadata"]["namespace"]
        name = obj["metadata"]["name"]
        if info.api == "custom":
            coro = api.create_namespaced_custom_object(
                GROUP, VERSION, namespace, info.resource, obj,
                _request_timeout=self.request_timeout,
            )
        else:
            create = getattr(api, f"create_namespaced_{info.resource}")
            coro = create(namespace, obj, _request_timeout=self.request_timeout)
        return self._to_dict(kind, await self._call(kind, name, coro))

    async def patch(
        self, kind: str, namespace: str, name: str, patch: Dict[str, Any]
    ) -> Dict[str, Any]:
        self._ensure_connected()
        info = self._info(kind)
        api = self._apis[info.api]
        if info.api == "custom":
            coro = api.patch_namespaced_custom_object(
                GROUP, VERSION, namespace, info.resource, name, patch,
                _content_type=MERGE_PATCH,
                _request_timeout=self.request_timeout,
            )
        else:
            do_patch = getattr(api, f"patch_namespaced_{info.resource}")
            coro = do_patch(
                name, namespace, patch,
                _content_type=MERGE_PATCH,
                _request_timeout=self.request_timeout,
            )
        return self._to_dict(kind, await self._call(kind, name, coro))

    async def patch_status(
        self,
        kind: str,
        namespace: str,
        name: str,
        status: Dict[str, Any],
        resource_version: Optional[str] = None,
    ) -> Dict[str, Any]:
        self._ensure_connected()
        info = self._info(kind)
        if info.api != "custom":
            raise ValueError(f"Status writes are only supported for custom kinds, not {kind}")
        body: Dict[str, Any] = {"status": status}
        if resource_version:
            body["metadata"] = {"resourceVersion": resource_version}
        coro = self._apis["custom"].patch_namespaced_custom_object_status(
            GROUP, VERSION, namespace, info.resource, name, body,
            _content_type=MERGE_PATCH,
            _request_timeout=self.request_timeout,
        )
        return self._to_dict(kind, await self._call(kind, name, coro))

    async def create_event(self, event: Dict[str, Any]) -> None:
        self._ensure_connected()
        namespace = event["metadata"]["namespace"]
        await self._call(
            "Event",
            event["metadata"].get("generateName", ""),
            self._apis["core"].create_namespaced_event(
                namespace, event, _request_timeout=self.request_timeout
            ),
        )

    async def watch(
        self,
        kind: str,
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> AsyncIterator[Tuple[str, Dict[str, Any]]]:
        self._ensure_connected()
        func, args = self._list_call(kind, namespace)
        kwargs: Dict[str, Any] = {"timeout_seconds": self.watch_timeout}
        selector = label_selector(labels)
        if selector:
            kwargs["label_selector"] = selector

        w = watch.Watch()
        try:
            async for event in w.stream(func, *args, **kwargs):
                if event["type"] == "ERROR":
                    code = (event.get("raw_object") or {}).get("code")
                    if code == 410:
                        raise WatchExpired(f"Watch for {kind} expired")
                    raise ResourceError(f"Watch for {kind} failed: {event.get('raw_object')}")
                obj = event.get("raw_object") or self._to_dict(kind, event["object"])
                obj.setdefault("kind", kind)
                yield event["type"], obj
        except ApiException as e:
            if e.status == 410:
                raise WatchExpired(f"Watch for {kind} expired") from e
            raise translate_api_exception(e, kind, "watch") from e
        finally:
            w.stop()
