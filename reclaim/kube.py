"""Kubernetes-backed node store, owner store and event sink.

The official client is synchronous; calls run in worker threads so the
event loop only ever suspends at the queue long poll.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime
from typing import Any, Final

from kubernetes import client, watch
from kubernetes import config as kube_config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from loguru import logger
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from reclaim.events import NodeEvent
from reclaim.nodes import Node
from reclaim.owners import Owner, OwnerKey


# Server-side lifetime of one watch request; the stream is reopened after it.
WATCH_TIMEOUT_SECONDS: Final = 300
WATCH_RETRY_SECONDS: Final = 5.0


def load_api_client() -> client.ApiClient:
    """In-cluster config when running in a pod, kubeconfig otherwise."""
    try:
        kube_config.load_incluster_config()
    except ConfigException:
        kube_config.load_kube_config()
    return client.ApiClient()


def _missing(error: ApiException) -> bool:
    return error.status == 404


def _transient(error: BaseException) -> bool:
    return isinstance(error, ApiException) and (error.status or 0) >= 500


# Reads are retried across apiserver hiccups; writes surface to the caller.
_read_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
    retry=retry_if_exception(_transient),
    reraise=True,
)


def _to_node(obj: client.V1Node) -> Node:
    return Node(
        name=obj.metadata.name,
        provider_id=obj.spec.provider_id or "",
        labels=dict(obj.metadata.labels or {}),
        unschedulable=bool(obj.spec.unschedulable),
        deleting=obj.metadata.deletion_timestamp is not None,
    )


def _evictable(pod: client.V1Pod) -> bool:
    annotations = pod.metadata.annotations or {}
    if "kubernetes.io/config.mirror" in annotations:
        return False
    owners = pod.metadata.owner_references or []
    return not any(o.kind == "DaemonSet" for o in owners)


class KubeNodeStore:
    """NodeStore over the core/v1 node and eviction APIs."""

    def __init__(self, api: client.CoreV1Api) -> None:
        self._api = api

    async def list(self) -> list[Node]:
        response = await asyncio.to_thread(_read_retry(self._api.list_node))
        return [_to_node(n) for n in response.items]

    async def get(self, name: str) -> Node | None:
        try:
            obj = await asyncio.to_thread(_read_retry(self._api.read_node), name)
        except ApiException as e:
            if _missing(e):
                return None
            raise
        return _to_node(obj)

    async def cordon(self, name: str) -> None:
        try:
            await asyncio.to_thread(self._api.patch_node, name, {"spec": {"unschedulable": True}})
        except ApiException as e:
            if not _missing(e):
                raise

    async def evict(self, name: str) -> None:
        pods = await asyncio.to_thread(
            self._api.list_pod_for_all_namespaces, field_selector=f"spec.nodeName={name}"
        )
        for pod in filter(_evictable, pods.items):
            body = client.V1Eviction(
                metadata=client.V1ObjectMeta(name=pod.metadata.name, namespace=pod.metadata.namespace)
            )
            try:
                await asyncio.to_thread(
                    self._api.create_namespaced_pod_eviction,
                    pod.metadata.name,
                    pod.metadata.namespace,
                    body,
                )
            except ApiException as e:
                if _missing(e):
                    continue
                if e.status == 429:
                    # Disruption budget; the node's own termination drains it later.
                    logger.warning(f"Eviction of {pod.metadata.namespace}/{pod.metadata.name} blocked by PDB")
                    continue
                raise

    async def delete(self, name: str) -> None:
        try:
            await asyncio.to_thread(self._api.delete_node, name)
        except ApiException as e:
            if not _missing(e):
                raise


class KubeEventSink:
    """Publishes node events as core/v1 Events."""

    def __init__(self, api: client.CoreV1Api, namespace: str = "default", component: str = "reclaim") -> None:
        self._api = api
        self._namespace = namespace
        self._component = component

    def _body(self, event: NodeEvent) -> client.CoreV1Event:
        now = datetime.now(UTC)
        return client.CoreV1Event(
            metadata=client.V1ObjectMeta(generate_name=f"{event.node}."),
            involved_object=client.V1ObjectReference(kind="Node", name=event.node, api_version="v1"),
            reason=event.reason,
            message=event.message,
            type=event.type,
            source=client.V1EventSource(component=self._component),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )

    def emit(self, event: NodeEvent) -> None:
        body = self._body(event)
        future = asyncio.get_running_loop().run_in_executor(
            None, self._api.create_namespaced_event, self._namespace, body
        )
        future.add_done_callback(self._log_failure)

    @staticmethod
    def _log_failure(future: asyncio.Future[Any]) -> None:
        if not future.cancelled() and (error := future.exception()) is not None:
            logger.warning(f"Publishing event failed: {error}")


class KubeOwnerStore:
    """OwnerStore over a custom resource; empty namespace means cluster-scoped."""

    def __init__(
        self,
        api: client.CustomObjectsApi,
        group: str,
        version: str,
        plural: str,
        watch_timeout: int = WATCH_TIMEOUT_SECONDS,
        watch_retry: float = WATCH_RETRY_SECONDS,
    ) -> None:
        self._api = api
        self._group = group
        self._version = version
        self._plural = plural
        self._watch_timeout = watch_timeout
        self._watch_retry = watch_retry

    @staticmethod
    def _to_owner(obj: dict[str, Any]) -> Owner:
        meta = obj.get("metadata", {})
        return Owner(
            key=OwnerKey(namespace=meta.get("namespace", ""), name=meta["name"]),
            finalizers=frozenset(meta.get("finalizers") or ()),
            deleting=meta.get("deletionTimestamp") is not None,
        )

    async def _read(self, key: OwnerKey) -> dict[str, Any]:
        if key.namespace:
            return await asyncio.to_thread(
                self._api.get_namespaced_custom_object,
                self._group, self._version, key.namespace, self._plural, key.name,
            )
        return await asyncio.to_thread(
            self._api.get_cluster_custom_object, self._group, self._version, self._plural, key.name
        )

    async def _patch_finalizers(self, key: OwnerKey, finalizers: list[str]) -> None:
        body = {"metadata": {"finalizers": finalizers}}
        if key.namespace:
            await asyncio.to_thread(
                self._api.patch_namespaced_custom_object,
                self._group, self._version, key.namespace, self._plural, key.name, body,
            )
        else:
            await asyncio.to_thread(
                self._api.patch_cluster_custom_object,
                self._group, self._version, self._plural, key.name, body,
            )

    async def get(self, key: OwnerKey) -> Owner | None:
        try:
            return self._to_owner(await self._read(key))
        except ApiException as e:
            if _missing(e):
                return None
            raise

    async def list(self) -> list[Owner]:
        response = await asyncio.to_thread(
            _read_retry(self._api.list_cluster_custom_object), self._group, self._version, self._plural
        )
        return [self._to_owner(o) for o in response.get("items", [])]

    async def add_finalizer(self, key: OwnerKey, finalizer: str) -> None:
        owner = await self.get(key)
        if owner is None or finalizer in owner.finalizers:
            return
        await self._patch_finalizers(key, sorted(owner.finalizers | {finalizer}))

    async def remove_finalizer(self, key: OwnerKey, finalizer: str) -> None:
        owner = await self.get(key)
        if owner is None or finalizer not in owner.finalizers:
            return
        try:
            await self._patch_finalizers(key, sorted(owner.finalizers - {finalizer}))
        except ApiException as e:
            if not _missing(e):
                raise

    async def watch(self) -> AsyncIterator[OwnerKey]:
        """Yield owner keys from a watch on the custom resource.

        The client's watch stream blocks, so it runs on a daemon thread that
        hands keys to the event loop. Every reopened stream replays the
        current objects as ADDED events, which doubles as a relist.
        """
        loop = asyncio.get_running_loop()
        keys: asyncio.Queue[OwnerKey] = asyncio.Queue()
        watcher = watch.Watch()
        stopped = threading.Event()

        def emit(key: OwnerKey) -> None:
            if not loop.is_closed():
                loop.call_soon_threadsafe(keys.put_nowait, key)

        thread = threading.Thread(
            target=self._stream,
            args=(watcher, stopped, emit),
            name=f"watch-{self._plural}",
            daemon=True,
        )
        thread.start()
        try:
            while True:
                yield await keys.get()
        finally:
            stopped.set()
            watcher.stop()

    def _stream(self, watcher: watch.Watch, stopped: threading.Event, emit: Callable[[OwnerKey], None]) -> None:
        while not stopped.is_set():
            try:
                for event in watcher.stream(
                    self._api.list_cluster_custom_object,
                    self._group,
                    self._version,
                    self._plural,
                    timeout_seconds=self._watch_timeout,
                ):
                    if stopped.is_set():
                        return
                    emit(self._to_owner(event["object"]).key)
            except ApiException as e:
                # 410 Gone: the watch fell too far behind, reopen from now.
                if e.status != 410:
                    logger.warning(f"Watching {self._plural} failed ({e.status}), retrying in {self._watch_retry:g}s")
                    stopped.wait(self._watch_retry)
            except Exception as e:
                logger.warning(f"Watch stream for {self._plural} broke: {e}, retrying in {self._watch_retry:g}s")
                stopped.wait(self._watch_retry)
