"""Dependency wiring and process entrypoint.

Usage:
    >>> injector = Injector([AWSModule(settings), KubeModule(), ReclaimModule()])
    >>> await serve(injector)
"""

from __future__ import annotations

import asyncio
import signal
from contextlib import aclosing, suppress
from dataclasses import dataclass

from injector import Injector, Module, provider, singleton
from kubernetes import client
from loguru import logger

from reclaim.cache import UnavailableOfferings
from reclaim.config import Settings, load_settings
from reclaim.events import EventSink
from reclaim.infrastructure import InfrastructureManager
from reclaim.interruption import InterruptionController
from reclaim.kube import KubeEventSink, KubeNodeStore, KubeOwnerStore, load_api_client
from reclaim.logging import LogConfig, setup_logging, teardown_logging
from reclaim.nodes import NodeStore
from reclaim.owners import OwnerStore
from reclaim.providers.aws import AWSModule, EventBridgeClientFactory, EventBridgeProvider, SQSClientFactory, SQSProvider
from reclaim.reconciler import OwnerReconciler, ReconcileLoop

RESYNC_INTERVAL = 300.0


@dataclass(frozen=True, slots=True)
class OwnerResource:
    """Custom resource whose objects own the interruption infrastructure."""

    group: str = "karpenter.k8s.aws"
    version: str = "v1alpha1"
    plural: str = "awsnodetemplates"


class ReclaimModule(Module):
    """Controllers, managers and the capacity cache."""

    @singleton
    @provider
    def provide_offerings(self, settings: Settings) -> UnavailableOfferings:
        return UnavailableOfferings(ttl=settings.unavailable_offerings_ttl_seconds)

    @singleton
    @provider
    def provide_sqs(self, sqs: SQSClientFactory, settings: Settings) -> SQSProvider:
        return SQSProvider(sqs, settings)

    @singleton
    @provider
    def provide_eventbridge(self, events: EventBridgeClientFactory, settings: Settings) -> EventBridgeProvider:
        return EventBridgeProvider(events, settings)

    @singleton
    @provider
    def provide_infrastructure(
        self,
        settings: Settings,
        sqs: SQSProvider,
        eventbridge: EventBridgeProvider,
        owners: OwnerStore,
    ) -> InfrastructureManager:
        return InfrastructureManager(settings, sqs, eventbridge, owners)

    @singleton
    @provider
    def provide_reconciler(
        self,
        settings: Settings,
        owners: OwnerStore,
        infrastructure: InfrastructureManager,
    ) -> OwnerReconciler:
        return OwnerReconciler(settings, owners, infrastructure)

    @singleton
    @provider
    def provide_loop(self, settings: Settings, reconciler: OwnerReconciler) -> ReconcileLoop:
        return ReconcileLoop(reconciler, timeout=settings.reconcile_timeout_seconds)

    @singleton
    @provider
    def provide_interruption(
        self,
        settings: Settings,
        sqs: SQSProvider,
        nodes: NodeStore,
        events: EventSink,
        offerings: UnavailableOfferings,
    ) -> InterruptionController:
        return InterruptionController(settings, sqs, nodes, events, offerings)


class KubeModule(Module):
    """Cluster-backed node store, owner store and event sink."""

    def __init__(self, owner_resource: OwnerResource | None = None, event_namespace: str = "default") -> None:
        self._owner_resource = owner_resource or OwnerResource()
        self._event_namespace = event_namespace

    @singleton
    @provider
    def provide_api_client(self) -> client.ApiClient:
        return load_api_client()

    @singleton
    @provider
    def provide_core(self, api_client: client.ApiClient) -> client.CoreV1Api:
        return client.CoreV1Api(api_client)

    @singleton
    @provider
    def provide_nodes(self, core: client.CoreV1Api) -> NodeStore:
        return KubeNodeStore(core)

    @singleton
    @provider
    def provide_events(self, core: client.CoreV1Api) -> EventSink:
        return KubeEventSink(core, namespace=self._event_namespace)

    @singleton
    @provider
    def provide_owners(self, api_client: client.ApiClient) -> OwnerStore:
        ref = self._owner_resource
        return KubeOwnerStore(client.CustomObjectsApi(api_client), ref.group, ref.version, ref.plural)


async def _resync(owners: OwnerStore, loop: ReconcileLoop, interval: float) -> None:
    """Level-triggered: periodically enqueue every owner."""
    while True:
        try:
            for owner in await owners.list():
                loop.enqueue(owner.key)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Listing owners failed: {e}")
        await asyncio.sleep(interval)


async def _watch(owners: OwnerStore, loop: ReconcileLoop, retry_delay: float = 5.0) -> None:
    """Edge-triggered: enqueue owners as the store reports changes."""
    while True:
        try:
            async with aclosing(owners.watch()) as keys:
                async for key in keys:
                    loop.enqueue(key)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Watching owners failed: {e}")
        await asyncio.sleep(retry_delay)


async def serve(injector: Injector, resync_interval: float = RESYNC_INTERVAL) -> None:
    """Run the reconcile loop and the interruption controller until cancelled.

    Owners are enqueued as the watch reports them, and every
    ``resync_interval`` seconds regardless.
    """
    settings = injector.get(Settings)
    loop = injector.get(ReconcileLoop)
    controller = injector.get(InterruptionController)
    owners = injector.get(OwnerStore)  # type: ignore[type-abstract]

    logger.info(f"Starting reclaim for cluster {settings.cluster_name} in {settings.region}")
    tasks = [
        asyncio.create_task(loop.run(), name="reconcile"),
        asyncio.create_task(_watch(owners, loop), name="watch"),
        asyncio.create_task(_resync(owners, loop, resync_interval), name="resync"),
        asyncio.create_task(controller.run(), name="interruption"),
    ]
    try:
        await asyncio.gather(*tasks)
    finally:
        controller.stop()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task


async def _main(settings: Settings) -> None:
    injector = Injector([AWSModule(settings), KubeModule(), ReclaimModule()])
    task = asyncio.create_task(serve(injector))
    running = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        running.add_signal_handler(sig, task.cancel)
    with suppress(asyncio.CancelledError):
        await task


def main() -> None:
    settings = load_settings()
    handler_id = setup_logging(LogConfig.from_env())
    try:
        asyncio.run(_main(settings))
    finally:
        teardown_logging(handler_id)
