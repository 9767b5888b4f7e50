"""Cluster node model and node store interface."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from typing import Protocol

from loguru import logger

from reclaim.cache import OfferingKey
from reclaim.constants import NodeLabel


@dataclass(frozen=True, slots=True)
class Node:
    """A cluster node as seen by the interruption controller."""

    name: str
    provider_id: str
    labels: dict[str, str] = field(default_factory=dict, hash=False)
    unschedulable: bool = False
    deleting: bool = False

    @property
    def instance_id(self) -> str:
        """Instance id from a provider id like ``aws:///us-west-2a/i-0abc``."""
        return self.provider_id.rstrip("/").rsplit("/", 1)[-1]

    @property
    def offering(self) -> OfferingKey | None:
        try:
            return OfferingKey(
                instance_type=self.labels[NodeLabel.INSTANCE_TYPE],
                zone=self.labels[NodeLabel.ZONE],
                capacity_type=self.labels[NodeLabel.CAPACITY_TYPE],
            )
        except KeyError:
            return None


class NodeStore(Protocol):
    """Cluster node API used by the interruption controller.

    Every mutation must be idempotent and treat a missing node as done.
    """

    async def list(self) -> list[Node]: ...

    async def get(self, name: str) -> Node | None: ...

    async def cordon(self, name: str) -> None: ...

    async def evict(self, name: str) -> None: ...

    async def delete(self, name: str) -> None: ...


def index_by_instance(nodes: list[Node]) -> dict[str, Node]:
    return {node.instance_id: node for node in nodes if node.provider_id}


class InMemoryNodeStore:
    """Process-local NodeStore, used by tests and dry runs."""

    def __init__(self, nodes: list[Node] | None = None) -> None:
        self._nodes: dict[str, Node] = {n.name: n for n in nodes or []}
        self._pods: dict[str, set[str]] = {n.name: set() for n in nodes or []}
        self._lock = asyncio.Lock()
        self.cordoned: list[str] = []
        self.evicted: list[str] = []
        self.deleted: list[str] = []

    def add(self, node: Node, pods: set[str] | None = None) -> None:
        self._nodes[node.name] = node
        self._pods[node.name] = set(pods or ())

    def pods(self, name: str) -> set[str]:
        return set(self._pods.get(name, ()))

    async def list(self) -> list[Node]:
        return list(self._nodes.values())

    async def get(self, name: str) -> Node | None:
        return self._nodes.get(name)

    async def cordon(self, name: str) -> None:
        async with self._lock:
            node = self._nodes.get(name)
            if node is None:
                return
            self._nodes[name] = replace(node, unschedulable=True)
            self.cordoned.append(name)

    async def evict(self, name: str) -> None:
        async with self._lock:
            if name not in self._nodes:
                return
            evicted = self._pods.get(name, set())
            if evicted:
                logger.debug(f"Evicting {len(evicted)} pods from {name}")
            self._pods[name] = set()
            self.evicted.append(name)

    async def delete(self, name: str) -> None:
        async with self._lock:
            if self._nodes.pop(name, None) is None:
                return
            self._pods.pop(name, None)
            self.deleted.append(name)
