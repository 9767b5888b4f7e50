"""Owner resources: tenant objects that require the shared infrastructure."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field, replace
from typing import Protocol


@dataclass(frozen=True, slots=True)
class OwnerKey:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name


@dataclass(frozen=True, slots=True)
class Owner:
    """A tenant-level configuration object.

    Deletion is two-phase: ``deleting`` is set first and the object only
    disappears once every finalizer has been removed.
    """

    key: OwnerKey
    finalizers: frozenset[str] = field(default_factory=frozenset)
    deleting: bool = False


class OwnerStore(Protocol):
    async def get(self, key: OwnerKey) -> Owner | None: ...

    async def list(self) -> list[Owner]: ...

    async def add_finalizer(self, key: OwnerKey, finalizer: str) -> None: ...

    async def remove_finalizer(self, key: OwnerKey, finalizer: str) -> None: ...

    def watch(self) -> AsyncIterator[OwnerKey]:
        """Yield the key of every owner that is created, changed or deleted."""
        ...


async def remaining_owners(store: OwnerStore, deleting: OwnerKey) -> list[Owner]:
    """Live owners other than ``deleting`` that are not themselves being deleted."""
    return [o for o in await store.list() if o.key != deleting and not o.deleting]


class InMemoryOwnerStore:
    """Process-local OwnerStore mimicking finalizer-gated deletion."""

    def __init__(self) -> None:
        self._owners: dict[OwnerKey, Owner] = {}
        self._lock = asyncio.Lock()
        self._watchers: list[asyncio.Queue[OwnerKey]] = []

    def _changed(self, key: OwnerKey) -> None:
        for keys in self._watchers:
            keys.put_nowait(key)

    def apply(self, key: OwnerKey) -> Owner:
        owner = self._owners.setdefault(key, Owner(key=key))
        self._changed(key)
        return owner

    def delete(self, key: OwnerKey) -> None:
        owner = self._owners.get(key)
        if owner is None:
            return
        if owner.finalizers:
            self._owners[key] = replace(owner, deleting=True)
        else:
            del self._owners[key]
        self._changed(key)

    async def get(self, key: OwnerKey) -> Owner | None:
        return self._owners.get(key)

    async def list(self) -> list[Owner]:
        return list(self._owners.values())

    async def add_finalizer(self, key: OwnerKey, finalizer: str) -> None:
        async with self._lock:
            owner = self._owners.get(key)
            if owner is None or finalizer in owner.finalizers:
                return
            self._owners[key] = replace(owner, finalizers=owner.finalizers | {finalizer})
        self._changed(key)

    async def remove_finalizer(self, key: OwnerKey, finalizer: str) -> None:
        async with self._lock:
            owner = self._owners.get(key)
            if owner is None:
                return
            finalizers = owner.finalizers - {finalizer}
            if owner.deleting and not finalizers:
                del self._owners[key]
            else:
                self._owners[key] = replace(owner, finalizers=finalizers)
        self._changed(key)

    async def watch(self) -> AsyncIterator[OwnerKey]:
        keys: asyncio.Queue[OwnerKey] = asyncio.Queue()
        self._watchers.append(keys)
        try:
            while True:
                yield await keys.get()
        finally:
            self._watchers.remove(keys)
