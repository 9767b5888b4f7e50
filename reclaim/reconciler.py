"""Owner reconcile loop.

``OwnerReconciler`` implements the finalizer protocol around the
infrastructure manager; ``ReconcileLoop`` drives it per owner key with
exponential backoff on failure and fixed delays on requested requeues.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress

from loguru import logger

from reclaim.config import Settings
from reclaim.constants import OWNER_FINALIZER, RECONCILE_TIMEOUT_SECONDS
from reclaim.infrastructure import InfrastructureManager, ReconcileResult
from reclaim.owners import OwnerKey, OwnerStore


class OwnerReconciler:
    """Reconciles one owner: ensure on create, teardown on delete."""

    def __init__(
        self,
        settings: Settings,
        owners: OwnerStore,
        infrastructure: InfrastructureManager,
    ) -> None:
        self._settings = settings
        self._owners = owners
        self._infrastructure = infrastructure

    async def reconcile(self, key: OwnerKey) -> ReconcileResult:
        owner = await self._owners.get(key)
        if owner is None:
            return ReconcileResult()

        if owner.deleting:
            return await self._finalize(key)

        if OWNER_FINALIZER not in owner.finalizers:
            await self._owners.add_finalizer(key, OWNER_FINALIZER)
        if not self._settings.enable_interruption_handling:
            return ReconcileResult()
        return await self._infrastructure.ensure(key)

    async def _finalize(self, key: OwnerKey) -> ReconcileResult:
        if self._settings.enable_interruption_handling:
            result = await self._infrastructure.maybe_teardown(key)
            if result.requeue:
                return result
        await self._owners.remove_finalizer(key, OWNER_FINALIZER)
        return ReconcileResult()


class ReconcileLoop:
    """Work queue running at most one reconcile per key at a time.

    Args:
        reconciler: The owner reconciler to drive.
        workers: Number of keys reconciled concurrently.
        base_delay: First retry delay after a failure, in seconds.
        max_delay: Cap for the exponential failure backoff.
        timeout: Deadline for one reconcile, in seconds. A reconcile that
            overruns it is cancelled and counted as a failure. None disables it.
    """

    def __init__(
        self,
        reconciler: OwnerReconciler,
        workers: int = 2,
        base_delay: float = 1.0,
        max_delay: float = 300.0,
        timeout: float | None = RECONCILE_TIMEOUT_SECONDS,
    ) -> None:
        self._reconciler = reconciler
        self._workers = workers
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._timeout = timeout
        self._queue: asyncio.Queue[OwnerKey] = asyncio.Queue()
        self._queued: set[OwnerKey] = set()
        self._active: set[OwnerKey] = set()
        self._dirty: set[OwnerKey] = set()
        self._timers: dict[OwnerKey, asyncio.TimerHandle] = {}
        self._failures: dict[OwnerKey, int] = {}

    def backoff(self, key: OwnerKey) -> float:
        failures = self._failures.get(key, 0)
        return min(self._base_delay * (2 ** max(failures - 1, 0)), self._max_delay)

    def _record_failure(self, key: OwnerKey) -> float:
        self._failures[key] = self._failures.get(key, 0) + 1
        return self.backoff(key)

    def enqueue(self, key: OwnerKey, after: float = 0.0) -> None:
        if after > 0:
            if timer := self._timers.pop(key, None):
                timer.cancel()
            loop = asyncio.get_running_loop()
            self._timers[key] = loop.call_later(after, self._enqueue_now, key)
            return
        self._enqueue_now(key)

    def _enqueue_now(self, key: OwnerKey) -> None:
        self._timers.pop(key, None)
        if key in self._active:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.put_nowait(key)

    async def reconcile_once(self, key: OwnerKey) -> float | None:
        """Reconcile ``key`` and return the delay before the next attempt."""
        log = logger.bind(owner=str(key))
        try:
            async with asyncio.timeout(self._timeout):
                result = await self._reconciler.reconcile(key)
        except asyncio.CancelledError:
            raise
        except TimeoutError:
            delay = self._record_failure(key)
            log.warning(f"Reconcile timed out after {self._timeout:g}s, retrying in {delay:.1f}s")
            return delay
        except Exception as e:
            delay = self._record_failure(key)
            log.warning(f"Reconcile failed ({type(e).__name__}: {e}), retrying in {delay:.1f}s")
            return delay

        self._failures.pop(key, None)
        if result.requeue:
            log.debug(f"Requeue requested in {result.requeue_after:.0f}s")
        return result.requeue_after

    async def _worker(self) -> None:
        while True:
            key = await self._queue.get()
            self._queued.discard(key)
            self._active.add(key)
            try:
                delay = await self.reconcile_once(key)
            finally:
                self._active.discard(key)
                self._queue.task_done()
            if key in self._dirty:
                self._dirty.discard(key)
                self._enqueue_now(key)
            elif delay is not None:
                self.enqueue(key, after=delay)

    async def run(self) -> None:
        """Process keys until cancelled."""
        tasks = [asyncio.create_task(self._worker()) for _ in range(self._workers)]
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            for task in tasks:
                with suppress(asyncio.CancelledError):
                    await task
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
