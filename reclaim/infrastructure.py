"""Lifecycle of the shared interruption queue and its routing rules.

Every owner's reconcile calls ``ensure`` on create and ``maybe_teardown``
on delete. The infrastructure is shared: teardown happens only when the
deleting owner is the last live one, which is decided by listing owners
at that moment rather than by any counter kept in memory.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine, Iterable
from dataclasses import dataclass
from typing import Any

from loguru import logger

from reclaim.config import Settings
from reclaim.core.exceptions import ErrorKind, ProviderError
from reclaim.owners import OwnerKey, OwnerStore, remaining_owners
from reclaim.providers.aws.eventbridge import DiscoveredRule, EventBridgeProvider
from reclaim.providers.aws.sqs import SQSProvider


@dataclass(frozen=True, slots=True)
class ReconcileResult:
    """Outcome of a successful reconcile. ``requeue_after`` is in seconds."""

    requeue_after: float | None = None

    @property
    def requeue(self) -> bool:
        return self.requeue_after is not None


async def run_all(steps: Iterable[Coroutine[Any, Any, None]]) -> None:
    """Run independent steps concurrently in a task group.

    The first failure cancels the steps still running and is re-raised on
    its own, so callers keep handling a plain ``ProviderError``.
    """
    try:
        async with asyncio.TaskGroup() as tg:
            for step in steps:
                tg.create_task(step)
    except ExceptionGroup as group:
        first, *rest = group.exceptions
        for other in rest:
            logger.debug(f"Concurrent step also failed: {other}")
        raise first from None


class InfrastructureManager:
    """Creates and destroys the interruption queue and rule catalog.

    Each step is idempotent on its own, so a reconcile that failed or was
    cancelled halfway is resumed by simply running again from the top.
    """

    def __init__(
        self,
        settings: Settings,
        sqs: SQSProvider,
        eventbridge: EventBridgeProvider,
        owners: OwnerStore,
    ) -> None:
        self._settings = settings
        self._sqs = sqs
        self._eventbridge = eventbridge
        self._owners = owners

    def _requeue_recently_deleted(self, operation: str) -> ReconcileResult:
        delay = self._settings.recently_deleted_requeue_seconds
        logger.info(f"Queue {self._sqs.name} was deleted recently, retrying {operation} in {delay:.0f}s")
        return ReconcileResult(requeue_after=delay)

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    async def ensure(self, owner: OwnerKey) -> ReconcileResult:
        """Create or repair the queue and all catalog rules.

        Raises:
            ProviderError: any failure other than "recently deleted",
                including PERMISSION_DENIED, for the caller's backoff.
        """
        log = logger.bind(owner=str(owner))
        try:
            await self._ensure_queue()
        except ProviderError as e:
            if e.kind is ErrorKind.RECENTLY_DELETED:
                return self._requeue_recently_deleted("queue creation")
            raise

        queue_arn = await self._sqs.queue_arn()
        await self._sqs.set_queue_attributes(queue_arn)
        await run_all(self._eventbridge.ensure_rule(rule, queue_arn) for rule in self._eventbridge.rules)
        log.debug(f"Infrastructure ready: queue {self._sqs.name}, {len(self._eventbridge.rules)} rules")
        return ReconcileResult()

    async def _ensure_queue(self) -> str:
        # Always ask the API: the queue may have been deleted out of band.
        try:
            return await self._sqs.get_queue_url(cached=False)
        except ProviderError as e:
            if e.kind is not ErrorKind.NOT_FOUND:
                raise

        try:
            return await self._sqs.create_queue()
        except ProviderError as e:
            # Someone else created it between our lookup and create.
            if e.kind is not ErrorKind.ALREADY_EXISTS:
                raise
        return await self._sqs.get_queue_url()

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    async def maybe_teardown(self, deleting: OwnerKey) -> ReconcileResult:
        """Tear everything down if ``deleting`` is the last live owner."""
        remaining = await remaining_owners(self._owners, deleting)
        if remaining:
            logger.debug(f"{len(remaining)} owners remain after {deleting}, keeping infrastructure")
            return ReconcileResult()
        logger.info(f"{deleting} is the last owner, tearing down interruption infrastructure")
        return await self.teardown()

    async def teardown(self) -> ReconcileResult:
        rules = await self._eventbridge.discover_rules()
        await run_all(self._delete_rule(rule) for rule in rules)

        try:
            await self._sqs.delete_queue()
        except ProviderError as e:
            if e.kind is ErrorKind.RECENTLY_DELETED:
                return self._requeue_recently_deleted("queue deletion")
            if e.kind is not ErrorKind.NOT_FOUND:
                raise
            logger.debug(f"Queue {self._sqs.name} already gone")
        return ReconcileResult()

    async def _delete_rule(self, rule: DiscoveredRule) -> None:
        try:
            await self._eventbridge.remove_targets(rule.name)
        except ProviderError as e:
            if e.kind is not ErrorKind.NOT_FOUND:
                raise
        try:
            await self._eventbridge.delete_rule(rule.name)
        except ProviderError as e:
            if e.kind is not ErrorKind.NOT_FOUND:
                raise
            logger.debug(f"Rule {rule.name} already gone")
            return
        logger.info(f"Deleted rule {rule.name}")
