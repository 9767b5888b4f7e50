"""Interruption controller: drains the queue and acts on cluster nodes.

Per message: Received -> Classified -> Resolved -> Actioned -> Deleted.
Malformed or unrecognized messages are Rejected and still deleted. A
message whose action fails is left in the queue; the provider redelivers
it once its visibility timeout expires, which is the only retry.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from enum import StrEnum
from typing import Any

from loguru import logger

from reclaim.cache import UnavailableOfferings
from reclaim.config import Settings
from reclaim.core.exceptions import ErrorKind, MalformedPayloadError, ProviderError
from reclaim.events import EventSink
from reclaim.nodes import Node, NodeStore, index_by_instance
from reclaim.notifications import Kind, Notification, classify
from reclaim.providers.aws.sqs import SQSProvider

_MAX_POLL_BACKOFF = 60.0


class Outcome(StrEnum):
    ACTIONED = "actioned"
    NOOP = "noop"
    REJECTED = "rejected"
    FAILED = "failed"


class InterruptionController:
    """Single long-running consumer of the interruption queue."""

    def __init__(
        self,
        settings: Settings,
        sqs: SQSProvider,
        nodes: NodeStore,
        events: EventSink,
        offerings: UnavailableOfferings,
    ) -> None:
        self._settings = settings
        self._sqs = sqs
        self._nodes = nodes
        self._events = events
        self._offerings = offerings
        self._stopping = False

    def stop(self) -> None:
        """Finish the current batch and return from ``run``."""
        self._stopping = True

    async def run(self) -> None:
        """Poll until stopped or cancelled. Errors never end the loop."""
        if not self._settings.enable_interruption_handling:
            logger.info("Interruption handling disabled, not polling")
            return

        logger.info(f"Polling interruption queue {self._sqs.name}")
        failures = 0
        while not self._stopping:
            try:
                await self.poll_once()
                failures = 0
            except asyncio.CancelledError:
                raise
            except Exception as e:
                failures += 1
                delay = min(2.0 ** (failures - 1), _MAX_POLL_BACKOFF)
                if isinstance(e, ProviderError) and e.kind is ErrorKind.NOT_FOUND:
                    logger.warning(f"Queue {self._sqs.name} not found, retrying in {delay:.0f}s")
                else:
                    logger.opt(exception=e).error(f"Polling failed, retrying in {delay:.0f}s")
                await asyncio.sleep(delay)
        logger.info("Interruption controller stopped")

    async def poll_once(self) -> list[Outcome]:
        """Receive one batch and process it. Suspends inside the long poll."""
        messages = await self._sqs.receive_messages()
        if not messages:
            return []

        index = index_by_instance(await self._nodes.list())
        semaphore = asyncio.Semaphore(self._settings.message_concurrency)

        async def bounded(message: Mapping[str, Any]) -> Outcome:
            async with semaphore:
                return await self.handle(message, index)

        outcomes = await asyncio.gather(*(bounded(m) for m in messages))
        logger.debug(f"Processed {len(outcomes)} messages from {self._sqs.name}")
        return list(outcomes)

    async def handle(self, message: Mapping[str, Any], index: dict[str, Node] | None = None) -> Outcome:
        """Process one message end to end, deleting it unless acting failed."""
        receipt_handle = message.get("ReceiptHandle", "")
        try:
            notification = classify(message)
        except MalformedPayloadError as e:
            logger.warning(f"Rejecting malformed message {message.get('MessageId', '')}: {e}")
            return await self._delete(receipt_handle, Outcome.REJECTED)

        log = logger.bind(message_id=notification.message_id, kind=str(notification.kind))
        if notification.kind is Kind.UNKNOWN:
            log.warning(
                f"Rejecting unrecognized notification {notification.source}/{notification.detail_type}"
            )
            return await self._delete(receipt_handle, Outcome.REJECTED)

        if index is None:
            index = index_by_instance(await self._nodes.list())
        resolved = [(iid, index[iid]) for iid in notification.instance_ids if iid in index]
        if not resolved:
            log.debug(f"No nodes for instances {notification.instance_ids}")

        emitted = 0
        try:
            for instance_id, node in resolved:
                emitted += await self._act(notification, node, instance_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("Acting on notification failed, leaving message for redelivery")
            return Outcome.FAILED

        return await self._delete(receipt_handle, Outcome.ACTIONED if emitted else Outcome.NOOP)

    async def _act(self, notification: Notification, node: Node, instance_id: str) -> bool:
        log = logger.bind(
            message_id=notification.message_id,
            kind=str(notification.kind),
            instance_id=instance_id,
        )
        if notification.terminal:
            offering = node.offering
            if notification.kind is Kind.SPOT_INTERRUPTION and offering is not None:
                self._offerings.mark_unavailable(
                    offering.instance_type,
                    offering.zone,
                    offering.capacity_type,
                    reason=str(notification.kind),
                )
            if node.deleting:
                log.debug(f"Node {node.name} already deleting")
            else:
                if node.unschedulable:
                    log.debug(f"Node {node.name} already cordoned")
                else:
                    log.info(f"Cordoning node {node.name}")
                    await self._nodes.cordon(node.name)
                log.info(f"Evicting and deleting node {node.name}")
                await self._nodes.evict(node.name)
                await self._nodes.delete(node.name)

        event = notification.event_for(node.name, instance_id)
        if event is None:
            return False
        self._events.emit(event)
        return True

    async def _delete(self, receipt_handle: str, outcome: Outcome) -> Outcome:
        try:
            await self._sqs.delete_message(receipt_handle)
        except ProviderError as e:
            logger.warning(f"Deleting message failed, it will be redelivered: {e}")
            return Outcome.FAILED
        return outcome
