"""SQS queue provider.

Thin wrapper over the queue API: every call goes through ``boundary`` so
callers only ever see ``ProviderError``. Throttled calls are retried here.

The queue URL is cached after the first lookup. Any call that finds the
queue missing drops the cached URL so the next lookup goes to the API.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from loguru import logger

from reclaim.config import Settings
from reclaim.core.exceptions import ErrorKind, is_kind, is_rate_limited
from reclaim.retry import retry

from .clients import SQSClientFactory, boundary

type Message = dict[str, Any]


class SQSProvider:
    """Queue operations for the cluster's interruption queue."""

    def __init__(self, sqs: SQSClientFactory, settings: Settings) -> None:
        self._sqs = sqs
        self._settings = settings
        self._url: str | None = None

    @property
    def name(self) -> str:
        return self._settings.queue_name

    def policy(self, queue_arn: str) -> dict[str, Any]:
        """Allow EventBridge rules (and SQS itself) to publish to the queue."""
        return {
            "Version": "2012-10-17",
            "Id": "EC2NotificationPolicy",
            "Statement": [
                {
                    "Sid": "EC2NotificationPolicySQS",
                    "Effect": "Allow",
                    "Principal": {"Service": ["events.amazonaws.com", "sqs.amazonaws.com"]},
                    "Action": "sqs:SendMessage",
                    "Resource": queue_arn,
                }
            ],
        }

    @contextmanager
    def _queue_call(self, operation: str) -> Iterator[None]:
        try:
            with boundary(operation):
                yield
        except Exception as e:
            if is_kind(e, ErrorKind.NOT_FOUND):
                self._url = None
            raise

    @retry(on=is_rate_limited)
    async def get_queue_url(self, cached: bool = True) -> str:
        """Look up the queue URL. Raises ProviderError(NOT_FOUND) if absent.

        ``cached=False`` skips the cached URL and asks the API.
        """
        if cached and self._url is not None:
            return self._url
        async with self._sqs() as client:
            with self._queue_call("GetQueueUrl"):
                response = await client.get_queue_url(QueueName=self.name)
        self._url = response["QueueUrl"]
        return self._url

    @retry(on=is_rate_limited)
    async def create_queue(self) -> str:
        async with self._sqs() as client:
            with boundary("CreateQueue"):
                response = await client.create_queue(
                    QueueName=self.name,
                    Attributes={"MessageRetentionPeriod": str(self._settings.message_retention_seconds)},
                    tags={self._settings.discovery_tag_key: self._settings.cluster_name},
                )
        self._url = response["QueueUrl"]
        logger.info(f"Created queue {self.name}")
        return self._url

    @retry(on=is_rate_limited)
    async def queue_arn(self) -> str:
        url = await self.get_queue_url()
        async with self._sqs() as client:
            with self._queue_call("GetQueueAttributes"):
                response = await client.get_queue_attributes(QueueUrl=url, AttributeNames=["QueueArn"])
        return response["Attributes"]["QueueArn"]

    @retry(on=is_rate_limited)
    async def set_queue_attributes(self, queue_arn: str) -> None:
        url = await self.get_queue_url()
        async with self._sqs() as client:
            with self._queue_call("SetQueueAttributes"):
                await client.set_queue_attributes(
                    QueueUrl=url,
                    Attributes={
                        "MessageRetentionPeriod": str(self._settings.message_retention_seconds),
                        "Policy": json.dumps(self.policy(queue_arn)),
                    },
                )

    @retry(on=is_rate_limited)
    async def delete_queue(self) -> None:
        url = await self.get_queue_url()
        try:
            async with self._sqs() as client:
                with boundary("DeleteQueue"):
                    await client.delete_queue(QueueUrl=url)
        finally:
            self._url = None
        logger.info(f"Deleted queue {self.name}")

    @retry(on=is_rate_limited)
    async def receive_messages(self) -> list[Message]:
        """Long-poll one batch. Suspends up to ``receive_wait_seconds``."""
        url = await self.get_queue_url()
        async with self._sqs() as client:
            with self._queue_call("ReceiveMessage"):
                response = await client.receive_message(
                    QueueUrl=url,
                    MaxNumberOfMessages=self._settings.receive_max_messages,
                    WaitTimeSeconds=self._settings.receive_wait_seconds,
                    VisibilityTimeout=self._settings.visibility_timeout_seconds,
                    AttributeNames=["SentTimestamp"],
                )
        return response.get("Messages", [])

    @retry(on=is_rate_limited)
    async def delete_message(self, receipt_handle: str) -> None:
        url = await self.get_queue_url()
        async with self._sqs() as client:
            with self._queue_call("DeleteMessage"):
                await client.delete_message(QueueUrl=url, ReceiptHandle=receipt_handle)

    @retry(on=is_rate_limited)
    async def send_message(self, body: Any) -> str:
        url = await self.get_queue_url()
        payload = body if isinstance(body, str) else json.dumps(body)
        async with self._sqs() as client:
            with self._queue_call("SendMessage"):
                response = await client.send_message(QueueUrl=url, MessageBody=payload)
        return response["MessageId"]
