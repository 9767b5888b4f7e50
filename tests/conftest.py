from __future__ import annotations

import asyncio
import itertools
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import pytest

from reclaim.bus import EventBus
from reclaim.cache import UnavailableOfferings
from reclaim.config import Settings
from reclaim.infrastructure import InfrastructureManager
from reclaim.interruption import InterruptionController
from reclaim.nodes import InMemoryNodeStore
from reclaim.owners import InMemoryOwnerStore
from reclaim.providers.aws import EventBridgeClientFactory, EventBridgeProvider, SQSClientFactory, SQSProvider
from reclaim.reconciler import OwnerReconciler

from factories import client_error

CLUSTER = "test-cluster"
ACCOUNT = "123456789012"
REGION = "us-west-2"


class Behavior:
    """Call accounting and error injection for one fake API operation."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        self.reset()

    def reset(self) -> None:
        self.calls = 0
        self.successful_calls = 0
        self.failed_calls = 0
        self._error: str | None = None
        self._remaining: int | None = None

    def fail(self, code: str, times: int | None = None) -> None:
        """Fail with ``code`` for the next ``times`` calls, forever if None."""
        self._error = code
        self._remaining = times

    def invoke(self) -> None:
        self.calls += 1
        if self._error is not None and (self._remaining is None or self._remaining > 0):
            if self._remaining is not None:
                self._remaining -= 1
            self.failed_calls += 1
            raise client_error(self._error, self.operation)
        self.successful_calls += 1


class FakeSQS:
    """In-memory SQS client with visibility-timeout semantics."""

    def __init__(self) -> None:
        self.get_queue_url_behavior = Behavior("GetQueueUrl")
        self.create_queue_behavior = Behavior("CreateQueue")
        self.get_queue_attributes_behavior = Behavior("GetQueueAttributes")
        self.set_queue_attributes_behavior = Behavior("SetQueueAttributes")
        self.delete_queue_behavior = Behavior("DeleteQueue")
        self.receive_message_behavior = Behavior("ReceiveMessage")
        self.delete_message_behavior = Behavior("DeleteMessage")
        self.send_message_behavior = Behavior("SendMessage")
        self.queues: dict[str, dict[str, Any]] = {}
        self.visible: list[dict[str, Any]] = []
        self.in_flight: dict[str, dict[str, Any]] = {}
        self.deleted_message_ids: list[str] = []
        self._ids = itertools.count(1)

    def _url(self, name: str) -> str:
        return f"https://sqs.{REGION}.amazonaws.com/{ACCOUNT}/{name}"

    def _name(self, url: str) -> str:
        return url.rsplit("/", 1)[-1]

    def _require(self, url: str, operation: str) -> dict[str, Any]:
        queue = self.queues.get(self._name(url))
        if queue is None:
            raise client_error("AWS.SimpleQueueService.NonExistentQueue", operation)
        return queue

    async def get_queue_url(self, QueueName: str) -> dict[str, Any]:
        self.get_queue_url_behavior.invoke()
        if QueueName not in self.queues:
            raise client_error("AWS.SimpleQueueService.NonExistentQueue", "GetQueueUrl")
        return {"QueueUrl": self._url(QueueName)}

    async def create_queue(self, QueueName: str, Attributes: dict[str, str], tags: dict[str, str]) -> dict[str, Any]:
        self.create_queue_behavior.invoke()
        self.queues.setdefault(QueueName, {"attributes": dict(Attributes), "tags": dict(tags)})
        return {"QueueUrl": self._url(QueueName)}

    async def get_queue_attributes(self, QueueUrl: str, AttributeNames: list[str]) -> dict[str, Any]:
        self.get_queue_attributes_behavior.invoke()
        self._require(QueueUrl, "GetQueueAttributes")
        return {"Attributes": {"QueueArn": f"arn:aws:sqs:{REGION}:{ACCOUNT}:{self._name(QueueUrl)}"}}

    async def set_queue_attributes(self, QueueUrl: str, Attributes: dict[str, str]) -> dict[str, Any]:
        self.set_queue_attributes_behavior.invoke()
        self._require(QueueUrl, "SetQueueAttributes")["attributes"].update(Attributes)
        return {}

    async def delete_queue(self, QueueUrl: str) -> dict[str, Any]:
        self.delete_queue_behavior.invoke()
        self._require(QueueUrl, "DeleteQueue")
        del self.queues[self._name(QueueUrl)]
        return {}

    async def receive_message(
        self,
        QueueUrl: str,
        MaxNumberOfMessages: int,
        WaitTimeSeconds: int,
        VisibilityTimeout: int,
        AttributeNames: list[str],
    ) -> dict[str, Any]:
        self.receive_message_behavior.invoke()
        self._require(QueueUrl, "ReceiveMessage")
        batch, self.visible = self.visible[:MaxNumberOfMessages], self.visible[MaxNumberOfMessages:]
        if not batch:
            await asyncio.sleep(0.01)
            return {}
        messages = []
        for message in batch:
            receipt = f"receipt-{next(self._ids)}"
            self.in_flight[receipt] = message
            messages.append({**message, "ReceiptHandle": receipt})
        return {"Messages": messages}

    async def delete_message(self, QueueUrl: str, ReceiptHandle: str) -> dict[str, Any]:
        self.delete_message_behavior.invoke()
        message = self.in_flight.pop(ReceiptHandle, None)
        if message is not None:
            self.deleted_message_ids.append(message["MessageId"])
        return {}

    async def send_message(self, QueueUrl: str, MessageBody: str) -> dict[str, Any]:
        self.send_message_behavior.invoke()
        self._require(QueueUrl, "SendMessage")
        message_id = f"msg-{next(self._ids)}"
        self.visible.append({"MessageId": message_id, "Body": MessageBody})
        return {"MessageId": message_id}

    def add_queue(self, name: str) -> None:
        self.queues.setdefault(name, {"attributes": {}, "tags": {}})

    def enqueue(self, *bodies: Any) -> list[str]:
        """Put messages directly on the queue, bypassing call accounting."""
        ids = []
        for body in bodies:
            message_id = f"msg-{next(self._ids)}"
            payload = body if isinstance(body, str) else json.dumps(body)
            self.visible.append({"MessageId": message_id, "Body": payload})
            ids.append(message_id)
        return ids

    def expire_visibility(self) -> None:
        """Make every received-but-undeleted message visible again."""
        self.visible.extend(self.in_flight.values())
        self.in_flight.clear()


class FakeEventBridge:
    """In-memory EventBridge client."""

    def __init__(self, page_size: int = 2) -> None:
        self.put_rule_behavior = Behavior("PutRule")
        self.tag_resource_behavior = Behavior("TagResource")
        self.put_targets_behavior = Behavior("PutTargets")
        self.list_rules_behavior = Behavior("ListRules")
        self.list_tags_behavior = Behavior("ListTagsForResource")
        self.remove_targets_behavior = Behavior("RemoveTargets")
        self.delete_rule_behavior = Behavior("DeleteRule")
        self.rules: dict[str, dict[str, Any]] = {}
        self.page_size = page_size

    def _arn(self, name: str) -> str:
        return f"arn:aws:events:{REGION}:{ACCOUNT}:rule/{name}"

    def add_rule(self, name: str, tags: dict[str, str]) -> None:
        self.rules[name] = {"arn": self._arn(name), "pattern": "{}", "tags": dict(tags), "targets": {}}

    async def put_rule(self, Name: str, EventPattern: str, State: str, Tags: list[dict[str, str]]) -> dict[str, Any]:
        self.put_rule_behavior.invoke()
        if Name in self.rules:
            self.rules[Name]["pattern"] = EventPattern
        else:
            self.add_rule(Name, {t["Key"]: t["Value"] for t in Tags})
            self.rules[Name]["pattern"] = EventPattern
        return {"RuleArn": self._arn(Name)}

    async def tag_resource(self, ResourceARN: str, Tags: list[dict[str, str]]) -> dict[str, Any]:
        self.tag_resource_behavior.invoke()
        for rule in self.rules.values():
            if rule["arn"] == ResourceARN:
                rule["tags"].update({t["Key"]: t["Value"] for t in Tags})
                return {}
        raise client_error("ResourceNotFoundException", "TagResource")

    async def put_targets(self, Rule: str, Targets: list[dict[str, str]]) -> dict[str, Any]:
        self.put_targets_behavior.invoke()
        if Rule not in self.rules:
            raise client_error("ResourceNotFoundException", "PutTargets")
        for target in Targets:
            self.rules[Rule]["targets"][target["Id"]] = target["Arn"]
        return {"FailedEntryCount": 0, "FailedEntries": []}

    async def list_rules(self, NextToken: str | None = None) -> dict[str, Any]:
        self.list_rules_behavior.invoke()
        names = sorted(self.rules)
        start = int(NextToken) if NextToken else 0
        page = names[start : start + self.page_size]
        response: dict[str, Any] = {"Rules": [{"Name": n, "Arn": self.rules[n]["arn"]} for n in page]}
        if start + self.page_size < len(names):
            response["NextToken"] = str(start + self.page_size)
        return response

    async def list_tags_for_resource(self, ResourceARN: str) -> dict[str, Any]:
        self.list_tags_behavior.invoke()
        for rule in self.rules.values():
            if rule["arn"] == ResourceARN:
                return {"Tags": [{"Key": k, "Value": v} for k, v in rule["tags"].items()]}
        raise client_error("ResourceNotFoundException", "ListTagsForResource")

    async def remove_targets(self, Rule: str, Ids: list[str]) -> dict[str, Any]:
        self.remove_targets_behavior.invoke()
        if Rule not in self.rules:
            raise client_error("ResourceNotFoundException", "RemoveTargets")
        for target_id in Ids:
            self.rules[Rule]["targets"].pop(target_id, None)
        return {"FailedEntryCount": 0}

    async def delete_rule(self, Name: str) -> dict[str, Any]:
        self.delete_rule_behavior.invoke()
        if Name not in self.rules:
            raise client_error("ResourceNotFoundException", "DeleteRule")
        del self.rules[Name]
        return {}


def _factory(fake: Any) -> Any:
    @asynccontextmanager
    async def factory() -> AsyncIterator[Any]:
        yield fake

    return factory

@pytest.fixture
def settings() -> Settings:
    return Settings(cluster_name=CLUSTER, region=REGION)


@pytest.fixture
def sqs_api() -> FakeSQS:
    return FakeSQS()


@pytest.fixture
def eventbridge_api() -> FakeEventBridge:
    return FakeEventBridge()


@pytest.fixture
def sqs(sqs_api: FakeSQS, settings: Settings) -> SQSProvider:
    return SQSProvider(SQSClientFactory(_factory(sqs_api)), settings)


@pytest.fixture
def eventbridge(eventbridge_api: FakeEventBridge, settings: Settings) -> EventBridgeProvider:
    return EventBridgeProvider(EventBridgeClientFactory(_factory(eventbridge_api)), settings)


@pytest.fixture
def owners() -> InMemoryOwnerStore:
    return InMemoryOwnerStore()


@pytest.fixture
def infrastructure(
    settings: Settings,
    sqs: SQSProvider,
    eventbridge: EventBridgeProvider,
    owners: InMemoryOwnerStore,
) -> InfrastructureManager:
    return InfrastructureManager(settings, sqs, eventbridge, owners)


@pytest.fixture
def reconciler(
    settings: Settings,
    owners: InMemoryOwnerStore,
    infrastructure: InfrastructureManager,
) -> OwnerReconciler:
    return OwnerReconciler(settings, owners, infrastructure)


@pytest.fixture
def nodes() -> InMemoryNodeStore:
    return InMemoryNodeStore()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def offerings() -> UnavailableOfferings:
    return UnavailableOfferings()


@pytest.fixture
def controller(
    settings: Settings,
    sqs: SQSProvider,
    nodes: InMemoryNodeStore,
    bus: EventBus,
    offerings: UnavailableOfferings,
) -> InterruptionController:
    return InterruptionController(settings, sqs, nodes, bus, offerings)
