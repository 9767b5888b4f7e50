"""EventBridge rule catalog and provider.

Four rules route provider notifications into the interruption queue.
Rules are discovered for teardown by name and by discovery tag, never by
identifiers remembered from a previous run.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Final

from loguru import logger

from reclaim.config import Settings
from reclaim.constants import RULE_NAME_MAX_LENGTH, DetailType, EventSource
from reclaim.core.exceptions import ErrorKind, ProviderError, error_kind, is_rate_limited
from reclaim.retry import retry

from .clients import EventBridgeClientFactory, boundary

TARGET_ID: Final = "1"


class RuleName(StrEnum):
    SCHEDULED_CHANGE = "ScheduledChangeRule"
    SPOT_TERMINATION = "SpotTerminationRule"
    REBALANCE = "RebalanceRule"
    STATE_CHANGE = "StateChangeRule"


@dataclass(frozen=True, slots=True)
class Rule:
    """A catalog entry: a name plus the event pattern it matches."""

    name: RuleName
    source: str
    detail_type: str

    @property
    def pattern(self) -> dict[str, list[str]]:
        return {"source": [self.source], "detail-type": [self.detail_type]}

    def qualified_name(self, cluster_name: str) -> str:
        return f"Karpenter-{cluster_name}-{self.name}"[:RULE_NAME_MAX_LENGTH]


DEFAULT_RULES: Final[tuple[Rule, ...]] = (
    Rule(RuleName.SCHEDULED_CHANGE, EventSource.HEALTH, DetailType.HEALTH_EVENT),
    Rule(RuleName.SPOT_TERMINATION, EventSource.EC2, DetailType.SPOT_INTERRUPTION),
    Rule(RuleName.REBALANCE, EventSource.EC2, DetailType.REBALANCE),
    Rule(RuleName.STATE_CHANGE, EventSource.EC2, DetailType.STATE_CHANGE),
)


@dataclass(frozen=True, slots=True)
class DiscoveredRule:
    """A rule found in the account that belongs to this cluster."""

    name: str
    arn: str


class EventBridgeProvider:
    """Rule operations scoped to the configured cluster."""

    def __init__(
        self,
        events: EventBridgeClientFactory,
        settings: Settings,
        rules: tuple[Rule, ...] = DEFAULT_RULES,
    ) -> None:
        self._events = events
        self._settings = settings
        self.rules = rules

    @property
    def _tags(self) -> list[dict[str, str]]:
        return [{"Key": self._settings.discovery_tag_key, "Value": self._settings.cluster_name}]

    def rule_names(self) -> frozenset[str]:
        return frozenset(r.qualified_name(self._settings.cluster_name) for r in self.rules)

    @retry(on=is_rate_limited)
    async def put_rule(self, rule: Rule) -> str:
        """Create or update the rule's pattern. Returns the rule ARN."""
        async with self._events() as client:
            with boundary("PutRule"):
                response = await client.put_rule(
                    Name=rule.qualified_name(self._settings.cluster_name),
                    EventPattern=json.dumps(rule.pattern),
                    State="ENABLED",
                    Tags=self._tags,
                )
        return response["RuleArn"]

    @retry(on=is_rate_limited)
    async def tag_rule(self, rule_arn: str) -> None:
        # PutRule only applies tags on creation.
        async with self._events() as client:
            with boundary("TagResource"):
                await client.tag_resource(ResourceARN=rule_arn, Tags=self._tags)

    @retry(on=is_rate_limited)
    async def put_target(self, rule: Rule, queue_arn: str) -> None:
        async with self._events() as client:
            with boundary("PutTargets"):
                response = await client.put_targets(
                    Rule=rule.qualified_name(self._settings.cluster_name),
                    Targets=[{"Id": TARGET_ID, "Arn": queue_arn}],
                )
        if response.get("FailedEntryCount"):
            failed = response.get("FailedEntries", [])
            code = failed[0].get("ErrorCode", "") if failed else ""
            raise ProviderError(error_kind(code), "PutTargets", code, f"rejected entries for {rule.name}")

    async def ensure_rule(self, rule: Rule, queue_arn: str) -> None:
        """Pattern, tag and target, each idempotent on its own."""
        arn = await self.put_rule(rule)
        await self.tag_rule(arn)
        await self.put_target(rule, queue_arn)
        logger.debug(f"Ensured rule {rule.qualified_name(self._settings.cluster_name)}")

    @retry(on=is_rate_limited)
    async def _list_rules(self) -> list[dict[str, Any]]:
        rules: list[dict[str, Any]] = []
        token: str | None = None
        async with self._events() as client:
            while True:
                kwargs: dict[str, Any] = {"NextToken": token} if token else {}
                with boundary("ListRules"):
                    response = await client.list_rules(**kwargs)
                rules.extend(response.get("Rules", []))
                token = response.get("NextToken")
                if not token:
                    return rules

    @retry(on=is_rate_limited)
    async def _tag_value(self, rule_arn: str) -> str | None:
        """The discovery tag value, or None if untagged or already deleted."""
        try:
            async with self._events() as client:
                with boundary("ListTagsForResource"):
                    response = await client.list_tags_for_resource(ResourceARN=rule_arn)
        except ProviderError as e:
            if e.kind is not ErrorKind.NOT_FOUND:
                raise
            logger.debug(f"Rule {rule_arn} disappeared before its tags were read")
            return None
        for tag in response.get("Tags", []):
            if tag.get("Key") == self._settings.discovery_tag_key:
                return tag.get("Value")
        return None

    async def discover_rules(self) -> list[DiscoveredRule]:
        """Catalog rules present in the account and tagged for this cluster."""
        names = self.rule_names()
        candidates = [
            DiscoveredRule(name=r["Name"], arn=r["Arn"])
            for r in await self._list_rules()
            if r.get("Name") in names
        ]
        tag_values = await asyncio.gather(*(self._tag_value(r.arn) for r in candidates))
        return [
            rule
            for rule, value in zip(candidates, tag_values, strict=True)
            if value == self._settings.cluster_name
        ]

    @retry(on=is_rate_limited)
    async def remove_targets(self, rule_name: str) -> None:
        async with self._events() as client:
            with boundary("RemoveTargets"):
                await client.remove_targets(Rule=rule_name, Ids=[TARGET_ID])

    @retry(on=is_rate_limited)
    async def delete_rule(self, rule_name: str) -> None:
        async with self._events() as client:
            with boundary("DeleteRule"):
                await client.delete_rule(Name=rule_name)
