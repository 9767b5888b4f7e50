"""Classification of raw queue messages into notifications.

A message body is an EventBridge envelope. Its ``source`` and
``detail-type`` select a parser from a dispatch table; each parser knows
the shape of its ``detail`` and extracts the affected instance ids.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Final

from reclaim.constants import STOPPING_STATES, TERMINATING_STATES, DetailType, EventSource
from reclaim.core.exceptions import MalformedPayloadError
from reclaim.events import (
    InstanceRebalanceRecommendation,
    InstanceScheduledChange,
    InstanceSpotInterrupted,
    InstanceStopping,
    InstanceTerminating,
    NodeEvent,
)


class Kind(StrEnum):
    SCHEDULED_CHANGE = "ScheduledChange"
    SPOT_INTERRUPTION = "SpotInterruption"
    REBALANCE = "Rebalance"
    STATE_CHANGE_TERMINAL = "StateChangeTerminal"
    STATE_CHANGE_NON_TERMINAL = "StateChangeNonTerminal"
    UNKNOWN = "Unknown"


TERMINAL_KINDS: Final = frozenset({Kind.SPOT_INTERRUPTION, Kind.STATE_CHANGE_TERMINAL})


@dataclass(frozen=True, slots=True)
class Notification:
    """One classified queue message."""

    kind: Kind
    message_id: str
    receipt_handle: str
    instance_ids: tuple[str, ...] = ()
    state: str | None = None
    detail_type: str = ""
    source: str = ""
    payload: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def terminal(self) -> bool:
        return self.kind in TERMINAL_KINDS

    def event_for(self, node: str, instance_id: str) -> NodeEvent | None:
        """The event to publish for a resolved node, None for NoOp kinds."""
        match self.kind:
            case Kind.SPOT_INTERRUPTION:
                return InstanceSpotInterrupted(node=node, instance_id=instance_id)
            case Kind.REBALANCE:
                return InstanceRebalanceRecommendation(node=node, instance_id=instance_id)
            case Kind.SCHEDULED_CHANGE:
                return InstanceScheduledChange(node=node, instance_id=instance_id)
            case Kind.STATE_CHANGE_TERMINAL if self.state in STOPPING_STATES:
                return InstanceStopping(node=node, instance_id=instance_id)
            case Kind.STATE_CHANGE_TERMINAL:
                return InstanceTerminating(node=node, instance_id=instance_id)
            case _:
                return None


type Parsed = tuple[Kind, tuple[str, ...], str | None]
type Parser = Callable[[Mapping[str, Any]], Parsed]


def _instance_id(detail: Mapping[str, Any]) -> str:
    instance_id = detail.get("instance-id")
    if not isinstance(instance_id, str) or not instance_id:
        raise MalformedPayloadError("detail.instance-id missing")
    return instance_id


def _scheduled_change(detail: Mapping[str, Any]) -> Parsed:
    # Health events for other services or categories are well-formed but not ours.
    if detail.get("service") != "EC2" or detail.get("eventTypeCategory") != "scheduledChange":
        return Kind.SCHEDULED_CHANGE, (), None
    entities = detail.get("affectedEntities")
    if not isinstance(entities, list):
        raise MalformedPayloadError("detail.affectedEntities missing")
    ids = tuple(e["entityValue"] for e in entities if isinstance(e, dict) and e.get("entityValue"))
    return Kind.SCHEDULED_CHANGE, ids, None


def _spot_interruption(detail: Mapping[str, Any]) -> Parsed:
    return Kind.SPOT_INTERRUPTION, (_instance_id(detail),), None


def _rebalance(detail: Mapping[str, Any]) -> Parsed:
    return Kind.REBALANCE, (_instance_id(detail),), None


def _state_change(detail: Mapping[str, Any]) -> Parsed:
    state = detail.get("state")
    if not isinstance(state, str):
        raise MalformedPayloadError("detail.state missing")
    state = state.lower()
    terminal = state in STOPPING_STATES or state in TERMINATING_STATES
    kind = Kind.STATE_CHANGE_TERMINAL if terminal else Kind.STATE_CHANGE_NON_TERMINAL
    return kind, (_instance_id(detail),), state


PARSERS: Final[dict[tuple[str, str], Parser]] = {
    (EventSource.HEALTH, DetailType.HEALTH_EVENT): _scheduled_change,
    (EventSource.EC2, DetailType.SPOT_INTERRUPTION): _spot_interruption,
    (EventSource.EC2, DetailType.REBALANCE): _rebalance,
    (EventSource.EC2, DetailType.STATE_CHANGE): _state_change,
}


def classify(message: Mapping[str, Any]) -> Notification:
    """Parse an SQS message into a Notification.

    Raises:
        MalformedPayloadError: the body is not a JSON envelope, or a known
            event type lacks the fields its parser needs.
    """
    message_id = message.get("MessageId", "")
    receipt_handle = message.get("ReceiptHandle", "")
    try:
        envelope = json.loads(message.get("Body") or "")
    except (TypeError, ValueError) as e:
        raise MalformedPayloadError(f"message {message_id} body is not JSON") from e
    if not isinstance(envelope, dict):
        raise MalformedPayloadError(f"message {message_id} body is not an object")

    source = str(envelope.get("source", ""))
    detail_type = str(envelope.get("detail-type", ""))
    base = Notification(
        kind=Kind.UNKNOWN,
        message_id=message_id,
        receipt_handle=receipt_handle,
        detail_type=detail_type,
        source=source,
        payload=envelope,
    )

    parser = PARSERS.get((source, detail_type))
    if parser is None:
        return base

    detail = envelope.get("detail")
    if not isinstance(detail, dict):
        raise MalformedPayloadError(f"message {message_id} has no detail object")
    kind, instance_ids, state = parser(detail)
    return Notification(
        kind=kind,
        message_id=message_id,
        receipt_handle=receipt_handle,
        instance_ids=instance_ids,
        state=state,
        detail_type=detail_type,
        source=source,
        payload=envelope,
    )
