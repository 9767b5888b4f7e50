"""Algebraic Data Type (ADT) for node events.

One event is published per processed notification and resolved node.
Each event class carries a fixed reason and event type:

    match event:
        case InstanceSpotInterrupted(node=name):
            print(f"{name} is about to be reclaimed")
        case InstanceRebalanceRecommendation():
            ...
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Literal, Protocol

type EventType = Literal["Normal", "Warning"]


@dataclass(frozen=True, slots=True)
class InstanceSpotInterrupted:
    """Spot interruption warning received for the node's instance."""

    node: str
    instance_id: str

    reason: ClassVar[str] = "InstanceSpotInterrupted"
    type: ClassVar[EventType] = "Warning"

    @property
    def message(self) -> str:
        return f"Node {self.node} event: A spot interruption warning was triggered for the node"


@dataclass(frozen=True, slots=True)
class InstanceRebalanceRecommendation:
    """Provider recommends moving off the node's instance."""

    node: str
    instance_id: str

    reason: ClassVar[str] = "InstanceRebalanceRecommendation"
    type: ClassVar[EventType] = "Normal"

    @property
    def message(self) -> str:
        return f"Node {self.node} event: A rebalance recommendation was triggered for the node"


@dataclass(frozen=True, slots=True)
class InstanceScheduledChange:
    """Scheduled maintenance or health event affects the node's instance."""

    node: str
    instance_id: str

    reason: ClassVar[str] = "InstanceUnhealthy"
    type: ClassVar[EventType] = "Normal"

    @property
    def message(self) -> str:
        return f"Node {self.node} event: An unhealthy warning was triggered for the node"


@dataclass(frozen=True, slots=True)
class InstanceStopping:
    """The node's instance is stopping or stopped."""

    node: str
    instance_id: str

    reason: ClassVar[str] = "InstanceStopping"
    type: ClassVar[EventType] = "Warning"

    @property
    def message(self) -> str:
        return f"Node {self.node} event: Instance is stopping"


@dataclass(frozen=True, slots=True)
class InstanceTerminating:
    """The node's instance is shutting down or terminated."""

    node: str
    instance_id: str

    reason: ClassVar[str] = "InstanceTerminating"
    type: ClassVar[EventType] = "Warning"

    @property
    def message(self) -> str:
        return f"Node {self.node} event: Instance is terminating"


NodeEvent = (
    InstanceSpotInterrupted
    | InstanceRebalanceRecommendation
    | InstanceScheduledChange
    | InstanceStopping
    | InstanceTerminating
)


class EventSink(Protocol):
    """Receives one structured event per processed notification."""

    def emit(self, event: NodeEvent) -> None: ...


__all__ = [
    "InstanceSpotInterrupted",
    "InstanceRebalanceRecommendation",
    "InstanceScheduledChange",
    "InstanceStopping",
    "InstanceTerminating",
    "NodeEvent",
    "EventSink",
    "EventType",
]
