"""Centralized constants and enums for Reclaim.

All magic strings, tag keys and provider defaults are defined here
to keep them consistent across the providers and controllers.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Final

# =============================================================================
# Resource Tags
# =============================================================================

DISCOVERY_TAG_KEY: Final = "karpenter.sh/discovery"
OWNER_FINALIZER: Final = "reclaim.dev/termination"


# =============================================================================
# Node Labels
# =============================================================================


class NodeLabel(StrEnum):
    """Well-known node labels used to derive capacity keys."""

    INSTANCE_TYPE = "node.kubernetes.io/instance-type"
    ZONE = "topology.kubernetes.io/zone"
    CAPACITY_TYPE = "karpenter.sh/capacity-type"


# =============================================================================
# EC2 Instance States
# =============================================================================


class InstanceState(StrEnum):
    """EC2 instance state names."""

    PENDING = "pending"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    SHUTTING_DOWN = "shutting-down"
    TERMINATED = "terminated"


STOPPING_STATES: Final = frozenset({InstanceState.STOPPING, InstanceState.STOPPED})
TERMINATING_STATES: Final = frozenset({InstanceState.SHUTTING_DOWN, InstanceState.TERMINATED})


# =============================================================================
# Queue Defaults
# =============================================================================

QUEUE_NAME_MAX_LENGTH: Final = 80
RULE_NAME_MAX_LENGTH: Final = 64
MESSAGE_RETENTION_SECONDS: Final = 300
RECEIVE_WAIT_SECONDS: Final = 20
RECEIVE_MAX_MESSAGES: Final = 10
VISIBILITY_TIMEOUT_SECONDS: Final = 20

# SQS refuses to recreate a queue name for 60 seconds after deleting it.
QUEUE_RECREATE_DELAY_SECONDS: Final = 60.0

UNAVAILABLE_OFFERINGS_TTL_SECONDS: Final = 180.0
MESSAGE_CONCURRENCY: Final = 10

# Upper bound on a single owner reconcile before it counts as failed.
RECONCILE_TIMEOUT_SECONDS: Final = 120.0


# =============================================================================
# Event Sources
# =============================================================================


class EventSource(StrEnum):
    HEALTH = "aws.health"
    EC2 = "aws.ec2"


class DetailType(StrEnum):
    HEALTH_EVENT = "AWS Health Event"
    SPOT_INTERRUPTION = "EC2 Spot Instance Interruption Warning"
    REBALANCE = "EC2 Instance Rebalance Recommendation"
    STATE_CHANGE = "EC2 Instance State-change Notification"
