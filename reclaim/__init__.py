"""Reclaim: interruption handling for cluster node autoscaling.

Provisions the shared interruption queue and routing rules, drains
provider notifications from it and cordons, evicts and removes nodes
before their instances are reclaimed.

Example:
    from reclaim import Settings, UnavailableOfferings

    settings = Settings(cluster_name="prod")
    offerings = UnavailableOfferings(ttl=settings.unavailable_offerings_ttl_seconds)
    offerings.is_unavailable("m5.large", "us-west-2a", "spot")
"""

from reclaim.cache import OfferingKey, UnavailableOfferings
from reclaim.config import Settings, load_settings
from reclaim.core.exceptions import (
    ConfigurationError,
    ErrorKind,
    MalformedPayloadError,
    ProviderError,
    ReclaimError,
)
from reclaim.infrastructure import InfrastructureManager, ReconcileResult
from reclaim.interruption import InterruptionController, Outcome
from reclaim.logging import LogConfig, setup_logging
from reclaim.notifications import Kind, Notification, classify

__version__ = "0.1.0"

__all__ = [
    "ConfigurationError",
    "ErrorKind",
    "InfrastructureManager",
    "InterruptionController",
    "Kind",
    "LogConfig",
    "MalformedPayloadError",
    "Notification",
    "OfferingKey",
    "Outcome",
    "ProviderError",
    "ReclaimError",
    "ReconcileResult",
    "Settings",
    "UnavailableOfferings",
    "classify",
    "load_settings",
    "setup_logging",
]
