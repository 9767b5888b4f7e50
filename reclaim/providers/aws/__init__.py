"""AWS queue and event-routing providers for Reclaim.

Example:
    from injector import Injector
    from reclaim.operator import ReclaimModule
    from reclaim.providers.aws import AWSModule, SQSProvider

    injector = Injector([AWSModule(settings), ReclaimModule()])
    sqs = injector.get(SQSProvider)
"""

from reclaim.providers.aws.clients import AWSModule, EventBridgeClientFactory, SQSClientFactory
from reclaim.providers.aws.eventbridge import DEFAULT_RULES, EventBridgeProvider, Rule
from reclaim.providers.aws.sqs import SQSProvider

__all__ = [
    "AWSModule",
    "DEFAULT_RULES",
    "EventBridgeClientFactory",
    "EventBridgeProvider",
    "Rule",
    "SQSClientFactory",
    "SQSProvider",
]
