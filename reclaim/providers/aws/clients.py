"""AWS client factories with dependency injection.

Provides typed client factories that can be injected into providers,
and the boundary that turns botocore errors into ``ProviderError``.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager, contextmanager
from typing import Any

import aioboto3
from botocore.config import Config
from botocore.exceptions import ClientError
from injector import Module, provider, singleton

from reclaim.config import Settings
from reclaim.core.exceptions import translate

# Throttling is retried by reclaim.retry, so botocore's own retries stay minimal.
_BOTO_CONFIG = Config(retries={"max_attempts": 2, "mode": "standard"})


# =============================================================================
# Wrapper Classes for DI (each needs a unique type)
# =============================================================================


class _ClientFactory:
    def __init__(self, factory: Callable[[], AbstractAsyncContextManager[Any]]) -> None:
        self._factory = factory

    def __call__(self) -> AbstractAsyncContextManager[Any]:
        return self._factory()


class SQSClientFactory(_ClientFactory):
    """Wrapper for SQS client factory."""


class EventBridgeClientFactory(_ClientFactory):
    """Wrapper for EventBridge client factory."""


@contextmanager
def boundary(operation: str) -> Iterator[None]:
    """Translate botocore client errors raised inside the block."""
    try:
        yield
    except ClientError as e:
        raise translate(e, operation) from e


# =============================================================================
# AWS Module
# =============================================================================


class AWSModule(Module):
    """DI module that provides AWS client factories.

    Usage:
        >>> injector = Injector([AWSModule(settings)])
        >>> sqs = injector.get(SQSClientFactory)
        >>> async with sqs() as client:
        ...     await client.list_queues()
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    @singleton
    @provider
    def provide_settings(self) -> Settings:
        return self._settings

    @singleton
    @provider
    def provide_session(self) -> aioboto3.Session:
        """Provide singleton aioboto3 session."""
        return aioboto3.Session()

    @singleton
    @provider
    def provide_sqs(self, session: aioboto3.Session, settings: Settings) -> SQSClientFactory:
        @asynccontextmanager
        async def factory() -> AsyncIterator[Any]:
            async with session.client("sqs", region_name=settings.region, config=_BOTO_CONFIG) as client:
                yield client

        return SQSClientFactory(factory)

    @singleton
    @provider
    def provide_eventbridge(self, session: aioboto3.Session, settings: Settings) -> EventBridgeClientFactory:
        @asynccontextmanager
        async def factory() -> AsyncIterator[Any]:
            async with session.client("events", region_name=settings.region, config=_BOTO_CONFIG) as client:
                yield client

        return EventBridgeClientFactory(factory)


__all__ = [
    "AWSModule",
    "EventBridgeClientFactory",
    "SQSClientFactory",
    "boundary",
]
