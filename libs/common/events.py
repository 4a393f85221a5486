"""Publishing audit events.

This module defines a compact eventing contract using Redis pub/sub.
Producers publish JSON payloads on namespaced channels derived from
``EventType`` so downstream consumers (billing, dashboards, audit sinks) can
follow the publishing lifecycle without polling the API.

Key concepts
- "EventType" stable identifiers are versioned (``.v1`` suffix)
- ``EventPublisher`` composes channel names as ``{prefix}:{event_type}``
- Publishing never fails the caller: after retries the error is logged
"""

import asyncio
import json
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional

import redis.asyncio as redis_async
import structlog

logger = structlog.get_logger("events")


class EventType(Enum):
    """Event types emitted by the publishing service."""
    MODEL_PUBLISHED = "model.published.v1"
    MODEL_UPDATED = "model.updated.v1"
    MODEL_UNPUBLISHED = "model.unpublished.v1"
    API_KEY_ROTATED = "model.api_key_rotated.v1"


@dataclass
class PublishingEvent:
    """Lifecycle event for one published model.

    ``actor`` is the caller's tenant (or ``admin``); the key material itself
    is never part of an event.
    """
    event_type: str
    tenant_id: str
    model_name: str
    actor: str
    timestamp: int = 0
    external_url: Optional[str] = None
    model_type: Optional[str] = None

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = int(time.time() * 1000)

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary."""
        return asdict(self)

    def to_json(self) -> str:
        """Convert event to JSON string."""
        return json.dumps(self.to_dict(), sort_keys=True)


class EventPublisher:
    """Publishes events to Redis.

    Notes
    - Publishing is fire-and-forget; failures are retried, then logged.
    - Messages are serialized as JSON to keep consumers language-agnostic.
    """

    def __init__(
        self,
        redis_url: str,
        channel_prefix: str = "ml_events",
        enabled: bool = True,
        client: Any = None,
        max_retries: int = 3,
        base_delay: float = 0.5,
    ):
        self.channel_prefix = channel_prefix
        self.enabled = enabled
        self.max_retries = max_retries
        self.base_delay = base_delay
        if client is not None:
            self.redis_client = client
        elif enabled:
            self.redis_client = redis_async.from_url(redis_url)
        else:
            self.redis_client = None

    async def publish(self, event: PublishingEvent) -> bool:
        """Publish an event with retry logic.

        Returns ``True`` when the event reached Redis. The channel is derived
        from the event's type so subscribers can filter without payload
        inspection.
        """
        if not self.enabled or self.redis_client is None:
            return False

        channel = f"{self.channel_prefix}:{event.event_type}"
        message = event.to_json()

        for attempt in range(self.max_retries):
            try:
                await self.redis_client.publish(channel, message)
                logger.info(
                    "Event published",
                    event_type=event.event_type,
                    channel=channel,
                    tenant_id=event.tenant_id,
                    model_name=event.model_name,
                )
                return True
            except Exception as e:
                if attempt == self.max_retries - 1:
                    logger.error(
                        "Failed to publish event after all retries",
                        event_type=event.event_type,
                        error=str(e)
                    )
                    return False

                delay = self.base_delay * (2 ** attempt)  # Exponential backoff
                logger.warning(
                    "Event publish failed, retrying",
                    event_type=event.event_type,
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    delay=delay,
                    error=str(e)
                )
                await asyncio.sleep(delay)
        return False

    async def publish_lifecycle(
        self,
        event_type: EventType,
        tenant_id: str,
        model_name: str,
        actor: str,
        external_url: Optional[str] = None,
        model_type: Optional[str] = None,
    ) -> bool:
        """Publish a lifecycle event for a published model."""
        event = PublishingEvent(
            event_type=event_type.value,
            tenant_id=tenant_id,
            model_name=model_name,
            actor=actor,
            external_url=external_url,
            model_type=model_type,
        )
        return await self.publish(event)

    async def close(self) -> None:
        """Close the Redis client used by the publisher."""
        if self.redis_client is None:
            return
        try:
            await self.redis_client.aclose()
        except Exception as e:
            logger.warning("Error closing redis client", error=str(e))


def create_event_publisher(redis_url: str, enabled: bool = True) -> EventPublisher:
    """Create an event publisher."""
    return EventPublisher(redis_url, enabled=enabled)
