"""Notification transports for discovered files and check lifecycle events.

Delivery is at-least-once from the transport's point of view; consumers must be
idempotent on ``idempotency_key``.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

import httpx
import redis.asyncio as redis
from pydantic import BaseModel, Field

from discovery_engine.config import settings
from discovery_engine.errors import NotificationError
from discovery_engine.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


class FileDiscoveredMessage(BaseModel):
    """Message sent for every newly claimed file."""

    message_id: str = Field(default_factory=lambda: str(uuid4()))
    kind: str  # event | command
    message_type: str
    idempotency_key: str
    correlation_id: str
    occurred_at: datetime = Field(default_factory=utcnow)

    tenant_id: str
    configuration_id: str
    configuration_name: str
    protocol: str
    execution_id: str
    discovered_file_id: str
    file_reference: str
    file_name: str
    file_size: Optional[int] = None
    last_modified: Optional[datetime] = None
    discovered_at: datetime
    static_payload: dict[str, Any] = Field(default_factory=dict)


class CheckLifecycleMessage(BaseModel):
    """FileCheckCompleted / FileCheckFailed event."""

    message_id: str = Field(default_factory=lambda: str(uuid4()))
    message_type: str
    occurred_at: datetime = Field(default_factory=utcnow)
    tenant_id: str
    configuration_id: str
    configuration_name: str
    protocol: str
    execution_id: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    files_found: int = 0
    files_claimed: int = 0
    duration_ms: Optional[int] = None
    retry_count: int = 0
    error_category: Optional[str] = None
    error_message: Optional[str] = None
    resolved_path: Optional[str] = None
    resolved_name: Optional[str] = None


class NotificationEmitter(ABC):
    """Hands a message to the destination named by a notification target."""

    @abstractmethod
    async def emit(self, destination: str, message: BaseModel) -> None:
        """
        Deliver one message.

        Raises:
            NotificationError: If the transport refused or could not be reached
        """

    async def close(self) -> None:
        return None


class WebhookEmitter(NotificationEmitter):
    """POSTs messages as JSON to the destination URL."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout or settings.notification_timeout_seconds
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def emit(self, destination: str, message: BaseModel) -> None:
        client = await self._get_client()
        headers = {"Content-Type": "application/json"}
        message_type = getattr(message, "message_type", "")
        if message_type:
            headers["X-Message-Type"] = message_type
        idempotency_key = getattr(message, "idempotency_key", None)
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            response = await client.post(
                destination,
                content=message.model_dump_json(),
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise NotificationError(
                f"Webhook delivery to {destination} failed: {e.__class__.__name__}"
            ) from e

        if response.status_code >= 300:
            raise NotificationError(
                f"Webhook delivery to {destination} returned HTTP {response.status_code}"
            )
        logger.debug("Delivered %s to %s", message_type, destination)


class RedisStreamEmitter(NotificationEmitter):
    """Appends messages to the Redis stream named by the destination."""

    def __init__(self, redis_url: Optional[str] = None, max_length: int = 100_000):
        self.redis_url = redis_url or settings.redis_url
        self.max_length = max_length
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = await redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.close()
            self._redis = None

    async def emit(self, destination: str, message: BaseModel) -> None:
        client = await self._get_redis()
        fields = {
            "message_type": getattr(message, "message_type", ""),
            "body": message.model_dump_json(),
        }
        try:
            await client.xadd(destination, fields, maxlen=self.max_length, approximate=True)
        except redis.RedisError as e:
            raise NotificationError(
                f"Stream append to {destination} failed: {e.__class__.__name__}"
            ) from e


def create_emitter(transport: Optional[str] = None) -> NotificationEmitter:
    """Build the emitter selected by settings.notification_transport."""
    transport = (transport or settings.notification_transport).lower()
    if transport == "webhook":
        return WebhookEmitter()
    if transport == "redis_stream":
        return RedisStreamEmitter()
    raise ValueError(f"Unknown notification transport '{transport}'")

