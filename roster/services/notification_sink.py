"""Notification sink: fire-and-forget workspace events.

Events are published to the ``workspace:{id}:events`` Redis channel. A
failed publish is logged and dropped; callers never wait on delivery.
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Protocol

from roster.logging_config import get_logger

logger = get_logger(__name__)

ROLE_CHANGED = "role_changed"
QUOTA_EVALUATED = "quota_evaluated"
QUOTA_COMPLETED = "quota_completed"
PERIOD_RESET = "period_reset"


class NotificationSink(Protocol):
    def emit(self, event_type: str, workspace_id: int, payload: dict[str, Any]) -> None:
        ...


def channel_for(workspace_id: int) -> str:
    return f"workspace:{workspace_id}:events"


def encode_event(event_type: str, workspace_id: int, payload: dict[str, Any]) -> str:
    return json.dumps(
        {
            "type": event_type,
            "workspace_id": workspace_id,
            "emitted_at": datetime.now(timezone.utc).isoformat(),
            "payload": payload,
        },
        default=str,
    )


class LoggingNotificationSink:
    """Fallback sink used when Redis is not available."""

    def emit(self, event_type: str, workspace_id: int, payload: dict[str, Any]) -> None:
        logger.info(
            "notification_emitted",
            event_type=event_type,
            workspace_id=workspace_id,
            payload=payload,
        )


class RedisNotificationSink:
    """Publishes events to Redis pub/sub from background tasks."""

    def __init__(self, redis) -> None:
        self._redis = redis
        self._pending: set[asyncio.Task] = set()

    def emit(self, event_type: str, workspace_id: int, payload: dict[str, Any]) -> None:
        channel = channel_for(workspace_id)
        message = encode_event(event_type, workspace_id, payload)
        task = asyncio.create_task(self._publish(channel, event_type, message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _publish(self, channel: str, event_type: str, message: str) -> None:
        try:
            await self._redis.publish(channel, message)
        except Exception as e:
            logger.warning(
                "notification_publish_failed",
                channel=channel,
                event_type=event_type,
                error=str(e),
            )

    async def drain(self) -> None:
        """Wait for in-flight publishes (used at shutdown)."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)


def build_notification_sink(redis) -> NotificationSink:
    if redis is None:
        return LoggingNotificationSink()
    return RedisNotificationSink(redis)
