"""Event publisher for Redis Pub/Sub."""

import json
import time
from typing import Optional

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from meshledger.config import settings
from meshledger.utils.logger import get_logger

logger = get_logger(__name__)

# session.info key for alert events awaiting their transaction's commit
PENDING_ALERT_EVENTS = "pending_alert_events"


class EventPublisher:
    """Publish alert and equipment events to Redis channels for live consumers.

    Publishing is best-effort: failures are logged, never raised.
    """

    CHANNELS = {
        "ALERT_EVENTS": "alerts.events",
        "EQUIPMENT_EVENTS": "equipment.events",
    }

    @classmethod
    async def _publish(
        cls, channel_key: str, message: dict, redis: Optional[Redis] = None
    ) -> None:
        if not settings.ALERT_EVENTS_ENABLED:
            return

        close_redis = False
        if redis is None:
            redis = Redis.from_url(settings.REDIS_URL, decode_responses=True)
            close_redis = True

        channel = cls.CHANNELS[channel_key]
        try:
            subscribers = await redis.publish(
                channel, json.dumps(message, default=str)
            )
            logger.debug(
                f"Published event to {channel}",
                extra={"event_type": message.get("event"), "subscribers": subscribers},
            )

        except Exception as e:
            logger.error(
                "Failed to publish event",
                extra={
                    "error": str(e),
                    "channel": channel,
                    "event_type": message.get("event"),
                },
            )

        finally:
            if close_redis:
                await redis.aclose()

    @classmethod
    async def publish_alert_event(
        cls,
        alert_id: int,
        event_type: str,
        data: dict,
        redis: Optional[Redis] = None,
    ) -> None:
        """
        Publish alert event.

        Args:
            alert_id: Alert identifier
            event_type: Event type (alert.created, alert.resolved)
            data: Event data (type, severity, title, equipment_id, ...)
            redis: Optional Redis connection (will create new if not provided)
        """
        message = {
            "event": event_type,
            "alert_id": alert_id,
            "timestamp": time.time(),
            **data,
        }
        await cls._publish("ALERT_EVENTS", message, redis)

    @classmethod
    async def publish_equipment_event(
        cls,
        equipment_id: str,
        event_type: str,
        data: dict,
        redis: Optional[Redis] = None,
    ) -> None:
        """
        Publish equipment event.

        Args:
            equipment_id: Equipment identifier
            event_type: Event type (equipment.status_change)
            data: Event data
            redis: Optional Redis connection
        """
        message = {
            "event": event_type,
            "equipment_id": equipment_id,
            "timestamp": time.time(),
            **data,
        }
        await cls._publish("EQUIPMENT_EVENTS", message, redis)

    @staticmethod
    def defer_alert_event(
        session: AsyncSession, alert_id: int, event_type: str, data: dict
    ) -> None:
        """Hold an alert event on the session until its transaction commits."""
        session.info.setdefault(PENDING_ALERT_EVENTS, []).append(
            (alert_id, event_type, data)
        )

    @staticmethod
    def discard_deferred(session: AsyncSession) -> int:
        """Drop events held for a transaction that did not commit."""
        return len(session.info.pop(PENDING_ALERT_EVENTS, []))

    @classmethod
    async def publish_deferred(
        cls, session: AsyncSession, redis: Optional[Redis] = None
    ) -> int:
        """
        Publish the alert events held on a session after it committed.

        Args:
            session: Session whose transaction has just committed
            redis: Optional Redis connection

        Returns:
            Number of events handed to the publisher
        """
        events = session.info.pop(PENDING_ALERT_EVENTS, [])
        for alert_id, event_type, data in events:
            await cls.publish_alert_event(alert_id, event_type, data, redis)
        return len(events)
