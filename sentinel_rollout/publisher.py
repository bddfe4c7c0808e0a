"""Kafka publishing of rollout transitions."""

import json
import logging
from datetime import datetime
from typing import Any, Optional

from aiokafka import AIOKafkaProducer

from .config import Settings
from .events import EventBus, EventType, ResourceType, WatchEvent

logger = logging.getLogger(__name__)


class RolloutEventPublisher:
    """
    Forwards rollout transitions from the event bus to Kafka.

    Publishing is best effort: when Kafka is unreachable the controller keeps
    running and events are skipped with a warning.
    """

    def __init__(self, settings: Settings, producer: Optional[AIOKafkaProducer] = None):
        """
        Initialize event publisher.

        Args:
            settings: Application settings
            producer: Optional preconstructed producer
        """
        self.settings = settings
        self.producer = producer
        self._initialized = False
        self._bus: Optional[EventBus] = None

    async def start(self, bus: Optional[EventBus] = None) -> None:
        """Start the Kafka producer and subscribe to rollout events."""
        if self._initialized:
            return

        try:
            if self.producer is None:
                self.producer = AIOKafkaProducer(
                    bootstrap_servers=self.settings.kafka_bootstrap_servers,
                    value_serializer=lambda v: json.dumps(v).encode("utf-8"),
                )
            await self.producer.start()
            self._initialized = True
            logger.info("Kafka producer started successfully")
        except Exception as e:
            logger.error(f"Failed to start Kafka producer: {e}")
            self._initialized = False

        if bus is not None:
            bus.register_handler(ResourceType.ROLLOUT, self.handle_event)
            self._bus = bus

    async def stop(self) -> None:
        """Stop the Kafka producer."""
        if self._bus is not None:
            self._bus.unregister_handler(ResourceType.ROLLOUT, self.handle_event)
            self._bus = None
        if self.producer and self._initialized:
            await self.producer.stop()
            self._initialized = False
            logger.info("Kafka producer stopped")

    async def publish_event(
        self, event_type: str, data: dict[str, Any], key: Optional[str] = None
    ) -> bool:
        """
        Publish an event to the rollouts topic.

        Args:
            event_type: Type of event (e.g., "rollout.completed")
            data: Event payload
            key: Optional partition key

        Returns:
            True if published successfully, False otherwise
        """
        if not self._initialized or not self.producer:
            logger.warning(f"Kafka not available, skipping event: {event_type}")
            return False

        event = {
            "event_type": event_type,
            "timestamp": datetime.utcnow().isoformat(),
            "data": data,
        }

        try:
            key_bytes = key.encode("utf-8") if key else None
            await self.producer.send(
                self.settings.kafka_topic_rollouts, value=event, key=key_bytes
            )
            logger.debug(f"Published event {event_type} for {key}")
            return True
        except Exception as e:
            logger.error(f"Failed to publish event {event_type}: {e}")
            return False

    async def handle_event(self, event: WatchEvent) -> None:
        """Publish a rollout bus event, keyed by workload."""
        if event.event_type == EventType.DELETED:
            event_type = "rollout.deleted"
        else:
            event_type = f"rollout.{str(event.object.get('phase', 'unknown')).lower()}"

        await self.publish_event(
            event_type,
            {
                "workload": event.workload,
                "phase": event.object.get("phase"),
                "reason": event.object.get("reason"),
                "message": event.object.get("message"),
                "current_revision": event.object.get("current_revision_id"),
                "target_revision": event.object.get("target_revision_id"),
                "traffic_weight": event.object.get("traffic_weight"),
            },
            key=event.workload,
        )
