import asyncio
import json
import logging
from typing import Any, Callable, Dict, Optional

from kafka import KafkaProducer
from kafka.errors import KafkaError

from .events import Event

logger = logging.getLogger(__name__)


def _make_producer(bootstrap_servers: str) -> KafkaProducer:
    return KafkaProducer(
        bootstrap_servers=bootstrap_servers,
        value_serializer=lambda v: json.dumps(v).encode("utf-8"),
        retries=3,
    )


class KafkaAlertPublisher:
    """Forwards "alert" events to a Kafka topic. Failures never reach the pipeline."""

    def __init__(
        self,
        bootstrap_servers: str,
        topic: str = "alerts",
        producer_factory: Callable[[str], Any] = _make_producer,
    ):
        self.bootstrap_servers = bootstrap_servers
        self.topic = topic
        self._factory = producer_factory
        self._producer = None

    def _get_producer(self):
        if self._producer is None:
            try:
                self._producer = self._factory(self.bootstrap_servers)
                logger.info("Kafka connected to %s, topic=%s", self.bootstrap_servers, self.topic)
            except KafkaError as exc:
                logger.error("Failed to create Kafka producer: %s", exc)
                return None
        return self._producer

    def publish(self, alert: Dict[str, Any]) -> bool:
        producer = self._get_producer()
        if producer is None:
            return False
        try:
            producer.send(self.topic, alert)
            producer.flush()
            return True
        except KafkaError as exc:
            logger.error("Failed to publish alert to Kafka: %s", exc)
            return False

    async def handle(self, event: Event) -> None:
        # producer calls block on network I/O
        await asyncio.to_thread(self.publish, event.payload)

    def close(self) -> None:
        producer: Optional[Any] = self._producer
        self._producer = None
        if producer is not None:
            try:
                producer.close()
            except KafkaError as exc:
                logger.warning("Error closing Kafka producer: %s", exc)
