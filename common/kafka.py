import logging
from confluent_kafka import Producer

logger = logging.getLogger(__name__)

class EventPublisher:
    """Thin wrapper over an idempotent Kafka producer, created on first use"""

    def __init__(self, bootstrap_servers: str, producer=None):
        self.bootstrap_servers = bootstrap_servers
        self._producer = producer

    @property
    def producer(self):
        if self._producer is None:
            self._producer = Producer({
                "bootstrap.servers": self.bootstrap_servers,
                "enable.idempotence": True,
            })
        return self._producer

    def publish(self, topic: str, payload: str, key: str = None):
        self.producer.produce(
            topic,
            key=key.encode("utf-8") if key else None,
            value=payload.encode("utf-8"),
        )
        self.producer.flush()
        logger.debug(f"📤 Published event to {topic} key={key}")
