"""
Relays journal events from the outbox table to Kafka.

Run with ``python -m credit_ledger_service.outbox_worker``.
"""
import logging
import time

from confluent_kafka import KafkaException
from sqlalchemy import select, update

from common.kafka import EventPublisher
from common.settings import settings
from credit_ledger_service.db import make_engine, make_session_factory
from credit_ledger_service.models import Outbox

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.5
BATCH_SIZE = 50

def drain_once(session_factory, publisher: EventPublisher, batch_size: int = BATCH_SIZE) -> int:
    """Publish one batch of new rows; returns how many were sent"""
    sent = 0
    with session_factory() as db:
        rows = db.execute(
            select(Outbox).where(Outbox.status == "new").order_by(Outbox.id).limit(batch_size)
        ).scalars().all()
        for row in rows:
            try:
                publisher.publish(row.topic, row.payload, key=row.event_key)
                db.execute(update(Outbox).where(Outbox.id == row.id).values(status="sent"))
                sent += 1
            except KafkaException as e:
                logger.error(f"❌ Failed to publish outbox row {row.id}: {e}")
                db.execute(update(Outbox).where(Outbox.id == row.id).values(status="failed"))
            db.commit()
    return sent

def run():
    logging.basicConfig(level=logging.INFO)
    session_factory = make_session_factory(make_engine(settings.database_url))
    publisher = EventPublisher(settings.kafka_bootstrap)
    logger.info("📤 Outbox worker started")
    while True:
        try:
            drain_once(session_factory, publisher)
        except Exception as e:
            logger.exception(f"Outbox relay iteration failed: {e}")
        time.sleep(POLL_INTERVAL)

if __name__ == "__main__":
    run()
