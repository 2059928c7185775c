import logging
from datetime import timedelta

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from app.models.billing import ProcessedEvent
from app.services.common import dialect_insert, utcnow

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 90
DEFAULT_STATS_HOURS = 24


class ProcessedEvents:
    @staticmethod
    def claim(db: Session, event_id: str, event_type: str) -> bool:
        """Record ``event_id`` inside the caller's transaction.

        Returns False when the event was already committed by an earlier
        delivery. A concurrent delivery blocks on the unique key until the
        first transaction finishes, then resolves to claimed (it rolled
        back) or duplicate (it committed). Nothing is committed here.
        """
        stmt = (
            dialect_insert(db, ProcessedEvent)
            .values(event_id=event_id, event_type=event_type, processed_at=utcnow())
            .on_conflict_do_nothing(index_elements=["event_id"])
            .returning(ProcessedEvent.event_id)
        )
        claimed = db.execute(stmt).first() is not None
        if not claimed:
            logger.info(
                "Event already processed: %s",
                event_id,
                extra={"event_id": event_id, "event_type": event_type},
            )
        return claimed

    @staticmethod
    def exists(db: Session, event_id: str) -> bool:
        return db.get(ProcessedEvent, event_id) is not None

    @staticmethod
    def prune(db: Session, older_than_days: int = DEFAULT_RETENTION_DAYS) -> int:
        cutoff = utcnow() - timedelta(days=older_than_days)
        result = db.execute(
            delete(ProcessedEvent).where(ProcessedEvent.processed_at < cutoff)
        )
        db.commit()
        deleted = result.rowcount or 0
        logger.info(
            "Pruned %s processed events older than %s days", deleted, older_than_days
        )
        return deleted

    @staticmethod
    def stats(db: Session, hours: int = DEFAULT_STATS_HOURS) -> list[tuple[str, int]]:
        since = utcnow() - timedelta(hours=hours)
        stmt = (
            select(ProcessedEvent.event_type, func.count())
            .where(ProcessedEvent.processed_at >= since)
            .group_by(ProcessedEvent.event_type)
            .order_by(func.count().desc(), ProcessedEvent.event_type)
        )
        return [(event_type, count) for event_type, count in db.execute(stmt).all()]


processed_events = ProcessedEvents()
