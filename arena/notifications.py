import asyncio
from datetime import timedelta

from sqlalchemy.orm import Session

from arena.config import NotificationEvent, settings
from arena.helpers import BroadcastClient, utcnow
from arena.logging_config import get_logger
from arena.models import NotificationOutbox

logger = get_logger(__name__)


def enqueue_event(db: Session, event: NotificationEvent, payload: dict) -> NotificationOutbox | None:
    """
    Stage a broadcast in the caller's transaction. Nothing is queued when no
    broadcast endpoint is configured.
    """
    if not settings.notify_url:
        return None
    record = NotificationOutbox(
        event_type=event.value,
        payload=payload,
        target_url=str(settings.notify_url),
        status="pending",
        next_attempt_at=utcnow(),
    )
    db.add(record)
    return record


broadcast_client = BroadcastClient()

async def process_outbox(db: Session):
    now = utcnow()
    pending = db.query(NotificationOutbox).filter(NotificationOutbox.status != "sent").all()
    for record in pending:
        if record.next_attempt_at and record.next_attempt_at > now:
            continue
        record.attempt_count = (record.attempt_count or 0) + 1
        try:
            logger.info(
                "Processing outbox record: record_id=%s event_type=%s attempt=%s",
                record.id,
                record.event_type,
                record.attempt_count,
            )
            resp = await broadcast_client.publish(record.target_url, record.event_type, record.payload)
            logger.info(
                "Outbox delivery response: record_id=%s status=%s attempts=%s",
                record.id,
                resp.status_code,
                record.attempt_count,
            )
            if resp.status_code >= 400:
                raise RuntimeError(f"broadcast endpoint returned {resp.status_code}")
            record.status = "sent"
            record.last_error = None
        except Exception as exc:  # noqa: BLE001
            record.status = "failed"
            record.last_error = str(exc)
            record.next_attempt_at = utcnow() + timedelta(seconds=2 ** record.attempt_count)
            logger.warning(
                "Outbox delivery failed: record_id=%s error=%s next_attempt_at=%s attempt_count=%s",
                record.id,
                exc,
                record.next_attempt_at,
                record.attempt_count,
            )
        finally:
            db.add(record)
            db.commit()

async def background_outbox_worker(db_factory):
    while True:
        db = db_factory()
        try:
            await process_outbox(db)
        except Exception:  # noqa: BLE001
            logger.exception("Outbox sweep failed")
        finally:
            db.close()
        await asyncio.sleep(2)
