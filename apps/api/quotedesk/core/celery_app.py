from celery import Celery

from quotedesk.core.config import get_settings
from quotedesk.core.database import SessionLocal
from quotedesk.quotations.service import quotation_service

settings = get_settings()

celery_app = Celery("quotedesk_api", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.beat_schedule = {
    "quotations-expire-overdue": {
        "task": "quotations.expire_overdue",
        "schedule": float(settings.expiry_sweep_interval_seconds),
    },
}


@celery_app.task(name="quotations.expire_overdue")
def expire_overdue_task() -> dict[str, object]:
    session = SessionLocal()
    try:
        result = quotation_service.expire_overdue(session, performed_by="scheduler")
    finally:
        session.close()
    return {"count": result.count, "expired_ids": [str(item) for item in result.expired_ids]}
