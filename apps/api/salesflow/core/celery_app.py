from celery import Celery
from celery.signals import worker_init, worker_process_init

from salesflow.core.config import get_settings
from salesflow.core.database import SessionLocal

settings = get_settings()

celery_app = Celery("salesflow", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.beat_schedule = {
    "dispatch-messages": {"task": "salesflow.tasks.dispatch_messages", "schedule": 120.0},
    "track-meetings": {"task": "salesflow.tasks.track_meetings", "schedule": 300.0},
    "flag-stale-opportunities": {"task": "salesflow.tasks.flag_stale_opportunities", "schedule": 3600.0},
}


@worker_init.connect
@worker_process_init.connect
def register_worker_handlers(**kwargs) -> None:
    """Stage automation runs wherever transitions happen, including the tracker sweep in a worker."""
    from salesflow.pipeline.automation import register_handlers

    register_handlers()


@celery_app.task(name="salesflow.tasks.dispatch_messages")
def dispatch_messages_task() -> dict[str, int]:
    from salesflow.messaging.service import message_dispatcher

    with SessionLocal() as session:
        summary = message_dispatcher.run_sweep(session)
    return {"claimed": summary.claimed, "sent": summary.sent, "failed": summary.failed, "skipped": summary.skipped}


@celery_app.task(name="salesflow.tasks.track_meetings")
def track_meetings_task() -> dict[str, int]:
    from salesflow.meetings.tracker import meeting_tracker

    with SessionLocal() as session:
        summary = meeting_tracker.run_sweep(session)
    return {
        "claimed": summary.claimed,
        "updated": summary.updated,
        "manual": summary.manual,
        "errors": summary.errors,
        "pre_meeting_flagged": summary.pre_meeting_flagged,
    }


@celery_app.task(name="salesflow.tasks.flag_stale_opportunities")
def flag_stale_opportunities_task() -> int:
    from salesflow.pipeline.automation import stage_automation

    with SessionLocal() as session:
        return stage_automation.flag_stale_opportunities(session)
