from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from salesflow.core.auth import AuthUser, get_current_user
from salesflow.core.config import get_settings
from salesflow.meetings.api import bookings_router, meetings_cron_router, suggestions_router
from salesflow.messaging.api import messages_cron_router, messages_router, templates_router, tracking_router
from salesflow.metrics import generate_metrics_payload, metrics_content_type
from salesflow.payments.api import invoices_router, payment_webhook_router
from salesflow.pipeline.api import (
    lead_webhook_router,
    leads_router,
    opportunities_router,
    sales_users_router,
    stages_router,
    stale_cron_router,
    tasks_router,
)

router = APIRouter()
router.include_router(lead_webhook_router)
router.include_router(payment_webhook_router)
router.include_router(stages_router)
router.include_router(opportunities_router)
router.include_router(leads_router)
router.include_router(tasks_router)
router.include_router(sales_users_router)
router.include_router(templates_router)
router.include_router(messages_router)
router.include_router(invoices_router)
router.include_router(bookings_router)
router.include_router(suggestions_router)
router.include_router(messages_cron_router)
router.include_router(meetings_cron_router)
router.include_router(stale_cron_router)
router.include_router(tracking_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str]]:
    return {
        "sub": user.sub,
        "roles": user.roles,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "admin" not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing role: admin")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
