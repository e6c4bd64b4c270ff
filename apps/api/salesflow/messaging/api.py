from __future__ import annotations

import base64
import logging
import uuid

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse, Response
from sqlalchemy.orm import Session

from salesflow.api.responses import pipeline_error_response
from salesflow.core.auth import AuthUser, authorize_sweep_caller, get_current_user
from salesflow.core.config import get_settings
from salesflow.core.database import get_db
from salesflow.core.rbac import ADMIN_ROLES, SALES_ROLES, require_role
from salesflow.errors import NotFound, PipelineError
from salesflow.messaging.schemas import (
    AdHocMessageRequest,
    DispatchSummaryRead,
    MessageLogRead,
    MessageTemplateCreate,
    MessageTemplateRead,
    MessageTemplateUpdate,
    QueueDepthRead,
    TemplatePreviewRequest,
    TemplatePreviewResponse,
)
from salesflow.messaging.service import message_dispatcher, message_log_service, message_scheduler, template_service
from salesflow.pipeline.leads import lead_intake_service

logger = logging.getLogger("salesflow.messaging.api")

templates_router = APIRouter(prefix="/api/crm", tags=["crm.templates"])
messages_router = APIRouter(prefix="/api/crm", tags=["crm.messages"])
messages_cron_router = APIRouter(prefix="/api/cron", tags=["cron.messages"])
tracking_router = APIRouter(prefix="/api/track", tags=["tracking"])

# 1x1 transparent GIF
TRACKING_PIXEL = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")


@templates_router.get("/templates", response_model=list[MessageTemplateRead])
def list_templates(
    request: Request,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[MessageTemplateRead] | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        return template_service.list_templates(db)
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="list_templates")


@templates_router.post("/templates", response_model=MessageTemplateRead, status_code=status.HTTP_201_CREATED)
def create_template(
    request: Request,
    dto: MessageTemplateCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> MessageTemplateRead | JSONResponse:
    try:
        require_role(user, *ADMIN_ROLES)
        return template_service.create_template(db, dto)
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="create_template")


@templates_router.patch("/templates/{template_id}", response_model=MessageTemplateRead)
def update_template(
    request: Request,
    template_id: uuid.UUID,
    dto: MessageTemplateUpdate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> MessageTemplateRead | JSONResponse:
    try:
        require_role(user, *ADMIN_ROLES)
        return template_service.update_template(db, template_id, dto)
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="update_template")


@templates_router.post("/templates/{template_id}/preview", response_model=TemplatePreviewResponse)
def preview_template(
    request: Request,
    template_id: uuid.UUID,
    dto: TemplatePreviewRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> TemplatePreviewResponse | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        return template_service.preview(db, template_id, dto.variables)
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="preview_template")


@templates_router.post("/templates/seed", response_model=list[MessageTemplateRead])
def seed_templates(
    request: Request,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[MessageTemplateRead] | JSONResponse:
    try:
        require_role(user, *ADMIN_ROLES)
        return template_service.seed_defaults(db)
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="seed_templates")


@messages_router.get("/leads/{lead_id}/messages", response_model=list[MessageLogRead])
def list_lead_messages(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[MessageLogRead] | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        lead_intake_service.get_lead(db, lead_id)
        return message_log_service.list_for_lead(db, lead_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="list_messages")


@messages_router.post("/leads/{lead_id}/messages", response_model=MessageLogRead, status_code=status.HTTP_201_CREATED)
def queue_ad_hoc_message(
    request: Request,
    lead_id: uuid.UUID,
    dto: AdHocMessageRequest,
    opportunity_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> MessageLogRead | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        lead = lead_intake_service.get_lead(db, lead_id)
        return message_scheduler.enqueue_ad_hoc(db, lead, dto, opportunity_id=opportunity_id, actor_id=user.actor_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="queue_message")


@messages_cron_router.post("/messages", response_model=DispatchSummaryRead)
def dispatch_messages(
    request: Request,
    limit: int | None = Query(default=None, ge=1, le=500),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> DispatchSummaryRead | JSONResponse:
    try:
        auth_path = authorize_sweep_caller(request, user)
        logger.info("messages.dispatch.requested", extra={"status": auth_path})
        summary = message_dispatcher.run_sweep(db, limit=limit)
        return DispatchSummaryRead(
            claimed=summary.claimed,
            processed=summary.processed,
            sent=summary.sent,
            failed=summary.failed,
            skipped=summary.skipped,
        )
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="dispatch_messages")


@messages_cron_router.get("/messages", response_model=QueueDepthRead)
def queue_depth(
    request: Request,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> QueueDepthRead | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        depth = message_dispatcher.queue_depth(db)
        return QueueDepthRead(ready_to_send=depth.ready_to_send, scheduled=depth.scheduled, total_queued=depth.total_queued)
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="queue_depth")


def _record(db: Session, message_id: uuid.UUID | None, kind: str) -> None:
    if message_id is None:
        return
    try:
        message_log_service.record_engagement(db, message_id, kind)
    except NotFound:
        logger.info("messages.engagement_unknown", extra={"message_id": str(message_id), "status": kind})


@tracking_router.get("/open")
def track_open(
    mid: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
) -> Response:
    _record(db, mid, "open")
    return Response(
        content=TRACKING_PIXEL,
        media_type="image/gif",
        headers={"Cache-Control": "no-store, no-cache, must-revalidate"},
    )


@tracking_router.get("/click")
def track_click(
    url: str = Query(min_length=1),
    mid: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
) -> RedirectResponse:
    _record(db, mid, "click")
    target = url if url.startswith(("https://", "http://")) else get_settings().site_url
    return RedirectResponse(url=target, status_code=status.HTTP_302_FOUND)
