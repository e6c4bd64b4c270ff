from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from salesflow.api.responses import pipeline_error_response
from salesflow.core.auth import AuthUser, authorize_sweep_caller, get_current_user, verify_webhook_secret
from salesflow.core.database import get_db
from salesflow.core.rbac import ADMIN_ROLES, SALES_ROLES, require_role
from salesflow.errors import PipelineError
from salesflow.pipeline.automation import stage_automation
from salesflow.pipeline.insights import opportunity_insights
from salesflow.pipeline.leads import lead_intake_service, sales_user_service
from salesflow.pipeline.schemas import (
    ActivitySummaryRead,
    AILeadScoreRead,
    LeadIntakeRequest,
    LeadIntakeResponse,
    LeadRead,
    LeadScoreRead,
    NextActionRead,
    OpportunityRead,
    SalesUserCreate,
    SalesUserRead,
    StageLogEntryRead,
    StageRead,
    TaskCompleteRequest,
    TaskRead,
    TransitionRequest,
)
from salesflow.pipeline.service import (
    TransitionCommand,
    get_opportunity,
    list_opportunities,
    list_stage_log,
    stage_controller,
)
from salesflow.pipeline.stages import STAGE_REGISTRY, Stage
from salesflow.pipeline.tasks import task_service

lead_webhook_router = APIRouter(prefix="/api/webhooks", tags=["webhooks.leads"])
stages_router = APIRouter(prefix="/api/crm", tags=["crm.stages"])
opportunities_router = APIRouter(prefix="/api/crm", tags=["crm.opportunities"])
leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
tasks_router = APIRouter(prefix="/api/crm", tags=["crm.tasks"])
sales_users_router = APIRouter(prefix="/api/crm", tags=["crm.sales_users"])
stale_cron_router = APIRouter(prefix="/api/cron", tags=["cron.stale"])


@lead_webhook_router.post("/leads", response_model=LeadIntakeResponse, status_code=status.HTTP_201_CREATED)
def intake_lead(
    request: Request,
    dto: LeadIntakeRequest,
    db: Session = Depends(get_db),
) -> LeadIntakeResponse | JSONResponse:
    try:
        verify_webhook_secret(request)
        result = lead_intake_service.intake(db, dto, actor_id="webhook")
        return LeadIntakeResponse(lead_id=result.lead_id, opportunity_id=result.opportunity_id, owner_id=result.owner_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="lead_intake")


@stages_router.get("/stages", response_model=list[StageRead])
def list_stages(
    request: Request,
    user: AuthUser = Depends(get_current_user),
) -> list[StageRead] | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="list_stages")
    return [
        StageRead(
            stage=definition.stage,
            label=definition.label,
            description=definition.description,
            position=definition.position,
            response_target_days=definition.response_target.days if definition.response_target is not None else None,
        )
        for definition in STAGE_REGISTRY.values()
    ]


@opportunities_router.get("/opportunities", response_model=list[OpportunityRead])
def get_opportunities(
    request: Request,
    stage: Stage | None = Query(default=None),
    owner_id: uuid.UUID | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[OpportunityRead] | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        return list_opportunities(db, stage=stage, owner_id=owner_id, limit=limit)
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="list_opportunities")


@opportunities_router.get("/opportunities/{opportunity_id}", response_model=OpportunityRead)
def get_opportunity_detail(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        return get_opportunity(db, opportunity_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="get_opportunity")


@opportunities_router.get("/opportunities/{opportunity_id}/stage-log", response_model=list[StageLogEntryRead])
def get_stage_log(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[StageLogEntryRead] | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        get_opportunity(db, opportunity_id)
        return list_stage_log(db, opportunity_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="get_stage_log")


@opportunities_router.post("/opportunities/{opportunity_id}/transition", response_model=OpportunityRead)
def transition_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: TransitionRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        stage_controller.transition(
            db,
            TransitionCommand(
                opportunity_id=opportunity_id,
                to_stage=dto.to_stage,
                actor_id=user.actor_id,
                rationale=dto.rationale,
                expected_from_stage=dto.expected_from_stage,
            ),
        )
        return get_opportunity(db, opportunity_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="transition_opportunity")


@opportunities_router.get("/opportunities/{opportunity_id}/tasks", response_model=list[TaskRead])
def get_opportunity_tasks(
    request: Request,
    opportunity_id: uuid.UUID,
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[TaskRead] | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        get_opportunity(db, opportunity_id)
        return task_service.list_tasks(db, opportunity_id, status=status_filter)
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="list_tasks")


@opportunities_router.get("/opportunities/{opportunity_id}/score", response_model=LeadScoreRead)
def get_lead_score(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> LeadScoreRead | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        return LeadScoreRead.model_validate(opportunity_insights.score(db, opportunity_id))
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="lead_score")


@opportunities_router.post("/opportunities/{opportunity_id}/score/ai", response_model=AILeadScoreRead)
def score_lead_with_ai(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> AILeadScoreRead | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        return AILeadScoreRead.model_validate(opportunity_insights.ai_score(db, opportunity_id))
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="ai_lead_score")


@opportunities_router.get("/opportunities/{opportunity_id}/next-action", response_model=NextActionRead)
def get_next_action(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> NextActionRead | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        return NextActionRead.model_validate(opportunity_insights.next_action(db, opportunity_id))
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="next_action")


@opportunities_router.post("/opportunities/{opportunity_id}/next-action/ai", response_model=NextActionRead)
def suggest_next_action_with_ai(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> NextActionRead | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        return NextActionRead.model_validate(opportunity_insights.ai_next_action(db, opportunity_id))
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="ai_next_action")


@opportunities_router.post("/opportunities/{opportunity_id}/activity-summary", response_model=ActivitySummaryRead)
def summarize_opportunity_activity(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ActivitySummaryRead | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        return ActivitySummaryRead.model_validate(opportunity_insights.activity_summary(db, opportunity_id))
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="activity_summary")


@leads_router.get("/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        return lead_intake_service.get_lead(db, lead_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="get_lead")


@leads_router.post("/leads/{lead_id}/opt-out", response_model=LeadRead)
def opt_out_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        return lead_intake_service.opt_out(db, lead_id, actor_id=user.actor_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="opt_out_lead")


@tasks_router.post("/tasks/{task_id}/complete", response_model=TaskRead)
def complete_task(
    request: Request,
    task_id: uuid.UUID,
    dto: TaskCompleteRequest | None = None,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        status_value = dto.status if dto is not None else "done"
        return task_service.close_task(db, task_id, actor_id=user.actor_id, status=status_value)
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="complete_task")


@sales_users_router.get("/sales-users", response_model=list[SalesUserRead])
def list_sales_users(
    request: Request,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[SalesUserRead] | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        return sales_user_service.list_users(db)
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="list_sales_users")


@sales_users_router.post("/sales-users", response_model=SalesUserRead, status_code=status.HTTP_201_CREATED)
def create_sales_user(
    request: Request,
    dto: SalesUserCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> SalesUserRead | JSONResponse:
    try:
        require_role(user, *ADMIN_ROLES)
        return sales_user_service.create_user(db, dto)
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="create_sales_user")


@stale_cron_router.post("/stale-opportunities", response_model=None)
def run_stale_sweep(
    request: Request,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> dict[str, int | str] | JSONResponse:
    try:
        auth_path = authorize_sweep_caller(request, user)
        flagged = stage_automation.flag_stale_opportunities(db)
        return {"flagged": flagged, "auth": auth_path}
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="stale_sweep")
