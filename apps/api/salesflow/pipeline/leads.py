from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from salesflow import events
from salesflow.core.clock import utcnow
from salesflow.errors import Conflict, NoAvailableOwner, NotFound, StorageFailure
from salesflow.pipeline.models import Lead, SalesUser
from salesflow.pipeline.routing import OwnerRouter, owner_router
from salesflow.pipeline.schemas import LeadIntakeRequest, SalesUserCreate
from salesflow.pipeline.service import StageTransitionController, publish_stage_entered, stage_controller
from salesflow.pipeline.stages import INITIAL_STAGE
from salesflow.pipeline.tasks import TaskService, task_service


logger = logging.getLogger("salesflow.pipeline.leads")


@dataclass(frozen=True)
class IntakeResult:
    lead_id: uuid.UUID
    opportunity_id: uuid.UUID
    owner_id: uuid.UUID | None


@dataclass
class LeadIntakeService:
    router: OwnerRouter = owner_router
    controller: StageTransitionController = stage_controller
    tasks: TaskService = task_service

    def intake(self, session: Session, payload: LeadIntakeRequest, *, actor_id: str | None = None) -> IntakeResult:
        """Create Lead, Opportunity, first task and first stage log entry as one unit."""
        try:
            try:
                owner: SalesUser | None = self.router.assign(session, payload.postcode)
            except NoAvailableOwner:
                logger.warning("pipeline.intake_unassigned", extra={"status": "no_available_owner"})
                owner = None
            owner_id = owner.id if owner is not None else None

            lead = Lead(
                name=payload.name,
                email=str(payload.email) if payload.email else None,
                phone=payload.phone,
                postcode=payload.postcode.strip().upper() if payload.postcode else None,
                project_type=payload.project_type,
                budget_band=payload.budget_band,
                notes=payload.notes,
                source=payload.source,
                owner_id=owner_id,
            )
            session.add(lead)
            session.flush()

            opportunity, log_entry = self.controller.open_opportunity(
                session,
                lead=lead,
                owner_id=owner_id,
                actor_id=actor_id,
                rationale=f"Created from {payload.source} enquiry",
                value_estimate=payload.value_estimate,
            )
            self.tasks.create_task(
                session,
                opportunity,
                task_type="call1_attempt",
                description=f"Call {lead.name} to book the discovery call",
                due_at=utcnow(),
            )
            if owner_id is not None:
                session.execute(
                    update(SalesUser)
                    .where(SalesUser.id == owner_id)
                    .values(active_opportunities=SalesUser.active_opportunities + 1)
                    .execution_options(synchronize_session=False)
                )
            result = IntakeResult(lead_id=lead.id, opportunity_id=opportunity.id, owner_id=owner_id)
            log_entry_id = log_entry.id
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("pipeline.intake_failed", extra={"error": str(exc)})
            raise StorageFailure("could not store enquiry") from exc

        logger.info(
            "pipeline.lead_created",
            extra={"lead_id": str(result.lead_id), "opportunity_id": str(result.opportunity_id), "owner_id": str(owner_id)},
        )
        publish_stage_entered(
            opportunity_id=result.opportunity_id,
            lead_id=result.lead_id,
            from_stage=None,
            to_stage=INITIAL_STAGE,
            log_entry_id=log_entry_id,
            actor_id=actor_id,
        )
        return result

    def get_lead(self, session: Session, lead_id: uuid.UUID) -> Lead:
        lead = session.get(Lead, lead_id)
        if lead is None:
            raise NotFound("lead not found", details={"lead_id": str(lead_id)})
        return lead

    def opt_out(self, session: Session, lead_id: uuid.UUID, *, actor_id: str | None) -> Lead:
        lead = self.get_lead(session, lead_id)
        if lead.opted_out:
            return lead
        lead.opted_out = True
        lead.opted_out_at = utcnow()
        session.add(lead)
        session.commit()
        session.refresh(lead)
        logger.info("pipeline.lead_opted_out", extra={"lead_id": str(lead.id), "actor_id": actor_id})
        events.publish(events.build_envelope("pipeline.lead_opted_out", {"lead_id": str(lead.id)}, actor_user_id=actor_id))
        return lead


class SalesUserService:
    def create_user(self, session: Session, payload: SalesUserCreate) -> SalesUser:
        user = SalesUser(
            name=payload.name,
            email=str(payload.email).lower(),
            role=payload.role,
            active=payload.active,
            service_regions=payload.service_regions,
        )
        session.add(user)
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise Conflict("a user with this email already exists") from exc
        session.refresh(user)
        return user

    def list_users(self, session: Session) -> list[SalesUser]:
        return list(session.scalars(select(SalesUser).order_by(SalesUser.name)))


lead_intake_service = LeadIntakeService()
sales_user_service = SalesUserService()
