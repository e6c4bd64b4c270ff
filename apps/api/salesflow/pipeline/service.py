from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from opentelemetry import trace
from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from salesflow import events
from salesflow.core.clock import utcnow
from salesflow.errors import Conflict, NotFound, StorageFailure, ValidationFailed
from salesflow.metrics import observe_stage_transition
from salesflow.pipeline.models import Lead, Opportunity, StageLogEntry
from salesflow.pipeline.stages import INITIAL_STAGE, Stage, parse_stage


logger = logging.getLogger("salesflow.pipeline.transitions")
tracer = trace.get_tracer("salesflow.pipeline.service")

STAGE_ENTERED_EVENT = "pipeline.stage_entered"

MILESTONE_COLUMNS: dict[Stage, str] = {
    Stage.QUALIFIED: "call1_completed_at",
    Stage.DEPOSIT_PAID: "deposit_paid_at",
    Stage.ONBOARDING_COMPLETE: "onboarding_completed_at",
    Stage.COMPLETED: "completed_at",
}


@dataclass(frozen=True)
class TransitionCommand:
    opportunity_id: uuid.UUID
    to_stage: Stage | str
    actor_id: str | None
    rationale: str | None = None
    expected_from_stage: Stage | str | None = None


@dataclass(frozen=True)
class TransitionResult:
    opportunity_id: uuid.UUID
    lead_id: uuid.UUID
    from_stage: Stage
    to_stage: Stage
    row_version: int
    log_entry_id: uuid.UUID


@dataclass(frozen=True)
class OpportunitySnapshot:
    opportunity_id: uuid.UUID
    lead_id: uuid.UUID
    stage: Stage
    row_version: int
    milestones: dict[str, datetime | None]


def get_opportunity(session: Session, opportunity_id: uuid.UUID) -> Opportunity:
    opportunity = session.scalar(select(Opportunity).where(Opportunity.id == opportunity_id))
    if opportunity is None:
        raise NotFound("opportunity not found", details={"opportunity_id": str(opportunity_id)})
    return opportunity


def list_opportunities(
    session: Session,
    *,
    stage: Stage | None = None,
    owner_id: uuid.UUID | None = None,
    limit: int = 100,
) -> list[Opportunity]:
    stmt = select(Opportunity)
    if stage is not None:
        stmt = stmt.where(Opportunity.stage == stage.value)
    if owner_id is not None:
        stmt = stmt.where(Opportunity.owner_id == owner_id)
    return list(session.scalars(stmt.order_by(Opportunity.stage_entered_at.desc()).limit(limit)))


def list_stage_log(session: Session, opportunity_id: uuid.UUID) -> list[StageLogEntry]:
    return list(
        session.scalars(
            select(StageLogEntry).where(StageLogEntry.opportunity_id == opportunity_id).order_by(StageLogEntry.sequence)
        )
    )


def publish_stage_entered(
    *,
    opportunity_id: uuid.UUID,
    lead_id: uuid.UUID,
    from_stage: Stage | None,
    to_stage: Stage,
    log_entry_id: uuid.UUID,
    actor_id: str | None,
) -> None:
    events.publish(
        events.build_envelope(
            STAGE_ENTERED_EVENT,
            {
                "opportunity_id": str(opportunity_id),
                "lead_id": str(lead_id),
                "from_stage": from_stage.value if from_stage is not None else None,
                "to_stage": to_stage.value,
                "log_entry_id": str(log_entry_id),
            },
            actor_user_id=actor_id,
        )
    )


class StageTransitionController:
    """Sole writer of Opportunity.stage.

    Every committed change bumps row_version and appends exactly one StageLogEntry whose
    sequence equals the new row_version, so the log replays to the current stage.
    """

    def open_opportunity(
        self,
        session: Session,
        *,
        lead: Lead,
        owner_id: uuid.UUID | None,
        actor_id: str | None,
        rationale: str | None,
        value_estimate: Decimal | None = None,
    ) -> tuple[Opportunity, StageLogEntry]:
        now = utcnow()
        opportunity = Opportunity(
            lead_id=lead.id,
            owner_id=owner_id,
            stage=INITIAL_STAGE.value,
            value_estimate=value_estimate,
            stage_entered_at=now,
            row_version=1,
            created_at=now,
            updated_at=now,
        )
        session.add(opportunity)
        session.flush()
        entry = StageLogEntry(
            opportunity_id=opportunity.id,
            sequence=1,
            from_stage=None,
            to_stage=INITIAL_STAGE.value,
            actor_id=actor_id,
            rationale=rationale,
            created_at=now,
        )
        session.add(entry)
        session.flush()
        return opportunity, entry

    def transition(self, session: Session, command: TransitionCommand) -> TransitionResult:
        to_stage = parse_stage(command.to_stage)
        expected = parse_stage(command.expected_from_stage) if command.expected_from_stage is not None else None

        with tracer.start_as_current_span("pipeline.transition") as span:
            span.set_attribute("opportunity_id", str(command.opportunity_id))
            span.set_attribute("to_stage", to_stage.value)

            snapshot = self.load_snapshot(session, command.opportunity_id)
            if expected is not None and snapshot.stage != expected:
                observe_stage_transition(to_stage.value, "conflict")
                raise Conflict(
                    f"opportunity is at {snapshot.stage.value}, expected {expected.value}",
                    details={"current_stage": snapshot.stage.value, "expected_from_stage": expected.value},
                )
            if snapshot.stage == to_stage:
                raise ValidationFailed(f"opportunity is already at {to_stage.value}")

            now = utcnow()
            values: dict[str, object] = {
                "stage": to_stage.value,
                "stage_entered_at": now,
                "updated_at": now,
                "row_version": snapshot.row_version + 1,
            }
            milestone = MILESTONE_COLUMNS.get(to_stage)
            if milestone is not None and snapshot.milestones.get(milestone) is None:
                values[milestone] = now

            try:
                result = session.execute(
                    update(Opportunity)
                    .where(
                        and_(
                            Opportunity.id == snapshot.opportunity_id,
                            Opportunity.stage == snapshot.stage.value,
                            Opportunity.row_version == snapshot.row_version,
                        )
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    session.rollback()
                    observe_stage_transition(to_stage.value, "conflict")
                    raise Conflict(
                        "opportunity changed concurrently",
                        details={"read_stage": snapshot.stage.value, "read_row_version": snapshot.row_version},
                    )

                entry_id = uuid.uuid4()
                entry = StageLogEntry(
                    id=entry_id,
                    opportunity_id=snapshot.opportunity_id,
                    sequence=snapshot.row_version + 1,
                    from_stage=snapshot.stage.value,
                    to_stage=to_stage.value,
                    actor_id=command.actor_id,
                    rationale=command.rationale,
                    created_at=now,
                )
                session.add(entry)
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                observe_stage_transition(to_stage.value, "conflict")
                raise Conflict("stage log sequence already taken") from exc
            except SQLAlchemyError as exc:
                session.rollback()
                observe_stage_transition(to_stage.value, "storage_error")
                logger.exception(
                    "pipeline.transition_failed",
                    extra={"opportunity_id": str(snapshot.opportunity_id), "to_stage": to_stage.value, "error": str(exc)},
                )
                raise StorageFailure("could not persist stage transition") from exc

            span.set_attribute("from_stage", snapshot.stage.value)
            observe_stage_transition(to_stage.value, "committed")
            logger.info(
                "pipeline.transition",
                extra={
                    "opportunity_id": str(snapshot.opportunity_id),
                    "from_stage": snapshot.stage.value,
                    "to_stage": to_stage.value,
                    "actor_id": command.actor_id,
                },
            )

        outcome = TransitionResult(
            opportunity_id=snapshot.opportunity_id,
            lead_id=snapshot.lead_id,
            from_stage=snapshot.stage,
            to_stage=to_stage,
            row_version=snapshot.row_version + 1,
            log_entry_id=entry_id,
        )
        publish_stage_entered(
            opportunity_id=outcome.opportunity_id,
            lead_id=outcome.lead_id,
            from_stage=outcome.from_stage,
            to_stage=outcome.to_stage,
            log_entry_id=outcome.log_entry_id,
            actor_id=command.actor_id,
        )
        return outcome

    def load_snapshot(self, session: Session, opportunity_id: uuid.UUID) -> OpportunitySnapshot:
        opportunity = session.execute(
            select(Opportunity).where(Opportunity.id == opportunity_id).execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if opportunity is None:
            raise NotFound("opportunity not found", details={"opportunity_id": str(opportunity_id)})
        return OpportunitySnapshot(
            opportunity_id=opportunity.id,
            lead_id=opportunity.lead_id,
            stage=parse_stage(opportunity.stage),
            row_version=opportunity.row_version,
            milestones={column: getattr(opportunity, column) for column in MILESTONE_COLUMNS.values()},
        )


stage_controller = StageTransitionController()
