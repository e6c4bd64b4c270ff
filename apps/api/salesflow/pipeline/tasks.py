from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session

from salesflow.core.clock import utcnow
from salesflow.errors import Conflict, NotFound
from salesflow.pipeline.models import Opportunity, Task


class TaskService:
    def create_task(
        self,
        session: Session,
        opportunity: Opportunity,
        *,
        task_type: str,
        description: str | None = None,
        due_at: datetime | None = None,
    ) -> Task:
        task = Task(
            opportunity_id=opportunity.id,
            owner_id=opportunity.owner_id,
            task_type=task_type,
            description=description,
            due_at=due_at,
            status="open",
        )
        session.add(task)
        session.flush()
        return task

    def has_open_task(self, session: Session, opportunity_id: uuid.UUID, task_type: str) -> bool:
        existing = session.scalar(
            select(Task.id).where(
                and_(Task.opportunity_id == opportunity_id, Task.task_type == task_type, Task.status == "open")
            )
        )
        return existing is not None

    def list_tasks(self, session: Session, opportunity_id: uuid.UUID, *, status: str | None = None) -> list[Task]:
        stmt = select(Task).where(Task.opportunity_id == opportunity_id)
        if status is not None:
            stmt = stmt.where(Task.status == status)
        return list(session.scalars(stmt.order_by(Task.due_at.is_(None), Task.due_at, Task.created_at)))

    def close_task(self, session: Session, task_id: uuid.UUID, *, actor_id: str | None, status: str = "done") -> Task:
        result = session.execute(
            update(Task)
            .where(and_(Task.id == task_id, Task.status == "open"))
            .values(status=status, completed_at=utcnow(), completed_by=actor_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.rollback()
            task = session.get(Task, task_id)
            if task is None:
                raise NotFound("task not found", details={"task_id": str(task_id)})
            raise Conflict(f"task is already {task.status}", details={"task_id": str(task_id)})
        session.commit()
        task = session.execute(select(Task).where(Task.id == task_id).execution_options(populate_existing=True)).scalar_one()
        return task


task_service = TaskService()
