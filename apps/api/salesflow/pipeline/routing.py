from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from salesflow.core.clock import as_utc, utcnow
from salesflow.errors import NoAvailableOwner
from salesflow.pipeline.models import SalesUser


logger = logging.getLogger("salesflow.pipeline.routing")

ROUTABLE_ROLES = ("sales",)
_NEVER_ASSIGNED = datetime.min.replace(tzinfo=timezone.utc)


def postcode_area(postcode: str | None) -> str:
    """Outward code of a UK-style postcode, upper-cased: "wa1 1aa" -> "WA1"."""
    if not postcode:
        return ""
    parts = postcode.strip().split()
    return parts[0].upper() if parts else ""


def covers_area(service_regions: Sequence[str] | None, area: str) -> bool:
    if not area:
        return False
    for region in service_regions or []:
        prefix = str(region).strip().upper()
        if prefix and (area == prefix or area.startswith(prefix)):
            return True
    return False


def select_owner(candidates: Sequence[SalesUser], area: str) -> SalesUser:
    if not candidates:
        raise NoAvailableOwner("no active sales user available")
    pool = [user for user in candidates if covers_area(user.service_regions, area)] or list(candidates)
    return min(
        pool,
        key=lambda user: (user.active_opportunities, as_utc(user.last_assigned_at) or _NEVER_ASSIGNED),
    )


class OwnerRouter:
    def assign(self, session: Session, postcode: str | None) -> SalesUser:
        """Pick the owner for a new lead and stamp last_assigned_at. Flushes, does not commit."""
        candidates = list(
            session.scalars(
                select(SalesUser)
                .where(SalesUser.active.is_(True), SalesUser.role.in_(ROUTABLE_ROLES))
                .order_by(SalesUser.created_at)
            )
        )
        area = postcode_area(postcode)
        owner = select_owner(candidates, area)
        owner.last_assigned_at = utcnow()
        session.add(owner)
        session.flush()
        logger.info(
            "pipeline.owner_assigned",
            extra={"owner_id": str(owner.id), "status": "region" if covers_area(owner.service_regions, area) else "fallback"},
        )
        return owner


owner_router = OwnerRouter()
