from __future__ import annotations

import logging

from salesflow.core.database import SessionLocal
from salesflow.logging import configure_logging
from salesflow.messaging.service import template_service

logger = logging.getLogger("salesflow.messaging.seed")


def main() -> None:
    configure_logging()
    with SessionLocal() as session:
        created = template_service.seed_defaults(session)
    logger.info("messages.seed.finished", extra={"processed": len(created)})


if __name__ == "__main__":
    main()
