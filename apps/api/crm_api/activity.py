from __future__ import annotations

import logging
import uuid

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crm_api.store.models import ActivityLog


logger = logging.getLogger("crm_api.activity")


def log_activity(db: Session, user_id: uuid.UUID | None, action: str) -> None:
    """Append an activity log row; failures are logged and never raised."""
    try:
        db.add(ActivityLog(user_id=user_id, action=action))
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning(
            "activity.log_failed",
            extra={"operation": action, "user_id": str(user_id) if user_id else None, "error": str(exc)},
        )
