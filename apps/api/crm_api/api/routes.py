import logging

from fastapi import APIRouter, Depends, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crm_api.auth.api import router as auth_router
from crm_api.auth.resolver import require_roles
from crm_api.auth.schemas import ApplicationUser
from crm_api.core.config import get_settings
from crm_api.core.database import get_db
from crm_api.crm.api import (
    assignments_router,
    contacts_router,
    customers_router,
    deals_router,
    users_router,
)
from crm_api.errors import NotFound
from crm_api.metrics import generate_metrics_payload, metrics_content_type
from crm_api.store.models import AppUser


logger = logging.getLogger("crm_api.health")

router = APIRouter()
router.include_router(auth_router)
router.include_router(users_router)
router.include_router(customers_router)
router.include_router(contacts_router)
router.include_router(deals_router)
router.include_router(assignments_router)


@router.get("/health", tags=["system"])
def health(db: Session = Depends(get_db)) -> JSONResponse:
    try:
        db.execute(select(func.count()).select_from(AppUser)).scalar_one()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("health.database_unreachable", extra={"error": str(exc)})
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"status": "error", "error": "Database connection failed"},
        )
    return JSONResponse(content={"status": "healthy", "database": "connected"})


@router.get("/metrics", tags=["system"])
def metrics(user: ApplicationUser = Depends(require_roles("admin"))) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise NotFound("not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
