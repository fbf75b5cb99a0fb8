from fastapi import Depends
from sqlalchemy.orm import Session

from crm_api.core.config import get_settings
from crm_api.core.database import get_db
from crm_api.identity.client import AuthSession, Identity, IdentityClient, IdentityServiceError
from crm_api.identity.local import LocalIdentityClient
from crm_api.identity.platform import PlatformIdentityClient


def get_identity_client(db: Session = Depends(get_db)) -> IdentityClient:
    settings = get_settings()
    if settings.resolved_identity_backend() == "platform":
        return PlatformIdentityClient(settings)
    return LocalIdentityClient(db, settings)


__all__ = [
    "AuthSession",
    "Identity",
    "IdentityClient",
    "IdentityServiceError",
    "LocalIdentityClient",
    "PlatformIdentityClient",
    "get_identity_client",
]
