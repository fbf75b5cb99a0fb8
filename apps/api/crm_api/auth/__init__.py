from crm_api.auth.resolver import SessionResolver, extract_bearer_token, get_current_user, require_roles
from crm_api.auth.schemas import ApplicationUser

__all__ = [
    "ApplicationUser",
    "SessionResolver",
    "extract_bearer_token",
    "get_current_user",
    "require_roles",
]
