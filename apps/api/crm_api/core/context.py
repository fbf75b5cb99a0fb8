from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from crm_api.core.config import get_settings


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str
    client_ip: str
    user_id: str | None = None


def resolve_client_ip(request: Request) -> str:
    # X-Forwarded-For is client-controlled unless a trusted proxy sets it.
    if get_settings().trust_forwarded_for:
        forwarded_for = request.headers.get("x-forwarded-for", "")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
    if request.client is not None:
        return request.client.host
    return "unknown"


def get_request_context(request: Request) -> RequestContext | None:
    return getattr(request.state, "context", None)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attaches per-request identity; ``user_id`` is filled in once the bearer token resolves."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = getattr(request.state, "correlation_id", None) or ""
        request.state.context = RequestContext(
            request_id=correlation_id,
            correlation_id=correlation_id,
            client_ip=resolve_client_ip(request),
        )
        response = await call_next(request)
        response.headers["x-request-id"] = request.state.context.request_id
        return response
