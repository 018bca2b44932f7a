from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from pipeline_crm.core.auth import read_token_claims


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str
    user_id: str | None


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = getattr(request.state, "correlation_id", None)
        claims = read_token_claims(request)
        subject = claims.get("sub") if claims else None
        request.state.context = RequestContext(
            request_id=correlation_id or "",
            correlation_id=correlation_id or "",
            user_id=str(subject) if subject else None,
        )
        response = await call_next(request)
        response.headers["x-request-id"] = request.state.context.request_id
        return response
