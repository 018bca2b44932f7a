from dataclasses import dataclass

from fastapi import HTTPException, status
from jose import JWTError, jwt
from starlette.requests import Request

from pipeline_crm.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    email: str | None = None


def decode_access_token(token: str) -> dict:
    settings = get_settings()
    options = {"verify_aud": settings.jwt_audience is not None}
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[settings.jwt_algorithm],
        audience=settings.jwt_audience,
        options=options,
    )


def bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""


def read_token_claims(request: Request) -> dict | None:
    """Decode the bearer token once per request; ``None`` when it is missing or invalid."""
    if hasattr(request.state, "token_claims"):
        return request.state.token_claims

    claims = None
    token = bearer_token(request)
    if token:
        try:
            claims = decode_access_token(token)
        except JWTError:
            claims = None
    request.state.token_claims = claims
    return claims


async def get_current_user(request: Request) -> AuthUser:
    if not bearer_token(request):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing bearer token")

    payload = read_token_claims(request)
    if payload is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")

    subject = payload.get("sub")
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="token has no subject")

    request.state.context.user_id = str(subject)
    email = payload.get("email")
    return AuthUser(sub=str(subject), email=str(email) if email else None)
