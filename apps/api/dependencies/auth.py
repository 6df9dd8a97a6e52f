from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated, Any, Mapping

from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from apps.api.core.config import Settings, get_settings
from apps.api.helpdesk import HelpdeskError, HelpdeskService, User

from .errors import http_error
from .helpdesk import get_helpdesk_service

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True, slots=True)
class SessionClaims:
    """Identity asserted by the auth-session provider."""

    user_id: str
    email: str
    display_name: str | None = None


def _credentials_error() -> HTTPException:
    return HTTPException(
        status_code=401,
        detail="Invalid authentication credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_session_token(token: str, settings: Settings) -> SessionClaims:
    """Verify a session JWT and extract the user id, e-mail and display name."""

    try:
        payload: Mapping[str, Any] = jwt.decode(
            token,
            settings.session_secret,
            algorithms=[settings.session_algorithm],
            audience=settings.session_audience,
            options={"verify_aud": settings.session_audience is not None},
        )
    except JWTError as exc:
        raise _credentials_error() from exc

    user_id = payload.get("sub")
    if not user_id:
        raise _credentials_error()
    metadata = payload.get("user_metadata") or {}
    display_name = metadata.get("full_name") if isinstance(metadata, Mapping) else None
    return SessionClaims(user_id=str(user_id), email=str(payload.get("email") or ""), display_name=display_name)


async def resolve_session_user(token: str | None, service: HelpdeskService, settings: Settings) -> User:
    if not token:
        raise _credentials_error()
    claims = decode_session_token(token, settings)
    try:
        return await service.resolve_identity(claims.user_id, claims.email, claims.display_name)
    except HelpdeskError as exc:
        raise http_error(exc) from exc


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)],
    request: Request,
    service: Annotated[HelpdeskService, Depends(get_helpdesk_service)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> User:
    """Resolve the bearer token into a profile, creating it on first contact."""

    cached = getattr(request.state, "user", None)
    if isinstance(cached, User):
        return cached

    token = credentials.credentials if credentials is not None else None
    user = await resolve_session_user(token, service, settings)
    request.state.user = user
    return user


async def admin_required(user: Annotated[User, Depends(get_current_user)]) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    return user


CurrentUser = Annotated[User, Depends(get_current_user)]
AdminUser = Annotated[User, Depends(admin_required)]
