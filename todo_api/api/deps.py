from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, Request

from todo_api.service.errors import AuthenticationError, ForbiddenError
from todo_api.service.runtime import get_runtime
from todo_api.storage.models import User


def extract_token(
    cookie_value: Optional[str], authorization: Optional[str]
) -> Optional[str]:
    """Pick the presented token from its cookie or the Authorization header.

    The cookie wins when both are present; the header must use the
    ``Bearer`` scheme.
    """
    if cookie_value and cookie_value.strip():
        return cookie_value.strip()
    if not authorization:
        return None
    scheme, _, credentials = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()


async def get_authorized_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> User:
    runtime = get_runtime()
    token = extract_token(
        request.cookies.get(runtime.settings.access_cookie_name), authorization
    )
    return await runtime.auth.resolve_user(token)


async def get_admin_user(user: User = Depends(get_authorized_user)) -> User:
    if user.role != "admin":
        raise ForbiddenError("admin access required")
    return user


def get_refresh_token(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> str:
    settings = get_runtime().settings
    token = extract_token(request.cookies.get(settings.refresh_cookie_name), authorization)
    if not token:
        raise AuthenticationError("unauthorized")
    return token
