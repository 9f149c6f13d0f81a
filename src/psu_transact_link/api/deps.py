"""Dependencies for route handlers"""
from __future__ import annotations

import secrets
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .services import Services


bearer_scheme = HTTPBearer(auto_error=False)


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_current_user_id(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(bearer_scheme)],
    services: Annotated[Services, Depends(get_services)],
) -> str:
    """
    Resolve the caller's application bearer token to a user id.

    Tokens are issued by the application's own auth service; here they are looked up in `api.tokens`.
    """
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Access token required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    presented = credentials.credentials
    for token, user_id in services.cfg.api.tokens.items():
        if secrets.compare_digest(token.encode("utf-8"), presented.encode("utf-8")):
            return user_id

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or expired token",
        headers={"WWW-Authenticate": "Bearer"},
    )


CurrentUserId = Annotated[str, Depends(get_current_user_id)]
ServicesDep = Annotated[Services, Depends(get_services)]
