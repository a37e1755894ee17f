from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from .settings import get_settings

_security = HTTPBasic(auto_error=False)

CALLER_HEADER = "X-Caller-Id"


# PUBLIC_INTERFACE
def get_caller_dependency():
    """
    Return a FastAPI dependency callable that resolves the caller identity
    handed to the task service.

    Behavior:
    - If settings.enable_basic_auth is False (default): the identity is the
      X-Caller-Id header, which an upstream gateway is trusted to set.
      A missing or blank header raises 401.
    - If True: validates provided credentials against BASIC_AUTH_USERNAME/BASIC_AUTH_PASSWORD
      and uses the username as the identity. If credentials are missing or
      invalid, raises 401 with WWW-Authenticate: Basic.

    Usage:
        from .auth import get_caller_dependency
        caller_dependency = get_caller_dependency()
        @router.post("/")
        def create(..., caller: str = Depends(caller_dependency)) ...
    """
    settings = get_settings()

    if not settings.enable_basic_auth:
        async def _from_header(
            x_caller_id: Optional[str] = Header(default=None, alias=CALLER_HEADER),
        ) -> str:
            """Read the caller identity from the trusted header."""
            if x_caller_id is None or not x_caller_id.strip():
                raise HTTPException(
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    detail=f"Missing {CALLER_HEADER} header",
                )
            return x_caller_id.strip()

        return _from_header

    expected_user: Optional[str] = settings.basic_auth_username
    expected_pass: Optional[str] = settings.basic_auth_password

    async def _from_basic(creds: Optional[HTTPBasicCredentials] = Depends(_security)) -> str:
        """
        Enforce HTTP Basic authentication and return the username.

        Raises:
            HTTPException(401) if credentials are missing or invalid.
        """
        if creds is None or creds.username is None or creds.password is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Not authenticated",
                headers={"WWW-Authenticate": "Basic"},
            )

        if expected_user is None or expected_pass is None:
            # Misconfiguration: auth enabled but username/password not provided
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Server authentication not configured",
                headers={"WWW-Authenticate": "Basic"},
            )

        if not (creds.username == expected_user and creds.password == expected_pass):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid authentication credentials",
                headers={"WWW-Authenticate": "Basic"},
            )
        return creds.username

    return _from_basic
