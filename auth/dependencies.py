"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Only Authorization: Bearer <access token> is accepted. Pending tokens handed to
TOTP users between the password step and the code step are rejected here, so
they can never reach an authenticated route.

get_auth_service() returns the AuthService built by the lifespan.
client_meta() captures origin address and user agent for token binding.
get_current_user() resolves the bearer token to a live, active identity.

Layer rule: auth/dependencies.py may import from fastapi (for Depends/Request)
because this module is part of the FastAPI dependency injection system.
Nothing else under auth/ does.
"""

from __future__ import annotations

from fastapi import Depends, Request

from auth.errors import InvalidTokenError
from auth.models import ClientMeta, User
from auth.service import AuthService


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def client_meta(request: Request) -> ClientMeta:
    """Origin address and agent string of the caller; empty strings when unknown."""
    return ClientMeta(
        ip_address=request.client.host if request.client else "",
        user_agent=request.headers.get("User-Agent", "")[:512],
    )


def bearer_token(request: Request) -> str:
    """Extract the raw token from Authorization: Bearer. Raises InvalidTokenError if absent."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise InvalidTokenError("Authentication required.")
    return token.strip()


def get_current_user(
    token: str = Depends(bearer_token),
    service: AuthService = Depends(get_auth_service),
) -> User:
    """Require a valid access token for an active identity.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...

    Raises InvalidTokenError or AccountNotActiveError; the app's AuthError
    handler renders both as 401.
    """
    return service.authenticate_access_token(token)
