"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/login                  -- password login; tokens or a second-factor challenge
  POST /api/v1/auth/two-factor             -- complete a TOTP or EMAIL second factor
  POST /api/v1/auth/passwordless           -- send a login code to a username/email
  POST /api/v1/auth/passwordless/complete  -- exchange the code for tokens or a second-factor challenge
  POST /api/v1/auth/refresh                -- rotate a refresh token (single use)
  POST /api/v1/auth/logout                 -- revoke one of the caller's refresh tokens (requires auth)
  GET  /api/v1/auth/me                     -- current identity (requires auth)

Security:
  [C1] Login goes through AuthService.login(), which spends the same bcrypt
       work on unknown users, inactive users and wrong passwords.
  [M5] Cache-Control: no-store on every response that carries a token or code ticket.
  Unknown username and wrong password render as the same bad_credentials
  error (see the AuthError handler in api/main.py).
"""

from __future__ import annotations

from typing import Union

from fastapi import APIRouter, Depends, HTTPException, Response

from api.models import (
    ChannelEnum,
    LoginRequest,
    MeResponse,
    MessageResponse,
    PasswordlessCompleteRequest,
    PasswordlessRequest,
    PasswordlessStartedResponse,
    RefreshRequest,
    SecondFactorEnum,
    TokenResponse,
    TwoFactorChallengeResponse,
    TwoFactorRequest,
)
from auth.dependencies import client_meta, get_auth_service, get_current_user
from auth.models import ChallengeIssued, Channel, ClientMeta, LoginResult, TokenPair, TotpPending, TwoFactorMethod, User
from auth.service import AuthService

# Auth policy:
# - POST /api/v1/auth/login, /two-factor, /passwordless, /passwordless/complete,
#   /refresh: public -- these are how a client obtains credentials
# - POST /api/v1/auth/logout:  requires auth (get_current_user)
# - GET  /api/v1/auth/me:      requires auth (get_current_user)
router = APIRouter()


def _no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store"  # [M5]


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=Union[TokenResponse, TwoFactorChallengeResponse])
def login(
    body: LoginRequest,
    response: Response,
    client: ClientMeta = Depends(client_meta),
    service: AuthService = Depends(get_auth_service),
) -> Union[TokenResponse, TwoFactorChallengeResponse]:
    """Authenticate with username and password.

    Returns tokens when the identity has no second factor. Otherwise returns
    two_factor_required with a ticket to echo back to /auth/two-factor.
    """
    result = service.login(body.username, body.password, client)
    _no_store(response)
    return _login_result_to_response(result)


@router.post("/auth/two-factor", response_model=TokenResponse)
def complete_two_factor(
    body: TwoFactorRequest,
    response: Response,
    client: ClientMeta = Depends(client_meta),
    service: AuthService = Depends(get_auth_service),
) -> TokenResponse:
    tokens = service.complete_second_factor(TwoFactorMethod(body.method.value), body.code, body.ticket, client)
    _no_store(response)
    return _tokens_to_response(tokens)


@router.post("/auth/passwordless", response_model=PasswordlessStartedResponse, status_code=202)
def start_passwordless(
    body: PasswordlessRequest,
    response: Response,
    client: ClientMeta = Depends(client_meta),
    service: AuthService = Depends(get_auth_service),
) -> PasswordlessStartedResponse:
    """Send a one-time login code. The code expires quickly; the request_id is the ticket."""
    issued = service.start_passwordless_login(body.login, Channel(body.channel.value), client)
    _no_store(response)
    return PasswordlessStartedResponse(request_id=issued.request_id, channel=ChannelEnum(issued.channel.value))


@router.post("/auth/passwordless/complete", response_model=Union[TokenResponse, TwoFactorChallengeResponse])
def complete_passwordless(
    body: PasswordlessCompleteRequest,
    response: Response,
    service: AuthService = Depends(get_auth_service),
) -> Union[TokenResponse, TwoFactorChallengeResponse]:
    """Exchange a login code. An identity with a second factor gets the same challenge as /auth/login."""
    result = service.complete_passwordless_login(body.code, body.request_id)
    _no_store(response)
    return _login_result_to_response(result)


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(
    body: RefreshRequest,
    response: Response,
    client: ClientMeta = Depends(client_meta),
    service: AuthService = Depends(get_auth_service),
) -> TokenResponse:
    """Rotate a refresh token. The presented token stops working once this succeeds."""
    tokens = service.refresh(body.refresh_token, client)
    _no_store(response)
    return _tokens_to_response(tokens)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    body: RefreshRequest,
    current_user: User = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Revoke a refresh token. Ownership is verified server-side [IDOR guard].

    The store's DELETE requires both the token hash and current_user.id to
    match, so a caller cannot revoke another identity's session.
    """
    if not service.logout(current_user.id, body.refresh_token):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Refresh token not found."},
        )
    return MessageResponse(message="Logged out.")


@router.get("/auth/me", response_model=MeResponse)
def me(current_user: User = Depends(get_current_user)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    return user_to_me_response(current_user)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def user_to_me_response(user: User) -> MeResponse:
    return MeResponse(
        user_id=user.id,
        username=user.username,
        email=user.email,
        roles=list(user.roles),
        two_factor_enabled=user.two_factor_enabled,
        two_factor_method=user.two_factor_method.value,
        metadata=dict(user.metadata),
    )


def _tokens_to_response(tokens: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,  # noqa: S106 # nosec B106 -- OAuth token type, not a password
        expires_in=tokens.expires_in,
        roles=list(tokens.roles),
    )


def _login_result_to_response(result: LoginResult) -> Union[TokenResponse, TwoFactorChallengeResponse]:
    if isinstance(result, TokenPair):
        return _tokens_to_response(result)
    if isinstance(result, TotpPending):
        return TwoFactorChallengeResponse(
            method=SecondFactorEnum.TOTP,
            ticket=result.pending_token,
            expires_in=result.expires_in,
        )
    if isinstance(result, ChallengeIssued):
        return TwoFactorChallengeResponse(
            method=SecondFactorEnum(result.channel.value),
            ticket=result.request_id,
            channel=ChannelEnum(result.channel.value),
        )
    raise TypeError(f"unexpected login result {type(result).__name__}")
