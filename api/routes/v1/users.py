"""
api/routes/v1/users.py -- Second-factor settings for the authenticated identity.

Routes:
  POST /api/v1/users/me/two-factor/totp  -- enroll a new TOTP secret (shown once)
  PUT  /api/v1/users/me/two-factor       -- switch to EMAIL codes or turn the second factor off
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response

from api.models import MeResponse, SecondFactorUpdate, TotpEnrollmentResponse, TwoFactorSettingEnum
from api.routes.v1.auth import user_to_me_response
from auth.dependencies import get_auth_service, get_current_user
from auth.models import Channel, User
from auth.service import AuthService

router = APIRouter()


@router.post("/users/me/two-factor/totp", response_model=TotpEnrollmentResponse, status_code=201)
def enroll_totp(
    response: Response,
    current_user: User = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> TotpEnrollmentResponse:
    """Generate and store a new TOTP secret. Replaces any previous second factor."""
    enrollment = service.enroll_totp(current_user.id)
    response.headers["Cache-Control"] = "no-store"
    return TotpEnrollmentResponse(secret=enrollment.secret, provisioning_uri=enrollment.provisioning_uri)


@router.put("/users/me/two-factor", response_model=MeResponse)
def update_two_factor(
    body: SecondFactorUpdate,
    current_user: User = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> MeResponse:
    if body.method is TwoFactorSettingEnum.NONE:
        service.disable_second_factor(current_user.id)
    else:
        service.set_out_of_band(current_user.id, Channel(body.method.value))
    return user_to_me_response(service.store.get_by_id(current_user.id))
