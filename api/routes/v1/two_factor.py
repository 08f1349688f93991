"""
api/routes/v1/two_factor.py -- TOTP enrollment and management for the current user.

Routes:
  POST /api/v1/2fa/setup          -- new secret + provisioning URI + QR data URL
  POST /api/v1/2fa/verify-setup   -- confirm a code for that secret; enables 2FA, returns backup codes
  POST /api/v1/2fa/disable        -- requires the account password
  POST /api/v1/2fa/backup-codes   -- regenerate backup codes, requires a current TOTP code

Nothing is persisted by /setup: the secret only becomes active once
/verify-setup sees a valid code for it. Backup codes are returned exactly
once; only their digests are stored.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from api.limiter import limiter
from api.models import (
    BackupCodesResponse,
    TwoFactorCode,
    TwoFactorDisable,
    TwoFactorSetupResponse,
    TwoFactorVerifySetup,
)
from audit.events import BackupCodesRegenerated, TwoFactorDisabled, TwoFactorEnabled
from auth.dependencies import audit_context, get_current_principal
from auth.models import Principal, User
from core.config import get_settings
from core.errors import SecondFactorFailed

_settings = get_settings()

router = APIRouter()


@router.post("/2fa/setup", response_model=TwoFactorSetupResponse)
@limiter.limit(_settings.login_rate_limit)
def setup(request: Request, principal: Principal = Depends(get_current_principal)) -> TwoFactorSetupResponse:
    """Generate enrollment material for the caller."""
    user = _load_user(request, principal)
    if user.two_factor_enabled:
        raise HTTPException(
            status_code=400,
            detail={"code": "already_enabled", "message": "Two-factor authentication is already enabled."},
        )
    material = request.app.state.second_factor.generate_secret(user.email)
    return TwoFactorSetupResponse(
        secret=material.secret,
        provisioning_uri=material.provisioning_uri,
        manual_entry_key=material.manual_entry_key,
        qr_code=material.qr_code_data_url,
    )


@router.post("/2fa/verify-setup", response_model=BackupCodesResponse)
@limiter.limit(_settings.login_rate_limit)
def verify_setup(
    request: Request,
    body: TwoFactorVerifySetup,
    principal: Principal = Depends(get_current_principal),
) -> BackupCodesResponse:
    """Enable 2FA once the submitted code matches the new secret."""
    user = _load_user(request, principal)
    if user.two_factor_enabled:
        raise HTTPException(
            status_code=400,
            detail={"code": "already_enabled", "message": "Two-factor authentication is already enabled."},
        )
    try:
        codes = request.app.state.second_factor.enroll(user, body.secret, body.token)
    except SecondFactorFailed as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_code", "message": "Invalid verification code."},
        ) from exc
    request.app.state.audit.record(
        principal,
        TwoFactorEnabled(user_id=user.id, email=user.email),
        context=audit_context(request),
    )
    return BackupCodesResponse(message="Two-factor authentication enabled.", backup_codes=codes)


@router.post("/2fa/disable")
@limiter.limit(_settings.login_rate_limit)
def disable(
    request: Request,
    body: TwoFactorDisable,
    principal: Principal = Depends(get_current_principal),
) -> dict:
    """Turn 2FA off after re-checking the password.

    Trusted devices only exist to skip the second factor, so they go too.
    A wrong password is the usual 401.
    """
    request.app.state.verifier.verify(principal.email, body.password)
    user = _load_user(request, principal)
    if not user.two_factor_enabled:
        raise HTTPException(
            status_code=400,
            detail={"code": "not_enabled", "message": "Two-factor authentication is not enabled."},
        )
    request.app.state.second_factor.disable(user)
    request.app.state.devices.revoke_all(user.id)
    request.app.state.audit.record(
        principal,
        TwoFactorDisabled(user_id=user.id, email=user.email),
        context=audit_context(request),
    )
    return {"message": "Two-factor authentication disabled."}


@router.post("/2fa/backup-codes", response_model=BackupCodesResponse)
@limiter.limit(_settings.login_rate_limit)
def regenerate_backup_codes(
    request: Request,
    body: TwoFactorCode,
    principal: Principal = Depends(get_current_principal),
) -> BackupCodesResponse:
    """Replace every backup code. The old set stops working immediately."""
    user = _load_user(request, principal)
    codes = request.app.state.second_factor.regenerate_backup_codes(user, body.token)
    request.app.state.audit.record(
        principal,
        BackupCodesRegenerated(user_id=user.id, email=user.email, count=len(codes)),
        context=audit_context(request),
    )
    return BackupCodesResponse(message="Backup codes regenerated.", backup_codes=codes)


def _load_user(request: Request, principal: Principal) -> User:
    user = request.app.state.user_store.get_by_id(principal.subject_id)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user
