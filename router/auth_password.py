"""
Password Management Router
==========================
Handles password changes and the Director-resolved password reset queue.

Features:
- Change password for logged-in users (clears the temporary-password flag)
- Unauthenticated "forgot password" request, queued for a Director
- Director resolves a request by setting a new temporary password, or dismisses it
- Security: email enumeration protection on the public endpoint
"""

from fastapi import APIRouter, Depends, HTTPException, status, Path
from sqlalchemy.orm import Session

from db import get_db
from dependencies import get_current_user, get_current_profile, allow_director, unwrap
from models import Profile, User
from services.account_admin import AccountAdministration
from services.errors import InvalidInputError
from schemas import (
    ChangePasswordRequest,
    PasswordChangeResponse,
    PasswordResetRequestCreate,
    PasswordResetRequestOut,
    ResetRequestSubmitted,
    ResetRequestList,
    ResolveResetRequest,
    ProfileOut,
    ErrorResponse,
)

import logging

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/auth",
    tags=["Authentication & Password"]
)


# ============================================================================
# CHANGE PASSWORD (Logged-in user)
# ============================================================================

@router.post(
    "/change-password",
    response_model=PasswordChangeResponse,
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
    summary="Change password for logged-in user",
)
def change_password(
    data: ChangePasswordRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """
    Change password for currently logged-in user.

    **Requirements:**
    - Must be authenticated (valid JWT token)
    - Must provide correct current password
    - New password must match confirmation
    """
    if data.new_password != data.confirm_password:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "New password and confirmation do not match",
                "error_code": "PASSWORD_MISMATCH"
            }
        )

    user = unwrap(AccountAdministration(db).change_own_password(
        current_user, data.current_password, data.new_password
    ))

    return PasswordChangeResponse(
        success=True,
        message="Password changed successfully",
        changed_at=user.updated_at
    )


# ============================================================================
# RESET REQUESTS (public submit, Director resolve)
# ============================================================================

@router.post(
    "/password-reset-requests",
    response_model=ResetRequestSubmitted,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Ask a Director to reset your password",
)
def submit_reset_request(
    data: PasswordResetRequestCreate,
    db: Session = Depends(get_db)
):
    """
    Queue a password reset request.

    **Security:**
    - Does NOT reveal if the email is registered (anti-enumeration)
    - Repeated submissions for the same email reuse the pending request
    """
    try:
        AccountAdministration(db).submit_password_reset_request(data.email)
    except InvalidInputError as e:
        raise HTTPException(
            status_code=400,
            detail={"error": e.message, "error_code": "VALIDATION_ERROR"}
        )

    return ResetRequestSubmitted(
        success=True,
        message="If this email is registered, a Director will reset your password"
    )


@router.get(
    "/password-reset-requests",
    response_model=ResetRequestList,
    dependencies=[Depends(allow_director)],
)
def list_reset_requests(
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile)
):
    requests = unwrap(AccountAdministration(db).list_pending_reset_requests(profile))
    return ResetRequestList(
        requests=[PasswordResetRequestOut.model_validate(r) for r in requests],
        total=len(requests)
    )


@router.post(
    "/password-reset-requests/{request_id}/resolve",
    response_model=ProfileOut,
    dependencies=[Depends(allow_director)],
)
def resolve_reset_request(
    data: ResolveResetRequest,
    request_id: int = Path(...),
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile)
):
    """Set a new temporary password for the user and close the request."""
    result = AccountAdministration(db).reset_password(
        profile,
        target_id=data.user_id,
        new_password=data.new_password,
        request_id=request_id,
    )
    return unwrap(result)


@router.post(
    "/password-reset-requests/{request_id}/dismiss",
    response_model=PasswordResetRequestOut,
    dependencies=[Depends(allow_director)],
)
def dismiss_reset_request(
    request_id: int = Path(...),
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile)
):
    return unwrap(AccountAdministration(db).dismiss_reset_request(profile, request_id))
