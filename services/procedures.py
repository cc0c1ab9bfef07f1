"""
Trusted Procedures
==================
Privileged multi-step database operations (the server-side equivalent of
stored procedures). Each function stages its work on the given session and
leaves the commit to the caller, so one call is one transaction.

Callers are responsible for authorization; these functions only enforce data
invariants.
"""

import os
import re
import logging
from datetime import datetime

from dotenv import load_dotenv
from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from auth import hash_password
from models import (
    ActivityLog,
    PasswordResetRequest,
    PointsLog,
    Profile,
    Task,
    User,
    UserRole,
)
from services.errors import InvalidInputError, NotFoundError
from utils import utc_now

load_dotenv()

logger = logging.getLogger(__name__)

EMPLOYEE_CODE_PREFIX = os.getenv("EMPLOYEE_CODE_PREFIX", "AV")


# ============================================================================
# EMPLOYEE CODE
# ============================================================================

def next_employee_code(db: Session, now: datetime | None = None) -> str:
    """
    Next code in the ``PREFIX-YEAR-NNN`` sequence.

    Derived from the highest existing numeric suffix for the year. Only safe
    when profile inserts are serialized, i.e. called inside the transaction
    that inserts the profile.
    """
    year = (now or utc_now()).year
    prefix = f"{EMPLOYEE_CODE_PREFIX}-{year}-"
    pattern = re.compile(rf"^{re.escape(prefix)}(\d+)$")

    codes = db.query(Profile.employee_id).filter(Profile.employee_id.like(f"{prefix}%")).all()
    highest = 0
    for (code,) in codes:
        match = pattern.match(code or "")
        if match:
            highest = max(highest, int(match.group(1)))

    return f"{prefix}{highest + 1:03d}"


# ============================================================================
# ACCOUNT PROVISIONING
# ============================================================================

def lookup_user_by_email(db: Session, email: str) -> dict:
    """Returns {"exists", "user_id", "has_profile"} for orphan detection."""
    user = db.query(User).filter(User.email == email.strip().lower()).first()
    if not user:
        return {"exists": False, "user_id": None, "has_profile": False}
    has_profile = db.query(Profile.id).filter(Profile.id == user.id).first() is not None
    return {"exists": True, "user_id": user.id, "has_profile": has_profile}


def create_identity(db: Session, email: str, password: str) -> User:
    user = User(email=email.strip().lower(), hashed_password=hash_password(password))
    db.add(user)
    db.flush()
    return user


def setup_user_profile(db: Session, user_id: int, full_name: str, role: str) -> Profile:
    """Create the profile row for an existing identity."""
    if role not in (UserRole.ADMIN, UserRole.USER):
        raise InvalidInputError("Role must be Admin or User")

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFoundError("Identity not found")

    profile = Profile(
        id=user.id,
        employee_id=next_employee_code(db),
        full_name=full_name,
        role=UserRole(role).value,
        email=user.email,
        is_temporary_password=True,
        total_tokens=0,
    )
    db.add(profile)
    db.flush()
    return profile


# ============================================================================
# ACCOUNT REMOVAL
# ============================================================================

def delete_user_cascade(db: Session, target_id: int) -> None:
    """
    Remove an identity and every row that would dangle without it.

    Order matters: activity and ledger references to the user's tasks are
    cleared before the tasks themselves go.
    """
    user = db.query(User).filter(User.id == target_id).first()
    if not user:
        raise NotFoundError("User not found")

    task_ids = [
        t.id for t in db.query(Task.id).filter(
            or_(Task.created_by == target_id, Task.assigned_to == target_id)
        ).all()
    ]

    # Activity authored by the user goes; activity merely about them is kept
    db.query(ActivityLog).filter(ActivityLog.actor_id == target_id).delete(synchronize_session=False)
    db.execute(
        update(ActivityLog).where(ActivityLog.target_user_id == target_id).values(target_user_id=None)
    )

    # Ledger rows for the user and for tasks they created or held
    ledger_filter = PointsLog.user_id == target_id
    if task_ids:
        ledger_filter = or_(ledger_filter, PointsLog.task_id.in_(task_ids))
    db.query(PointsLog).filter(ledger_filter).delete(synchronize_session=False)

    if task_ids:
        db.execute(
            update(ActivityLog).where(ActivityLog.task_id.in_(task_ids)).values(task_id=None)
        )
        db.query(Task).filter(Task.id.in_(task_ids)).delete(synchronize_session=False)

    db.execute(
        update(PasswordResetRequest)
        .where(PasswordResetRequest.resolved_by == target_id)
        .values(resolved_by=None)
    )

    # Profile and blacklisted tokens cascade with the identity
    db.delete(user)
    db.flush()
    logger.info(f"delete_user_cascade removed user={target_id} tasks={len(task_ids)}")


# ============================================================================
# PASSWORD + TOKENS
# ============================================================================

def reset_user_password(db: Session, target_id: int, new_password: str) -> Profile:
    user = db.query(User).filter(User.id == target_id).first()
    if not user or not user.profile:
        raise NotFoundError("User not found")

    user.hashed_password = hash_password(new_password)
    user.updated_at = utc_now()
    user.profile.is_temporary_password = True
    db.flush()
    return user.profile


def increment_tokens(db: Session, user_id: int, amount: int) -> int:
    """Single-statement balance increment; returns the new balance."""
    if amount <= 0:
        raise InvalidInputError("Increment amount must be positive")

    result = db.execute(
        update(Profile)
        .where(Profile.id == user_id)
        .values(total_tokens=Profile.total_tokens + amount, updated_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise NotFoundError("Profile not found")

    return db.query(Profile.total_tokens).filter(Profile.id == user_id).scalar()
