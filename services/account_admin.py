"""
Account Administration
======================
Privileged account operations orchestrated over the trusted procedures in
``services.procedures``:

- create users (with orphan identity recovery)
- delete users (full dependent-row cleanup)
- Director password resets and the reset-request queue
- direct token gifts
- self-service password change / profile edits and the leaderboard

Role rules are enforced here even though routes mirror them.
"""

import logging
import re
from typing import Optional

from sqlalchemy.orm import Session

from auth import hash_password, verify_password
from models import (
    ActivityType,
    PasswordResetRequest,
    Profile,
    ResetRequestStatus,
    User,
    UserRole,
)
from services import procedures
from services.activity_service import log_activity, render_message
from services.errors import (
    InvalidInputError,
    NotFoundError,
    NotPermittedError,
    orchestrated,
)
from services.points_ledger import PointsLedger
from services.realtime import ACTIVITY, PROFILES, TASKS, ChangeNotifier, change_notifier
from utils import utc_now

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6
MAX_GIFT_TOKENS = 10000
LEADERBOARD_LIMIT = 50

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PROFILE_EDITABLE_FIELDS = {
    "full_name", "phone", "date_of_birth", "linkedin_url", "github_url", "resume_url",
}


def normalize_email(email: Optional[str]) -> str:
    cleaned = (email or "").strip().lower()
    if not EMAIL_PATTERN.match(cleaned):
        raise InvalidInputError("Please enter a valid email address")
    return cleaned


def _validate_password(password: Optional[str]):
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise InvalidInputError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")


class AccountAdministration:
    def __init__(self, db: Session, notifier: ChangeNotifier = change_notifier):
        self.db = db
        self.notifier = notifier
        self.ledger = PointsLedger(db, notifier)

    def _get_profile(self, profile_id: int) -> Profile:
        profile = self.db.query(Profile).filter(Profile.id == profile_id).first()
        if not profile:
            raise NotFoundError("User not found")
        return profile

    # ========================================================================
    # CREATE
    # ========================================================================

    @orchestrated("create_user")
    def create_user(
        self,
        actor: Profile,
        email: str,
        temp_password: str,
        full_name: str,
        role: str,
    ) -> dict:
        """
        Create an identity plus its profile in one transaction.

        If the identity already exists without a profile (a half-finished
        earlier attempt) the profile is completed instead of failing.
        """
        if not actor.is_staff:
            raise NotPermittedError("Only Admins and Directors can add users")
        if role == UserRole.DIRECTOR:
            raise NotPermittedError("Directors cannot be created through this path")
        if role not in (UserRole.ADMIN, UserRole.USER):
            raise InvalidInputError("Role must be Admin or User")
        if actor.role == UserRole.ADMIN and role != UserRole.USER:
            raise NotPermittedError("Admins can only add Users")

        email = normalize_email(email)
        name = (full_name or "").strip()
        if not name:
            raise InvalidInputError("Full name is required")
        _validate_password(temp_password)

        existing = procedures.lookup_user_by_email(self.db, email)
        if existing["exists"] and existing["has_profile"]:
            raise InvalidInputError("A user with this email already exists.")

        if existing["exists"]:
            logger.warning(f"Recovering orphan identity {existing['user_id']} for {email}")
            user_id = existing["user_id"]
        else:
            user_id = procedures.create_identity(self.db, email, temp_password).id

        profile = procedures.setup_user_profile(self.db, user_id, name, role)
        employee_id = profile.employee_id
        self.db.commit()
        self.notifier.publish(PROFILES)
        logger.info(f"✅ User created: {email} ({role}) employee_id={employee_id}")

        log_activity(
            self.db,
            actor_id=actor.id,
            action=ActivityType.USER_ADDED,
            message=render_message(ActivityType.USER_ADDED, actor.full_name, name, detail=role),
            target_user_id=user_id,
            notifier=self.notifier,
        )
        return {"user_id": user_id, "employee_id": employee_id}

    # ========================================================================
    # DELETE
    # ========================================================================

    @orchestrated("delete_user")
    def delete_user(self, actor: Profile, target_id: int) -> int:
        if not actor.is_staff:
            raise NotPermittedError("Only Admins and Directors can delete users")
        if target_id == actor.id:
            raise NotPermittedError("You cannot delete your own account")

        target = self._get_profile(target_id)
        if target.role == UserRole.DIRECTOR:
            raise NotPermittedError("Directors cannot be deleted")
        if actor.role == UserRole.ADMIN and target.role != UserRole.USER:
            raise NotPermittedError("Admins can only delete Users")

        logger.info(f"Deleting user {target_id} ({target.full_name}) by {actor.id}")
        procedures.delete_user_cascade(self.db, target_id)
        self.db.commit()

        for table in (PROFILES, TASKS, ACTIVITY):
            self.notifier.publish(table)
        return target_id

    # ========================================================================
    # PASSWORD RESET (Director)
    # ========================================================================

    @orchestrated("reset_password")
    def reset_password(
        self,
        actor: Profile,
        target_id: int,
        new_password: str,
        request_id: Optional[int] = None,
    ) -> Profile:
        """Set a new temporary password and close the originating request."""
        if not actor.is_director:
            raise NotPermittedError("Only Directors can reset passwords")
        _validate_password(new_password)

        target = self._get_profile(target_id)
        request = None
        if request_id is not None:
            request = self.db.query(PasswordResetRequest).filter(PasswordResetRequest.id == request_id).first()
            if not request:
                raise NotFoundError("Password reset request not found")
            if request.status != ResetRequestStatus.PENDING:
                raise InvalidInputError("This request has already been resolved")

        procedures.reset_user_password(self.db, target.id, new_password)
        if request is not None:
            request.status = ResetRequestStatus.APPROVED.value
            request.resolved_by = actor.id
            request.resolved_at = utc_now()
        self.db.commit()
        self.notifier.publish(PROFILES)

        log_activity(
            self.db,
            actor_id=actor.id,
            action=ActivityType.PASSWORD_RESET_REQUEST,
            message=render_message(ActivityType.PASSWORD_RESET_REQUEST, actor.full_name, target.full_name),
            target_user_id=target.id,
            notifier=self.notifier,
        )
        return target

    def submit_password_reset_request(self, email: str) -> PasswordResetRequest:
        """Unauthenticated. Does not reveal whether the email is registered."""
        email = normalize_email(email)
        pending = (
            self.db.query(PasswordResetRequest)
            .filter(
                PasswordResetRequest.email == email,
                PasswordResetRequest.status == ResetRequestStatus.PENDING.value,
            )
            .first()
        )
        if pending:
            return pending

        request = PasswordResetRequest(email=email, status=ResetRequestStatus.PENDING.value)
        self.db.add(request)
        self.db.commit()
        self.db.refresh(request)
        logger.info(f"Password reset requested for {email} (request {request.id})")
        return request

    @orchestrated("list_pending_reset_requests")
    def list_pending_reset_requests(self, actor: Profile) -> list:
        if not actor.is_director:
            raise NotPermittedError("Only Directors can view password reset requests")
        return (
            self.db.query(PasswordResetRequest)
            .filter(PasswordResetRequest.status == ResetRequestStatus.PENDING.value)
            .order_by(PasswordResetRequest.created_at.desc())
            .all()
        )

    @orchestrated("dismiss_reset_request")
    def dismiss_reset_request(self, actor: Profile, request_id: int) -> PasswordResetRequest:
        if not actor.is_director:
            raise NotPermittedError("Only Directors can dismiss password reset requests")

        request = self.db.query(PasswordResetRequest).filter(PasswordResetRequest.id == request_id).first()
        if not request:
            raise NotFoundError("Password reset request not found")
        if request.status != ResetRequestStatus.PENDING:
            raise InvalidInputError("This request has already been resolved")

        request.status = ResetRequestStatus.DISMISSED.value
        request.resolved_by = actor.id
        request.resolved_at = utc_now()
        self.db.commit()
        self.db.refresh(request)
        return request

    # ========================================================================
    # TOKENS
    # ========================================================================

    @orchestrated("give_tokens")
    def give_tokens(self, actor: Profile, target_id: int, amount: int, reason: Optional[str] = None) -> int:
        """
        Gift tokens directly. Gifts are not task awards, so no ledger row is
        written; the activity entry is the only record.
        """
        if not actor.is_staff:
            raise NotPermittedError("Only Admins and Directors can give tokens")
        if isinstance(amount, bool) or not isinstance(amount, int) or not 1 <= amount <= MAX_GIFT_TOKENS:
            raise InvalidInputError(f"Amount must be between 1 and {MAX_GIFT_TOKENS}")

        target = self._get_profile(target_id)
        if target.role == UserRole.DIRECTOR:
            raise NotPermittedError("Directors do not receive tokens")
        if actor.role == UserRole.ADMIN and target.role != UserRole.USER:
            raise NotPermittedError("Admins can only give tokens to Users")

        target_name = target.full_name
        new_total = self.ledger.increment_balance(target.id, amount)

        message = render_message(ActivityType.TOKENS_GIVEN, actor.full_name, target_name, detail=f"{amount} tokens")
        reason = (reason or "").strip()
        if reason:
            message = f"{message}: {reason}"
        log_activity(
            self.db,
            actor_id=actor.id,
            action=ActivityType.TOKENS_GIVEN,
            message=message,
            target_user_id=target_id,
            notifier=self.notifier,
        )
        return new_total

    @orchestrated("leaderboard")
    def leaderboard(self, limit: int = LEADERBOARD_LIMIT) -> list:
        return (
            self.db.query(Profile)
            .filter(Profile.role == UserRole.USER.value, Profile.total_tokens > 0)
            .order_by(Profile.total_tokens.desc(), Profile.employee_id.asc())
            .limit(limit)
            .all()
        )

    # ========================================================================
    # SELF SERVICE
    # ========================================================================

    @orchestrated("change_own_password")
    def change_own_password(self, user: User, current_password: str, new_password: str) -> User:
        if not verify_password(current_password or "", user.hashed_password):
            raise InvalidInputError("Current password is incorrect")
        _validate_password(new_password)

        user.hashed_password = hash_password(new_password)
        user.updated_at = utc_now()
        if user.profile is not None:
            user.profile.is_temporary_password = False
        self.db.commit()
        logger.info(f"Password changed for user {user.id}")
        return user

    @orchestrated("update_own_profile")
    def update_own_profile(self, profile: Profile, changes: dict) -> Profile:
        unknown = set(changes) - PROFILE_EDITABLE_FIELDS
        if unknown:
            raise NotPermittedError(f"Cannot edit fields: {', '.join(sorted(unknown))}")
        if not changes:
            raise InvalidInputError("Nothing to update")
        if "full_name" in changes:
            name = (changes["full_name"] or "").strip()
            if not name:
                raise InvalidInputError("Full name is required")
            changes = {**changes, "full_name": name}

        for key, value in changes.items():
            setattr(profile, key, value)
        profile.updated_at = utc_now()
        self.db.commit()
        self.db.refresh(profile)
        self.notifier.publish(PROFILES)
        return profile
