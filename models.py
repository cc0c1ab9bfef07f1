import enum

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Index,
    String,
    Text,
    CheckConstraint,
)
from sqlalchemy.orm import relationship, DeclarativeBase
from datetime import datetime, timezone

# TIMEZONE NOTES:
# =================================
# - ALL DateTime fields in database store UTC time as naive datetime
# - Incoming timestamps are normalised with utils.ensure_utc_naive before writes


def _utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


# ============================================================================
# ENUMERATIONS
# ============================================================================

class UserRole(str, enum.Enum):
    DIRECTOR = "Director"
    ADMIN = "Admin"
    USER = "User"


class TaskStatus(str, enum.Enum):
    PENDING = "Pending"
    UNDER_REVIEW = "Under Review"
    COMPLETED = "Completed"
    REJECTED = "Rejected"


class ActivityType(str, enum.Enum):
    USER_ADDED = "user_added"
    TASK_CREATED = "task_created"
    TASK_ASSIGNED = "task_assigned"
    TASK_COMPLETED = "task_completed"
    TASK_MARKED_DONE = "task_marked_done"
    TASK_APPROVED = "task_approved"
    TASK_REJECTED = "task_rejected"
    TASK_REASSIGNED = "task_reassigned"
    DIRECTOR_APPROVED_TASK = "director_approved_task"
    CUSTOM_MESSAGE = "custom_message"
    TASK_DELETED = "task_deleted"
    DEADLINE_EXTENDED = "deadline_extended"
    PASSWORD_RESET_REQUEST = "password_reset_request"
    TOKENS_GIVEN = "tokens_given"


class ResetRequestStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DISMISSED = "dismissed"


STAFF_ROLES = (UserRole.DIRECTOR.value, UserRole.ADMIN.value)


# ============================================================================
# IDENTITY (authenticatable account)
# ============================================================================

class User(Base):
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    # Relationships
    profile = relationship(
        "Profile", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
    blacklisted_tokens = relationship(
        "TokenBlacklist", back_populates="user", cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<User {self.email}>"


# ============================================================================
# TOKEN BLACKLIST MODEL
# ============================================================================

class TokenBlacklist(Base):
    __tablename__ = 'token_blacklist'

    id = Column(Integer, primary_key=True, index=True)
    jti = Column(String(50), unique=True, nullable=False, index=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    email = Column(String(255), nullable=False)
    blacklisted_at = Column(DateTime, default=_utcnow)
    token_exp = Column(DateTime, nullable=False)
    reason = Column(String(50), default="user_logout")

    user = relationship("User", back_populates="blacklisted_tokens")

    __table_args__ = (
        Index('idx_blacklist_user_id', 'user_id'),
        Index('idx_blacklist_exp', 'token_exp'),
    )


# ============================================================================
# PROFILE MODEL
# ============================================================================

class Profile(Base):
    __tablename__ = 'profiles'

    id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), primary_key=True)
    employee_id = Column(String(20), unique=True, nullable=True, index=True)
    full_name = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default=UserRole.USER.value)
    total_tokens = Column(Integer, nullable=False, default=0)
    is_temporary_password = Column(Boolean, nullable=False, default=True)

    # Personal info
    email = Column(String(255), nullable=True)
    phone = Column(String(30), nullable=True)
    date_of_birth = Column(Date, nullable=True)
    linkedin_url = Column(String(500), nullable=True)
    github_url = Column(String(500), nullable=True)
    resume_url = Column(String(500), nullable=True)

    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    user = relationship("User", back_populates="profile")

    __table_args__ = (
        CheckConstraint("role IN ('Director', 'Admin', 'User')", name='ck_profiles_role'),
        CheckConstraint('total_tokens >= 0', name='ck_profiles_total_tokens'),
        Index('idx_profiles_role', 'role'),
        Index('idx_profiles_total_tokens', 'total_tokens'),
    )

    @property
    def is_director(self) -> bool:
        return self.role == UserRole.DIRECTOR

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    def __repr__(self):
        return f"<Profile {self.full_name} ({self.role}, employee_id={self.employee_id})>"


# ============================================================================
# TASK MODEL
# ============================================================================

class Task(Base):
    __tablename__ = 'tasks'

    id = Column(Integer, primary_key=True, index=True)
    created_by = Column(Integer, ForeignKey('profiles.id'), nullable=False)
    assigned_to = Column(Integer, ForeignKey('profiles.id'), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    deadline = Column(DateTime, nullable=False)
    tokens = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default=TaskStatus.PENDING.value)
    director_approved = Column(Boolean, nullable=False, default=False)

    submitted_at = Column(DateTime, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    submission_note = Column(Text, nullable=True)
    admin_feedback = Column(Text, nullable=True)
    # Set on the first deadline extension only
    original_deadline = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    creator = relationship("Profile", foreign_keys=[created_by])
    assignee = relationship("Profile", foreign_keys=[assigned_to])

    __table_args__ = (
        CheckConstraint('tokens >= 0', name='ck_tasks_tokens'),
        CheckConstraint(
            "status IN ('Pending', 'Under Review', 'Completed', 'Rejected')",
            name='ck_tasks_status',
        ),
        Index('idx_tasks_assigned_to', 'assigned_to'),
        Index('idx_tasks_created_by', 'created_by'),
        Index('idx_tasks_status', 'status'),
    )

    def __repr__(self):
        return f"<Task {self.id} '{self.title}' ({self.status})>"


# ============================================================================
# POINTS LOG (append-only award ledger)
# ============================================================================

class PointsLog(Base):
    __tablename__ = 'points_log'

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey('profiles.id'), nullable=False)
    # Nullified when the task is deleted; the award itself stays on record
    task_id = Column(Integer, ForeignKey('tasks.id'), nullable=True)
    tokens_awarded = Column(Integer, nullable=False)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        Index('idx_points_log_user_id', 'user_id'),
        Index('idx_points_log_task_id', 'task_id'),
    )


# ============================================================================
# ACTIVITY LOG (audit + notification feed)
# ============================================================================

class ActivityLog(Base):
    __tablename__ = 'activity_log'

    id = Column(Integer, primary_key=True, index=True)
    actor_id = Column(Integer, ForeignKey('profiles.id'), nullable=False)
    action_type = Column(String(40), nullable=False)
    target_user_id = Column(Integer, ForeignKey('profiles.id'), nullable=True)
    task_id = Column(Integer, ForeignKey('tasks.id'), nullable=True)
    message = Column(Text, nullable=False, default="")
    created_at = Column(DateTime, nullable=False, default=_utcnow)

    actor = relationship("Profile", foreign_keys=[actor_id])
    target_user = relationship("Profile", foreign_keys=[target_user_id])

    __table_args__ = (
        Index('idx_activity_created_at', 'created_at'),
        Index('idx_activity_task_id', 'task_id'),
    )


# ============================================================================
# PASSWORD RESET REQUESTS
# ============================================================================

class PasswordResetRequest(Base):
    __tablename__ = 'password_reset_requests'

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=ResetRequestStatus.PENDING.value)
    resolved_by = Column(Integer, ForeignKey('profiles.id'), nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    resolved_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'dismissed')",
            name='ck_password_reset_status',
        ),
    )
