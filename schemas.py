from pydantic import BaseModel, field_serializer, Field, validator, EmailStr
from typing import Optional, List
from datetime import datetime, date
from utils import isoformat_utc


# ============================================================================
# AUTH
# ============================================================================

class TokenExtended(BaseModel):
    """Token response with the flags the dashboard needs right after sign-in"""
    access_token: str
    token_type: str
    expires_in: int  # Seconds until expiry
    email: str
    role: str
    is_temporary_password: bool


class LogoutResponse(BaseModel):
    """Response after successful logout"""
    message: str
    success: bool
    email: str


class ErrorResponse(BaseModel):
    """
    Schema for error responses.

    Example:
        {
            "error": "Only tasks under review can be approved",
            "error_code": "NOT_PERMITTED"
        }
    """
    error: str
    error_code: str


# ============================================================================
# PROFILES
# ============================================================================

class ProfileOut(BaseModel):
    id: int
    employee_id: Optional[str] = None
    full_name: str
    role: str
    total_tokens: int
    is_temporary_password: bool
    email: Optional[str] = None
    phone: Optional[str] = None
    date_of_birth: Optional[date] = None
    linkedin_url: Optional[str] = None
    github_url: Optional[str] = None
    resume_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @field_serializer("created_at", "updated_at")
    def serialize_dates(self, value):
        return isoformat_utc(value)

    class Config:
        from_attributes = True


class LeaderboardEntry(BaseModel):
    id: int
    employee_id: Optional[str] = None
    full_name: str
    total_tokens: int

    class Config:
        from_attributes = True


class ProfileUpdate(BaseModel):
    """Self-service profile edits. Role and token balance are never editable here."""
    full_name: Optional[str] = None
    phone: Optional[str] = Field(None, max_length=30)
    date_of_birth: Optional[date] = None
    linkedin_url: Optional[str] = None
    github_url: Optional[str] = None
    resume_url: Optional[str] = None

    @validator('linkedin_url', 'github_url', 'resume_url')
    def validate_url(cls, v):
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return v


class UserCreate(BaseModel):
    email: EmailStr
    temp_password: str
    full_name: str
    role: str = "User"

    class Config:
        json_schema_extra = {
            "example": {
                "email": "jane@company.com",
                "temp_password": "Welcome123",
                "full_name": "Jane Doe",
                "role": "User"
            }
        }


class UserCreatedOut(BaseModel):
    user_id: int
    employee_id: str


class GiveTokensRequest(BaseModel):
    amount: int
    reason: Optional[str] = None


class TokenBalanceOut(BaseModel):
    user_id: int
    total_tokens: int


class PointsLogOut(BaseModel):
    id: int
    user_id: int
    task_id: Optional[int] = None
    tokens_awarded: int
    reason: Optional[str] = None
    created_at: datetime

    @field_serializer("created_at")
    def serialize_created_at(self, value):
        return isoformat_utc(value)

    class Config:
        from_attributes = True


# ============================================================================
# TASKS
# ============================================================================

class TaskCreate(BaseModel):
    title: str
    description: Optional[str] = None
    assigned_to: int
    deadline: datetime
    tokens: int = 0


class TaskUpdate(BaseModel):
    """Partial edit; only fields present in the request body are applied"""
    title: Optional[str] = None
    description: Optional[str] = None
    assigned_to: Optional[int] = None
    deadline: Optional[datetime] = None
    tokens: Optional[int] = None


class TaskSubmit(BaseModel):
    submission_note: Optional[str] = Field(None, max_length=2000)


class DeadlineExtension(BaseModel):
    new_deadline: datetime


class FeedbackRequest(BaseModel):
    feedback: str


class TaskOut(BaseModel):
    id: int
    created_by: int
    assigned_to: int
    title: str
    description: Optional[str] = None
    deadline: datetime
    tokens: int
    status: str
    director_approved: bool
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    submission_note: Optional[str] = None
    admin_feedback: Optional[str] = None
    original_deadline: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @field_serializer(
        "deadline", "submitted_at", "approved_at", "original_deadline", "created_at", "updated_at"
    )
    def serialize_dates(self, value):
        return isoformat_utc(value)

    class Config:
        from_attributes = True


class TaskDeletedOut(BaseModel):
    id: int
    title: str
    success: bool = True


# ============================================================================
# ACTIVITY FEED
# ============================================================================

class ActivityOut(BaseModel):
    id: int
    actor_id: int
    actor_name: Optional[str] = None
    action_type: str
    target_user_id: Optional[int] = None
    target_name: Optional[str] = None
    task_id: Optional[int] = None
    message: str
    icon: str
    color: str
    created_at: datetime

    @field_serializer("created_at")
    def serialize_created_at(self, value):
        return isoformat_utc(value)


class UnreadCountOut(BaseModel):
    count: int


class CustomMessageRequest(BaseModel):
    message: str


# ============================================================================
# PASSWORD MANAGEMENT
# ============================================================================

class PasswordResetRequestCreate(BaseModel):
    email: EmailStr


class PasswordResetRequestOut(BaseModel):
    id: int
    email: str
    status: str
    resolved_by: Optional[int] = None
    created_at: datetime
    resolved_at: Optional[datetime] = None

    @field_serializer("created_at", "resolved_at")
    def serialize_dates(self, value):
        return isoformat_utc(value)

    class Config:
        from_attributes = True


class ResetRequestSubmitted(BaseModel):
    success: bool
    message: str


class ResolveResetRequest(BaseModel):
    """Director resolves a pending request by setting a new temporary password"""
    user_id: int
    new_password: str


class ChangePasswordRequest(BaseModel):
    """
    Schema for changing password while logged in.

    Example:
        {
            "current_password": "Welcome123",
            "new_password": "NewPass456!",
            "confirm_password": "NewPass456!"
        }
    """
    current_password: str = Field(..., min_length=1, description="Current password (for verification)")
    new_password: str = Field(..., description="New password")
    confirm_password: str = Field(..., description="Confirm new password (must match new_password)")


class PasswordChangeResponse(BaseModel):
    success: bool
    message: str
    changed_at: datetime

    @field_serializer("changed_at")
    def serialize_changed_at(self, value):
        return isoformat_utc(value)


class ResetRequestList(BaseModel):
    requests: List[PasswordResetRequestOut]
    total: int
