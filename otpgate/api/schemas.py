from __future__ import annotations

from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from otpgate.service.validation import normalize_email

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_input",
    "user_not_found",
    "user_inactive",
    "invalid_or_expired_otp",
    "token_invalid",
    "token_expired",
    "session_invalid",
    "service_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code clients can switch on")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Uniform API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _EmailPayload(BaseModel):
    email: str = Field(..., max_length=320)

    @field_validator("email")
    @classmethod
    def _validate_payload_email(cls, value: str) -> str:
        return normalize_email(value)


class RequestCodeRequest(_EmailPayload):
    purpose: Literal["login", "registration"] = "login"


class RequestCodeResponse(BaseModel):
    email: str
    purpose: str
    challenge_id: str
    expires_at: datetime
    delivered: bool
    message: str = "If the address is registered, a code has been sent"


class VerifyCodeRequest(_EmailPayload):
    code: str = Field(..., min_length=1, max_length=32)
    purpose: Literal["login", "registration"] = "login"
    platform: Optional[str] = Field(default=None, max_length=64)


class UserResponse(BaseModel):
    id: str
    email: str
    role: str
    is_active: bool = True
    email_verified: bool = False
    last_login_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    created_by: Optional[str] = None
    employee_id: Optional[str] = None
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None


class AuthResponse(BaseModel):
    user: UserResponse
    session_id: str
    access_token: str
    access_token_expires_at: datetime
    refresh_token: str
    refresh_token_expires_at: datetime
    token_type: str = "bearer"


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class TokenRefreshResponse(BaseModel):
    access_token: str
    access_token_expires_at: datetime
    token_type: str = "bearer"


class LogoutRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class LogoutAllResponse(BaseModel):
    sessions_revoked: int


class SessionResponse(BaseModel):
    id: str
    created_at: datetime
    expires_at: datetime
    last_used_at: Optional[datetime] = None
    ip_addr: Optional[str] = None
    device_info: dict = Field(default_factory=dict)


class SessionListResponse(BaseModel):
    items: List[SessionResponse]


class AdminCreateUserRequest(_EmailPayload):
    role: Literal["admin", "manager", "user"] = "user"


class AdminUserStatusRequest(BaseModel):
    is_active: bool


class AuditLogResponse(BaseModel):
    id: str
    admin_id: str
    action: str
    resource_type: str
    resource_id: str
    old_values: Optional[dict] = None
    new_values: Optional[dict] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime


class AuditLogListResponse(BaseModel):
    items: List[AuditLogResponse]


class UsersByRole(BaseModel):
    admin: int = 0
    manager: int = 0
    user: int = 0


class UserStatistics(BaseModel):
    total_users: int
    active_users: int
    inactive_users: int
    deleted_users: int
    admin_created_users: int
    self_registered_users: int
    users_by_role: UsersByRole


class UserStatisticsResponse(BaseModel):
    statistics: UserStatistics
    generated_at: datetime
