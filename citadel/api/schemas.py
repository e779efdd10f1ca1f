from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from citadel.logging import get_correlation_id

_VALID_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "rate_limited",
    "server_error",
    "service_unavailable",
}


class ErrorBody(BaseModel):
    """Error body with a stable machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code: {value}")
        return value


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=1024)
    username: Optional[str] = Field(default=None, max_length=64)
    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=1024)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: int
    username: str
    email: str
    first_name: str = ""
    last_name: str = ""
    last_login: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class AuthResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int = 300
    user: UserOut


class MeResponse(BaseModel):
    user_id: int
    email: str
    username: str


class ForgotPasswordRequest(BaseModel):
    email: str = Field(default="", max_length=320)
    # honeypot; real clients leave it empty
    website: Optional[str] = Field(default=None, max_length=512)
    render_time: Optional[str] = Field(default=None, max_length=64)


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., max_length=256)
    password: str = Field(..., max_length=1024)
    confirm_password: str = Field(..., max_length=1024)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., max_length=1024)
    new_password: str = Field(..., max_length=1024)
    confirm_password: str = Field(..., max_length=1024)


class MessageResponse(BaseModel):
    message: str
