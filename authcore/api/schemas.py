from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_ERROR_CODE = re.compile(r"^[a-z][a-z0-9_]*$")


class ErrorBody(BaseModel):
    """Envelope error body with a stable snake_case code."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if not _ERROR_CODE.match(value):
            raise ValueError("error code must be snake_case")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class OAuthErrorResponse(BaseModel):
    """RFC 6749 section 5.2 error body used by ``/token`` and ``/authorize``."""

    error: str
    error_description: Optional[str] = None


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    scope: str = ""


class LoginRequest(BaseModel):
    account_key: str = Field(..., min_length=1, max_length=256)
    password: str = Field(..., min_length=1, max_length=1024)
    scope: str = Field("", max_length=1024)


class RevokeRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=512)


class RevokeResponse(BaseModel):
    revoked: bool


class IntrospectRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=4096)


class IntrospectionResponse(BaseModel):
    valid: bool
    subject_id: Optional[str] = None
    scope: Optional[str] = None
    family_id: Optional[str] = None
    client_id: Optional[str] = None
    expires_at: Optional[datetime] = None
