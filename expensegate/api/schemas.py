from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from expensegate.logging import get_correlation_id
from expensegate.storage.models import Account, Session

_VALID_ERROR_CODES = {
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
}


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
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
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class LoginRequest(BaseModel):
    access_code: str = Field(..., min_length=1, max_length=256)

    @field_validator("access_code")
    @classmethod
    def _strip_code(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("access code is required")
        return value


class LoginResponse(BaseModel):
    account_id: str
    session_id: str
    role: str
    name: Optional[str] = None
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime


class PrincipalResponse(BaseModel):
    subject_id: str
    role: str
    display_name: Optional[str] = None


class SessionResponse(BaseModel):
    id: str
    account_id: str
    revoked: bool
    banned: bool
    created_at: datetime
    revoked_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, session: Session) -> "SessionResponse":
        # Token strings are bearer credentials and never leave the store.
        return cls(
            id=session.id,
            account_id=session.account_id,
            revoked=session.revoked,
            banned=session.banned,
            created_at=session.created_at,
            revoked_at=session.revoked_at,
        )


class AccountResponse(BaseModel):
    id: str
    name: Optional[str] = None
    role: str
    is_active: bool
    is_revoked: bool
    is_banned: bool
    valid_until: Optional[datetime] = None
    last_login: Optional[datetime] = None
    last_logout: Optional[datetime] = None
    last_ip_address: Optional[str] = None
    ip_history: List[str] = Field(default_factory=list)

    @classmethod
    def from_model(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            name=account.name,
            role=account.role,
            is_active=account.is_active,
            is_revoked=account.is_revoked,
            is_banned=account.is_banned,
            valid_until=account.valid_until,
            last_login=account.last_login,
            last_logout=account.last_logout,
            last_ip_address=account.last_ip_address,
            ip_history=list(account.ip_history),
        )


class CountResponse(BaseModel):
    account_id: str
    count: int
