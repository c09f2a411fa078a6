"""
Pydantic schemas for the session HTTP API.

Request and response models for session, trial and authorization endpoints.
"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .authorization import AuthorizationResult
from .device_sessions import DeviceSessionRecord
from .models import Session


class SessionResponse(BaseModel):
    """Response model for the current session."""

    device_id: str = Field(..., description="Stable per-install device identifier")
    device_type: str = Field(..., description="phone, tablet, web or unknown")
    user_id: Optional[str] = Field(None, description="Signed-in user id, absent for guests")
    email: Optional[str] = Field(None, description="Signed-in user email")
    role: str = Field(..., description="guest, user, admin or super_admin")
    is_premium: bool = Field(..., description="Premium flag as granted")
    is_premium_active: bool = Field(..., description="Premium flag and expiry still valid")
    premium_expiry: Optional[datetime] = Field(None, description="Premium expiry, absent = indefinite")
    created_at: datetime = Field(..., description="When the session was created")
    expires_at: datetime = Field(..., description="When the session expires")
    trial_kind: Optional[str] = Field(None, description="day_trial or week_trial")
    trial_started_at: Optional[datetime] = Field(None, description="When the trial started")
    capabilities: Dict[str, bool] = Field(..., description="Derived capability map")

    @classmethod
    def from_session(
        cls,
        session: Session,
        *,
        is_premium_active: bool,
        capabilities: Dict[str, bool],
    ) -> "SessionResponse":
        return cls(
            device_id=session.device_id,
            device_type=session.device_type.value,
            user_id=session.user_id,
            email=session.email,
            role=session.role.value,
            is_premium=session.is_premium,
            is_premium_active=is_premium_active,
            premium_expiry=session.premium_expiry,
            created_at=session.created_at,
            expires_at=session.expires_at,
            trial_kind=session.trial.kind.value if session.trial else None,
            trial_started_at=session.trial.started_at if session.trial else None,
            capabilities=capabilities,
        )


class GrantPremiumRequest(BaseModel):
    """Request model for granting premium to the current session."""

    expires_at: Optional[datetime] = Field(None, description="Explicit expiry (timezone-aware)")
    duration_days: Optional[int] = Field(None, ge=1, description="Premium for this many days from now")


class StartTrialRequest(BaseModel):
    """Request model for starting a trial."""

    kind: str = Field(..., description="day_trial or week_trial")


class AuthorizationResponse(BaseModel):
    """Response model for role and page checks."""

    authorized: bool = Field(..., description="Whether access is granted")
    role: str = Field(..., description="Role of the current principal")
    error: Optional[str] = Field(None, description="Reason for denial")
    error_kind: Optional[str] = Field(None, description="denied, unauthenticated or programmer_error")

    @classmethod
    def from_result(cls, result: AuthorizationResult) -> "AuthorizationResponse":
        return cls(**result.to_dict())


class RefreshResponse(BaseModel):
    """Response model for a forced role refresh."""

    role: str = Field(..., description="Freshly resolved role")


class DeviceSessionResponse(BaseModel):
    """Response model for one remote device session."""

    device_id: str
    device_type: str
    device_info: str = ""
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    last_activity: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: DeviceSessionRecord) -> "DeviceSessionResponse":
        return cls(
            device_id=record.device_id,
            device_type=record.device_type.value,
            device_info=record.device_info,
            created_at=record.created_at,
            expires_at=record.expires_at,
            last_activity=record.last_activity,
        )


class DeviceSessionListResponse(BaseModel):
    """Response model for a user's device sessions."""

    user_id: str
    sessions: List[DeviceSessionResponse] = Field(..., description="Active device sessions")
    total: int = Field(..., description="Number of active sessions")
    limits: Dict[str, int] = Field(..., description="Per-device-class session caps")
