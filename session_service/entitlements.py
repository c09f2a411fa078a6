"""
Entitlement evaluation over Session values.

All functions are pure: they read the session and an optional ``now`` and
never touch storage. Trial expiry is evaluated lazily on every read.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from .models import Capability, Session, TrialKind, utcnow

TRIAL_EXPIRING_SOON = timedelta(hours=24)


class TrialState(str, Enum):
    NOT_ELIGIBLE = "not_eligible"
    ELIGIBLE = "eligible"
    ACTIVE = "active"
    EXPIRED = "expired"


def _now(now: Optional[datetime]) -> datetime:
    return now or utcnow()


def is_expired(expiry: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """Absent expiry means indefinite."""
    if expiry is None:
        return False
    return _now(now) >= expiry


def is_session_expired(session: Session, now: Optional[datetime] = None) -> bool:
    return session.is_expired(_now(now))


def is_premium_active(session: Session, now: Optional[datetime] = None) -> bool:
    return session.is_premium and not is_expired(session.premium_expiry, now)


def can_access_audio(session: Session, now: Optional[datetime] = None) -> bool:
    return session.has_audio_access and not is_expired(session.premium_expiry, now)


def has_active_trial(session: Session, now: Optional[datetime] = None) -> bool:
    if session.trial is None:
        return False
    return _now(now) < session.trial.ends_at


def is_trial_expired(session: Session, now: Optional[datetime] = None) -> bool:
    if session.trial is None:
        return False
    return _now(now) >= session.trial.ends_at


def has_trial_access(session: Session, now: Optional[datetime] = None) -> bool:
    return has_active_trial(session, now) or is_premium_active(session, now)


def remaining_trial_time(session: Session, now: Optional[datetime] = None) -> Optional[timedelta]:
    if not has_active_trial(session, now):
        return None
    return session.trial.ends_at - _now(now)


def is_trial_expiring_soon(session: Session, now: Optional[datetime] = None) -> bool:
    remaining = remaining_trial_time(session, now)
    if remaining is None:
        return False
    return remaining <= TRIAL_EXPIRING_SOON


def trial_expiration_warning(session: Session, now: Optional[datetime] = None) -> Optional[str]:
    if not is_trial_expiring_soon(session, now):
        return None
    remaining = remaining_trial_time(session, now)
    hours = int(remaining.total_seconds() // 3600)
    if hours < 1:
        return "Your premium trial expires in less than 1 hour!"
    return f"Your premium trial expires in {hours} hours!"


def trial_state(
    session: Session,
    kind: TrialKind,
    *,
    already_used: bool,
    now: Optional[datetime] = None,
) -> TrialState:
    """
    Position of ``kind`` in the NotEligible -> Eligible -> Active -> Expired lifecycle.

    ``already_used`` comes from the device-scoped trial history, not the session.
    """
    if session.trial is not None and session.trial.kind is kind:
        if has_active_trial(session, now):
            return TrialState.ACTIVE
        return TrialState.EXPIRED
    if already_used:
        return TrialState.NOT_ELIGIBLE
    return TrialState.ELIGIBLE


def has_capability(session: Session, capability: Capability, now: Optional[datetime] = None) -> bool:
    """
    Typed capability lookup.

    Time-bound capabilities are re-checked against premium and trial expiry;
    the rest come from the derived permission map.
    """
    if capability is Capability.ACCESS_AUDIO:
        return can_access_audio(session, now) or (not session.is_guest and has_active_trial(session, now))
    if capability is Capability.ACCESS_PREMIUM_CONTENT:
        return not session.is_guest and has_trial_access(session, now)
    return session.has_permission(capability)


def capability_snapshot(session: Session, now: Optional[datetime] = None) -> Dict[str, bool]:
    return {cap.value: has_capability(session, cap, now) for cap in Capability}


def trial_info(session: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
    remaining = remaining_trial_time(session, now)
    trial = session.trial
    expired = is_trial_expired(session, now)
    return {
        "is_trial_user": trial is not None,
        "trial_type": trial.kind.value if trial else "none",
        "trial_started_at": trial.started_at.isoformat() if trial else None,
        "has_active_trial": has_active_trial(session, now),
        "is_trial_expired": expired,
        "remaining_trial_days": remaining.days if remaining else 0,
        "remaining_trial_hours": int(remaining.total_seconds() // 3600) if remaining else 0,
        "has_trial_access": has_trial_access(session, now),
        "trial_ended_at": trial.ends_at.isoformat() if trial and expired else None,
        "expiring_soon": is_trial_expiring_soon(session, now),
        "warning": trial_expiration_warning(session, now),
    }
