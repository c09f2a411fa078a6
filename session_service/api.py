"""
HTTP surface for the session service.

create_router(service) exposes the caller-facing API as a FastAPI router;
require_role(service, role) builds a dependency that blocks requests whose
principal does not satisfy the role (401 unauthenticated, 403 denied).
"""

import logging
from datetime import timedelta
from typing import Callable

from fastapi import APIRouter, Depends, HTTPException, status

from .errors import ErrorKind
from .models import Role
from .schemas import (
    AuthorizationResponse,
    DeviceSessionListResponse,
    DeviceSessionResponse,
    GrantPremiumRequest,
    RefreshResponse,
    SessionResponse,
    StartTrialRequest,
)
from .service import AccessService

logger = logging.getLogger(__name__)

_TRIAL_ERROR_STATUS = {
    ErrorKind.NOT_ELIGIBLE: status.HTTP_409_CONFLICT,
    ErrorKind.PROGRAMMER_ERROR: status.HTTP_422_UNPROCESSABLE_ENTITY,
}


def require_role(service: AccessService, required: Role) -> Callable:
    """
    Factory that creates a dependency checking the current principal's role.

    Returns:
        FastAPI dependency that raises 401/403 when not authorized, else
        returns the AuthorizationResult
    """

    async def check_role():
        result = await service.check_role(required)
        if result.authorized:
            return result
        if result.error_kind is ErrorKind.UNAUTHENTICATED:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail={"error": "UNAUTHENTICATED", "message": result.error},
            )
        logger.warning(
            "Request denied by role check",
            extra={"role": result.role.value, "required_role": required.value},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": "ROLE_DENIED",
                "message": result.error,
                "required_role": required.value,
            },
        )

    return check_role


def _session_response(service: AccessService) -> SessionResponse:
    return SessionResponse.from_session(
        service.current_session,
        is_premium_active=service.is_premium(),
        capabilities=service.capabilities(),
    )


def create_router(service: AccessService) -> APIRouter:
    router = APIRouter(tags=["session"])

    @router.get("/session", response_model=SessionResponse)
    async def get_session() -> SessionResponse:
        """Return the current session and its derived capabilities."""
        return _session_response(service)

    @router.post("/session/premium", response_model=SessionResponse)
    async def grant_premium(body: GrantPremiumRequest) -> SessionResponse:
        expiry = body.expires_at
        if expiry is None and body.duration_days is not None:
            expiry = service.clock() + timedelta(days=body.duration_days)
        if expiry is not None and expiry.tzinfo is None:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail={"error": "INVALID_EXPIRY", "message": "expires_at must include a timezone"},
            )
        await service.grant_premium(expiry)
        return _session_response(service)

    @router.post("/session/trial", response_model=SessionResponse)
    async def start_trial(body: StartTrialRequest) -> SessionResponse:
        result = await service.start_trial(body.kind)
        if not result.ok:
            raise HTTPException(
                status_code=_TRIAL_ERROR_STATUS.get(result.error, status.HTTP_503_SERVICE_UNAVAILABLE),
                detail={"error": result.error.value, "message": result.detail},
            )
        return _session_response(service)

    @router.post("/session/logout", response_model=SessionResponse)
    async def logout() -> SessionResponse:
        await service.logout()
        return _session_response(service)

    @router.get("/authz/check", response_model=AuthorizationResponse)
    async def check_role(role: str) -> AuthorizationResponse:
        return AuthorizationResponse.from_result(await service.check_role(role))

    @router.get("/authz/pages/{resource}", response_model=AuthorizationResponse)
    async def check_page(resource: str) -> AuthorizationResponse:
        return AuthorizationResponse.from_result(
            await service.authorization.check_page_access(resource)
        )

    @router.post("/authz/refresh", response_model=RefreshResponse)
    async def refresh_role() -> RefreshResponse:
        role = await service.authorization.force_refresh()
        return RefreshResponse(role=role.value)

    @router.get(
        "/users/{user_id}/sessions",
        response_model=DeviceSessionListResponse,
        dependencies=[Depends(require_role(service, Role.USER))],
    )
    async def list_user_sessions(user_id: str) -> DeviceSessionListResponse:
        """Sessions are only visible to the user themself or an admin; others get an empty list."""
        records = await service.limiter.list_sessions(service.identity.current_principal(), user_id)
        return DeviceSessionListResponse(
            user_id=user_id,
            sessions=[DeviceSessionResponse.from_record(r) for r in records],
            total=len(records),
            limits={dt.value: cap for dt, cap in service.limiter.caps.items()},
        )

    return router
