"""
Authorization facade.

Yes/no decisions for application code: role checks, page guards and named
permission checks for the principal currently reported by the identity
provider. Denials are returned as AuthorizationResult values, never raised.

Role requirements:
- Guest: any session passes
- User: User or above
- Admin: Admin or SuperAdmin
- SuperAdmin: exact match only
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Union

from .errors import ErrorKind, MalformedSessionError
from .identity import IdentityProvider
from .models import Principal, Role
from .role_directory import RoleDirectory

logger = logging.getLogger(__name__)

# Named resources and the role each requires. Unknown names are denied.
PAGE_REQUIREMENTS: Mapping[str, Role] = MappingProxyType({
    "user_management": Role.SUPER_ADMIN,
    "song_management": Role.ADMIN,
    "reports_management": Role.ADMIN,
    "firebase_debug": Role.SUPER_ADMIN,
})


@dataclass(frozen=True)
class AuthorizationResult:
    """Outcome of a role check."""

    authorized: bool
    role: Role
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @classmethod
    def allow(cls, role: Role) -> "AuthorizationResult":
        return cls(authorized=True, role=role)

    @classmethod
    def deny(
        cls,
        role: Role,
        error: str,
        kind: ErrorKind = ErrorKind.DENIED,
    ) -> "AuthorizationResult":
        return cls(authorized=False, role=role, error=error, error_kind=kind)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "authorized": self.authorized,
            "role": self.role.value,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
        }


class AuthorizationService:
    """Role and permission checks for the current principal."""

    def __init__(self, identity: IdentityProvider, role_directory: RoleDirectory) -> None:
        self._identity = identity
        self._role_directory = role_directory

    def _principal(self) -> Optional[Principal]:
        return self._identity.current_principal()

    async def current_role(self) -> Role:
        principal = self._principal()
        if principal is None or principal.is_anonymous:
            return Role.GUEST
        return await self._role_directory.resolve_role(principal.id, principal.email)

    async def check_role(self, required: Union[Role, str]) -> AuthorizationResult:
        """Check the current principal against ``required``."""
        if not isinstance(required, Role):
            try:
                required = Role.parse(required)
            except MalformedSessionError:
                logger.warning("Role check with unknown role", extra={"required_role": required})
                return AuthorizationResult.deny(
                    Role.GUEST, f"Unknown role: {required}", ErrorKind.PROGRAMMER_ERROR
                )

        principal = self._principal()
        if principal is None:
            return AuthorizationResult.deny(
                Role.GUEST, "User not authenticated", ErrorKind.UNAUTHENTICATED
            )

        role = await self.current_role()
        if role.satisfies(required):
            return AuthorizationResult.allow(role)

        logger.info(
            "Role check denied",
            extra={"principal_id": principal.id, "role": role.value, "required_role": required.value},
        )
        return AuthorizationResult.deny(
            role,
            f"Insufficient permissions. Required: {required.value}, Current: {role.value}",
        )

    # =========================================================================
    # Page guards
    # =========================================================================

    async def check_page_access(self, resource: str) -> AuthorizationResult:
        required = PAGE_REQUIREMENTS.get(resource)
        if required is None:
            logger.warning("Access check for unknown resource", extra={"resource": resource})
            return AuthorizationResult.deny(
                await self.current_role(),
                f"Unknown resource: {resource}",
                ErrorKind.PROGRAMMER_ERROR,
            )
        return await self.check_role(required)

    async def can_navigate_to(self, resource: str) -> bool:
        return (await self.check_page_access(resource)).authorized

    async def can_manage_users(self) -> bool:
        return await self.can_navigate_to("user_management")

    async def can_manage_songs(self) -> bool:
        return await self.can_navigate_to("song_management")

    async def can_view_reports(self) -> bool:
        return await self.can_navigate_to("reports_management")

    async def can_access_debug(self) -> bool:
        return await self.can_navigate_to("firebase_debug")

    # =========================================================================
    # Role and permission queries
    # =========================================================================

    async def is_admin(self) -> bool:
        return (await self.current_role()).is_admin

    async def is_super_admin(self) -> bool:
        return (await self.current_role()) is Role.SUPER_ADMIN

    async def has_permission(self, name: str) -> bool:
        """Named permission from users/{id}/permissions; super admins hold all."""
        principal = self._principal()
        if principal is None or principal.is_anonymous:
            return False
        resolution = await self._role_directory.resolve(principal.id, principal.email)
        return resolution.has_permission(name)

    async def force_refresh(self) -> Role:
        """Drop the cached role for the current principal and resolve it again."""
        principal = self._principal()
        if principal is None:
            self._role_directory.invalidate()
            return Role.GUEST
        self._role_directory.invalidate(principal.id)
        role = await self.current_role()
        logger.info("Role refreshed", extra={"principal_id": principal.id, "role": role.value})
        return role

    async def admin_status(self) -> Dict[str, Any]:
        principal = self._principal()
        role = await self.current_role()
        return {
            "is_authenticated": principal is not None,
            "email": principal.email if principal else None,
            "role": role.value,
            "is_admin": role.is_admin,
            "is_super_admin": role is Role.SUPER_ADMIN,
            "can_manage_users": role.satisfies(PAGE_REQUIREMENTS["user_management"]),
            "can_manage_songs": role.satisfies(PAGE_REQUIREMENTS["song_management"]),
        }

    async def debug_info(self) -> Dict[str, Any]:
        principal = self._principal()
        info: Dict[str, Any] = {
            "principal_id": principal.id if principal else None,
            "is_anonymous": principal.is_anonymous if principal else None,
            "role": (await self.current_role()).value,
            "admin_config": self._role_directory.admin_config.config_summary(),
        }
        if principal is not None:
            info["role_cache"] = self._role_directory.cache_status(principal.id)
        return info
