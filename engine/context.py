"""Caller context passed explicitly into privileged operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from config import settings
from engine.errors import PermissionDenied


class Role(str, Enum):
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


@dataclass(frozen=True)
class CallerContext:
    """Identity and roles of the caller issuing an operation."""

    user_id: str | None = None
    roles: frozenset[Role] = field(default_factory=frozenset)

    @property
    def is_super_admin(self) -> bool:
        return Role.SUPER_ADMIN in self.roles

    @property
    def is_admin(self) -> bool:
        return self.is_super_admin or Role.ADMIN in self.roles

    def require_admin(self, operation: str) -> None:
        if not self.is_admin:
            raise PermissionDenied(f"{operation} requires admin")

    def require_super_admin(self, operation: str) -> None:
        if not self.is_super_admin:
            raise PermissionDenied(f"{operation} requires super admin")


ANONYMOUS = CallerContext()


def context_for_user(
    user_id: str | None,
    *,
    admin_users: tuple[str, ...] | None = None,
    super_admin_users: tuple[str, ...] | None = None,
) -> CallerContext:
    """Build a caller context from configured role lists."""
    uid = (user_id or "").strip()
    if not uid:
        return ANONYMOUS
    admins = settings.ADMIN_USERS if admin_users is None else admin_users
    supers = settings.SUPER_ADMIN_USERS if super_admin_users is None else super_admin_users
    roles: set[Role] = set()
    if uid in admins:
        roles.add(Role.ADMIN)
    if uid in supers:
        roles.add(Role.SUPER_ADMIN)
    return CallerContext(user_id=uid, roles=frozenset(roles))
