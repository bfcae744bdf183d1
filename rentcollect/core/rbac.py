# rentcollect/core/rbac.py
"""
Role-based access control.

- Role x Permission lookup table, default deny for anything not granted.
- Principal: explicit caller identity passed into every command (no ambient user).
- Property / landlord scoping helpers for multi-tenant isolation.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Mapping, Optional

from rentcollect.core.exceptions import AuthorizationError
from rentcollect.core.logging import audit_logger

if TYPE_CHECKING:
    from rentcollect.models.property import Property
    from rentcollect.models.unmatched import UnmatchedPayment


class Role(str, enum.Enum):
    PLATFORM_ADMIN = "platform_admin"
    LANDLORD = "landlord"
    MANAGER = "manager"
    ACCOUNTANT = "accountant"
    CARETAKER = "caretaker"
    TENANT = "tenant"


class Permission(str, enum.Enum):
    VIEW_PAYMENTS = "view_payments"
    CONFIRM_PAYMENT = "confirm_payment"
    REJECT_PAYMENT = "reject_payment"
    ALLOCATE_PAYMENT = "allocate_payment"
    REVERSE_ALLOCATION = "reverse_allocation"
    VIEW_UNMATCHED = "view_unmatched"
    RESOLVE_UNMATCHED = "resolve_unmatched"
    IGNORE_UNMATCHED = "ignore_unmatched"
    VIEW_INVOICES = "view_invoices"
    APPLY_LATE_FEES = "apply_late_fees"


_GRANTS: dict[Role, frozenset[Permission]] = {
    Role.PLATFORM_ADMIN: frozenset(Permission),
    Role.LANDLORD: frozenset(Permission),
    Role.MANAGER: frozenset(
        {
            Permission.VIEW_PAYMENTS,
            Permission.CONFIRM_PAYMENT,
            Permission.REJECT_PAYMENT,
            Permission.ALLOCATE_PAYMENT,
            Permission.VIEW_UNMATCHED,
            Permission.RESOLVE_UNMATCHED,
            Permission.IGNORE_UNMATCHED,
            Permission.VIEW_INVOICES,
            Permission.APPLY_LATE_FEES,
        }
    ),
    Role.ACCOUNTANT: frozenset(
        {
            Permission.VIEW_PAYMENTS,
            Permission.CONFIRM_PAYMENT,
            Permission.ALLOCATE_PAYMENT,
            Permission.REVERSE_ALLOCATION,
            Permission.VIEW_UNMATCHED,
            Permission.RESOLVE_UNMATCHED,
            Permission.IGNORE_UNMATCHED,
            Permission.VIEW_INVOICES,
        }
    ),
    Role.CARETAKER: frozenset({Permission.VIEW_PAYMENTS, Permission.VIEW_INVOICES}),
    Role.TENANT: frozenset(),
}

# Полная таблица (role, permission) -> bool; всё, чего нет в таблице, запрещено
PERMISSION_TABLE: Mapping[tuple[Role, Permission], bool] = {
    (role, perm): perm in _GRANTS.get(role, frozenset()) for role in Role for perm in Permission
}


def has_permission(role: Role | str, permission: Permission | str) -> bool:
    try:
        key = (Role(role), Permission(permission))
    except ValueError:
        return False
    return PERMISSION_TABLE.get(key, False)


@dataclass(frozen=True)
class Principal:
    user_id: int
    role: Role
    organization_id: Optional[int] = None
    property_ids: frozenset[int] = field(default_factory=frozenset)

    @property
    def is_platform_admin(self) -> bool:
        return self.role == Role.PLATFORM_ADMIN

    def can(self, permission: Permission) -> bool:
        return has_permission(self.role, permission)


def require_permission(principal: Principal, permission: Permission, resource: str = "") -> None:
    if not principal.can(permission):
        audit_logger.log_permission_denied(principal.user_id, f"missing {permission.value}", resource)
        raise AuthorizationError(
            f"Role '{principal.role.value}' is not allowed to {permission.value.replace('_', ' ')}",
            code="PERMISSION_DENIED",
        )


def can_access_property(principal: Principal, prop: "Property") -> bool:
    if principal.is_platform_admin:
        return True
    if (
        principal.organization_id is not None
        and prop.organization_id is not None
        and prop.organization_id != principal.organization_id
    ):
        return False
    if principal.role == Role.LANDLORD:
        return prop.landlord_id == principal.user_id
    return prop.id in principal.property_ids


def ensure_property_access(principal: Principal, prop: "Property", resource: str = "") -> None:
    if not can_access_property(principal, prop):
        audit_logger.log_permission_denied(principal.user_id, "out of scope", resource or f"property:{prop.id}")
        raise AuthorizationError("Resource is outside of your scope", code="OUT_OF_SCOPE")


def can_access_unmatched(principal: Principal, item: "UnmatchedPayment") -> bool:
    """Unattributed items (no landlord/property hint) are visible to platform admins only."""
    if principal.is_platform_admin:
        return True
    if principal.role == Role.LANDLORD:
        return item.landlord_id is not None and item.landlord_id == principal.user_id
    return item.property_id is not None and item.property_id in principal.property_ids


__all__ = [
    "Role",
    "Permission",
    "PERMISSION_TABLE",
    "has_permission",
    "Principal",
    "require_permission",
    "can_access_property",
    "ensure_property_access",
    "can_access_unmatched",
]
