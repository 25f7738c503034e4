"""
Role → capability matrix.

Roles are fixed (they mirror the dashboard navigation), so the matrix lives in
code rather than in role/permission tables. `deps.require_permission(code)`
checks the caller's membership role against this map.
"""

from __future__ import annotations

OWNER = "Owner"
ADMIN = "Admin"
INVENTORY_MANAGER = "Inventory Manager"
MARKETING_MANAGER = "Marketing Manager"
STOCK_KEEPER = "Stock Keeper"

ALL_ROLES = (OWNER, ADMIN, INVENTORY_MANAGER, MARKETING_MANAGER, STOCK_KEEPER)

# Roles an Owner/Admin can hand out. Owner is only created by bootstrap.
ASSIGNABLE_ROLES = (ADMIN, INVENTORY_MANAGER, MARKETING_MANAGER, STOCK_KEEPER)

# Roles that must be tied to a store.
STORE_BOUND_ROLES = frozenset(ASSIGNABLE_ROLES)

# Login requires a second factor (emailed OTP) for these roles.
OTP_REQUIRED_ROLES = frozenset({OWNER, ADMIN})

_STOCK = (OWNER, ADMIN, INVENTORY_MANAGER, STOCK_KEEPER)
_BACK_OFFICE = (OWNER, ADMIN, INVENTORY_MANAGER)
_MARKETING = (OWNER, ADMIN, MARKETING_MANAGER)

PERMISSIONS: dict[str, frozenset[str]] = {
    "dashboard:read": frozenset(ALL_ROLES),
    "products:read": frozenset(_STOCK),
    "products:write": frozenset(_BACK_OFFICE),
    "inventory:read": frozenset(_STOCK),
    "inventory:scan": frozenset({OWNER, ADMIN, STOCK_KEEPER}),
    "transfers:read": frozenset(_STOCK),
    "transfers:write": frozenset(_STOCK),
    "transfers:approve": frozenset(_BACK_OFFICE),
    "categories:read": frozenset(_BACK_OFFICE),
    "categories:write": frozenset(_BACK_OFFICE),
    "sales:read": frozenset(_BACK_OFFICE),
    "sales:import": frozenset(_MARKETING),
    "billing:write": frozenset(_BACK_OFFICE),
    "customers:read": frozenset(_MARKETING + (INVENTORY_MANAGER,)),
    "customers:write": frozenset(_MARKETING + (INVENTORY_MANAGER,)),
    "analytics:read": frozenset(_MARKETING),
    "reports:read": frozenset(_MARKETING),
    "insights:read": frozenset(_MARKETING),
    "campaigns:read": frozenset(_MARKETING),
    "campaigns:write": frozenset(_MARKETING),
    "ai:use": frozenset({OWNER, ADMIN, INVENTORY_MANAGER, MARKETING_MANAGER}),
    "alerts:read": frozenset({OWNER, ADMIN}),
    "users:read": frozenset({OWNER, ADMIN}),
    "users:write": frozenset({OWNER, ADMIN}),
    "users:delete": frozenset({OWNER}),
    "stores:write": frozenset({OWNER}),
}


def has_permission(role: str | None, code: str) -> bool:
    allowed = PERMISSIONS.get(code)
    if allowed is None:
        raise KeyError(f"unknown permission: {code}")
    return bool(role) and role in allowed


def store_scope(role: str | None, store_id) -> str | None:
    """
    Store a caller is restricted to, or None when they can see every store.

    Raises LookupError for a non-Owner that has no store assignment.
    """
    if role == OWNER:
        return None
    if not store_id:
        raise LookupError("not assigned to a store")
    return str(store_id)
