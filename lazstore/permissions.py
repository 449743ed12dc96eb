"""Role-based access control.

Every check is a lookup into an immutable policy table. Nothing here raises:
an unknown or missing role is simply not allowed to do anything.
"""

from enum import Enum
from types import MappingProxyType
from typing import Optional, Union

from .schemas import Role


class Action(str, Enum):
    # products
    VIEW_PRODUCTS = "view_products"
    ADD_PRODUCTS = "add_products"
    EDIT_PRODUCTS = "edit_products"
    DELETE_PRODUCTS = "delete_products"
    MANAGE_INVENTORY = "manage_inventory"
    # orders
    MANAGE_ORDERS = "manage_orders"
    VIEW_ALL_ORDERS = "view_all_orders"
    UPDATE_ORDER_STATUS = "update_order_status"
    CREATE_ORDERS = "create_orders"
    VIEW_OWN_ORDERS = "view_own_orders"
    # cart
    USE_CART = "use_cart"
    CHECKOUT = "checkout"
    # users
    VIEW_ALL_USERS = "view_all_users"
    CREATE_USERS = "create_users"
    DELETE_USERS = "delete_users"
    EDIT_USER_ROLES = "edit_user_roles"
    # sales & returns
    PROCESS_SALES = "process_sales"
    VIEW_SALES_REPORTS = "view_sales_reports"
    VIEW_ANALYTICS = "view_analytics"
    MODIFY_SALES = "modify_sales"
    PROCESS_RETURNS = "process_returns"
    APPROVE_REFUNDS = "approve_refunds"
    VIEW_RETURN_HISTORY = "view_return_history"
    # system
    ACCESS_SYSTEM_SETTINGS = "access_system_settings"
    BACKUP_DATA = "backup_data"
    VIEW_SYSTEM_LOGS = "view_system_logs"


_ALL = frozenset(Role)
_STAFF = frozenset({Role.ADMIN, Role.EMPLOYEE})
_ADMIN = frozenset({Role.ADMIN})
_CUSTOMER = frozenset({Role.CUSTOMER})

POLICY = MappingProxyType({
    Action.VIEW_PRODUCTS: _ALL,
    Action.ADD_PRODUCTS: _STAFF,
    Action.EDIT_PRODUCTS: _STAFF,
    Action.DELETE_PRODUCTS: _ADMIN,
    Action.MANAGE_INVENTORY: _STAFF,
    Action.MANAGE_ORDERS: _STAFF,
    Action.VIEW_ALL_ORDERS: _STAFF,
    Action.UPDATE_ORDER_STATUS: _STAFF,
    Action.CREATE_ORDERS: _CUSTOMER,
    Action.VIEW_OWN_ORDERS: _ALL,
    Action.USE_CART: _CUSTOMER,
    Action.CHECKOUT: _CUSTOMER,
    Action.VIEW_ALL_USERS: _ADMIN,
    Action.CREATE_USERS: _ADMIN,
    Action.DELETE_USERS: _ADMIN,
    Action.EDIT_USER_ROLES: _ADMIN,
    Action.PROCESS_SALES: _STAFF,
    Action.VIEW_SALES_REPORTS: _ADMIN,
    Action.VIEW_ANALYTICS: _ADMIN,
    Action.MODIFY_SALES: _ADMIN,
    Action.PROCESS_RETURNS: _STAFF,
    Action.APPROVE_REFUNDS: _ADMIN,
    Action.VIEW_RETURN_HISTORY: _STAFF,
    Action.ACCESS_SYSTEM_SETTINGS: _ADMIN,
    Action.BACKUP_DATA: _ADMIN,
    Action.VIEW_SYSTEM_LOGS: _ADMIN,
})

_PERMISSION_LEVELS = {
    Role.ADMIN: "Full System Access",
    Role.EMPLOYEE: "Operations & Sales Access",
    Role.CUSTOMER: "Shopping Access",
}


def _coerce_role(role) -> Optional[Role]:
    if isinstance(role, Role):
        return role
    if isinstance(role, str):
        try:
            return Role(role.strip().upper())
        except ValueError:
            return None
    return None


def _coerce_action(action) -> Optional[Action]:
    if isinstance(action, Action):
        return action
    if isinstance(action, str):
        try:
            return Action(action)
        except ValueError:
            return None
    return None


def is_allowed(role: Union[Role, str, None], action: Union[Action, str]) -> bool:
    resolved_role = _coerce_role(role)
    resolved_action = _coerce_action(action)
    if resolved_role is None or resolved_action is None:
        return False
    return resolved_role in POLICY.get(resolved_action, frozenset())


def can_view_user_details(role, actor_id: int, target_user_id: int) -> bool:
    resolved = _coerce_role(role)
    if resolved is None:
        return False
    if resolved is Role.ADMIN:
        return True
    return actor_id == target_user_id


def can_view_cart(role, actor_id: int, cart_owner_id: int) -> bool:
    resolved = _coerce_role(role)
    if resolved is Role.ADMIN:
        return True
    if resolved is Role.CUSTOMER:
        return actor_id == cart_owner_id
    # employees never see customer carts
    return False


def can_view_order(role, actor_id: int, order_customer_id: int) -> bool:
    if is_allowed(role, Action.VIEW_ALL_ORDERS):
        return True
    return is_allowed(role, Action.VIEW_OWN_ORDERS) and actor_id == order_customer_id


def permission_level(role) -> str:
    resolved = _coerce_role(role)
    if resolved is None:
        return "No Access"
    return _PERMISSION_LEVELS[resolved]
