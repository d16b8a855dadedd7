import logging

from rest_framework.exceptions import NotAuthenticated, PermissionDenied
from rest_framework.permissions import BasePermission

from core.models import User

logger = logging.getLogger("security.authorization")

MANAGEMENT_ROLES = {User.Role.ADMIN, User.Role.GENERAL_MANAGER}
BRANCH_STAFF_ROLES = {User.Role.ADMIN, User.Role.GENERAL_MANAGER, User.Role.BRANCH_MANAGER, User.Role.CASHIER}
STOCK_ROLES = {User.Role.STOCK_CONTROLLER, User.Role.STOCK_MANAGER}
ALL_ROLES = set(User.Role.values)

ROLE_CAPABILITY_MATRIX = {
    "inventory.view": ALL_ROLES,
    "catalog.manage": MANAGEMENT_ROLES | {User.Role.STOCK_MANAGER},
    "warehouse.manage": MANAGEMENT_ROLES,
    "stock.adjust": MANAGEMENT_ROLES | {User.Role.BRANCH_MANAGER, User.Role.STOCK_MANAGER},
    "purchase.view": MANAGEMENT_ROLES | {User.Role.BRANCH_MANAGER, User.Role.STOCK_MANAGER},
    "purchase.record": MANAGEMENT_ROLES | {User.Role.BRANCH_MANAGER, User.Role.STOCK_MANAGER},
    "stock.audit.view": STOCK_ROLES | MANAGEMENT_ROLES,
    "stock.audit.submit": {User.Role.STOCK_CONTROLLER, User.Role.ADMIN},
    "stock.audit.resolve": {User.Role.STOCK_MANAGER} | MANAGEMENT_ROLES,
    "stock.audit.delete": {User.Role.STOCK_MANAGER} | MANAGEMENT_ROLES,
    "sales.pos.access": BRANCH_STAFF_ROLES,
    "sales.view": BRANCH_STAFF_ROLES,
    "sales.manage": MANAGEMENT_ROLES | {User.Role.BRANCH_MANAGER},
    "external_sale.authorize": MANAGEMENT_ROLES | {User.Role.BRANCH_MANAGER},
    "expense.record": BRANCH_STAFF_ROLES,
    "expense.manage": MANAGEMENT_ROLES | {User.Role.BRANCH_MANAGER},
    "reports.view": MANAGEMENT_ROLES | {User.Role.BRANCH_MANAGER},
    "accounting.view": MANAGEMENT_ROLES,
    "settings.manage": {User.Role.ADMIN},
    "user.manage": {User.Role.ADMIN},
    "admin.records.manage": MANAGEMENT_ROLES,
}


def get_user_role(user):
    if not user or not user.is_authenticated:
        return None
    if user.is_superuser:
        return User.Role.ADMIN
    role = getattr(user, "role", None)
    if role:
        return role
    if getattr(user, "is_staff", False):
        return User.Role.ADMIN
    return User.Role.CASHIER


def user_has_capability(user, capability):
    if not user or not user.is_authenticated:
        return False
    if user.is_superuser:
        return True
    allowed_roles = ROLE_CAPABILITY_MATRIX.get(capability)
    if not allowed_roles:
        return False
    return get_user_role(user) in allowed_roles


def require_capability(user, capability):
    """Return ``user`` when it holds ``capability``; raise otherwise.

    Service entry points call this first so that the capability check holds no
    matter which transport invoked them.
    """
    if not user or not getattr(user, "is_authenticated", False):
        raise NotAuthenticated()
    if not user_has_capability(user, capability):
        logger.warning(
            "permission_denied capability=%s user=%s role=%s",
            capability,
            getattr(user, "username", "anonymous"),
            get_user_role(user),
        )
        raise PermissionDenied(f"Your role does not allow '{capability}'.")
    return user


class RoleCapabilityPermission(BasePermission):
    """Permission class that validates role capability by action/method and logs denied attempts."""

    message = "You do not have permission to perform this action."

    def has_permission(self, request, view):
        capability_map = getattr(view, "permission_action_map", {})
        action_key = getattr(view, "action", None) or request.method.lower()
        capability = capability_map.get(action_key)
        if capability is None:
            return True

        allowed = user_has_capability(request.user, capability)
        if not allowed:
            logger.warning(
                "permission_denied capability=%s user=%s role=%s method=%s path=%s view=%s action=%s",
                capability,
                getattr(request.user, "username", "anonymous"),
                get_user_role(request.user),
                request.method,
                request.path,
                view.__class__.__name__,
                action_key,
            )
        return allowed


def capability_map(read_capability, write_capability, **extra):
    """Build a ``permission_action_map`` for a ModelViewSet: one capability to read, one to write."""
    mapping = {"list": read_capability, "retrieve": read_capability}
    mapping.update({action: write_capability for action in ("create", "update", "partial_update", "destroy")})
    mapping.update(extra)
    return mapping
