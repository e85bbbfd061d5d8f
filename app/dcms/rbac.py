from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g

from app.dcms.models import User, UserRole

DOCS_VIEW = "docs.view"
DOCS_CREATE = "docs.create"
DOCS_APPROVE = "docs.approve"
DOCS_DECLINE = "docs.decline"
DOCS_ISSUE = "docs.issue"
DOCS_DISTRIBUTE = "docs.distribute"
REPORTS_VIEW = "reports.view"
USERS_VIEW = "users.view"
USERS_MANAGE = "users.manage"
DEPARTMENTS_MANAGE = "departments.manage"

ALL_PERMISSIONS = frozenset(
    {
        DOCS_VIEW,
        DOCS_CREATE,
        DOCS_APPROVE,
        DOCS_DECLINE,
        DOCS_ISSUE,
        DOCS_DISTRIBUTE,
        REPORTS_VIEW,
        USERS_VIEW,
        USERS_MANAGE,
        DEPARTMENTS_MANAGE,
    }
)

ROLE_PERMISSIONS: dict[UserRole, frozenset[str]] = {
    UserRole.CREATOR: frozenset({DOCS_VIEW, DOCS_CREATE, DOCS_DISTRIBUTE}),
    UserRole.APPROVER: frozenset({DOCS_VIEW, DOCS_APPROVE, DOCS_DECLINE, DOCS_DISTRIBUTE, USERS_VIEW}),
    UserRole.ISSUER: frozenset({DOCS_VIEW, DOCS_ISSUE, DOCS_DECLINE, DOCS_DISTRIBUTE, REPORTS_VIEW, USERS_VIEW}),
    UserRole.RECIPIENT: frozenset({DOCS_VIEW, DOCS_DISTRIBUTE}),
    UserRole.ADMIN: ALL_PERMISSIONS,
}

_unmapped = set(UserRole) - set(ROLE_PERMISSIONS)
if _unmapped:
    raise RuntimeError(f"Roles without a permission set: {sorted(r.value for r in _unmapped)}")


def permissions_for(role: UserRole) -> frozenset[str]:
    return ROLE_PERMISSIONS[role]


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    return permission_key in permissions_for(user.role)


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated -> 401, authenticated but unauthorized -> 403
            if not user or not user.is_active:
                abort(401)
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
