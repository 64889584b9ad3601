# liquidvote/authentication/rbac.py

from enum import Enum
from functools import wraps
from flask import abort
from flask_jwt_extended import get_jwt, verify_jwt_in_request
import logging

logger = logging.getLogger(__name__)

# Role-Based Access Control over the role claim carried in the JWT


class UserRole(Enum):
    MEMBER = "member"
    ADMIN = "admin"


class Permission(Enum):
    VOTE = "vote"
    DELEGATE = "delegate"
    CREATE_PROPOSAL = "create_proposal"
    VIEW_RESULTS = "view_results"
    TRIGGER_RESOLUTION = "trigger_resolution"
    MANAGE_SNAPSHOTS = "manage_snapshots"
    VIEW_AUDIT = "view_audit"


ROLE_PERMISSIONS = {
    UserRole.MEMBER: [
        Permission.VOTE,
        Permission.DELEGATE,
        Permission.CREATE_PROPOSAL,
        Permission.VIEW_RESULTS,
    ],
    UserRole.ADMIN: [
        Permission.VOTE,
        Permission.DELEGATE,
        Permission.CREATE_PROPOSAL,
        Permission.VIEW_RESULTS,
        Permission.TRIGGER_RESOLUTION,
        Permission.MANAGE_SNAPSHOTS,
        Permission.VIEW_AUDIT,
    ],
}


class RBACService:
    def has_permission(self, user_role, permission):
        try:
            if isinstance(user_role, str):
                user_role = UserRole(user_role.lower().strip())
            if isinstance(permission, str):
                permission = Permission(permission)
        except ValueError:
            return False
        return permission in ROLE_PERMISSIONS.get(user_role, [])

    def get_permissions(self, user_role):
        if isinstance(user_role, str):
            user_role = UserRole(user_role)
        return ROLE_PERMISSIONS.get(user_role, [])


rbac_service = RBACService()


def require_permission(permission):
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            verify_jwt_in_request()
            role = get_jwt().get("role", UserRole.MEMBER.value)
            if not rbac_service.has_permission(role, permission):
                logger.warning("Role %s denied %s", role, permission.value if isinstance(permission, Enum) else permission)
                abort(403)
            return func(*args, **kwargs)
        return wrapper
    return decorator
