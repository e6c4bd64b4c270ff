from salesflow.core.auth import AuthUser
from salesflow.errors import Forbidden, Unauthorized


SALES_ROLES = ("sales", "admin")
ADMIN_ROLES = ("admin",)


def require_role(user: AuthUser, *roles: str) -> AuthUser:
    if user.is_anonymous:
        raise Unauthorized("authentication required")
    if not any(role in user.roles for role in roles):
        # TODO: Move to per-action permissions once the team grows past sales and admin.
        raise Forbidden(f"Missing role: {' or '.join(roles)}")
    return user
