from dataclasses import dataclass, field
from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings


ADMIN_ROLES = {"admin", "system.admin", "super_admin"}


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    organizations: list[str] = field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return any(role.lower() in ADMIN_ROLES for role in self.roles)


def decode_bearer_token(request: Request) -> dict[str, Any] | None:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""
    if not token:
        return None

    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def token_organizations(payload: dict[str, Any]) -> list[str]:
    """Organizations the token holder belongs to, from ``organizations`` and ``org_id``."""
    organizations = payload.get("organizations", [])
    if not isinstance(organizations, list):
        organizations = []
    members = [str(organization) for organization in organizations if organization]
    org_id = payload.get("org_id")
    if org_id and str(org_id) not in members:
        members.insert(0, str(org_id))
    return members


async def get_current_user(request: Request) -> AuthUser:
    payload = decode_bearer_token(request)
    if payload is None:
        return AuthUser(sub="anonymous", roles=["guest"])

    subject = str(payload.get("sub", "anonymous"))
    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = subject
    return AuthUser(sub=subject, roles=[str(role) for role in roles], organizations=token_organizations(payload))
