from dataclasses import dataclass, field
from uuid import NAMESPACE_DNS, UUID, uuid5

from fastapi import Depends, Header, HTTPException, status

from wayli_jobs.config.settings import AuthMode, Settings, SettingsDep


def string_to_uuid(text: str) -> UUID:
    """Map a user identifier to a UUID.

    Identifiers that already are UUIDs are used as-is, anything else is
    mapped deterministically through uuid5.
    """
    try:
        return UUID(text)
    except ValueError:
        return uuid5(NAMESPACE_DNS, text)


@dataclass
class Principal:
    """Represents the current authenticated user."""

    user_id: str
    roles: list[str] = field(default_factory=lambda: ["user"])
    email: str | None = None

    @property
    def user_uuid(self) -> UUID:
        """The owner identity stored on jobs created by this principal."""
        return string_to_uuid(self.user_id)

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles


async def get_principal(
    x_user_id: str | None = Header(None, alias="X-User-ID"),
    x_user_roles: str | None = Header(None, alias="X-User-Roles"),
    settings: Settings = SettingsDep,
) -> Principal:
    """
    Dependency injection function to get the current principal.

    Behavior based on AUTH_MODE:
    - none: Returns the dev user with admin role
    - header: Identity comes from headers set by the authenticating gateway
    """
    if settings.auth_mode == AuthMode.NONE:
        return Principal(user_id=settings.dev_user_id, roles=["admin"])
    elif settings.auth_mode == AuthMode.HEADER:
        if not x_user_id:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="X-User-ID header is required",
            )
        roles = [r.strip() for r in (x_user_roles or "user").split(",") if r.strip()]
        return Principal(user_id=x_user_id, roles=roles)
    else:
        raise ValueError(f"Unknown auth mode: {settings.auth_mode}")


# Convenience type alias for dependency injection
PrincipalDep = Depends(get_principal)
