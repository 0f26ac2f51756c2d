"""FastAPI dependencies for the control plane routes.

Key dependencies:
- get_control_plane: the ControlPlane stored on app.state by the lifespan
- get_principal: validate the Bearer JWT and return the caller
- require_role: assert the caller holds one of the given roles
- require_subject_access: caller is the data subject or an admin
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

import jwt
import structlog
from fastapi import Depends, HTTPException, Request, status

from control_plane.config import Settings, get_settings
from control_plane.container import ControlPlane
from control_plane.websocket.gateway import verify_token

log = structlog.get_logger(__name__)

ADMIN_ROLE = "admin"
OPERATOR_ROLE = "operator"


@dataclass(frozen=True)
class Principal:
    """Authenticated caller resolved from the token claims."""

    subject: str
    roles: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles


def get_control_plane(request: Request) -> ControlPlane:
    return request.app.state.control_plane  # type: ignore[no-any-return]


async def get_principal(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> Principal:
    """Extract and validate the Bearer token. Raises HTTP 401 on any failure."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid Authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = auth_header.removeprefix("Bearer ").strip()
    try:
        claims = verify_token(
            token,
            secret=settings.jwt_secret.get_secret_value(),
            audience=settings.jwt_audience,
        )
    except jwt.InvalidTokenError as exc:
        log.info("auth.token_rejected", path=request.url.path, error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc

    return Principal(subject=str(claims["sub"]), roles=frozenset(claims.get("roles", [])))


def require_role(*allowed_roles: str) -> Callable:
    """Dependency factory that asserts the caller has one of the allowed roles.

    Usage:
        @router.get("/memory")
        async def memory(principal: Principal = Depends(require_role("admin", "operator"))):
            ...
    """

    async def _check(principal: Principal = Depends(get_principal)) -> Principal:
        if not principal.roles.intersection(allowed_roles):
            log.warning("auth.role_denied", subject=principal.subject, required=list(allowed_roles))
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires one of roles: {', '.join(allowed_roles)}",
            )
        return principal

    return _check


require_operator = require_role(ADMIN_ROLE, OPERATOR_ROLE)


def require_subject_access(principal: Principal, subject_id: str) -> None:
    """Raise HTTP 403 unless the caller is the subject or an admin."""
    if principal.subject != subject_id and not principal.is_admin:
        log.warning("auth.subject_denied", subject=principal.subject, target=subject_id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not allowed to act on another subject's data",
        )
