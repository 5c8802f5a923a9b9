"""
Request dependencies: the services container and capability checks.

Identity is established by the upstream gateway and forwarded in
``X-User-*`` headers. Routes declare what they need with
``dependencies=[Depends(require_capability(Capability.X))]`` or take the
returned Principal as a parameter.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, FrozenSet, Optional

import structlog
from fastapi import Header, Request

from checkout_engine.domain.errors import AuthenticationRequired, PermissionDenied
from checkout_engine.domain.models import Payer
from checkout_engine.services import Services

logger = structlog.get_logger(__name__)


class Capability(str, Enum):
    ORDERS_CREATE = "orders:create"
    ORDERS_READ = "orders:read"
    ORDERS_READ_ANY = "orders:read_any"
    ORDERS_EXPIRE = "orders:expire"
    STOCK_WRITE = "stock:write"
    STOCK_REBUILD = "stock:rebuild"
    PRODUCTS_WRITE = "products:write"
    RESERVATIONS_RECLAIM = "reservations:reclaim"


ROLE_CAPABILITIES: Dict[str, FrozenSet[Capability]] = {
    "customer": frozenset({Capability.ORDERS_CREATE, Capability.ORDERS_READ}),
    "admin": frozenset(Capability),
}


@dataclass(frozen=True)
class Principal:
    """Caller identity forwarded by the gateway."""

    user_id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    roles: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def capabilities(self) -> FrozenSet[Capability]:
        granted: FrozenSet[Capability] = frozenset()
        for role in self.roles:
            granted |= ROLE_CAPABILITIES.get(role, frozenset())
        return granted

    def can(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def as_payer(self) -> Payer:
        return Payer(
            user_id=self.user_id,
            email=self.email,
            first_name=self.first_name,
            last_name=self.last_name,
        )


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_principal(
    x_user_id: Optional[str] = Header(default=None),
    x_user_email: Optional[str] = Header(default=None),
    x_user_first_name: Optional[str] = Header(default=None),
    x_user_last_name: Optional[str] = Header(default=None),
    x_user_roles: Optional[str] = Header(default=None),
) -> Principal:
    """
    Build the caller identity from gateway headers.

    Raises:
        AuthenticationRequired: If no user id was forwarded
    """
    if not x_user_id or not x_user_id.strip():
        raise AuthenticationRequired("Authentication required")
    roles = frozenset(
        role.strip().lower() for role in (x_user_roles or "").split(",") if role.strip()
    )
    return Principal(
        user_id=x_user_id.strip(),
        email=x_user_email,
        first_name=x_user_first_name,
        last_name=x_user_last_name,
        roles=roles,
    )


def require_capability(capability: Capability) -> Callable:
    """
    Dependency factory rejecting callers without ``capability``.

    Returns 401 when there is no identity and 403 when the identity lacks
    the capability.
    """

    async def dependency(request: Request) -> Principal:
        principal = await get_principal(
            x_user_id=request.headers.get("x-user-id"),
            x_user_email=request.headers.get("x-user-email"),
            x_user_first_name=request.headers.get("x-user-first-name"),
            x_user_last_name=request.headers.get("x-user-last-name"),
            x_user_roles=request.headers.get("x-user-roles"),
        )
        if not principal.can(capability):
            logger.warning(
                "capability_denied",
                user_id=principal.user_id,
                capability=capability.value,
                roles=sorted(principal.roles),
            )
            raise PermissionDenied(f"Missing capability {capability.value}")
        return principal

    return dependency
