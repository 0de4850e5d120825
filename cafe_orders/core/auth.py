"""
Request authentication and request-scoped context.

Each request resolves its bearer credential once into an ``Actor`` (the
caller's capability set) and a ``RequestContext`` that is passed explicitly
into the service layer.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from fastapi import Depends, Header
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cafe_orders.database import get_db
from cafe_orders.exceptions import Unauthenticated, Unauthorized
from cafe_orders.models import AccessToken, GuestSession, User, UserRole, utcnow

logger = logging.getLogger(__name__)


class Capability(str, Enum):
    ADMIN = "admin"
    SHOP_OWNER = "shop_owner"
    STAFF = "staff"
    GUEST = "guest"


ROLE_CAPABILITIES: dict[UserRole, frozenset[Capability]] = {
    UserRole.ADMIN: frozenset({Capability.ADMIN}),
    UserRole.SHOP_OWNER: frozenset({Capability.SHOP_OWNER}),
    UserRole.STAFF: frozenset({Capability.STAFF}),
    UserRole.USER: frozenset(),
    UserRole.GUEST: frozenset({Capability.GUEST}),
}

# May manage orders and read invitations
STAFF_LIKE = frozenset({Capability.ADMIN, Capability.SHOP_OWNER, Capability.STAFF})

# May issue and revoke table invitations
INVITATION_MANAGERS = frozenset({Capability.ADMIN, Capability.SHOP_OWNER})

# Abilities carried by guest session credentials
GUEST_ORDER_ABILITY = "guest:order"
GUEST_READ_ABILITY = "guest:read"


@dataclass(frozen=True)
class Actor:
    """The authenticated caller, reduced to a capability set."""
    user_id: int
    role: UserRole
    capabilities: frozenset = field(default_factory=frozenset)

    @classmethod
    def for_user(cls, user: User) -> "Actor":
        return cls(user_id=user.id, role=user.role, capabilities=ROLE_CAPABILITIES[user.role])

    def has_any(self, capabilities: frozenset) -> bool:
        return bool(self.capabilities & capabilities)

    @property
    def is_guest(self) -> bool:
        return Capability.GUEST in self.capabilities

    @property
    def is_staff_like(self) -> bool:
        return self.has_any(STAFF_LIKE)

    def require(self, capabilities: frozenset) -> None:
        if not self.has_any(capabilities):
            raise Unauthorized()


@dataclass
class RequestContext:
    """Everything a core operation needs to know about the current request."""
    actor: Actor
    now: datetime
    token_id: Optional[int] = None
    session_id: Optional[str] = None
    table_number: Optional[str] = None


def parse_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


async def get_current_token(
    authorization: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
) -> AccessToken:
    """Resolve the bearer credential of the request or fail with 401."""
    # Imported here to keep services free to import this module
    from cafe_orders.services.credentials import authenticate

    raw = parse_bearer(authorization)
    if raw is None:
        raise Unauthenticated()

    token = await authenticate(db, raw)
    if token is None:
        raise Unauthenticated()
    return token


async def get_request_context(
    token: AccessToken = Depends(get_current_token),
    db: AsyncSession = Depends(get_db),
) -> RequestContext:
    """
    Build the request context.

    Guest callers pass through the session expiry check first, so an expired
    guest credential never reaches business logic.
    """
    from cafe_orders.services.guest_sessions import enforce_guest_expiry

    now = utcnow()
    user = token.user
    await enforce_guest_expiry(db, token, user, now)

    ctx = RequestContext(actor=Actor.for_user(user), now=now, token_id=token.id)

    if user.is_guest:
        result = await db.execute(
            select(GuestSession).where(GuestSession.token_id == token.id)
        )
        guest_session = result.scalar_one_or_none()
        if guest_session is not None:
            ctx.session_id = guest_session.session_id
            ctx.table_number = guest_session.table_number

    return ctx


def require_guest_ability(ability: str):
    """
    Route dependency: guest credentials must carry ``ability``.

    Non-guest callers pass; their permissions come from their role.
    """
    async def check(
        ctx: RequestContext = Depends(get_request_context),
        token: AccessToken = Depends(get_current_token),
    ) -> None:
        if ctx.actor.is_guest and not token.can(ability):
            logger.warning(f"Guest credential #{token.id} lacks ability {ability}")
            raise Unauthorized(f"This session is not allowed to perform {ability}")

    return check
