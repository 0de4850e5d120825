"""
Credential Service

Issues and resolves opaque bearer tokens of the form ``<id>|<secret>``.
Only a SHA-256 hash of the secret is persisted. The service never commits;
callers decide the transaction boundary.
"""

import hashlib
import hmac
import logging
import secrets
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cafe_orders.core.auth import GUEST_ORDER_ABILITY, GUEST_READ_ABILITY
from cafe_orders.models import AccessToken, User

logger = logging.getLogger(__name__)

GUEST_ABILITIES = [GUEST_ORDER_ABILITY, GUEST_READ_ABILITY]
EXPIRY_ABILITY_PREFIX = "expires_at:"


def _hash(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def expiry_ability(expires_at: datetime) -> str:
    return f"{EXPIRY_ABILITY_PREFIX}{int(expires_at.timestamp())}"


async def issue_token(
    session: AsyncSession,
    user: User,
    name: str,
    abilities: Optional[list[str]] = None,
    expires_at: Optional[datetime] = None,
) -> tuple[AccessToken, str]:
    """
    Create a credential for ``user``.

    Returns:
        The persisted (flushed, uncommitted) token row and the plain-text
        token. The plain text is not recoverable later.
    """
    secret = secrets.token_hex(20)
    token = AccessToken(
        user_id=user.id,
        name=name,
        token_hash=_hash(secret),
        abilities=list(abilities) if abilities is not None else ["*"],
        expires_at=expires_at,
    )
    session.add(token)
    await session.flush()

    logger.debug(f"Issued token #{token.id} ({name}) for user #{user.id}")
    return token, f"{token.id}|{secret}"


async def authenticate(session: AsyncSession, plain_text: str) -> Optional[AccessToken]:
    """Resolve a plain-text token to its row (with user loaded), or None."""
    token_id, sep, secret = plain_text.partition("|")
    if not sep or not token_id.isdigit() or not secret:
        return None

    result = await session.execute(
        select(AccessToken)
        .options(selectinload(AccessToken.user))
        .where(AccessToken.id == int(token_id))
    )
    token = result.scalar_one_or_none()
    if token is None or not hmac.compare_digest(token.token_hash, _hash(secret)):
        return None
    return token


async def revoke_token(session: AsyncSession, token_id: int) -> int:
    """Delete a credential. Returns the number of rows removed."""
    result = await session.execute(delete(AccessToken).where(AccessToken.id == token_id))
    return result.rowcount or 0
