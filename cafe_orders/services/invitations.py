"""
Invitation Manager

Issues, lists and revokes invitation tokens.

Table invitations back the QR code on a table and are shared by every diner
until they expire. Account invitations are the older single-use flow that
provisions a named staff or customer account.
"""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Iterable, Optional
from urllib.parse import quote, urlencode

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cafe_orders.core.auth import INVITATION_MANAGERS, STAFF_LIKE, Capability, RequestContext
from cafe_orders.core.config import get_settings
from cafe_orders.exceptions import (
    Conflict,
    InvitationNotFound,
    TableAlreadyInvited,
    TableNumberRequired,
    TableNumberTooLong,
    ValidationFailed,
)
from cafe_orders.models import (
    AccountInvitation,
    TableInvitation,
    User,
    UserInvitation,
    UserRole,
)

logger = logging.getLogger(__name__)
settings = get_settings()

ACCOUNT_INVITATION_ROLES = (UserRole.ADMIN, UserRole.SHOP_OWNER, UserRole.STAFF, UserRole.USER)


def normalize_table_number(table_number: Optional[str]) -> str:
    """Strip and validate a table number."""
    table_number = (table_number or "").strip()
    if not table_number:
        raise TableNumberRequired()
    if len(table_number) > settings.table_number_max_length:
        raise TableNumberTooLong(settings.table_number_max_length)
    return table_number


async def generate_unique_token(session: AsyncSession) -> str:
    """64 hex characters from 32 random bytes, unused by any invitation."""
    while True:
        token = secrets.token_hex(32)
        result = await session.execute(select(UserInvitation.id).where(UserInvitation.token == token))
        if result.first() is None:
            return token


def invitation_url(invitation: UserInvitation) -> str:
    """Deep link encoded into the QR code (rendering happens client-side)."""
    base = settings.frontend_url.rstrip("/")
    if isinstance(invitation, TableInvitation):
        params = {"token": invitation.token}
        if invitation.table_number:
            params["table"] = invitation.table_number
        return f"{base}/guest-login?{urlencode(params)}"

    url = f"{base}/invitation/{invitation.token}"
    if invitation.table_number:
        url += f"?table={quote(invitation.table_number)}"
    return url


async def find_active_table_invitation(
    session: AsyncSession,
    table_number: str,
    now: datetime,
    created_before_id: Optional[int] = None,
) -> Optional[UserInvitation]:
    query = select(UserInvitation).where(
        UserInvitation.table_number == table_number,
        UserInvitation.expires_at > now,
    )
    if created_before_id is not None:
        query = query.where(UserInvitation.id < created_before_id)
    result = await session.execute(query.order_by(UserInvitation.id).limit(1))
    return result.unique().scalar_one_or_none()


# =============================================================================
# CREATION
# =============================================================================

async def create_table_invitation(
    session: AsyncSession,
    ctx: RequestContext,
    table_number: str,
    expires_at: Optional[datetime] = None,
) -> TableInvitation:
    """
    Issue the QR invitation for a table.

    Only one unexpired invitation may exist per table. Two concurrent
    creations can both pass the initial check, so after committing the one
    with the higher id withdraws itself.

    Raises:
        Unauthorized: caller is not an admin or shop owner
        TableNumberRequired / TableNumberTooLong: bad table number
        TableAlreadyInvited: the table already has an active invitation
    """
    ctx.actor.require(INVITATION_MANAGERS)
    table_number = normalize_table_number(table_number)

    existing = await find_active_table_invitation(session, table_number, ctx.now)
    if existing is not None:
        logger.warning(f"Table {table_number} already has an active invitation")
        raise TableAlreadyInvited(existing)

    invitation = TableInvitation(
        issuer_id=ctx.actor.user_id,
        token=await generate_unique_token(session),
        role=UserRole.GUEST,
        table_number=table_number,
        expires_at=expires_at or ctx.now + timedelta(hours=settings.table_invitation_hours),
        created_at=ctx.now,
    )
    session.add(invitation)
    await session.commit()

    earlier = await find_active_table_invitation(session, table_number, ctx.now, created_before_id=invitation.id)
    if earlier is not None:
        error = TableAlreadyInvited(earlier)
        await session.delete(invitation)
        await session.commit()
        logger.warning(f"Withdrew concurrent invitation for table {table_number}")
        raise error

    logger.info(f"Table invitation created for table {table_number} by user #{ctx.actor.user_id}")
    return invitation


async def create_account_invitation(
    session: AsyncSession,
    ctx: RequestContext,
    name: str,
    email: str,
    role: UserRole,
    phone: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    table_number: Optional[str] = None,
) -> AccountInvitation:
    """
    Provision an account and a single-use invitation that signs into it.

    Raises:
        Unauthorized: caller is not an admin
        ValidationFailed: role cannot be granted by invitation
        Conflict: email or phone already registered
    """
    ctx.actor.require(frozenset({Capability.ADMIN}))
    role = UserRole(role)
    if role not in ACCOUNT_INVITATION_ROLES:
        raise ValidationFailed(f"Role '{role.value}' cannot be granted by invitation")
    if table_number is not None:
        table_number = normalize_table_number(table_number)

    taken = await session.execute(select(User.id).where(User.email == email))
    if taken.first() is not None:
        raise Conflict(f"Email {email} is already registered")

    token = await generate_unique_token(session)
    invitee = User(name=name, email=email, phone=phone, role=role, created_at=ctx.now, updated_at=ctx.now)
    try:
        session.add(invitee)
        await session.flush()

        invitation = AccountInvitation(
            issuer_id=ctx.actor.user_id,
            invitee_id=invitee.id,
            token=token,
            role=role,
            table_number=table_number,
            expires_at=expires_at or ctx.now + timedelta(days=settings.account_invitation_days),
            created_at=ctx.now,
        )
        session.add(invitation)
        await session.commit()
    except IntegrityError as e:
        await session.rollback()
        raise Conflict("Email or phone is already registered") from e

    logger.info(f"Account invitation for {role.value} #{invitee.id} created by user #{ctx.actor.user_id}")
    return invitation


# =============================================================================
# QUERIES
# =============================================================================

async def list_invitations(session: AsyncSession, ctx: RequestContext) -> list[UserInvitation]:
    ctx.actor.require(STAFF_LIKE)
    result = await session.execute(
        select(UserInvitation).order_by(UserInvitation.created_at.desc(), UserInvitation.id.desc())
    )
    return list(result.unique().scalars().all())


async def find_invitation(session: AsyncSession, token: str) -> UserInvitation:
    result = await session.execute(select(UserInvitation).where(UserInvitation.token == token))
    invitation = result.unique().scalar_one_or_none()
    if invitation is None:
        raise InvitationNotFound()
    return invitation


async def get_invitation(session: AsyncSession, ctx: RequestContext, token: str) -> UserInvitation:
    ctx.actor.require(STAFF_LIKE)
    return await find_invitation(session, token)


async def list_table_invitations(
    session: AsyncSession,
    ctx: RequestContext,
    table_number: str,
) -> list[UserInvitation]:
    """Unexpired invitations for one table, newest first."""
    ctx.actor.require(STAFF_LIKE)
    result = await session.execute(
        select(UserInvitation)
        .where(UserInvitation.table_number == table_number, UserInvitation.expires_at > ctx.now)
        .order_by(UserInvitation.created_at.desc(), UserInvitation.id.desc())
    )
    return list(result.unique().scalars().all())


# =============================================================================
# REMOVAL
# =============================================================================

async def revoke(session: AsyncSession, ctx: RequestContext, token: str) -> Optional[str]:
    """Delete one invitation. Returns its table number."""
    ctx.actor.require(INVITATION_MANAGERS)
    invitation = await find_invitation(session, token)
    table_number = invitation.table_number

    await session.delete(invitation)
    await session.commit()

    logger.info(f"Invitation for table {table_number} revoked by user #{ctx.actor.user_id}")
    return table_number


async def bulk_revoke(session: AsyncSession, ctx: RequestContext, tokens: Iterable[str]) -> int:
    ctx.actor.require(frozenset({Capability.ADMIN}))
    tokens = list(tokens)
    if not tokens:
        return 0

    result = await session.execute(delete(UserInvitation).where(UserInvitation.token.in_(tokens)))
    await session.commit()

    deleted = result.rowcount or 0
    logger.info(f"Bulk revoked {deleted} invitation(s)")
    return deleted


async def delete_expired(session: AsyncSession, now: datetime) -> int:
    result = await session.execute(delete(UserInvitation).where(UserInvitation.expires_at < now))
    await session.commit()

    deleted = result.rowcount or 0
    logger.info(f"Cleaned up {deleted} expired invitation(s)")
    return deleted


async def cleanup_expired(session: AsyncSession, ctx: RequestContext) -> int:
    ctx.actor.require(frozenset({Capability.ADMIN}))
    return await delete_expired(session, ctx.now)
