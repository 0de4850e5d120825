"""
Guest Session Manager

Turns an invitation token into a credential.

Table invitations resolve to the table's shared guest account (created on
first use) and hand every diner their own short-lived session credential.
Account invitations sign into the account they were issued for and are
consumed on first use.
"""

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import and_, delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cafe_orders.core.config import get_settings
from cafe_orders.exceptions import InvitationInvalid, InvitationNotFound, SessionExpired
from cafe_orders.models import (
    AccessToken,
    GuestSession,
    Order,
    OrderStatus,
    User,
    UserInvitation,
    UserRole,
)
from cafe_orders.services import credentials
from cafe_orders.services.invitations import find_invitation, normalize_table_number

logger = logging.getLogger(__name__)
settings = get_settings()


@dataclass
class InvitationPreview:
    restaurant_name: str
    issuer_name: Optional[str]
    role: UserRole
    table_number: Optional[str]
    expires_at: Optional[datetime]


@dataclass
class SessionResult:
    """Outcome of a successful redemption."""
    user: User
    token: str
    token_id: int
    expires_at: Optional[datetime] = None
    session_id: Optional[str] = None
    table_number: Optional[str] = None

    @property
    def is_guest(self) -> bool:
        return self.session_id is not None

    @property
    def expires_in(self) -> Optional[int]:
        return settings.guest_session_seconds if self.is_guest else None


# =============================================================================
# PREVIEW
# =============================================================================

async def preview_invitation(session: AsyncSession, token: str, now: datetime) -> InvitationPreview:
    """
    Describe an invitation before it is redeemed.

    Raises:
        InvitationNotFound: unknown token
        InvitationInvalid: expired or already used
    """
    invitation = await find_invitation(session, token)
    if not invitation.is_valid(now):
        raise InvitationInvalid()

    return InvitationPreview(
        restaurant_name=settings.restaurant_name,
        issuer_name=invitation.issuer.name if invitation.issuer else None,
        role=invitation.role,
        table_number=invitation.table_number,
        expires_at=invitation.expires_at,
    )


# =============================================================================
# REDEMPTION
# =============================================================================

async def redeem_invitation(
    session: AsyncSession,
    token: str,
    now: datetime,
    table_number: Optional[str] = None,
) -> SessionResult:
    """
    Redeem an invitation.

    ``table_number`` is only consulted when a table invitation was issued
    without one.

    Raises:
        InvitationNotFound: unknown token
        InvitationInvalid: expired or already used
        TableNumberRequired / TableNumberTooLong: no usable table number
    """
    invitation = await find_invitation(session, token)
    if not invitation.is_valid(now):
        logger.warning(f"Rejected redemption of invalid invitation #{invitation.id}")
        raise InvitationInvalid()

    if invitation.single_use:
        return await _redeem_account_invitation(session, invitation, now)
    return await _redeem_table_invitation(session, invitation, now, table_number)


async def _redeem_account_invitation(
    session: AsyncSession,
    invitation: UserInvitation,
    now: datetime,
) -> SessionResult:
    invitation_id = invitation.id
    invitee_id = invitation.invitee_id

    # Claim the invitation; a concurrent redemption matches zero rows
    claimed = await session.execute(
        update(UserInvitation)
        .where(UserInvitation.id == invitation_id, UserInvitation.used_at.is_(None))
        .values(used_at=now)
    )
    if not claimed.rowcount:
        await session.rollback()
        logger.warning(f"Invitation #{invitation_id} was already used")
        raise InvitationInvalid()

    user = await session.get(User, invitee_id) if invitee_id is not None else None
    if user is None:
        await session.rollback()
        logger.error(f"Account invitation #{invitation_id} has no invitee")
        raise InvitationNotFound()

    token_row, plain = await credentials.issue_token(session, user, name="invitation")
    await session.commit()

    logger.info(f"User #{user.id} signed in via account invitation #{invitation_id}")
    return SessionResult(user=user, token=plain, token_id=token_row.id)


async def _redeem_table_invitation(
    session: AsyncSession,
    invitation: UserInvitation,
    now: datetime,
    table_number: Optional[str],
) -> SessionResult:
    invitation_id = invitation.id
    table_number = normalize_table_number(invitation.table_number or table_number)

    user = await resolve_guest_user(session, table_number, now)

    session_id = secrets.token_urlsafe(24)
    expires_at = now + timedelta(hours=settings.guest_session_hours)
    token_row, plain = await credentials.issue_token(
        session,
        user,
        name=f"session_{session_id}",
        abilities=credentials.GUEST_ABILITIES + [credentials.expiry_ability(expires_at)],
        expires_at=expires_at,
    )
    session.add(GuestSession(
        session_id=session_id,
        user_id=user.id,
        table_number=table_number,
        token_id=token_row.id,
        expires_at=expires_at,
        created_at=now,
    ))
    await session.commit()

    logger.info(f"Guest session started at table {table_number} (invitation #{invitation_id}, user #{user.id})")
    return SessionResult(
        user=user,
        token=plain,
        token_id=token_row.id,
        expires_at=expires_at,
        session_id=session_id,
        table_number=table_number,
    )


# =============================================================================
# GUEST ACCOUNTS
# =============================================================================

async def find_guest_user(session: AsyncSession, table_number: str) -> Optional[User]:
    result = await session.execute(
        select(User)
        .where(User.role == UserRole.GUEST, User.table_number == table_number)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _guest_email(table_number: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", table_number.lower()).strip("-") or "table"
    return f"guest-table-{slug}-{secrets.token_hex(4)}@guest.local"


async def resolve_guest_user(session: AsyncSession, table_number: str, now: datetime) -> User:
    """
    The live guest account for a table, created if missing.

    An expired account is retired (its table number released) and replaced.
    When two diners race to create the account, the unique table number
    rejects the second insert and the loser reads the winner's account.
    """
    user = await find_guest_user(session, table_number)
    if user is not None and not user.guest_account_expired(now):
        return user

    if user is not None:
        logger.info(f"Retiring expired guest account #{user.id} for table {table_number}")
        user.table_number = None
        user.updated_at = now
        await session.flush()

    user = User(
        name=f"Table {table_number}",
        email=_guest_email(table_number),
        role=UserRole.GUEST,
        table_number=table_number,
        guest_expires_at=now + timedelta(hours=settings.guest_account_hours),
        created_at=now,
        updated_at=now,
    )
    session.add(user)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        winner = await find_guest_user(session, table_number)
        if winner is None:
            raise
        logger.info(f"Guest account for table {table_number} created concurrently; reusing #{winner.id}")
        return winner

    logger.info(f"Created guest account #{user.id} for table {table_number}")
    return user


# =============================================================================
# EXPIRY
# =============================================================================

def _expiry_from_abilities(abilities) -> Optional[datetime]:
    for ability in abilities or ():
        if isinstance(ability, str) and ability.startswith(credentials.EXPIRY_ABILITY_PREFIX):
            raw = ability[len(credentials.EXPIRY_ABILITY_PREFIX):]
            if raw.isdigit():
                return datetime.fromtimestamp(int(raw), tz=timezone.utc)
    return None


def session_expired(token: AccessToken, now: datetime) -> bool:
    """Check the structured expiry of a credential, falling back to its ability marker."""
    if token.expires_at is not None:
        return token.is_expired(now)
    marker = _expiry_from_abilities(token.abilities)
    return marker is not None and marker <= now


async def enforce_guest_expiry(session: AsyncSession, token: AccessToken, user: User, now: datetime) -> None:
    """
    Reject an expired guest credential.

    The credential is deleted before ``SessionExpired`` is raised, so the
    same token fails authentication on every later request.
    """
    if not user.is_guest:
        return

    if not session_expired(token, now) and not user.guest_account_expired(now):
        return

    token_id = token.id
    await credentials.revoke_token(session, token_id)
    await session.commit()

    logger.info(f"Guest credential #{token_id} expired and was revoked")
    raise SessionExpired()


@dataclass
class CleanupReport:
    tokens: int = 0
    sessions: int = 0
    orders: int = 0
    accounts: int = 0


async def cleanup_expired_sessions(session: AsyncSession, now: datetime) -> CleanupReport:
    """
    Purge expired guest state.

    Removes expired guest credentials and sessions, guest orders still
    preparing after the stale window, and releases the table number of
    expired guest accounts.
    """
    report = CleanupReport()
    guest_ids = select(User.id).where(User.role == UserRole.GUEST)

    result = await session.execute(
        delete(GuestSession).where(GuestSession.expires_at < now)
    )
    report.sessions = result.rowcount or 0

    result = await session.execute(
        delete(AccessToken).where(
            AccessToken.user_id.in_(guest_ids),
            AccessToken.expires_at.is_not(None),
            AccessToken.expires_at < now,
        )
    )
    report.tokens = result.rowcount or 0

    result = await session.execute(
        delete(Order).where(
            Order.user_id.in_(guest_ids),
            Order.status == OrderStatus.PREPARING,
            Order.created_at < now - timedelta(hours=settings.stale_guest_order_hours),
        )
    )
    report.orders = result.rowcount or 0

    result = await session.execute(
        update(User)
        .where(and_(
            User.role == UserRole.GUEST,
            User.table_number.is_not(None),
            User.guest_expires_at < now,
        ))
        .values(table_number=None, updated_at=now)
    )
    report.accounts = result.rowcount or 0

    await session.commit()
    logger.info(
        f"Guest cleanup: {report.tokens} token(s), {report.sessions} session(s), "
        f"{report.orders} stale order(s), {report.accounts} account(s) retired"
    )
    return report
