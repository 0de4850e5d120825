"""
Unit tests for invitation administration.
"""

import pytest
import re
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

from sqlalchemy import func, select

from cafe_orders.exceptions import (
    Conflict,
    InvitationNotFound,
    TableAlreadyInvited,
    TableNumberRequired,
    TableNumberTooLong,
    Unauthorized,
    ValidationFailed,
)
from cafe_orders.models import AccountInvitation, TableInvitation, User, UserInvitation, UserRole
from cafe_orders.services import invitations


async def count_invitations(session):
    result = await session.execute(select(func.count(UserInvitation.id)))
    return result.scalar()


class TestCreateTableInvitation:
    """Tests for create_table_invitation."""

    async def test_creates_guest_invitation(self, session, owner, ctx_for):
        ctx = ctx_for(owner)
        invitation = await invitations.create_table_invitation(session, ctx, ' 12 ')

        assert isinstance(invitation, TableInvitation)
        assert re.fullmatch(r'[0-9a-f]{64}', invitation.token)
        assert invitation.table_number == '12'
        assert invitation.role == UserRole.GUEST
        assert invitation.issuer_id == owner.id
        assert invitation.used_at is None
        assert invitation.expires_at == ctx.now + timedelta(hours=24)

    async def test_custom_expiry(self, session, admin, ctx_for):
        ctx = ctx_for(admin)
        expires_at = ctx.now + timedelta(hours=3)

        invitation = await invitations.create_table_invitation(session, ctx, '3', expires_at=expires_at)
        assert invitation.expires_at == expires_at

    async def test_one_active_invitation_per_table(self, session, owner, table_invitation, ctx_for):
        with pytest.raises(TableAlreadyInvited) as exc:
            await invitations.create_table_invitation(session, ctx_for(owner), '5')

        assert exc.value.status_code == 409
        assert exc.value.payload['existing_invitation']['token'] == table_invitation.token
        assert await count_invitations(session) == 1

    async def test_expired_invitation_does_not_block(self, session, owner, table_invitation, ctx_for):
        ctx = ctx_for(owner, now=table_invitation.expires_at + timedelta(minutes=1))

        fresh = await invitations.create_table_invitation(session, ctx, '5')
        assert fresh.token != table_invitation.token

    async def test_concurrent_creation_keeps_earliest(self, session, session_maker, owner, ctx_for, monkeypatch):
        """The later of two racing creations withdraws itself."""
        ctx = ctx_for(owner)
        real_find = invitations.find_active_table_invitation
        raced = []

        async def racing_find(db, table_number, now, created_before_id=None):
            if not raced:
                raced.append(True)
                async with session_maker() as other:
                    other.add(TableInvitation(
                        issuer_id=owner.id,
                        token='b' * 64,
                        role=UserRole.GUEST,
                        table_number=table_number,
                        expires_at=now + timedelta(hours=24),
                    ))
                    await other.commit()
                return None
            return await real_find(db, table_number, now, created_before_id=created_before_id)

        monkeypatch.setattr(invitations, 'find_active_table_invitation', racing_find)

        with pytest.raises(TableAlreadyInvited) as exc:
            await invitations.create_table_invitation(session, ctx, '8')

        assert exc.value.payload['existing_invitation']['token'] == 'b' * 64
        remaining = await session.execute(select(UserInvitation.token))
        assert [row[0] for row in remaining] == ['b' * 64]

    async def test_staff_cannot_create(self, session, staff, ctx_for):
        with pytest.raises(Unauthorized):
            await invitations.create_table_invitation(session, ctx_for(staff), '1')

    async def test_table_number_validation(self, session, owner, ctx_for):
        with pytest.raises(TableNumberRequired):
            await invitations.create_table_invitation(session, ctx_for(owner), '   ')

        with pytest.raises(TableNumberTooLong):
            await invitations.create_table_invitation(session, ctx_for(owner), 'X' * 11)


class TestAccountInvitation:
    """Tests for create_account_invitation."""

    async def test_provisions_user(self, session, admin, ctx_for):
        ctx = ctx_for(admin)
        invitation = await invitations.create_account_invitation(
            session, ctx, name='Robin', email='robin@test.com', role=UserRole.SHOP_OWNER, phone='5550100'
        )

        assert isinstance(invitation, AccountInvitation)
        assert invitation.expires_at == ctx.now + timedelta(days=7)
        invitee = await session.get(User, invitation.invitee_id)
        assert invitee.email == 'robin@test.com'
        assert invitee.role == UserRole.SHOP_OWNER

    async def test_only_admin(self, session, owner, ctx_for):
        with pytest.raises(Unauthorized):
            await invitations.create_account_invitation(
                session, ctx_for(owner), name='Robin', email='robin@test.com', role=UserRole.STAFF
            )

    async def test_guest_role_rejected(self, session, admin, ctx_for):
        with pytest.raises(ValidationFailed):
            await invitations.create_account_invitation(
                session, ctx_for(admin), name='Robin', email='robin@test.com', role=UserRole.GUEST
            )

    async def test_duplicate_email(self, session, admin, customer, ctx_for):
        with pytest.raises(Conflict):
            await invitations.create_account_invitation(
                session, ctx_for(admin), name='Again', email=customer.email, role=UserRole.USER
            )


class TestInvitationQueries:
    """Tests for listing and lookup."""

    async def test_list_and_get(self, session, staff, table_invitation, ctx_for):
        found = await invitations.list_invitations(session, ctx_for(staff))
        assert [i.token for i in found] == [table_invitation.token]

        fetched = await invitations.get_invitation(session, ctx_for(staff), table_invitation.token)
        assert fetched.id == table_invitation.id

    async def test_customers_cannot_list(self, session, customer, ctx_for):
        with pytest.raises(Unauthorized):
            await invitations.list_invitations(session, ctx_for(customer))

    async def test_get_unknown(self, session, staff, ctx_for):
        with pytest.raises(InvitationNotFound):
            await invitations.get_invitation(session, ctx_for(staff), 'missing')

    async def test_table_listing_only_active(self, session, staff, table_invitation, ctx_for):
        assert len(await invitations.list_table_invitations(session, ctx_for(staff), '5')) == 1
        assert await invitations.list_table_invitations(session, ctx_for(staff), '6') == []

        ctx = ctx_for(staff, now=table_invitation.expires_at + timedelta(seconds=1))
        assert await invitations.list_table_invitations(session, ctx, '5') == []

    async def test_table_invitation_url(self, table_invitation):
        url = urlparse(invitations.invitation_url(table_invitation))

        assert url.path == '/guest-login'
        assert parse_qs(url.query) == {'token': [table_invitation.token], 'table': ['5']}

    async def test_account_invitation_url(self, session, admin, ctx_for):
        invitation = await invitations.create_account_invitation(
            session, ctx_for(admin), name='Robin', email='robin@test.com', role=UserRole.STAFF
        )
        assert invitations.invitation_url(invitation).endswith(f'/invitation/{invitation.token}')


class TestInvitationRemoval:
    """Tests for revoke, bulk revoke and cleanup."""

    async def test_revoke(self, session, owner, table_invitation, ctx_for):
        table_number = await invitations.revoke(session, ctx_for(owner), table_invitation.token)

        assert table_number == '5'
        assert await count_invitations(session) == 0

    async def test_revoke_frees_the_table(self, session, owner, table_invitation, ctx_for):
        await invitations.revoke(session, ctx_for(owner), table_invitation.token)

        again = await invitations.create_table_invitation(session, ctx_for(owner), '5')
        assert again.table_number == '5'

    async def test_staff_cannot_revoke(self, session, staff, table_invitation, ctx_for):
        with pytest.raises(Unauthorized):
            await invitations.revoke(session, ctx_for(staff), table_invitation.token)

    async def test_bulk_revoke(self, session, admin, owner, ctx_for):
        tokens = [
            (await invitations.create_table_invitation(session, ctx_for(owner), str(n))).token
            for n in range(1, 4)
        ]

        deleted = await invitations.bulk_revoke(session, ctx_for(admin), tokens[:2] + ['unknown'])

        assert deleted == 2
        assert await count_invitations(session) == 1

    async def test_bulk_revoke_admin_only(self, session, owner, table_invitation, ctx_for):
        with pytest.raises(Unauthorized):
            await invitations.bulk_revoke(session, ctx_for(owner), [table_invitation.token])

    async def test_cleanup_removes_only_expired(self, session, admin, owner, table_invitation, ctx_for):
        ctx = ctx_for(owner)
        await invitations.create_table_invitation(session, ctx, '6', expires_at=ctx.now + timedelta(days=3))

        later = ctx_for(admin, now=ctx.now + timedelta(days=2))
        deleted = await invitations.cleanup_expired(session, later)

        assert deleted == 1
        assert await count_invitations(session) == 1
