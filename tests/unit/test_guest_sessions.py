"""
Unit tests for invitation redemption and guest session expiry.
"""

import pytest
from datetime import timedelta

from sqlalchemy import func, select

from cafe_orders.exceptions import (
    InvitationInvalid,
    InvitationNotFound,
    SessionExpired,
    TableNumberRequired,
    TableNumberTooLong,
)
from cafe_orders.models import (
    AccessToken,
    GuestSession,
    Order,
    OrderStatus,
    TableInvitation,
    User,
    UserRole,
    utcnow,
)
from cafe_orders.services import credentials, guest_sessions, invitations, orders
from cafe_orders.services.pricing import ItemRequest


async def count_guests(session):
    result = await session.execute(select(func.count(User.id)).where(User.role == UserRole.GUEST))
    return result.scalar()


async def count_tokens(session):
    result = await session.execute(select(func.count(AccessToken.id)))
    return result.scalar()


class TestPreview:
    """Tests for preview_invitation."""

    async def test_preview_describes_invitation(self, session, table_invitation, owner):
        preview = await guest_sessions.preview_invitation(session, table_invitation.token, utcnow())

        assert preview.table_number == '5'
        assert preview.issuer_name == owner.name
        assert preview.role == UserRole.GUEST
        assert preview.restaurant_name

    async def test_preview_unknown_token(self, session):
        with pytest.raises(InvitationNotFound):
            await guest_sessions.preview_invitation(session, 'nope', utcnow())

    async def test_preview_expired(self, session, table_invitation):
        with pytest.raises(InvitationInvalid):
            await guest_sessions.preview_invitation(session, table_invitation.token, utcnow() + timedelta(days=2))


class TestRedeemTableInvitation:
    """Tests for redeeming table QR invitations."""

    async def test_creates_guest_account_and_session(self, session, table_invitation):
        now = utcnow()
        result = await guest_sessions.redeem_invitation(session, table_invitation.token, now)

        assert result.user.role == UserRole.GUEST
        assert result.user.table_number == '5'
        assert result.user.name == 'Table 5'
        assert result.user.guest_expires_at == now + timedelta(hours=12)
        assert result.table_number == '5'
        assert result.session_id
        assert result.expires_at == now + timedelta(hours=2)
        assert result.expires_in == 7200

        token = await credentials.authenticate(session, result.token)
        assert token is not None
        assert token.user_id == result.user.id
        assert token.expires_at == result.expires_at
        assert 'guest:order' in token.abilities
        assert f'expires_at:{int(result.expires_at.timestamp())}' in token.abilities

        guest_session = await session.execute(
            select(GuestSession).where(GuestSession.session_id == result.session_id)
        )
        assert guest_session.scalar_one().token_id == token.id

    async def test_invitation_stays_usable(self, session, table_invitation):
        await guest_sessions.redeem_invitation(session, table_invitation.token, utcnow())

        refreshed = await invitations.find_invitation(session, table_invitation.token)
        assert refreshed.used_at is None

    async def test_diners_share_the_table_account(self, session, table_invitation):
        first = await guest_sessions.redeem_invitation(session, table_invitation.token, utcnow())
        second = await guest_sessions.redeem_invitation(session, table_invitation.token, utcnow())

        assert first.user.id == second.user.id
        assert first.session_id != second.session_id
        assert first.token != second.token
        assert await count_guests(session) == 1

    async def test_racing_redemptions_resolve_to_one_account(
        self, session, session_maker, table_invitation, monkeypatch
    ):
        """The loser of the account-creation race reuses the winner's account."""
        now = utcnow()
        real_find = guest_sessions.find_guest_user
        winner = {}

        async def racing_find(db, table_number):
            if not winner:
                # Another diner creates the account between our lookup and our insert
                async with session_maker() as other:
                    winner['user_id'] = (await real_find(other, table_number) or await _create(other)).id
                return None
            return await real_find(db, table_number)

        async def _create(other):
            user = User(
                name='Table 5',
                email='winner@guest.local',
                role=UserRole.GUEST,
                table_number='5',
                guest_expires_at=now + timedelta(hours=12),
            )
            other.add(user)
            await other.commit()
            return user

        monkeypatch.setattr(guest_sessions, 'find_guest_user', racing_find)

        result = await guest_sessions.redeem_invitation(session, table_invitation.token, now)

        assert result.user.id == winner['user_id']
        assert await count_guests(session) == 1

    async def test_expired_invitation_creates_nothing(self, session, table_invitation):
        with pytest.raises(InvitationInvalid):
            await guest_sessions.redeem_invitation(
                session, table_invitation.token, utcnow() + timedelta(hours=25)
            )

        assert await count_guests(session) == 0
        assert await count_tokens(session) == 0

    async def test_unknown_token(self, session):
        with pytest.raises(InvitationNotFound):
            await guest_sessions.redeem_invitation(session, 'f' * 64, utcnow())

    async def test_expired_account_is_replaced(self, session, table_invitation):
        now = utcnow()
        first = await guest_sessions.redeem_invitation(session, table_invitation.token, now)
        first_id = first.user.id

        later = now + timedelta(hours=13)
        table_invitation.expires_at = later + timedelta(hours=1)
        await session.commit()

        second = await guest_sessions.redeem_invitation(session, table_invitation.token, later)

        assert second.user.id != first_id
        assert second.user.table_number == '5'
        retired = await session.get(User, first_id)
        assert retired.table_number is None

    async def test_table_number_from_request_when_invitation_has_none(self, session, owner):
        invitation = TableInvitation(
            issuer_id=owner.id,
            token='a' * 64,
            role=UserRole.GUEST,
            table_number=None,
            expires_at=utcnow() + timedelta(hours=1),
        )
        session.add(invitation)
        await session.commit()

        with pytest.raises(TableNumberRequired):
            await guest_sessions.redeem_invitation(session, invitation.token, utcnow())

        with pytest.raises(TableNumberTooLong):
            await guest_sessions.redeem_invitation(session, invitation.token, utcnow(), table_number='12345678901')

        result = await guest_sessions.redeem_invitation(session, invitation.token, utcnow(), table_number=' 7 ')
        assert result.table_number == '7'

    async def test_invitation_table_number_wins(self, session, table_invitation):
        result = await guest_sessions.redeem_invitation(session, table_invitation.token, utcnow(), table_number='9')
        assert result.table_number == '5'


class TestRedeemAccountInvitation:
    """Tests for single-use account invitations."""

    async def test_signs_in_invitee_once(self, session, admin, ctx_for):
        invitation = await invitations.create_account_invitation(
            session, ctx_for(admin), name='Robin', email='robin@test.com', role=UserRole.STAFF
        )
        token = invitation.token
        invitee_id = invitation.invitee_id

        result = await guest_sessions.redeem_invitation(session, token, utcnow())

        assert result.user.id == invitee_id
        assert result.user.role == UserRole.STAFF
        assert result.session_id is None
        assert result.expires_in is None

        credential = await credentials.authenticate(session, result.token)
        assert credential.expires_at is None

        with pytest.raises(InvitationInvalid):
            await guest_sessions.redeem_invitation(session, token, utcnow())

    async def test_used_invitation_cannot_be_previewed(self, session, admin, ctx_for):
        invitation = await invitations.create_account_invitation(
            session, ctx_for(admin), name='Robin', email='robin@test.com', role=UserRole.USER
        )
        token = invitation.token
        await guest_sessions.redeem_invitation(session, token, utcnow())

        with pytest.raises(InvitationInvalid):
            await guest_sessions.preview_invitation(session, token, utcnow())


class TestEnforceGuestExpiry:
    """Tests for enforce_guest_expiry."""

    async def test_live_session_passes(self, session, guest):
        token = await credentials.authenticate(session, guest.token)
        await guest_sessions.enforce_guest_expiry(session, token, token.user, utcnow())

    async def test_expired_session_is_revoked(self, session, guest):
        token = await credentials.authenticate(session, guest.token)
        token_id = token.id

        with pytest.raises(SessionExpired) as exc:
            await guest_sessions.enforce_guest_expiry(
                session, token, token.user, utcnow() + timedelta(hours=2, seconds=1)
            )

        assert exc.value.status_code == 401
        assert exc.value.payload == {'session_expired': True}
        assert await session.get(AccessToken, token_id) is None
        assert await credentials.authenticate(session, guest.token) is None

    async def test_ability_marker_is_honoured(self, session, guest):
        token = await credentials.authenticate(session, guest.token)
        token.expires_at = None
        past = utcnow() - timedelta(minutes=1)
        token.abilities = credentials.GUEST_ABILITIES + [credentials.expiry_ability(past)]
        await session.commit()

        with pytest.raises(SessionExpired):
            await guest_sessions.enforce_guest_expiry(session, token, token.user, utcnow())

    async def test_expired_account_ends_session(self, session, guest):
        token = await credentials.authenticate(session, guest.token)
        token.user.guest_expires_at = utcnow() - timedelta(minutes=1)
        await session.commit()

        with pytest.raises(SessionExpired):
            await guest_sessions.enforce_guest_expiry(session, token, token.user, utcnow())

    async def test_staff_tokens_are_not_checked(self, session, staff):
        token, _ = await credentials.issue_token(session, staff, name='test', expires_at=utcnow() - timedelta(days=1))
        await session.commit()

        await guest_sessions.enforce_guest_expiry(session, token, staff, utcnow())


class TestCleanup:
    """Tests for cleanup_expired_sessions."""

    async def test_purges_expired_guest_state(self, session, catalog, guest, customer, ctx_for):
        order = await orders.place_order(
            session, guest.ctx, [ItemRequest(product_size_id=catalog.latte_medium.id, quantity=1)]
        )
        customer_order = await orders.place_order(
            session, ctx_for(customer), [ItemRequest(product_size_id=catalog.latte_medium.id, quantity=1)]
        )
        order_id, customer_order_id = order.id, customer_order.id
        guest_id = guest.user.id

        report = await guest_sessions.cleanup_expired_sessions(session, utcnow() + timedelta(hours=13))

        assert report.tokens == 1
        assert report.orders == 1
        assert report.accounts == 1

        remaining = await session.execute(select(Order.id))
        assert [row[0] for row in remaining] == [customer_order_id]
        assert order_id != customer_order_id
        assert await session.scalar(select(func.count(GuestSession.id))) == 0

        retired = await session.execute(select(User.table_number).where(User.id == guest_id))
        assert retired.scalar_one() is None

    async def test_keeps_live_sessions_and_served_orders(self, session, catalog, guest):
        order = await orders.place_order(
            session, guest.ctx, [ItemRequest(product_size_id=catalog.latte_medium.id, quantity=1)]
        )
        order.status = OrderStatus.COMPLETED
        await session.commit()

        report = await guest_sessions.cleanup_expired_sessions(session, utcnow() + timedelta(minutes=30))

        assert report.tokens == 0
        assert report.orders == 0
        assert await count_tokens(session) == 1


class TestSessionExpired:
    """Tests for credential expiry and abilities."""

    def test_structured_expiry_wins_over_marker(self):
        now = utcnow()
        token = AccessToken(
            expires_at=now + timedelta(hours=1),
            abilities=credentials.GUEST_ABILITIES + [credentials.expiry_ability(now - timedelta(hours=1))],
        )

        assert guest_sessions.session_expired(token, now) is False
        assert guest_sessions.session_expired(token, now + timedelta(hours=1)) is True

    def test_marker_used_without_structured_expiry(self):
        now = utcnow()
        token = AccessToken(abilities=[credentials.expiry_ability(now + timedelta(minutes=5))])

        assert guest_sessions.session_expired(token, now) is False
        assert guest_sessions.session_expired(token, now + timedelta(minutes=6)) is True

    def test_no_expiry_never_expires(self):
        token = AccessToken(abilities=['*'])
        assert guest_sessions.session_expired(token, utcnow() + timedelta(days=365)) is False

    def test_abilities(self):
        guest_token = AccessToken(abilities=list(credentials.GUEST_ABILITIES))
        wildcard = AccessToken(abilities=['*'])

        assert guest_token.can('guest:order')
        assert not guest_token.can('admin:invite')
        assert wildcard.can('guest:order')
