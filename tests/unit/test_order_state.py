"""
Unit tests for the order state machine and its notification side effects.
"""

import pytest
from datetime import timedelta

from sqlalchemy import select

from cafe_orders.exceptions import InvalidStatus, OrderNotFound, Unauthorized
from cafe_orders.models import Notification, NotificationType, OrderStatus
from cafe_orders.services import orders
from cafe_orders.services.notifications import dispatcher, on_status_changed
from cafe_orders.services.order_state import OrderStateMachine, get_state_machine
from cafe_orders.services.pricing import ItemRequest


@pytest.fixture
async def order(session, catalog, guest):
    return await orders.place_order(
        session,
        guest.ctx,
        [ItemRequest(product_size_id=catalog.latte_medium.id, quantity=1)],
    )


async def notifications_for(session, order_id):
    result = await session.execute(
        select(Notification).where(Notification.order_id == order_id).order_by(Notification.id)
    )
    return list(result.scalars().all())


class TestUpdateStatus:
    """Tests for OrderStateMachine.update_status."""

    async def test_change_notifies_owner_once(self, session, order, staff, ctx_for):
        updated = await get_state_machine().update_status(
            session, ctx_for(staff), order.id, 'ready_for_pickup'
        )

        assert updated.status == OrderStatus.READY_FOR_PICKUP

        rows = await notifications_for(session, order.id)
        assert len(rows) == 1
        assert rows[0].user_id == order.user_id
        assert rows[0].type == NotificationType.ORDER
        assert rows[0].title == 'Order Ready for Pickup!'
        assert order.order_number in rows[0].message
        assert 'ready for pickup' in rows[0].message
        assert rows[0].read is False

    async def test_same_status_is_silent_noop(self, session, order, staff, ctx_for):
        unchanged = await get_state_machine().update_status(session, ctx_for(staff), order.id, 'preparing')

        assert unchanged.status == OrderStatus.PREPARING
        assert await notifications_for(session, order.id) == []

    async def test_guest_cannot_update(self, session, order, guest):
        with pytest.raises(Unauthorized):
            await get_state_machine().update_status(session, guest.ctx, order.id, 'completed')

    async def test_customer_cannot_update(self, session, order, customer, ctx_for):
        with pytest.raises(Unauthorized) as exc:
            await get_state_machine().update_status(session, ctx_for(customer), order.id, 'completed')

        assert exc.value.status_code == 403

    @pytest.mark.parametrize('value', ['cancelled', 'READY', ''])
    async def test_unknown_status(self, session, order, staff, ctx_for, value):
        with pytest.raises(InvalidStatus):
            await get_state_machine().update_status(session, ctx_for(staff), order.id, value)

    async def test_missing_order(self, session, staff, ctx_for):
        with pytest.raises(OrderNotFound):
            await get_state_machine().update_status(session, ctx_for(staff), 999, 'completed')

    async def test_skipping_ahead_allowed_by_default(self, session, order, owner, ctx_for):
        updated = await get_state_machine().update_status(session, ctx_for(owner), order.id, 'completed')

        assert updated.status == OrderStatus.COMPLETED
        rows = await notifications_for(session, order.id)
        assert [r.title for r in rows] == ['Order Completed']

    async def test_forward_only_rejects_skips(self, session, order, staff, ctx_for):
        machine = OrderStateMachine(enforce_forward=True)

        with pytest.raises(InvalidStatus):
            await machine.update_status(session, ctx_for(staff), order.id, 'completed')

        updated = await machine.update_status(session, ctx_for(staff), order.id, 'ready_for_pickup')
        assert updated.status == OrderStatus.READY_FOR_PICKUP

    async def test_forward_only_rejects_going_back(self, session, order, staff, ctx_for):
        machine = OrderStateMachine(enforce_forward=True)
        await machine.update_status(session, ctx_for(staff), order.id, 'ready_for_pickup')

        with pytest.raises(InvalidStatus):
            await machine.update_status(session, ctx_for(staff), order.id, 'preparing')


class TestNotificationDispatch:
    """Tests for notification side effects."""

    async def test_repeat_within_window_is_deduplicated(self, session, order, staff, ctx_for):
        machine = get_state_machine()
        ctx = ctx_for(staff)

        await machine.update_status(session, ctx, order.id, 'ready_for_pickup')
        await machine.update_status(session, ctx, order.id, 'preparing')

        ctx.now = ctx.now + timedelta(seconds=30)
        await machine.update_status(session, ctx, order.id, 'ready_for_pickup')

        titles = [r.title for r in await notifications_for(session, order.id)]
        assert titles == ['Order Ready for Pickup!', 'Order Being Prepared']

    async def test_repeat_after_window_is_written(self, session, order, staff, ctx_for):
        machine = get_state_machine()
        ctx = ctx_for(staff)

        await machine.update_status(session, ctx, order.id, 'ready_for_pickup')
        await machine.update_status(session, ctx, order.id, 'preparing')

        ctx.now = ctx.now + timedelta(minutes=3)
        await machine.update_status(session, ctx, order.id, 'ready_for_pickup')

        rows = await notifications_for(session, order.id)
        assert len(rows) == 3

    async def test_failed_message_falls_back(self, session, order, staff, ctx_for, monkeypatch):
        order_id = order.id

        def broken(order_number, status):
            raise RuntimeError('template exploded')

        monkeypatch.setattr(dispatcher, 'status_message', broken)

        updated = await get_state_machine().update_status(session, ctx_for(staff), order_id, 'completed')

        assert updated.status == OrderStatus.COMPLETED
        rows = await notifications_for(session, order_id)
        assert len(rows) == 1
        assert rows[0].title == 'Order Status Updated'
        assert 'completed' in rows[0].message

    async def test_failing_listener_does_not_fail_update(self, session, order, staff, ctx_for):
        order_id = order.id

        async def broken_listener(session, event):
            raise RuntimeError('listener down')

        machine = OrderStateMachine()
        machine.subscribe(broken_listener)
        machine.subscribe(on_status_changed)

        updated = await machine.update_status(session, ctx_for(staff), order_id, 'ready_for_pickup')

        assert updated.status == OrderStatus.READY_FOR_PICKUP
        assert len(await notifications_for(session, order_id)) == 1

    async def test_listener_receives_event(self, session, order, staff, ctx_for):
        events = []

        async def record(session, event):
            events.append(event)

        machine = OrderStateMachine()
        machine.subscribe(record)
        await machine.update_status(session, ctx_for(staff), order.id, 'ready_for_pickup')

        assert len(events) == 1
        assert events[0].old_status == OrderStatus.PREPARING
        assert events[0].new_status == OrderStatus.READY_FOR_PICKUP
        assert events[0].actor.user_id == staff.id
