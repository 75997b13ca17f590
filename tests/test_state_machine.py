"""Tests for order status transitions, cancellation and editing."""

import itertools

import pytest

from conftest import ADMIN, ALICE, BOB, read_stock
from shopfront import orders
from shopfront.errors import (
    CancellationNotAllowed,
    Forbidden,
    IllegalTransition,
    OrderNotEditable,
    OrderNotFound,
    ValidationFailed,
)
from shopfront.models import OrderStatus
from shopfront.orders import OrderLine

LEGAL = {
    (OrderStatus.PENDING, OrderStatus.PROCESSING),
    (OrderStatus.PENDING, OrderStatus.DELIVERED),
    (OrderStatus.PROCESSING, OrderStatus.SHIPPED),
    (OrderStatus.PROCESSING, OrderStatus.DELIVERED),
    (OrderStatus.SHIPPED, OrderStatus.DELIVERED),
}

# shortest legal path from Pending to each status
PATHS = {
    OrderStatus.PENDING: [],
    OrderStatus.PROCESSING: [OrderStatus.PROCESSING],
    OrderStatus.SHIPPED: [OrderStatus.PROCESSING, OrderStatus.SHIPPED],
    OrderStatus.DELIVERED: [OrderStatus.DELIVERED],
}


@pytest.fixture
def order_in(db, make_product):
    """Place an order for Alice and drive it to the requested status."""

    def _make(status: OrderStatus = OrderStatus.PENDING, quantity: int = 2):
        p = make_product(stock=10)
        order = orders.place_order(db, ALICE.user_id, [OrderLine(p.id, quantity)])
        for step in PATHS[status]:
            orders.transition_status(db, order.id, ADMIN, step)
        return orders.load_order(db, order.id), p

    return _make


class TestTransitionTable:
    @pytest.mark.parametrize("current,target", list(itertools.product(OrderStatus, OrderStatus)))
    def test_table_matches(self, current, target):
        assert orders.can_transition(current, target) == ((current, target) in LEGAL)

    def test_delivered_is_terminal(self):
        assert orders.TRANSITIONS[OrderStatus.DELIVERED] == frozenset()

    def test_accepts_plain_strings(self):
        assert orders.can_transition("Pending", "Processing")
        assert not orders.can_transition("Shipped", "Pending")


class TestTransitionStatus:
    def test_full_forward_chain(self, db, order_in):
        order, _ = order_in()

        for step in (OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED):
            order = orders.transition_status(db, order.id, ADMIN, step)
            assert order.status == step.value

    def test_shipped_rejects_pending(self, db, order_in):
        order, _ = order_in(OrderStatus.SHIPPED)

        with pytest.raises(IllegalTransition) as exc:
            orders.transition_status(db, order.id, ADMIN, "Pending")

        assert exc.value.current == "Shipped"
        assert exc.value.requested == "Pending"
        assert orders.load_order(db, order.id).status == "Shipped"

    @pytest.mark.parametrize(
        "current,target",
        [pair for pair in itertools.product(OrderStatus, OrderStatus) if pair not in LEGAL],
    )
    def test_illegal_pairs_leave_status_unchanged(self, db, order_in, current, target):
        order, _ = order_in(current)

        with pytest.raises(IllegalTransition):
            orders.transition_status(db, order.id, ADMIN, target)

        assert orders.load_order(db, order.id).status == current.value

    def test_clients_cannot_transition(self, db, order_in):
        order, _ = order_in()

        with pytest.raises(Forbidden):
            orders.transition_status(db, order.id, ALICE, OrderStatus.PROCESSING)

        assert orders.load_order(db, order.id).status == "Pending"

    def test_unknown_status(self, db, order_in):
        order, _ = order_in()

        with pytest.raises(ValidationFailed):
            orders.transition_status(db, order.id, ADMIN, "Lost")

    def test_missing_order(self, db):
        with pytest.raises(OrderNotFound):
            orders.transition_status(db, "00000000-0000-0000-0000-000000000000", ADMIN, "Processing")

    def test_cancelled_order_cannot_move(self, db, order_in):
        order, _ = order_in()
        orders.cancel_order(db, order.id, ALICE)

        with pytest.raises(IllegalTransition):
            orders.transition_status(db, order.id, ADMIN, OrderStatus.PROCESSING)


class TestCancel:
    @pytest.mark.parametrize("status", [OrderStatus.PENDING, OrderStatus.PROCESSING])
    def test_owner_can_cancel(self, db, order_in, status):
        order, _ = order_in(status)

        cancelled = orders.cancel_order(db, order.id, ALICE)

        assert cancelled.is_cancelled
        assert cancelled.status == status.value

    @pytest.mark.parametrize("status", [OrderStatus.SHIPPED, OrderStatus.DELIVERED])
    def test_late_statuses_cannot_be_cancelled(self, db, order_in, status):
        order, _ = order_in(status)

        with pytest.raises(CancellationNotAllowed):
            orders.cancel_order(db, order.id, ADMIN)

        assert not orders.load_order(db, order.id).is_cancelled

    def test_admin_can_cancel_any_order(self, db, order_in):
        order, _ = order_in()

        assert orders.cancel_order(db, order.id, ADMIN).is_cancelled

    def test_other_client_sees_not_found(self, db, order_in):
        order, _ = order_in()

        with pytest.raises(OrderNotFound):
            orders.cancel_order(db, order.id, BOB)

    def test_cannot_cancel_twice(self, db, order_in):
        order, _ = order_in()
        orders.cancel_order(db, order.id, ALICE)

        with pytest.raises(CancellationNotAllowed):
            orders.cancel_order(db, order.id, ALICE)

    def test_cancel_restocks_by_default(self, db, order_in):
        order, p = order_in(quantity=4)
        assert read_stock(p.id) == 6

        orders.cancel_order(db, order.id, ALICE)

        assert read_stock(p.id) == 10

    def test_cancel_without_restock(self, db, order_in):
        order, p = order_in(quantity=4)

        orders.cancel_order(db, order.id, ALICE, restock=False)

        assert read_stock(p.id) == 6

    def test_cancelled_order_keeps_total(self, db, order_in):
        order, _ = order_in(quantity=3)

        cancelled = orders.cancel_order(db, order.id, ALICE)

        assert cancelled.total_amount == order.total_amount


class TestUpdateOrder:
    def test_pending_order_address_can_change(self, db, order_in):
        order, _ = order_in()

        updated = orders.update_order(db, order.id, ALICE, {"delivery_address": "221B Baker Street"})

        assert updated.delivery_address == "221B Baker Street"

    @pytest.mark.parametrize("status", [OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED])
    def test_non_pending_orders_are_frozen(self, db, order_in, status):
        order, _ = order_in(status)

        with pytest.raises(OrderNotEditable):
            orders.update_order(db, order.id, ADMIN, {"delivery_address": "elsewhere"})

    def test_cancelled_order_is_frozen(self, db, order_in):
        order, _ = order_in()
        orders.cancel_order(db, order.id, ALICE)

        with pytest.raises(OrderNotEditable):
            orders.update_order(db, order.id, ALICE, {"delivery_address": "elsewhere"})

    def test_other_client_sees_not_found(self, db, order_in):
        order, _ = order_in()

        with pytest.raises(OrderNotFound):
            orders.update_order(db, order.id, BOB, {"delivery_address": "mine now"})

    def test_empty_changes_keep_address(self, db, make_product):
        p = make_product()
        order = orders.place_order(db, ALICE.user_id, [OrderLine(p.id, 1)], delivery_address="1 Main St")

        updated = orders.update_order(db, order.id, ALICE, {})

        assert updated.delivery_address == "1 Main St"

    def test_address_can_be_cleared_explicitly(self, db, order_in):
        order, _ = order_in()
        orders.update_order(db, order.id, ALICE, {"delivery_address": "1 Main St"})

        assert orders.update_order(db, order.id, ALICE, {"delivery_address": None}).delivery_address is None

    def test_items_cannot_be_edited(self, db, order_in):
        order, _ = order_in()

        with pytest.raises(ValidationFailed):
            orders.update_order(db, order.id, ALICE, {"total_amount": 1})


class TestQueries:
    def test_get_own_order(self, db, order_in):
        order, _ = order_in()

        assert orders.get_order(db, order.id, ALICE).id == order.id
        assert orders.get_order(db, order.id, ADMIN).id == order.id

    def test_cross_tenant_read_is_not_found(self, db, order_in):
        order, _ = order_in()

        with pytest.raises(OrderNotFound):
            orders.get_order(db, order.id, BOB)

    def test_list_scopes_clients_to_their_orders(self, db, order_in, make_product):
        mine, _ = order_in()
        p = make_product(name="Other")
        orders.place_order(db, BOB.user_id, [OrderLine(p.id, 1)])

        assert [o.id for o in orders.list_orders(db, ALICE)] == [mine.id]
        assert [o.id for o in orders.list_orders(db, ALICE, user_id="bob")] == [mine.id]
        assert len(orders.list_orders(db, ADMIN)) == 2
        assert len(orders.list_orders(db, ADMIN, user_id="bob")) == 1

    def test_list_filters_by_status(self, db, order_in):
        order_in()
        processing, _ = order_in(OrderStatus.PROCESSING)

        assert [o.id for o in orders.list_orders(db, ADMIN, status="Processing")] == [processing.id]

    def test_stats(self, db, order_in):
        order_in(quantity=1)
        order_in(OrderStatus.PROCESSING, quantity=2)
        cancelled, _ = order_in(quantity=3)
        orders.cancel_order(db, cancelled.id, ALICE)

        stats = orders.order_stats(db, ADMIN)

        assert stats["total"] == 2
        assert stats["total_revenue"] == 3000
        assert stats["average_order_value"] == 1500
        assert stats["recent_orders"] == 2
        assert stats["cancelled"] == 1
        assert {s["status"]: s["count"] for s in stats["by_status"]} == {"Pending": 1, "Processing": 1}

    def test_stats_admin_only(self, db):
        with pytest.raises(Forbidden):
            orders.order_stats(db, ALICE)
