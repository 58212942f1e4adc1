"""Tests for order commit, payment settlement and order history."""

from decimal import Decimal

import pytest

from conftest import ScriptedCheckoutUI, assert_money, sign
from storefront.document_store import CARTS, ORDERS
from storefront.exceptions import (
    CheckoutStateError,
    GatewayUnavailableError,
    OrderStateError,
    PaymentCancelledError,
    PaymentDeclinedError,
    PaymentGatewayError,
    PaymentStatusUncertainError,
    PermissionDeniedError,
    StoreUnavailableError,
    ValidationError,
)
from storefront.models import (
    CurrentUser,
    OrderStatus,
    PaymentMethod,
    PaymentOutcome,
    PaymentStatus,
    Totals,
)
from storefront.order_service import receipt_for


def cart_ids(store):
    return set(store.collections.get(CARTS, {}))


class TestCashOnDelivery:
    def test_scenario_order(self, ready_session, orchestrator, order_service, store, user, scenario_cart):
        draft = orchestrator.build_draft(ready_session(PaymentMethod.COD))

        result = order_service.commit(draft, user)

        order = order_service.get_order(result.order_id)
        assert order.status == OrderStatus.PROCESSING
        assert order.payment.status == PaymentStatus.PENDING
        assert order.payment.method == PaymentMethod.COD
        assert_money(order.subtotal, 1150)
        assert_money(order.tax, 207)
        assert_money(order.shipping, 0)
        assert_money(order.total, 1357)
        assert cart_ids(store) == set()
        assert result.cart_cleared is True

    def test_order_snapshots_items_and_address(self, ready_session, orchestrator, order_service, user, address):
        draft = orchestrator.build_draft(ready_session(PaymentMethod.COD))
        order = order_service.get_order(order_service.commit(draft, user).order_id)

        first, second = order.items
        assert (first.product_id, first.name, first.quantity, first.size) == ("prod-a", "Cotton Tee", 2, "M")
        assert first.image == "https://img.example/a.jpg"
        assert (second.price, second.size, second.image) == (Decimal("150"), "Standard", None)
        assert order.address.id == address.id
        assert order.address.pincode == "560001"

    def test_only_committed_entries_are_removed(
        self, ready_session, orchestrator, order_service, cart_service, store, user, scenario_cart
    ):
        draft = orchestrator.build_draft(ready_session(PaymentMethod.COD))
        late_entry = cart_service.add_entry(user.uid, "prod-a", 1, "L")

        result = order_service.commit(draft, user)

        assert len(store.collections[ORDERS]) == 1
        assert order_service.get_order(result.order_id).status == OrderStatus.PROCESSING
        assert cart_ids(store) == {late_entry.id}

    def test_store_failure_aborts_before_cart_changes(
        self, ready_session, orchestrator, order_service, store, user, scenario_cart
    ):
        draft = orchestrator.build_draft(ready_session(PaymentMethod.COD))
        store.fail_on.add("insert")

        with pytest.raises(StoreUnavailableError):
            order_service.commit(draft, user)

        assert store.collections.get(ORDERS, {}) == {}
        assert cart_ids(store) == {e.id for e in scenario_cart}

    def test_cart_clear_failure_keeps_order(
        self, ready_session, orchestrator, order_service, store, user, scenario_cart
    ):
        draft = orchestrator.build_draft(ready_session(PaymentMethod.COD))
        store.fail_on.add("delete_many")

        result = order_service.commit(draft, user)

        assert result.cart_cleared is False
        assert order_service.get_order(result.order_id).status == OrderStatus.PROCESSING
        assert cart_ids(store) == {e.id for e in scenario_cart}

    def test_totals_recomputed_at_commit(self, ready_session, orchestrator, order_service, user):
        draft = orchestrator.build_draft(ready_session(PaymentMethod.COD))
        stale = draft.model_copy(update={"totals": Totals(subtotal=Decimal("1"), total=Decimal("1"))})

        result = order_service.commit(stale, user)

        assert_money(result.totals.total, 1357)
        assert_money(order_service.get_order(result.order_id).total, 1357)

    def test_draft_of_another_user(self, ready_session, orchestrator, order_service):
        draft = orchestrator.build_draft(ready_session(PaymentMethod.COD))
        with pytest.raises(PermissionDeniedError):
            order_service.commit(draft, CurrentUser(uid="someone-else"))


class TestOnlineCommit:
    def test_creates_pending_order_and_gateway_order(
        self, ready_session, orchestrator, order_service, gateway, store, user, scenario_cart
    ):
        draft = orchestrator.build_draft(ready_session(PaymentMethod.ONLINE))

        result = order_service.commit(draft, user)

        order = order_service.get_order(result.order_id)
        assert order.status == OrderStatus.PENDING_PAYMENT
        assert order.payment.status == PaymentStatus.PENDING
        assert order.payment.gateway_order_id == result.handoff.gateway_order_id
        assert result.handoff.amount == 135700
        assert result.handoff.currency == "INR"
        assert result.handoff.contact == "9876543210"

        created = gateway.orders[0]
        assert created["order"].receipt == receipt_for(order.id)
        assert created["notes"]["order_id"] == order.id
        # Cart is only cleared after payment
        assert cart_ids(store) == {e.id for e in scenario_cart}

    def test_requires_email(self, ready_session, orchestrator, order_service, store, user):
        draft = orchestrator.build_draft(ready_session(PaymentMethod.ONLINE))
        with pytest.raises(ValidationError, match="email"):
            order_service.commit(draft, CurrentUser(uid=user.uid))
        assert store.collections.get(ORDERS, {}) == {}

    def test_gateway_rejection_marks_order_failed(
        self, ready_session, orchestrator, order_service, gateway, store, user, scenario_cart
    ):
        draft = orchestrator.build_draft(ready_session(PaymentMethod.ONLINE))
        gateway.create_error = PaymentGatewayError("Amount exceeds maximum")

        with pytest.raises(PaymentGatewayError) as exc_info:
            order_service.commit(draft, user)

        order = order_service.get_order(exc_info.value.order_id)
        assert order.status == OrderStatus.PAYMENT_FAILED
        assert order.payment.error == "Amount exceeds maximum"
        assert cart_ids(store) == {e.id for e in scenario_cart}

    def test_gateway_timeout_leaves_order_pending(
        self, ready_session, orchestrator, order_service, gateway, user
    ):
        draft = orchestrator.build_draft(ready_session(PaymentMethod.ONLINE))
        gateway.create_error = GatewayUnavailableError("timed out")

        with pytest.raises(PaymentStatusUncertainError, match="check order history") as exc_info:
            order_service.commit(draft, user)

        order = order_service.get_order(exc_info.value.order_id)
        assert order.status == OrderStatus.PENDING_PAYMENT

    def test_store_failure_after_gateway_order_is_uncertain(
        self, ready_session, orchestrator, order_service, gateway, store, user, scenario_cart
    ):
        draft = orchestrator.build_draft(ready_session(PaymentMethod.ONLINE))
        store.fail_on.add("update")

        with pytest.raises(PaymentStatusUncertainError) as exc_info:
            order_service.commit(draft, user)

        store.fail_on.clear()
        order = order_service.get_order(exc_info.value.order_id)
        assert order.status == OrderStatus.PENDING_PAYMENT
        assert order.payment.gateway_order_id is None
        assert len(store.collections[ORDERS]) == 1
        assert len(gateway.orders) == 1
        assert cart_ids(store) == {e.id for e in scenario_cart}

    def test_gateway_rejection_reported_when_order_cannot_be_marked(
        self, ready_session, orchestrator, order_service, gateway, store, user
    ):
        draft = orchestrator.build_draft(ready_session(PaymentMethod.ONLINE))
        gateway.create_error = PaymentGatewayError("Amount exceeds maximum")
        store.fail_on.add("update")

        with pytest.raises(PaymentGatewayError) as exc_info:
            order_service.commit(draft, user)

        assert exc_info.value.order_id in store.collections[ORDERS]


class TestSettlement:
    @pytest.fixture
    def pending(self, ready_session, orchestrator, order_service, user):
        draft = orchestrator.build_draft(ready_session(PaymentMethod.ONLINE))
        return order_service.commit(draft, user)

    def test_verified_success(self, pending, order_service, store, user):
        gateway_order_id = pending.handoff.gateway_order_id
        outcome = PaymentOutcome(
            status="success",
            payment_id="pay_42",
            signature=sign(gateway_order_id, "pay_42")
        )

        result = order_service.settle(pending.order_id, outcome, user)

        order = order_service.get_order(pending.order_id)
        assert result.status == OrderStatus.PROCESSING
        assert order.payment.status == PaymentStatus.COMPLETED
        assert order.payment.id == "pay_42"
        assert cart_ids(store) == set()

    def test_bad_signature_fails_payment(self, pending, order_service, store, user, scenario_cart):
        outcome = PaymentOutcome(status="success", payment_id="pay_42", signature="forged")

        result = order_service.settle(pending.order_id, outcome, user)

        assert result.status == OrderStatus.PAYMENT_FAILED
        assert result.error == "Payment verification failed"
        assert cart_ids(store) == {e.id for e in scenario_cart}

    def test_cancellation_preserves_cart(self, pending, order_service, store, user, scenario_cart):
        result = order_service.settle(pending.order_id, PaymentOutcome(status="cancelled"), user)

        order = order_service.get_order(pending.order_id)
        assert order.status == OrderStatus.PAYMENT_FAILED
        assert order.payment.status == PaymentStatus.FAILED
        assert order.payment.error == "Payment cancelled by user"
        assert result.cart_cleared is False
        assert cart_ids(store) == {e.id for e in scenario_cart}

    def test_gateway_failure_message_kept(self, pending, order_service, user):
        outcome = PaymentOutcome(status="failed", error="Card declined by issuer")
        result = order_service.settle(pending.order_id, outcome, user)
        assert order_service.get_order(pending.order_id).payment.error == "Card declined by issuer"
        assert result.error == "Card declined by issuer"

    def test_settled_order_cannot_be_settled_again(self, pending, order_service, user):
        order_service.settle(pending.order_id, PaymentOutcome(status="cancelled"), user)
        with pytest.raises(OrderStateError):
            order_service.settle(pending.order_id, PaymentOutcome(status="cancelled"), user)

    def test_cod_orders_are_not_settled(self, ready_session, orchestrator, order_service, user):
        draft = orchestrator.build_draft(ready_session(PaymentMethod.COD))
        result = order_service.commit(draft, user)
        with pytest.raises(OrderStateError):
            order_service.settle(result.order_id, PaymentOutcome(status="cancelled"), user)

    def test_other_users_order(self, pending, order_service):
        with pytest.raises(PermissionDeniedError):
            order_service.settle(pending.order_id, PaymentOutcome(status="cancelled"), CurrentUser(uid="x"))


class TestPayOnline:
    def test_success_clears_cart(self, ready_session, orchestrator, order_service, store, user):
        draft = orchestrator.build_draft(ready_session(PaymentMethod.ONLINE))
        checkout_ui = ScriptedCheckoutUI()

        result = order_service.pay_online(draft, user, checkout_ui)

        assert result.payment_status == PaymentStatus.COMPLETED
        assert checkout_ui.handoffs[0].email == user.email
        assert cart_ids(store) == set()

    def test_user_cancels(self, ready_session, orchestrator, order_service, store, user, scenario_cart):
        draft = orchestrator.build_draft(ready_session(PaymentMethod.ONLINE))

        result = order_service.pay_online(draft, user, ScriptedCheckoutUI(error=PaymentCancelledError()))

        assert order_service.get_order(result.order_id).status == OrderStatus.PAYMENT_FAILED
        assert cart_ids(store) == {e.id for e in scenario_cart}

    def test_gateway_declines(self, ready_session, orchestrator, order_service, user):
        draft = orchestrator.build_draft(ready_session(PaymentMethod.ONLINE))

        result = order_service.pay_online(
            draft, user, ScriptedCheckoutUI(error=PaymentDeclinedError("Insufficient funds"))
        )

        assert result.error == "Insufficient funds"

    def test_lost_connection_is_uncertain(self, ready_session, orchestrator, order_service, store, user, scenario_cart):
        draft = orchestrator.build_draft(ready_session(PaymentMethod.ONLINE))

        with pytest.raises(PaymentStatusUncertainError) as exc_info:
            order_service.pay_online(draft, user, ScriptedCheckoutUI(error=GatewayUnavailableError("reset")))

        assert order_service.get_order(exc_info.value.order_id).status == OrderStatus.PENDING_PAYMENT
        assert cart_ids(store) == {e.id for e in scenario_cart}

    def test_requires_online_draft(self, ready_session, orchestrator, order_service, user):
        draft = orchestrator.build_draft(ready_session(PaymentMethod.COD))
        with pytest.raises(CheckoutStateError):
            order_service.pay_online(draft, user, ScriptedCheckoutUI())


class TestHistoryAndFulfillment:
    @pytest.fixture
    def placed(self, ready_session, orchestrator, order_service, user):
        draft = orchestrator.build_draft(ready_session(PaymentMethod.COD))
        return order_service.commit(draft, user)

    def test_list_orders_newest_first(self, placed, order_service, store, user):
        store.collections[ORDERS][placed.order_id]["created_at"] = "2026-01-01T00:00:00+00:00"
        newer = dict(store.collections[ORDERS][placed.order_id], created_at="2026-02-01T00:00:00+00:00")
        store.put(ORDERS, "orders-newer", newer)

        orders = order_service.list_orders(user.uid)

        assert [o.id for o in orders] == ["orders-newer", placed.order_id]
        assert order_service.list_orders("someone-else") == []

    def test_admin_ships_order(self, placed, order_service):
        order = order_service.update_status(placed.order_id, OrderStatus.SHIPPED)
        assert order.status == OrderStatus.SHIPPED
        assert order_service.get_order(placed.order_id).status == OrderStatus.SHIPPED

    def test_payment_statuses_not_settable(self, placed, order_service):
        with pytest.raises(ValidationError):
            order_service.update_status(placed.order_id, OrderStatus.PAYMENT_FAILED)

    def test_unpaid_order_cannot_ship(self, ready_session, orchestrator, order_service, user):
        draft = orchestrator.build_draft(ready_session(PaymentMethod.ONLINE))
        pending = order_service.commit(draft, user)
        with pytest.raises(OrderStateError):
            order_service.update_status(pending.order_id, OrderStatus.SHIPPED)
        assert order_service.update_status(pending.order_id, OrderStatus.CANCELLED).status == OrderStatus.CANCELLED
