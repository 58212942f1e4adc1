"""
Order commit, payment settlement and order history.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from pydantic import ValidationError as ModelValidationError

from storefront.config import Config
from storefront.document_store import DocumentStore, CARTS, ORDERS
from storefront.exceptions import (
    CheckoutStateError,
    GatewayUnavailableError,
    OrderNotFoundError,
    OrderStateError,
    PaymentCancelledError,
    PaymentDeclinedError,
    PaymentGatewayError,
    PaymentStatusUncertainError,
    PermissionDeniedError,
    StoreUnavailableError,
    ValidationError,
)
from storefront.middleware import hash_identifier
from storefront.models import (
    Address,
    AddressSnapshot,
    CommitResult,
    CurrentUser,
    FULFILLMENT_STATUSES,
    Order,
    OrderDraft,
    OrderItem,
    OrderStatus,
    PaymentHandoff,
    PaymentInfo,
    PaymentMethod,
    PaymentOutcome,
    PaymentStatus,
    SettlementResult,
    Totals,
)
from storefront.payment_gateway import CheckoutUI, PaymentGateway
from storefront.pricing import calculate_totals, to_minor_units

logger = logging.getLogger(__name__)

TOTALS_TOLERANCE = Decimal("0.01")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def receipt_for(order_id: str) -> str:
    """Gateway receipt reference for an order (gateway limit is 40 chars)"""
    return f"order_{order_id.replace('-', '')}"[:40]


def order_items_from(draft: OrderDraft) -> List[OrderItem]:
    items = []
    for line in draft.line_items:
        product = line.product
        items.append(OrderItem(
            product_id=line.entry.product_id,
            name=product.name if product else "Unknown Product",
            price=line.unit_price,
            quantity=line.entry.quantity,
            size=line.entry.selected_size or "Standard",
            image=product.images[0] if product and product.images else None
        ))
    return items


def address_snapshot(address: Address) -> AddressSnapshot:
    return AddressSnapshot(
        id=address.id,
        name=address.name,
        street=address.street,
        city=address.city,
        state=address.state,
        pincode=address.pincode,
        phone=address.phone,
        type=address.type or "Home"
    )


class OrderService:
    """Service for turning drafts into orders and settling their payment"""

    def __init__(
        self,
        store: DocumentStore,
        gateway: Optional[PaymentGateway] = None,
        currency: Optional[str] = None
    ):
        self.store = store
        self.gateway = gateway
        self.currency = currency or Config.PAYMENT_CURRENCY

    # Commit

    def _authoritative_totals(self, draft: OrderDraft) -> Totals:
        """Recompute totals from the draft's line items; these always win"""
        totals = calculate_totals(draft.line_items)
        if abs(totals.total - draft.totals.total) > TOTALS_TOLERANCE:
            logger.warning(
                "Draft totals differ from recomputed totals; using recomputed values",
                extra={
                    "draft_total": str(draft.totals.total),
                    "recomputed_total": str(totals.total)
                }
            )
        return totals

    def _insert_order(
        self,
        draft: OrderDraft,
        user: CurrentUser,
        totals: Totals,
        status: OrderStatus
    ) -> Order:
        created_at = _now()
        order_data = {
            "user_id": draft.user_id,
            "user_email": user.email,
            "items": [item.model_dump(mode="json") for item in order_items_from(draft)],
            "address": address_snapshot(draft.address).model_dump(mode="json"),
            "payment": PaymentInfo(method=draft.payment_method).model_dump(mode="json"),
            "subtotal": str(totals.subtotal),
            "tax": str(totals.tax),
            "shipping": str(totals.shipping),
            "total": str(totals.total),
            "status": status.value,
            "committed_entry_ids": draft.committed_entry_ids,
            "created_at": created_at.isoformat(),
        }
        order_id = self.store.insert(ORDERS, order_data)
        logger.info(
            "Order created",
            extra={
                "order_id": order_id,
                "hashed_user_id": hash_identifier(draft.user_id),
                "status": status.value,
                "total": str(totals.total)
            }
        )
        return Order.model_validate({**order_data, "id": order_id})

    def _clear_committed_entries(self, order: Order) -> bool:
        """
        Delete the cart entries the order was built from.

        Entries added after checkout began are left alone. A failure here
        leaves stale entries behind; it is logged, not rolled back.
        """
        try:
            self.store.delete_many(CARTS, order.committed_entry_ids)
            return True
        except StoreUnavailableError as e:
            logger.error(
                "Order placed but committed cart entries were not cleared",
                extra={
                    "order_id": order.id,
                    "entry_ids": order.committed_entry_ids,
                    "error": str(e)
                }
            )
            return False

    def commit(self, draft: OrderDraft, user: CurrentUser) -> CommitResult:
        """
        Persist an order for a Ready draft.

        Cash on delivery completes here. Online payment returns a hand-off
        for the gateway's checkout; call settle() with its outcome.

        Raises:
            StoreUnavailableError: Order could not be stored; nothing was written
            ValidationError: Online payment without an email on the account
            PaymentGatewayError: Gateway rejected the order; the order is marked failed
            PaymentStatusUncertainError: Gateway gave no answer, or its order id
                could not be recorded; the order stays pending
        """
        if draft.user_id != user.uid:
            raise PermissionDeniedError("Draft belongs to another user")

        totals = self._authoritative_totals(draft)

        if draft.payment_method == PaymentMethod.COD:
            return self._commit_cash_on_delivery(draft, user, totals)
        return self._commit_online(draft, user, totals)

    def _commit_cash_on_delivery(self, draft: OrderDraft, user: CurrentUser, totals: Totals) -> CommitResult:
        order = self._insert_order(draft, user, totals, OrderStatus.PROCESSING)
        cart_cleared = self._clear_committed_entries(order)

        return CommitResult(
            order_id=order.id,
            status=order.status,
            payment_status=order.payment.status,
            totals=totals,
            cart_cleared=cart_cleared,
            message="Order placed successfully."
        )

    def _commit_online(self, draft: OrderDraft, user: CurrentUser, totals: Totals) -> CommitResult:
        if not user.email:
            raise ValidationError("Your account does not have an email address")
        if self.gateway is None:
            raise PaymentGatewayError("Online payment is not available")

        order = self._insert_order(draft, user, totals, OrderStatus.PENDING_PAYMENT)
        amount = to_minor_units(totals.total)

        try:
            gateway_order = self.gateway.create_order(
                amount=amount,
                currency=self.currency,
                receipt=receipt_for(order.id),
                notes={"order_id": order.id, "user_id": user.uid}
            )
        except PaymentGatewayError as e:
            e.order_id = order.id
            try:
                self._mark_failed(order, e.message)
            except StoreUnavailableError as store_error:
                logger.error(
                    "Gateway rejected order but it could not be marked failed",
                    extra={"order_id": order.id, "error": str(store_error)}
                )
            raise
        except GatewayUnavailableError as e:
            logger.error(
                "No answer from gateway while creating payment order",
                extra={"order_id": order.id, "error": str(e)}
            )
            raise PaymentStatusUncertainError(order.id)

        # Both the order and the gateway order exist from here on
        try:
            self.store.update(ORDERS, order.id, {
                "payment.gateway_order_id": gateway_order.id,
                "updated_at": _now().isoformat(),
            })
        except StoreUnavailableError as e:
            logger.error(
                "Gateway order created but not recorded on the order",
                extra={
                    "order_id": order.id,
                    "gateway_order_id": gateway_order.id,
                    "error": str(e)
                }
            )
            raise PaymentStatusUncertainError(order.id)

        handoff = PaymentHandoff(
            order_id=order.id,
            gateway_order_id=gateway_order.id,
            amount=amount,
            currency=self.currency,
            key_id=self.gateway.key_id,
            email=user.email,
            contact=draft.address.phone,
            customer_name=draft.address.name
        )

        return CommitResult(
            order_id=order.id,
            status=order.status,
            payment_status=order.payment.status,
            totals=totals,
            handoff=handoff,
            message="Complete the payment to place your order."
        )

    # Settlement

    def _mark_paid(self, order: Order, payment_id: str) -> SettlementResult:
        try:
            self.store.update(ORDERS, order.id, {
                "payment.status": PaymentStatus.COMPLETED.value,
                "payment.id": payment_id,
                "payment.error": None,
                "status": OrderStatus.PROCESSING.value,
                "updated_at": _now().isoformat(),
            })
        except StoreUnavailableError:
            logger.error(
                "Payment captured but order could not be updated",
                extra={"order_id": order.id, "payment_id": payment_id}
            )
            raise

        cart_cleared = self._clear_committed_entries(order)
        logger.info("Payment completed", extra={"order_id": order.id, "payment_id": payment_id})

        return SettlementResult(
            order_id=order.id,
            status=OrderStatus.PROCESSING,
            payment_status=PaymentStatus.COMPLETED,
            cart_cleared=cart_cleared,
            message="Payment successful. Your order has been placed."
        )

    def _mark_failed(self, order: Order, error: str) -> SettlementResult:
        self.store.update(ORDERS, order.id, {
            "payment.status": PaymentStatus.FAILED.value,
            "payment.error": error,
            "status": OrderStatus.PAYMENT_FAILED.value,
            "updated_at": _now().isoformat(),
        })
        logger.info("Payment failed", extra={"order_id": order.id, "error": error})

        return SettlementResult(
            order_id=order.id,
            status=OrderStatus.PAYMENT_FAILED,
            payment_status=PaymentStatus.FAILED,
            cart_cleared=False,
            error=error,
            message="Your payment was not successful. Please try again or choose a different payment method."
        )

    def settle(
        self,
        order_id: str,
        outcome: PaymentOutcome,
        user: Optional[CurrentUser] = None
    ) -> SettlementResult:
        """
        Apply the gateway checkout's outcome to a pending order.

        A success is only accepted once its signature verifies. Failures and
        cancellations mark the order failed and leave the cart as it was.
        """
        order = self.get_order(order_id, user)

        if order.payment.method != PaymentMethod.ONLINE or order.status != OrderStatus.PENDING_PAYMENT:
            raise OrderStateError(order.id, order.status.value)

        if outcome.status == "success":
            verified = self.gateway is not None and self.gateway.verify_signature(
                outcome.payment_id or "",
                order.payment.gateway_order_id or "",
                outcome.signature or ""
            )
            if verified:
                return self._mark_paid(order, outcome.payment_id)
            logger.warning("Payment signature did not verify", extra={"order_id": order.id})
            return self._mark_failed(order, "Payment verification failed")

        if outcome.status == "cancelled":
            return self._mark_failed(order, outcome.error or "Payment cancelled by user")

        return self._mark_failed(order, outcome.error or "Payment failed")

    def pay_online(self, draft: OrderDraft, user: CurrentUser, checkout_ui: CheckoutUI) -> SettlementResult:
        """Commit an online-payment draft, run the gateway checkout and settle"""
        if draft.payment_method != PaymentMethod.ONLINE:
            raise CheckoutStateError("Draft is not set up for online payment")

        result = self.commit(draft, user)
        handoff = result.handoff

        try:
            outcome = checkout_ui.open(handoff)
        except PaymentCancelledError as e:
            outcome = PaymentOutcome(status="cancelled", error=e.message)
        except PaymentDeclinedError as e:
            outcome = PaymentOutcome(status="failed", error=e.message)
        except GatewayUnavailableError as e:
            logger.error(
                "Lost contact with gateway during checkout",
                extra={"order_id": handoff.order_id, "error": str(e)}
            )
            raise PaymentStatusUncertainError(handoff.order_id)

        return self.settle(handoff.order_id, outcome, user)

    # History and fulfillment

    def _load(self, order_id: str) -> Order:
        doc = self.store.get(ORDERS, order_id)
        if doc is None:
            raise OrderNotFoundError(order_id)
        return Order.model_validate(doc)

    def _load_many(self, docs: List[dict]) -> List[Order]:
        orders = []
        for doc in docs:
            try:
                orders.append(Order.model_validate(doc))
            except ModelValidationError as e:
                logger.warning(f"Failed to parse order {doc.get('id')}: {e}")
        orders.sort(key=lambda order: order.created_at, reverse=True)
        return orders

    def get_order(self, order_id: str, user: Optional[CurrentUser] = None) -> Order:
        order = self._load(order_id)
        if user is not None and order.user_id != user.uid:
            raise PermissionDeniedError(f"Order {order_id} belongs to another user")
        return order

    def list_orders(self, user_id: str) -> List[Order]:
        """A user's orders, newest first"""
        return self._load_many(self.store.query(ORDERS, "user_id", user_id))

    def list_all_orders(self) -> List[Order]:
        return self._load_many(self.store.list_all(ORDERS))

    def update_status(self, order_id: str, status: OrderStatus) -> Order:
        """Admin fulfillment update (Processing, Shipped, Delivered, Cancelled)"""
        status = OrderStatus(status)
        if status not in FULFILLMENT_STATUSES:
            raise ValidationError(f"Status '{status.value}' is set by payment settlement only")

        order = self._load(order_id)
        unpaid = order.status in (OrderStatus.PENDING_PAYMENT, OrderStatus.PAYMENT_FAILED)
        if unpaid and status != OrderStatus.CANCELLED:
            raise OrderStateError(order.id, order.status.value)

        updated_at = _now()
        self.store.update(ORDERS, order_id, {"status": status.value, "updated_at": updated_at.isoformat()})
        return order.model_copy(update={"status": status, "updated_at": updated_at})
