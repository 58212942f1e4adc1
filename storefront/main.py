"""
FastAPI application for the storefront cart, checkout and orders.
"""
import time
import logging
import threading
from typing import Callable, List, Optional
from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from storefront.address_service import AddressService
from storefront.cart_service import CartAggregator, CartService, resolved
from storefront.catalog import ProductCatalog, discount_percentage
from storefront.checkout_service import CheckoutOrchestrator, CheckoutSession, CheckoutSessions
from storefront.config import Config
from storefront.document_store import DocumentStore, RedisDocumentStore
from storefront.exceptions import (
    CheckoutInProgressError,
    CheckoutStateError,
    GatewayUnavailableError,
    NotFoundError,
    OrderStateError,
    PaymentGatewayError,
    PaymentStatusUncertainError,
    PermissionDeniedError,
    StoreUnavailableError,
    ValidationError,
)
from storefront.middleware import RequestLoggingMiddleware
from storefront.models import (
    Address,
    AddressRequest,
    CartItemRequest,
    CartLineResponse,
    CartResponse,
    CheckoutSessionResponse,
    CommitResult,
    CurrentUser,
    Order,
    OrderResponse,
    OrderStatusRequest,
    PaymentMethodRequest,
    PaymentOutcome,
    QuantityUpdateRequest,
    SelectAddressRequest,
    SettlementResult,
    Totals,
)
from storefront.order_service import OrderService
from storefront.payment_gateway import PaymentGateway, RazorpayGateway
from storefront.pricing import calculate_totals
from storefront.profile_service import ProfileService
from storefront.redis_client import get_redis_client
from storefront.totals_cache import TotalsCache

logger = logging.getLogger(__name__)


class Storefront:
    """Wires the storefront services around one store, cache and gateway"""

    def __init__(
        self,
        store: DocumentStore,
        cache_client,
        gateway: Optional[PaymentGateway] = None,
        ping: Optional[Callable[[], bool]] = None
    ):
        self.store = store
        self.ping = ping or (lambda: True)
        self.catalog = ProductCatalog(store)
        self.totals_cache = TotalsCache(cache_client)
        self.carts = CartService(store, self.catalog, self.totals_cache)
        self.aggregator = CartAggregator(self.carts, self.catalog)
        self.addresses = AddressService(store)
        self.profiles = ProfileService(store)
        self.checkout = CheckoutOrchestrator(self.addresses, self.aggregator, self.totals_cache)
        self.sessions = CheckoutSessions()
        self.orders = OrderService(store, gateway)


_storefront: Optional[Storefront] = None
_storefront_lock = threading.Lock()

def get_storefront() -> Storefront:
    """Get or create the Redis-backed storefront (singleton)"""
    global _storefront
    with _storefront_lock:
        if _storefront is None:
            redis_client = get_redis_client()
            _storefront = Storefront(
                store=RedisDocumentStore(redis_client),
                cache_client=redis_client,
                gateway=RazorpayGateway(),
                ping=redis_client.ping
            )
    return _storefront


async def current_user(
    user_id: Optional[str] = Header(None, alias="X-User-ID", description="User identifier"),
    email: Optional[str] = Header(None, alias="X-User-Email", description="User email")
) -> CurrentUser:
    """Identity supplied by the identity provider in front of this service"""
    if not user_id or not user_id.strip():
        raise HTTPException(status_code=401, detail="Authentication required")
    return CurrentUser(uid=user_id.strip(), email=email)


# Initialize FastAPI app
app = FastAPI(
    title="Storefront API",
    description="Cart, checkout and order service for the mobile storefront",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestLoggingMiddleware)


@app.get("/health")
def health_check():
    """
    Health check endpoint for the load balancer.
    Always returns HTTP 200 if the application is running and reports store
    connectivity separately.
    """
    store_status = "healthy"
    store_latency_ms = None

    try:
        storefront = get_storefront_dependency()
        ping_start = time.time()
        if not storefront.ping():
            store_status = "unhealthy"
        store_latency_ms = round((time.time() - ping_start) * 1000, 2)
    except StoreUnavailableError:
        store_status = "unhealthy"

    return JSONResponse(
        status_code=200,
        content={
            "status": "healthy",
            "service": Config.PROJECT_NAME,
            "store": {
                "status": store_status,
                "latency_ms": store_latency_ms
            },
            "timestamp": time.time()
        }
    )


def get_storefront_dependency() -> Storefront:
    """Resolve the storefront, honouring dependency overrides"""
    override = app.dependency_overrides.get(get_storefront)
    return override() if override else get_storefront()


# Cart endpoints

@app.get("/cart", response_model=CartResponse)
def get_cart(
    user: CurrentUser = Depends(current_user),
    storefront: Storefront = Depends(get_storefront)
):
    """Cart contents with current prices; entries for deleted products are hidden"""
    line_items = resolved(storefront.aggregator.aggregate(user.uid))

    lines = [
        CartLineResponse(
            entry_id=item.entry.id,
            product_id=item.entry.product_id,
            name=item.product.name,
            image=item.product.images[0] if item.product.images else None,
            selected_size=item.entry.selected_size,
            quantity=item.entry.quantity,
            unit_price=item.unit_price,
            line_total=item.line_total,
            discount_percentage=discount_percentage(item.product)
        )
        for item in line_items
    ]
    return CartResponse(items=lines, totals=calculate_totals(line_items))


@app.post("/cart/items", status_code=201)
def add_cart_item(
    request: CartItemRequest,
    user: CurrentUser = Depends(current_user),
    storefront: Storefront = Depends(get_storefront)
):
    """Add a product (with size and quantity) to the cart"""
    entry = storefront.carts.add_entry(
        user_id=user.uid,
        product_id=request.product_id,
        quantity=request.quantity,
        selected_size=request.selected_size
    )
    return {
        "success": True,
        "message": "Item added to cart",
        "entry": entry.model_dump(mode="json")
    }


@app.patch("/cart/items/{entry_id}")
def update_cart_item(
    entry_id: str,
    request: QuantityUpdateRequest,
    user: CurrentUser = Depends(current_user),
    storefront: Storefront = Depends(get_storefront)
):
    """Set an entry's quantity; zero removes it"""
    entry = storefront.carts.update_quantity(user.uid, entry_id, request.quantity)
    if entry is None:
        return {"success": True, "message": "Item removed from cart", "entry_id": entry_id}
    return {"success": True, "message": "Quantity updated", "entry": entry.model_dump(mode="json")}


@app.delete("/cart/items/{entry_id}")
def remove_cart_item(
    entry_id: str,
    user: CurrentUser = Depends(current_user),
    storefront: Storefront = Depends(get_storefront)
):
    """Remove item from cart"""
    storefront.carts.remove_entry(user.uid, entry_id)
    return {"success": True, "message": "Item removed from cart", "entry_id": entry_id}


# Address endpoints

@app.get("/addresses", response_model=List[Address])
def list_addresses(
    user: CurrentUser = Depends(current_user),
    storefront: Storefront = Depends(get_storefront)
):
    return storefront.addresses.list_addresses(user.uid)


@app.post("/addresses", response_model=Address, status_code=201)
def add_address(
    request: AddressRequest,
    user: CurrentUser = Depends(current_user),
    storefront: Storefront = Depends(get_storefront)
):
    return storefront.addresses.add_address(user.uid, request)


# Checkout endpoints

def _session_response(storefront: Storefront, session: CheckoutSession) -> CheckoutSessionResponse:
    return CheckoutSessionResponse(
        session_id=session.id,
        state=session.state.value,
        needs_address=session.needs_address,
        addresses=session.addresses,
        selected_address_id=session.address.id if session.address else None,
        totals=storefront.checkout.cached_totals(session),
        payment_method=session.payment_method
    )


@app.post("/checkout/sessions", response_model=CheckoutSessionResponse, status_code=201)
def start_checkout(
    user: CurrentUser = Depends(current_user),
    storefront: Storefront = Depends(get_storefront)
):
    """
    Start a checkout session.
    When the user has no stored address, needs_address is true and the
    client should create one before selecting it.
    """
    session = storefront.sessions.add(storefront.checkout.start(user))
    return _session_response(storefront, session)


@app.get("/checkout/sessions/{session_id}", response_model=CheckoutSessionResponse)
def get_checkout(
    session_id: str,
    user: CurrentUser = Depends(current_user),
    storefront: Storefront = Depends(get_storefront)
):
    session = storefront.sessions.get(session_id, user.uid)
    return _session_response(storefront, session)


@app.post("/checkout/sessions/{session_id}/address", response_model=CheckoutSessionResponse)
def select_checkout_address(
    session_id: str,
    request: SelectAddressRequest,
    user: CurrentUser = Depends(current_user),
    storefront: Storefront = Depends(get_storefront)
):
    session = storefront.sessions.get(session_id, user.uid)
    with session.in_flight():
        storefront.checkout.select_address(session, request.address_id)
    return _session_response(storefront, session)


@app.post("/checkout/sessions/{session_id}/totals", response_model=Totals)
def confirm_checkout_totals(
    session_id: str,
    user: CurrentUser = Depends(current_user),
    storefront: Storefront = Depends(get_storefront)
):
    session = storefront.sessions.get(session_id, user.uid)
    with session.in_flight():
        return storefront.checkout.confirm_totals(session)


@app.post("/checkout/sessions/{session_id}/payment-method", response_model=CheckoutSessionResponse)
def select_checkout_payment_method(
    session_id: str,
    request: PaymentMethodRequest,
    user: CurrentUser = Depends(current_user),
    storefront: Storefront = Depends(get_storefront)
):
    session = storefront.sessions.get(session_id, user.uid)
    with session.in_flight():
        storefront.checkout.select_payment_method(session, request.method)
    return _session_response(storefront, session)


@app.post("/checkout/sessions/{session_id}/commit", response_model=CommitResult)
def commit_checkout(
    session_id: str,
    user: CurrentUser = Depends(current_user),
    storefront: Storefront = Depends(get_storefront)
):
    """
    Place the order for a Ready session.
    Cash on delivery completes immediately; online payment returns the
    gateway hand-off for the client to open.
    """
    session = storefront.sessions.get(session_id, user.uid)

    if not user.email:
        profile = storefront.profiles.get_profile(user.uid)
        if profile is not None and profile.email:
            user = user.model_copy(update={"email": profile.email})

    with session.in_flight():
        draft = storefront.checkout.build_draft(session)
        try:
            result = storefront.orders.commit(draft, user)
        except (PaymentGatewayError, PaymentStatusUncertainError):
            # An order record exists; a retry has to start a new checkout
            session.committed = True
            storefront.sessions.discard(session.id)
            raise
        session.committed = True

    # Store and validation errors leave the session open: nothing was written
    storefront.sessions.discard(session.id)
    return result


# Order endpoints

@app.post("/orders/{order_id}/payment", response_model=SettlementResult)
def settle_order_payment(
    order_id: str,
    outcome: PaymentOutcome,
    user: CurrentUser = Depends(current_user),
    storefront: Storefront = Depends(get_storefront)
):
    """Report the gateway checkout's outcome for a pending order"""
    return storefront.orders.settle(order_id, outcome, user)


@app.get("/orders", response_model=List[OrderResponse])
def list_orders(
    user: CurrentUser = Depends(current_user),
    storefront: Storefront = Depends(get_storefront)
):
    return [OrderResponse.from_order(order) for order in storefront.orders.list_orders(user.uid)]


@app.get("/orders/{order_id}", response_model=OrderResponse)
def get_order(
    order_id: str,
    user: CurrentUser = Depends(current_user),
    storefront: Storefront = Depends(get_storefront)
):
    return OrderResponse.from_order(storefront.orders.get_order(order_id, user))


# Admin endpoints

def _require_admin(storefront: Storefront, user: CurrentUser) -> None:
    if not storefront.profiles.is_admin(user.uid):
        raise PermissionDeniedError("Admin access required")


@app.get("/admin/orders", response_model=List[Order])
def admin_list_orders(
    user: CurrentUser = Depends(current_user),
    storefront: Storefront = Depends(get_storefront)
):
    _require_admin(storefront, user)
    return storefront.orders.list_all_orders()


@app.patch("/admin/orders/{order_id}/status", response_model=Order)
def admin_update_order_status(
    order_id: str,
    request: OrderStatusRequest,
    user: CurrentUser = Depends(current_user),
    storefront: Storefront = Depends(get_storefront)
):
    _require_admin(storefront, user)
    return storefront.orders.update_status(order_id, request.status)


# Error handlers

@app.exception_handler(ValidationError)
async def validation_error_handler(request, exc):
    return JSONResponse(
        status_code=400,
        content={"error": "Validation error", "message": str(exc)}
    )


@app.exception_handler(NotFoundError)
async def not_found_handler(request, exc):
    return JSONResponse(
        status_code=404,
        content={"error": "Not found", "message": str(exc)}
    )


@app.exception_handler(PermissionDeniedError)
async def permission_denied_handler(request, exc):
    return JSONResponse(
        status_code=403,
        content={"error": "Forbidden", "message": str(exc)}
    )


@app.exception_handler(CheckoutStateError)
@app.exception_handler(CheckoutInProgressError)
@app.exception_handler(OrderStateError)
async def conflict_handler(request, exc):
    return JSONResponse(
        status_code=409,
        content={"error": "Conflict", "message": str(exc)}
    )


@app.exception_handler(PaymentGatewayError)
async def payment_gateway_error_handler(request, exc):
    return JSONResponse(
        status_code=402,
        content={"error": "Payment failed", "message": str(exc), "order_id": exc.order_id}
    )


@app.exception_handler(PaymentStatusUncertainError)
async def payment_uncertain_handler(request, exc):
    return JSONResponse(
        status_code=202,
        content={
            "error": "Payment status uncertain",
            "message": str(exc),
            "order_id": exc.order_id
        }
    )


@app.exception_handler(StoreUnavailableError)
@app.exception_handler(GatewayUnavailableError)
async def unavailable_handler(request, exc):
    return JSONResponse(
        status_code=503,
        content={"error": "Service unavailable", "message": "Please try again shortly", "retryable": True}
    )


# Generic exception handler for unhandled errors
@app.exception_handler(Exception)
async def generic_exception_handler(request, exc):
    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {exc}",
        exc_info=True
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": str(exc),
            "type": type(exc).__name__
        }
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=Config.APP_PORT)
