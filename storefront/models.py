"""
Pydantic models for cart, checkout and order records, requests, and responses.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PaymentMethod(str, Enum):
    ONLINE = "online"
    COD = "cod"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class OrderStatus(str, Enum):
    PENDING_PAYMENT = "Pending Payment"
    PROCESSING = "Processing"
    PAYMENT_FAILED = "Payment Failed"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


# Statuses an admin may move an order to
FULFILLMENT_STATUSES = frozenset({
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
})


# Stored records

class Product(BaseModel):
    """Catalog product (read-only to checkout)"""
    id: str = Field(..., description="Product identifier")
    name: str = Field("Unknown Product", description="Display name")
    price: Decimal = Field(..., ge=0, description="List price")
    offer_price: Optional[Decimal] = Field(None, ge=0, description="Discounted price, if any")
    images: List[str] = Field(default_factory=list)
    stock_by_size: Dict[str, int] = Field(default_factory=dict, description="Units in stock per size")
    category_id: Optional[str] = None

    @field_validator("images", mode="before")
    @classmethod
    def coerce_images(cls, v):
        # cjson encodes an empty array as {}
        if not v:
            return []
        return v

    @field_validator("stock_by_size", mode="before")
    @classmethod
    def coerce_stock(cls, v):
        if not v:
            return {}
        return v

    @property
    def effective_price(self) -> Decimal:
        if self.offer_price is not None:
            return self.offer_price
        return self.price


class CartEntry(BaseModel):
    """One line of a user's cart as stored"""
    id: str = Field(..., description="Cart entry identifier")
    user_id: str = Field(..., description="Owning user")
    product_id: str = Field(..., description="Product identifier")
    quantity: int = Field(..., ge=1, description="Item quantity")
    selected_size: Optional[str] = Field(None, description="Selected size")
    unit_price_snapshot: Decimal = Field(..., description="Effective price at time of add")
    created_at: Optional[datetime] = None


class Address(BaseModel):
    """Stored delivery address"""
    id: str
    user_id: str
    name: str
    phone: str
    street: str
    city: str
    state: str
    pincode: str
    type: str = "Home"
    is_default: bool = False


class UserProfile(BaseModel):
    uid: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    role: str = "customer"


class CurrentUser(BaseModel):
    """Identity supplied by the identity provider"""
    uid: str
    email: Optional[str] = None


# Checkout working state

class LineItem(BaseModel):
    """A cart entry paired with its resolved product"""
    entry: CartEntry
    product: Optional[Product] = None

    @property
    def is_resolved(self) -> bool:
        return self.product is not None

    @property
    def unit_price(self) -> Decimal:
        if self.product is None:
            return Decimal("0")
        return self.product.effective_price

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.entry.quantity


class Totals(BaseModel):
    subtotal: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    shipping: Decimal = Decimal("0")
    total: Decimal = Decimal("0")


class OrderDraft(BaseModel):
    """Immutable, unpersisted order aggregate built in the Ready state"""
    model_config = ConfigDict(frozen=True)

    user_id: str
    line_items: Tuple[LineItem, ...]
    address: Address
    totals: Totals
    payment_method: PaymentMethod

    @property
    def committed_entry_ids(self) -> List[str]:
        return [item.entry.id for item in self.line_items]


# Orders

class OrderItem(BaseModel):
    product_id: str
    name: str
    price: Decimal
    quantity: int
    size: str = "Standard"
    image: Optional[str] = None


class AddressSnapshot(BaseModel):
    id: str
    name: str
    street: str
    city: str
    state: str
    pincode: str
    phone: str
    type: str = "Home"


class PaymentInfo(BaseModel):
    method: PaymentMethod
    status: PaymentStatus = PaymentStatus.PENDING
    id: Optional[str] = None
    error: Optional[str] = None
    gateway_order_id: Optional[str] = None


class Order(BaseModel):
    id: str
    user_id: str
    user_email: Optional[str] = None
    items: List[OrderItem]
    address: AddressSnapshot
    payment: PaymentInfo
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    total: Decimal
    status: OrderStatus
    committed_entry_ids: List[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: Optional[datetime] = None

    @field_validator("items", "committed_entry_ids", mode="before")
    @classmethod
    def coerce_lists(cls, v):
        if not v:
            return []
        return v


# Payment hand-off and results

class PaymentHandoff(BaseModel):
    """What the client needs to open the gateway's checkout"""
    order_id: str
    gateway_order_id: str
    amount: int = Field(..., description="Amount in the gateway's minor currency unit")
    currency: str
    key_id: str = ""
    email: Optional[str] = None
    contact: Optional[str] = None
    customer_name: Optional[str] = None


class PaymentOutcome(BaseModel):
    """Result reported by the gateway's checkout"""
    status: Literal["success", "failed", "cancelled"]
    payment_id: Optional[str] = None
    signature: Optional[str] = None
    error: Optional[str] = None


class GatewayOrder(BaseModel):
    id: str
    amount: int
    currency: str
    receipt: Optional[str] = None
    status: Optional[str] = None


class CommitResult(BaseModel):
    order_id: str
    status: OrderStatus
    payment_status: PaymentStatus
    totals: Totals
    cart_cleared: bool = False
    handoff: Optional[PaymentHandoff] = None
    message: str


class SettlementResult(BaseModel):
    order_id: str
    status: OrderStatus
    payment_status: PaymentStatus
    cart_cleared: bool = False
    error: Optional[str] = None
    message: str


# Requests

class CartItemRequest(BaseModel):
    """Request model for adding items to the cart"""
    product_id: str = Field(..., description="Product identifier")
    quantity: int = Field(1, ge=1, description="Item quantity")
    selected_size: Optional[str] = Field(None, description="Selected size")


class QuantityUpdateRequest(BaseModel):
    quantity: int = Field(..., description="New quantity; 0 or less removes the entry")


class AddressRequest(BaseModel):
    name: str = ""
    phone: str = ""
    street: str = ""
    city: str = ""
    state: str = ""
    pincode: str = ""
    type: str = "Home"
    is_default: bool = False


class SelectAddressRequest(BaseModel):
    address_id: str


class PaymentMethodRequest(BaseModel):
    method: PaymentMethod


class OrderStatusRequest(BaseModel):
    status: OrderStatus


# Responses

class CartLineResponse(BaseModel):
    entry_id: str
    product_id: str
    name: str
    image: Optional[str] = None
    selected_size: Optional[str] = None
    quantity: int
    unit_price: Decimal
    line_total: Decimal
    discount_percentage: int = 0


class CartResponse(BaseModel):
    """Response model for cart retrieval"""
    items: List[CartLineResponse] = Field(default_factory=list)
    totals: Totals = Field(default_factory=Totals)


class OrderPaymentResponse(BaseModel):
    method: PaymentMethod
    status: PaymentStatus
    id: Optional[str] = None
    error: Optional[str] = None


class OrderResponse(BaseModel):
    """An order as shown to its customer"""
    id: str
    items: List[OrderItem]
    address: AddressSnapshot
    payment: OrderPaymentResponse
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    total: Decimal
    status: OrderStatus
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_order(cls, order: Order) -> "OrderResponse":
        return cls.model_validate(order.model_dump())


class CheckoutSessionResponse(BaseModel):
    session_id: str
    state: str
    needs_address: bool
    addresses: List[Address] = Field(default_factory=list)
    selected_address_id: Optional[str] = None
    totals: Optional[Totals] = None
    payment_method: Optional[PaymentMethod] = None
