"""
Cart service for managing cart entries in the document store, and the
aggregator that pairs entries with their current products.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import ValidationError as ModelValidationError

from storefront.catalog import ProductCatalog
from storefront.config import Config
from storefront.document_store import DocumentStore, CARTS
from storefront.exceptions import (
    CartEntryNotFoundError,
    LimitExceededError,
    OutOfStockError,
    PermissionDeniedError,
    ValidationError,
)
from storefront.middleware import hash_identifier
from storefront.models import CartEntry, LineItem, Product
from storefront.totals_cache import TotalsCache

logger = logging.getLogger(__name__)


class CartService:
    """Service for cart entry operations"""

    def __init__(
        self,
        store: DocumentStore,
        catalog: ProductCatalog,
        totals_cache: Optional[TotalsCache] = None
    ):
        self.store = store
        self.catalog = catalog
        self.totals_cache = totals_cache

    def _invalidate_totals(self, user_id: str) -> None:
        if self.totals_cache is not None:
            self.totals_cache.invalidate(user_id)

    def _get_owned_entry(self, user_id: str, entry_id: str) -> CartEntry:
        doc = self.store.get(CARTS, entry_id)
        if doc is None:
            raise CartEntryNotFoundError(entry_id)
        entry = CartEntry.model_validate(doc)
        if entry.user_id != user_id:
            raise PermissionDeniedError(f"Cart entry {entry_id} belongs to another user")
        return entry

    def list_entries(self, user_id: str) -> List[CartEntry]:
        """Get a user's cart entries in store order"""
        entries = []
        for doc in self.store.query(CARTS, "user_id", user_id):
            try:
                entries.append(CartEntry.model_validate(doc))
            except ModelValidationError as e:
                # Skip invalid entries
                logger.warning(f"Failed to parse cart entry {doc.get('id')}: {e}")
        return entries

    def add_entry(
        self,
        user_id: str,
        product_id: str,
        quantity: int,
        selected_size: Optional[str] = None
    ) -> CartEntry:
        """
        Add a product to the cart as a new entry.

        The entry stores the product's effective price at the time of add.

        Raises:
            ValidationError: For a bad quantity or a missing size
            LimitExceededError: If quantity exceeds the per-item maximum
            ProductNotFoundError: If the product does not exist
            OutOfStockError: If the selected size lacks stock
        """
        if not user_id:
            raise ValidationError("User not authenticated")

        if quantity <= 0:
            raise ValidationError("Quantity must be greater than 0")

        if quantity > Config.MAX_QUANTITY_PER_ITEM:
            raise LimitExceededError(
                f"Quantity {quantity} exceeds maximum {Config.MAX_QUANTITY_PER_ITEM}"
            )

        product = self.catalog.require_product(product_id)

        if product.stock_by_size:
            if not selected_size:
                raise ValidationError("Please select a size")
            available = product.stock_by_size.get(selected_size, 0)
            if available < quantity:
                raise OutOfStockError(product_id, selected_size, available)

        entry_data = {
            "user_id": user_id,
            "product_id": product_id,
            "quantity": quantity,
            "selected_size": selected_size,
            "unit_price_snapshot": str(product.effective_price),
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        entry_id = self.store.insert(CARTS, entry_data)
        self._invalidate_totals(user_id)

        logger.info(
            "Cart entry added",
            extra={
                "hashed_user_id": hash_identifier(user_id),
                "product_id": product_id,
                "quantity": quantity
            }
        )
        return CartEntry.model_validate({**entry_data, "id": entry_id})

    def update_quantity(self, user_id: str, entry_id: str, quantity: int) -> Optional[CartEntry]:
        """
        Set an entry's quantity.

        A quantity of zero or less removes the entry instead.

        Returns:
            The updated entry, or None if it was removed
        """
        if quantity > Config.MAX_QUANTITY_PER_ITEM:
            raise LimitExceededError(
                f"Quantity {quantity} exceeds maximum {Config.MAX_QUANTITY_PER_ITEM}"
            )

        entry = self._get_owned_entry(user_id, entry_id)

        if quantity <= 0:
            self.store.delete(CARTS, entry_id)
            self._invalidate_totals(user_id)
            return None

        self.store.update(CARTS, entry_id, {"quantity": quantity})
        self._invalidate_totals(user_id)
        return entry.model_copy(update={"quantity": quantity})

    def change_quantity(self, user_id: str, entry_id: str, delta: int) -> Optional[CartEntry]:
        """Increment or decrement an entry's quantity"""
        entry = self._get_owned_entry(user_id, entry_id)
        return self.update_quantity(user_id, entry_id, entry.quantity + delta)

    def remove_entry(self, user_id: str, entry_id: str) -> bool:
        """Remove an entry from the cart"""
        self._get_owned_entry(user_id, entry_id)
        removed = self.store.delete(CARTS, entry_id)
        if removed:
            self._invalidate_totals(user_id)
        return removed


class CartAggregator:
    """Pairs a user's cart entries with their current product records"""

    def __init__(self, cart_service: CartService, catalog: ProductCatalog):
        self.cart_service = cart_service
        self.catalog = catalog

    def aggregate(self, user_id: str) -> List[LineItem]:
        """
        Build line items for every entry in the user's cart.

        Entries whose product no longer exists come back with product None.
        They are logged and left for the caller to filter; this is a data
        consistency problem, not a failure.
        """
        if not user_id:
            raise ValidationError("User id is required")

        entries = self.cart_service.list_entries(user_id)
        products: Dict[str, Optional[Product]] = {}
        line_items = []

        for entry in entries:
            if entry.product_id not in products:
                products[entry.product_id] = self.catalog.get_product(entry.product_id)
            product = products[entry.product_id]
            if product is None:
                logger.warning(
                    "Cart entry references a missing product",
                    extra={
                        "hashed_user_id": hash_identifier(user_id),
                        "entry_id": entry.id,
                        "product_id": entry.product_id
                    }
                )
            line_items.append(LineItem(entry=entry, product=product))

        return line_items


def resolved(line_items: List[LineItem]) -> List[LineItem]:
    """Drop line items whose product could not be found"""
    return [item for item in line_items if item.is_resolved]


class CartView:
    """
    In-memory cart state for one screen or request.

    Mutations are persisted first and applied to ``items`` only after the
    store confirms them. On failure the view is unchanged and the error
    propagates.
    """

    def __init__(self, user_id: str, cart_service: CartService, aggregator: CartAggregator):
        self.user_id = user_id
        self.cart_service = cart_service
        self.aggregator = aggregator
        self.items: List[LineItem] = []

    def refresh(self) -> List[LineItem]:
        self.items = resolved(self.aggregator.aggregate(self.user_id))
        return self.items

    def _index_of(self, entry_id: str) -> int:
        for index, item in enumerate(self.items):
            if item.entry.id == entry_id:
                return index
        raise CartEntryNotFoundError(entry_id)

    def change_quantity(self, entry_id: str, delta: int) -> List[LineItem]:
        index = self._index_of(entry_id)
        current = self.items[index]
        next_quantity = current.entry.quantity + delta

        updated = self.cart_service.update_quantity(self.user_id, entry_id, next_quantity)

        next_items = list(self.items)
        if updated is None:
            del next_items[index]
        else:
            next_items[index] = current.model_copy(
                update={"entry": current.entry.model_copy(update={"quantity": updated.quantity})}
            )
        self.items = next_items
        return self.items

    def remove(self, entry_id: str) -> List[LineItem]:
        index = self._index_of(entry_id)
        self.cart_service.remove_entry(self.user_id, entry_id)
        self.items = self.items[:index] + self.items[index + 1:]
        return self.items
