"""
Read-only product lookups for cart and checkout.
"""
import logging
from typing import Optional

from pydantic import ValidationError as ModelValidationError

from storefront.document_store import DocumentStore, PRODUCTS
from storefront.exceptions import ProductNotFoundError
from storefront.models import Product

logger = logging.getLogger(__name__)


class ProductCatalog:
    """Service for product reads"""

    def __init__(self, store: DocumentStore):
        self.store = store

    def get_product(self, product_id: str) -> Optional[Product]:
        """Return the product, or None if it is missing or unreadable"""
        doc = self.store.get(PRODUCTS, product_id)
        if doc is None:
            return None
        try:
            return Product.model_validate(doc)
        except ModelValidationError as e:
            logger.warning(
                f"Product {product_id} failed validation",
                extra={"product_id": product_id, "error": str(e)}
            )
            return None

    def require_product(self, product_id: str) -> Product:
        product = self.get_product(product_id)
        if product is None:
            raise ProductNotFoundError(product_id)
        return product


def discount_percentage(product: Product) -> int:
    """Whole-number percentage saved by the offer price, 0 if there is no discount"""
    if product.offer_price is None or product.price <= 0 or product.offer_price >= product.price:
        return 0
    return int(round((product.price - product.offer_price) / product.price * 100))
