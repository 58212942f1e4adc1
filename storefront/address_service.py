"""
Delivery address management.
"""
import logging
from datetime import datetime, timezone
from typing import List

from storefront.document_store import DocumentStore, addresses_collection
from storefront.exceptions import AddressNotFoundError, ValidationError
from storefront.middleware import hash_identifier
from storefront.models import Address, AddressRequest

logger = logging.getLogger(__name__)

PHONE_LENGTH = 10
PINCODE_LENGTH = 6


def validate_address(form: AddressRequest) -> AddressRequest:
    """Return a trimmed copy of the form or raise ValidationError with the first problem"""
    data = form.model_dump()
    for field in ("name", "phone", "street", "city", "state", "pincode"):
        data[field] = data[field].strip()

    if not data["name"]:
        raise ValidationError("Please enter your full name")
    if not data["phone"]:
        raise ValidationError("Please enter your phone number")
    if len(data["phone"]) != PHONE_LENGTH or not data["phone"].isdigit():
        raise ValidationError("Please enter a valid 10-digit phone number")
    if not data["street"]:
        raise ValidationError("Please enter your street address")
    if not data["city"]:
        raise ValidationError("Please enter your city")
    if not data["state"]:
        raise ValidationError("Please enter your state")
    if not data["pincode"]:
        raise ValidationError("Please enter your pincode")
    if len(data["pincode"]) != PINCODE_LENGTH or not data["pincode"].isdigit():
        raise ValidationError("Please enter a valid 6-digit pincode")

    data["type"] = (data.get("type") or "Home").strip() or "Home"
    return AddressRequest(**data)


class AddressService:
    """Service for a user's stored addresses"""

    def __init__(self, store: DocumentStore):
        self.store = store

    def list_addresses(self, user_id: str) -> List[Address]:
        docs = self.store.list_all(addresses_collection(user_id))
        return [Address.model_validate({**doc, "user_id": user_id}) for doc in docs]

    def get_address(self, user_id: str, address_id: str) -> Address:
        doc = self.store.get(addresses_collection(user_id), address_id)
        if doc is None:
            raise AddressNotFoundError(address_id)
        return Address.model_validate({**doc, "user_id": user_id})

    def add_address(self, user_id: str, form: AddressRequest) -> Address:
        """
        Validate and store a new address.

        Marking the new address as default clears the flag on the user's
        other addresses.
        """
        if not user_id:
            raise ValidationError("User not authenticated")

        clean = validate_address(form)
        collection = addresses_collection(user_id)
        now = datetime.now(timezone.utc).isoformat()

        if clean.is_default:
            for existing in self.list_addresses(user_id):
                if existing.is_default:
                    self.store.update(collection, existing.id, {"is_default": False, "updated_at": now})

        doc = {**clean.model_dump(), "user_id": user_id, "created_at": now, "updated_at": now}
        address_id = self.store.insert(collection, doc)

        logger.info(
            "Address added",
            extra={"hashed_user_id": hash_identifier(user_id), "address_id": address_id}
        )
        return Address(id=address_id, user_id=user_id, **clean.model_dump())
