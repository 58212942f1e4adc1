"""
Short-lived cache of the last computed checkout totals per user.

Entries are display hints between checkout steps. Order commit always
recomputes totals and never reads from here.
"""
import logging
from typing import Optional

from pydantic import ValidationError as ModelValidationError

from storefront.config import Config
from storefront.models import Totals

logger = logging.getLogger(__name__)


class TotalsCache:
    """Totals hint cache on top of a key/value client (get/set/delete)"""

    def __init__(self, client, ttl_seconds: Optional[int] = None):
        self.client = client
        self.ttl_seconds = ttl_seconds or Config.TOTALS_CACHE_TTL_SECONDS

    def _key(self, user_id: str) -> str:
        return f"checkout_total:{user_id}"

    def put(self, user_id: str, totals: Totals) -> None:
        self.client.set(self._key(user_id), totals.model_dump_json(), ex=self.ttl_seconds)

    def get(self, user_id: str) -> Optional[Totals]:
        raw = self.client.get(self._key(user_id))
        if raw is None:
            return None
        try:
            return Totals.model_validate_json(raw)
        except ModelValidationError:
            logger.warning("Discarding unreadable cached totals")
            self.invalidate(user_id)
            return None

    def invalidate(self, user_id: str) -> None:
        self.client.delete(self._key(user_id))
