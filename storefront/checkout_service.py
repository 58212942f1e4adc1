"""
Checkout orchestration: address selection, totals confirmation and payment
method choice, producing an immutable order draft.
"""
import time
import uuid
import logging
import threading
from contextlib import contextmanager
from enum import Enum
from typing import Callable, Dict, List, Optional

from storefront.address_service import AddressService
from storefront.cart_service import CartAggregator, resolved
from storefront.config import Config
from storefront.exceptions import (
    AddressNotFoundError,
    AddressRequiredError,
    CheckoutInProgressError,
    CheckoutSessionNotFoundError,
    CheckoutStateError,
    EmptyCartError,
    PermissionDeniedError,
)
from storefront.middleware import hash_identifier
from storefront.models import (
    Address,
    CurrentUser,
    LineItem,
    OrderDraft,
    PaymentMethod,
    Totals,
)
from storefront.pricing import calculate_totals
from storefront.totals_cache import TotalsCache

logger = logging.getLogger(__name__)


class CheckoutState(str, Enum):
    NO_ADDRESS = "NoAddress"
    ADDRESS_SELECTED = "AddressSelected"
    TOTALS_CONFIRMED = "TotalsConfirmed"
    PAYMENT_METHOD_CHOSEN = "PaymentMethodChosen"
    READY = "Ready"


class CheckoutSession:
    """Working state of one checkout attempt. Never persisted."""

    def __init__(self, user: CurrentUser, addresses: List[Address]):
        self.id = str(uuid.uuid4())
        self.user = user
        self.addresses = addresses
        self.state = CheckoutState.NO_ADDRESS
        self.address: Optional[Address] = None
        self.line_items: List[LineItem] = []
        self.totals: Optional[Totals] = None
        self.payment_method: Optional[PaymentMethod] = None
        self.committed = False
        self.last_active = time.monotonic()
        self._lock = threading.Lock()

    @property
    def needs_address(self) -> bool:
        """True when the caller should route the user to address creation"""
        return not self.addresses

    @property
    def is_busy(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def in_flight(self):
        """
        Allow one checkout action at a time for this session.

        A concurrent caller gets CheckoutInProgressError instead of waiting.
        """
        if not self._lock.acquire(blocking=False):
            raise CheckoutInProgressError(self.id)
        try:
            yield self
        finally:
            self._lock.release()


class CheckoutOrchestrator:
    """Drives a CheckoutSession from NoAddress to Ready"""

    def __init__(
        self,
        address_service: AddressService,
        aggregator: CartAggregator,
        totals_cache: Optional[TotalsCache] = None
    ):
        self.address_service = address_service
        self.aggregator = aggregator
        self.totals_cache = totals_cache

    def start(self, user: CurrentUser) -> CheckoutSession:
        """Begin a checkout from the user's current addresses"""
        addresses = self.address_service.list_addresses(user.uid)
        session = CheckoutSession(user, addresses)
        logger.info(
            "Checkout started",
            extra={
                "hashed_user_id": hash_identifier(user.uid),
                "session_id": session.id,
                "address_count": len(addresses)
            }
        )
        return session

    def _ensure_open(self, session: CheckoutSession) -> None:
        if session.committed:
            raise CheckoutStateError("Checkout already committed", session.state.value)

    def select_address(self, session: CheckoutSession, address_id: str) -> CheckoutSession:
        """
        Pick one of the user's stored addresses.

        Raises:
            AddressRequiredError: If the user has no addresses yet
            AddressNotFoundError: If the id is not one of theirs
        """
        self._ensure_open(session)

        address = next((a for a in session.addresses if a.id == address_id), None)
        if address is None:
            # The user may have added an address since the session started
            session.addresses = self.address_service.list_addresses(session.user.uid)
            if session.needs_address:
                raise AddressRequiredError()
            address = next((a for a in session.addresses if a.id == address_id), None)
            if address is None:
                raise AddressNotFoundError(address_id)

        session.address = address
        if session.state == CheckoutState.NO_ADDRESS:
            session.state = CheckoutState.ADDRESS_SELECTED
        return session

    def confirm_totals(self, session: CheckoutSession) -> Totals:
        """
        Price the current cart for this session.

        Orphaned entries are excluded. The result is written to the totals
        cache for later display only.

        Raises:
            CheckoutStateError: If no address has been selected
            EmptyCartError: If no line item can be priced
        """
        self._ensure_open(session)
        if session.address is None:
            raise CheckoutStateError("Select a delivery address first", session.state.value)

        line_items = resolved(self.aggregator.aggregate(session.user.uid))
        if not line_items:
            raise EmptyCartError()

        totals = calculate_totals(line_items)
        session.line_items = line_items
        session.totals = totals
        if session.state in (CheckoutState.NO_ADDRESS, CheckoutState.ADDRESS_SELECTED):
            session.state = CheckoutState.TOTALS_CONFIRMED

        if self.totals_cache is not None:
            self.totals_cache.put(session.user.uid, totals)

        return totals

    def select_payment_method(self, session: CheckoutSession, method: PaymentMethod) -> CheckoutSession:
        """Choose online payment or cash on delivery"""
        self._ensure_open(session)
        if session.address is None or session.totals is None:
            raise CheckoutStateError("Confirm totals before choosing a payment method", session.state.value)

        session.payment_method = PaymentMethod(method)
        session.state = CheckoutState.PAYMENT_METHOD_CHOSEN
        return session

    def cached_totals(self, session: CheckoutSession) -> Optional[Totals]:
        """Totals to display: the session's own, else the cache hint"""
        if session.totals is not None:
            return session.totals
        if self.totals_cache is None:
            return None
        return self.totals_cache.get(session.user.uid)

    def mark_ready(self, session: CheckoutSession) -> CheckoutSession:
        """
        Move PaymentMethodChosen to Ready once address, totals and payment
        method are all set.

        Raises:
            CheckoutStateError: If any of the three is missing
        """
        self._ensure_open(session)
        if session.state == CheckoutState.READY:
            return session

        complete = (
            session.address is not None
            and session.totals is not None
            and session.payment_method is not None
            and bool(session.line_items)
        )
        if session.state != CheckoutState.PAYMENT_METHOD_CHOSEN or not complete:
            raise CheckoutStateError(
                f"Checkout is not ready (state {session.state.value})", session.state.value
            )

        session.state = CheckoutState.READY
        return session

    def build_draft(self, session: CheckoutSession) -> OrderDraft:
        """Freeze the session into an OrderDraft, marking it Ready first"""
        self.mark_ready(session)
        return OrderDraft(
            user_id=session.user.uid,
            line_items=tuple(session.line_items),
            address=session.address,
            totals=session.totals,
            payment_method=session.payment_method
        )


class CheckoutSessions:
    """
    In-process registry of open checkout sessions.

    Sessions idle for longer than ``ttl_seconds`` are evicted whenever a new
    session is added, and are treated as missing on lookup.
    """

    def __init__(self, ttl_seconds: Optional[int] = None, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds or Config.CHECKOUT_SESSION_TTL_SECONDS
        self.clock = clock
        self._sessions: Dict[str, CheckoutSession] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def _expired(self, session: CheckoutSession, now: float) -> bool:
        return now - session.last_active > self.ttl_seconds

    def _sweep(self, now: float) -> None:
        stale = [sid for sid, session in self._sessions.items()
                 if self._expired(session, now) and not session.is_busy]
        for sid in stale:
            del self._sessions[sid]
        if stale:
            logger.info("Evicted idle checkout sessions", extra={"count": len(stale)})

    def add(self, session: CheckoutSession) -> CheckoutSession:
        now = self.clock()
        with self._lock:
            self._sweep(now)
            session.last_active = now
            self._sessions[session.id] = session
        return session

    def get(self, session_id: str, user_id: str) -> CheckoutSession:
        now = self.clock()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None and self._expired(session, now) and not session.is_busy:
                del self._sessions[session_id]
                session = None
            if session is None:
                raise CheckoutSessionNotFoundError(session_id)
            if session.user.uid != user_id:
                raise PermissionDeniedError(f"Checkout session {session_id} belongs to another user")
            session.last_active = now
        return session

    def discard(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)
