"""In-memory ledger, listing store and processor for escrow service tests.

The fakes keep the same atomicity the SQL versions have: every guarded
update checks and writes without yielding, and yields once before, so
concurrent coroutines interleave the way separate connections would.
"""

import asyncio
from dataclasses import replace
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

from src.mp_common.enums import GatewayOutcome
from src.mp_common.errors import DuplicateActiveTransactionError
from src.mp_escrow.application.service import EscrowService
from src.mp_escrow.domain.gateway import (
    AUTHORIZED_STATUS,
    CANCELED_STATUS,
    CAPTURED_STATUS,
    AuthorizationRequest,
    GatewayResult,
)
from src.mp_escrow.domain.models import PartySummary, Transaction, TransactionDetail
from src.mp_escrow.domain.state_machine import (
    CANCELLED,
    COMPLETED,
    PAID_OUT,
    PAYMENT_AUTHORIZED,
    PENDING,
    PICKUP_SCHEDULED,
    can_apply,
)
from src.mp_listing.domain.models import ListingForSale

SELLER = "user-seller"
BUYER = "user-buyer"
OTHER_BUYER = "user-buyer-2"
LISTING = "lst-1"


def _now() -> datetime:
    return datetime.now(UTC)


class FakeLedger:
    def __init__(self) -> None:
        self.rows: dict[str, Transaction] = {}
        self.fail_next_insert: Exception | None = None

    async def insert(self, db, tx: Transaction) -> Transaction:  # type: ignore[no-untyped-def]
        await asyncio.sleep(0)
        if self.fail_next_insert is not None:
            exc, self.fail_next_insert = self.fail_next_insert, None
            raise exc
        if any(r.listing_id == tx.listing_id and r.is_active for r in self.rows.values()):
            raise DuplicateActiveTransactionError(tx.listing_id)
        stored = replace(tx, created_at=_now(), updated_at=_now())
        self.rows[tx.id] = stored
        return replace(stored)

    async def get_by_id(self, db, transaction_id: str) -> Transaction | None:  # type: ignore[no-untyped-def]
        row = self.rows.get(transaction_id)
        return replace(row) if row else None

    async def find_active_for_listing(self, db, listing_id: str) -> Transaction | None:  # type: ignore[no-untyped-def]
        for row in self.rows.values():
            if row.listing_id == listing_id and row.is_active:
                return replace(row)
        return None

    def _update(self, transaction_id: str, **changes: object) -> Transaction:
        row = replace(self.rows[transaction_id], updated_at=_now(), **changes)
        self.rows[transaction_id] = row
        return replace(row)

    async def attach_payment(self, db, transaction_id, payment_intent_id):  # type: ignore[no-untyped-def]
        await asyncio.sleep(0)
        row = self.rows.get(transaction_id)
        if row is None or row.payment_intent_id is not None or row.status != PENDING:
            return None
        return self._update(transaction_id, payment_intent_id=payment_intent_id)

    async def mark_payment_authorized(self, db, transaction_id, payment_intent_id):  # type: ignore[no-untyped-def]
        await asyncio.sleep(0)
        row = self.rows.get(transaction_id)
        if (
            row is None
            or row.payment_intent_id != payment_intent_id
            or not can_apply("confirm_payment_authorized", row.status)
        ):
            return None
        return self._update(transaction_id, status=PAYMENT_AUTHORIZED)

    async def schedule_pickup(self, db, transaction_id, seller_id, pickup_address, pickup_scheduled_at):  # type: ignore[no-untyped-def]
        await asyncio.sleep(0)
        row = self.rows.get(transaction_id)
        if (
            row is None
            or row.seller_id != seller_id
            or row.capture_requested_at is not None
            or not can_apply("set_pickup_details", row.status)
        ):
            return None
        return self._update(
            transaction_id,
            status=PICKUP_SCHEDULED,
            pickup_address=pickup_address,
            pickup_scheduled_at=pickup_scheduled_at,
            seller_confirmed_at=row.seller_confirmed_at or _now(),
        )

    async def claim_capture(self, db, transaction_id, buyer_id, claimed_at, stale_before):  # type: ignore[no-untyped-def]
        await asyncio.sleep(0)
        row = self.rows.get(transaction_id)
        if (
            row is None
            or row.buyer_id != buyer_id
            or not can_apply("confirm_pickup_complete", row.status)
            or (row.capture_requested_at is not None and row.capture_requested_at >= stale_before)
        ):
            return None
        return self._update(transaction_id, capture_requested_at=claimed_at)

    async def release_capture_claim(self, db, transaction_id, claimed_at):  # type: ignore[no-untyped-def]
        row = self.rows.get(transaction_id)
        if (
            row is not None
            and row.capture_requested_at == claimed_at
            and can_apply("confirm_pickup_complete", row.status)
        ):
            self._update(transaction_id, capture_requested_at=None)

    async def mark_completed(self, db, transaction_id, completed_at):  # type: ignore[no-untyped-def]
        await asyncio.sleep(0)
        row = self.rows.get(transaction_id)
        if (
            row is None
            or row.capture_requested_at is None
            or not can_apply("confirm_pickup_complete", row.status)
        ):
            return None
        return self._update(
            transaction_id,
            status=COMPLETED,
            buyer_confirmed_at=completed_at,
            completed_at=completed_at,
        )

    async def mark_cancelled(self, db, transaction_id, cancelled_by, reason):  # type: ignore[no-untyped-def]
        await asyncio.sleep(0)
        row = self.rows.get(transaction_id)
        if (
            row is None
            or row.capture_requested_at is not None
            or not can_apply("cancel_transaction", row.status)
        ):
            return None
        return self._update(
            transaction_id,
            status=CANCELLED,
            cancelled_by=cancelled_by,
            cancel_reason=reason,
            cancelled_at=_now(),
        )

    async def mark_paid_out(self, db, transaction_id, transfer_id):  # type: ignore[no-untyped-def]
        row = self.rows.get(transaction_id)
        if row is None or not can_apply("record_payout", row.status):
            return None
        return self._update(
            transaction_id, status=PAID_OUT, transfer_id=transfer_id, payout_at=_now()
        )

    async def list_completed_unpaid(self, db, limit):  # type: ignore[no-untyped-def]
        return [replace(r) for r in self.rows.values() if r.status == COMPLETED][:limit]

    def _detail(self, row: Transaction) -> TransactionDetail:
        return TransactionDetail(
            transaction=replace(row),
            listing=None,
            buyer=PartySummary(id=row.buyer_id, name="Buyer", email=None, picture=None),
            seller=PartySummary(
                id=row.seller_id, name="Seller", email=None, picture=None,
                payout_destination="acct_seller",
            ),
        )

    async def get_detail(self, db, transaction_id, user_id):  # type: ignore[no-untyped-def]
        row = self.rows.get(transaction_id)
        if row is None or not row.is_party(user_id):
            return None
        return self._detail(row)

    async def list_details_for_user(self, db, user_id, role, limit):  # type: ignore[no-untyped-def]
        rows = [
            r for r in self.rows.values()
            if (role is None and r.is_party(user_id))
            or (role == "buyer" and r.buyer_id == user_id)
            or (role == "seller" and r.seller_id == user_id)
        ]
        return [self._detail(r) for r in rows][:limit]


class FakeListings:
    def __init__(self) -> None:
        self.listings: dict[str, ListingForSale] = {}
        self.sales: dict[str, int] = {}

    def add(
        self,
        listing_id: str = LISTING,
        seller_id: str = SELLER,
        asking_price: int = 12000,
        payout_destination: str | None = "acct_seller",
        payouts_enabled: bool = True,
    ) -> ListingForSale:
        listing = ListingForSale(
            id=listing_id,
            seller_id=seller_id,
            asking_price=asking_price,
            status="active",
            payout_destination=payout_destination,
            payouts_enabled=payouts_enabled,
        )
        self.listings[listing_id] = listing
        return listing

    def status(self, listing_id: str = LISTING) -> str:
        return self.listings[listing_id].status

    async def get_active_listing(self, db, listing_id):  # type: ignore[no-untyped-def]
        await asyncio.sleep(0)
        listing = self.listings.get(listing_id)
        if listing is None or listing.status != "active":
            return None
        return replace(listing)

    async def get_listing(self, db, listing_id):  # type: ignore[no-untyped-def]
        listing = self.listings.get(listing_id)
        return replace(listing) if listing else None

    async def set_status(self, db, listing_id, from_status, to_status):  # type: ignore[no-untyped-def]
        await asyncio.sleep(0)
        listing = self.listings.get(listing_id)
        if listing is None or listing.status != from_status:
            return False
        listing.status = to_status
        return True

    async def increment_seller_sale_count(self, db, seller_id):  # type: ignore[no-untyped-def]
        self.sales[seller_id] = self.sales.get(seller_id, 0) + 1


class FakeGateway:
    """Processor double keyed like Stripe: one intent per transaction."""

    def __init__(self) -> None:
        self.intents: dict[str, str] = {}
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[str, GatewayResult] = {}

    def fail(self, operation: str, retryable: bool = False) -> None:
        outcome = GatewayOutcome.FAILED_RETRYABLE if retryable else GatewayOutcome.FAILED_TERMINAL
        self.failures[operation] = GatewayResult(outcome=outcome, error=f"{operation} declined")

    def _failure(self, operation: str, key: str) -> GatewayResult | None:
        self.calls.append((operation, key))
        return self.failures.pop(operation, None)

    async def authorize(self, request: AuthorizationRequest) -> GatewayResult:
        await asyncio.sleep(0)
        failed = self._failure("authorize", request.transaction_id)
        if failed:
            return failed
        intent_id = f"pi_{request.transaction_id}"
        # The buyer's client confirms the card; the hold is then capturable
        self.intents[intent_id] = AUTHORIZED_STATUS
        return GatewayResult(
            outcome=GatewayOutcome.SUCCEEDED,
            reference_id=intent_id,
            status="requires_payment_method",
            client_secret=f"{intent_id}_secret",
        )

    async def capture(self, transaction_id: str, intent_id: str) -> GatewayResult:
        failed = self._failure("capture", intent_id)
        if failed:
            return failed
        self.intents[intent_id] = CAPTURED_STATUS
        return GatewayResult(outcome=GatewayOutcome.SUCCEEDED, reference_id=intent_id,
                             status=CAPTURED_STATUS)

    async def cancel_authorization(self, transaction_id: str, intent_id: str) -> GatewayResult:
        failed = self._failure("cancel", intent_id)
        if failed:
            return failed
        self.intents[intent_id] = CANCELED_STATUS
        return GatewayResult(outcome=GatewayOutcome.SUCCEEDED, reference_id=intent_id,
                             status=CANCELED_STATUS)

    async def refund(self, transaction_id: str, intent_id: str) -> GatewayResult:
        failed = self._failure("refund", intent_id)
        if failed:
            return failed
        return GatewayResult(outcome=GatewayOutcome.SUCCEEDED, reference_id=f"re_{intent_id}",
                             status="succeeded")

    async def retrieve_status(self, intent_id: str) -> GatewayResult:
        failed = self._failure("retrieve", intent_id)
        if failed:
            return failed
        return GatewayResult(
            outcome=GatewayOutcome.SUCCEEDED,
            reference_id=intent_id,
            status=self.intents.get(intent_id),
            client_secret=f"{intent_id}_secret",
        )

    async def get_transfer_id(self, intent_id: str) -> GatewayResult:
        failed = self._failure("retrieve_transfer", intent_id)
        if failed:
            return failed
        transfer = f"tr_{intent_id}" if self.intents.get(intent_id) == CAPTURED_STATUS else None
        return GatewayResult(outcome=GatewayOutcome.SUCCEEDED, reference_id=intent_id,
                             status=self.intents.get(intent_id), transfer_id=transfer)


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def listings() -> FakeListings:
    store = FakeListings()
    store.add()
    return store


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def service(ledger: FakeLedger, listings: FakeListings, gateway: FakeGateway) -> EscrowService:
    return EscrowService(
        repo=ledger, listings=listings, gateway=gateway, fee_rate_bps=250, currency="usd"
    )


@pytest.fixture
def db() -> AsyncMock:
    return AsyncMock()
