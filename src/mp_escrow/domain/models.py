"""Domain models for mp_escrow — pure dataclasses, no SQLAlchemy dependency.

Joined reads are decoded once at the ledger boundary into explicit structs
(TransactionDetail and its parts); nothing above the repository sees a raw row.
"""

from dataclasses import dataclass
from datetime import datetime

from src.mp_escrow.domain.state_machine import ACTIVE_STATUSES, TERMINAL_STATUSES


@dataclass
class Transaction:
    id: str
    listing_id: str
    buyer_id: str
    seller_id: str
    amount: int          # cents
    platform_fee: int    # cents
    seller_payout: int   # cents, amount - platform_fee
    status: str          # TransactionStatus value
    currency: str = "usd"
    payment_intent_id: str | None = None
    transfer_id: str | None = None
    pickup_address: str | None = None
    pickup_scheduled_at: datetime | None = None
    pickup_notes: str | None = None
    cancel_reason: str | None = None
    cancelled_by: str | None = None
    # Set while a capture is in flight; blocks cancellation
    capture_requested_at: datetime | None = None
    buyer_confirmed_at: datetime | None = None
    seller_confirmed_at: datetime | None = None
    completed_at: datetime | None = None
    payout_at: datetime | None = None
    cancelled_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_party(self, user_id: str) -> bool:
        return user_id in (self.buyer_id, self.seller_id)


@dataclass
class AppraisalSummary:
    id: str
    item_name: str | None
    image_url: str | None
    ai_image_url: str | None


@dataclass
class ListingSummary:
    id: str
    asking_price: int
    pickup_city: str | None
    pickup_state: str | None
    appraisal: AppraisalSummary | None = None


@dataclass
class PartySummary:
    id: str
    name: str | None
    email: str | None
    picture: str | None
    payout_destination: str | None = None  # seller only


@dataclass
class TransactionDetail:
    """Transaction + Listing(+Appraisal) + Buyer + Seller join."""

    transaction: Transaction
    listing: ListingSummary | None
    buyer: PartySummary | None
    seller: PartySummary | None
