"""Pydantic schemas for mp_escrow API requests and responses.

Money fields are exposed twice: raw cents (``*_cents``) and a display string.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, model_validator

from src.mp_common.cents import cents_to_display
from src.mp_common.datetime_utils import to_iso
from src.mp_common.enums import PaymentAction, TransactionAction
from src.mp_escrow.domain.models import (
    ListingSummary,
    PartySummary,
    Transaction,
    TransactionDetail,
)

# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class CreateTransactionRequest(BaseModel):
    listing_id: str = Field(..., min_length=1, max_length=64)
    # May differ from the asking price when an offer was accepted
    amount: int = Field(..., gt=0, description="Amount in cents")
    pickup_notes: str | None = Field(None, max_length=1000)


class UpdateTransactionRequest(BaseModel):
    """PATCH body: one action per request, with that action's fields."""

    action: TransactionAction
    payment_intent_id: str | None = None
    pickup_address: str | None = Field(None, max_length=500)
    pickup_scheduled_at: datetime | None = None
    reason: str | None = Field(None, max_length=500)

    @model_validator(mode="after")
    def _check_action_fields(self) -> "UpdateTransactionRequest":
        if self.action == TransactionAction.CONFIRM_PAYMENT and not self.payment_intent_id:
            raise ValueError("payment_intent_id is required for confirm_payment")
        if self.action == TransactionAction.SET_PICKUP and not (
            self.pickup_address and self.pickup_address.strip()
        ):
            raise ValueError("pickup_address is required for set_pickup")
        return self


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class TransactionResponse(BaseModel):
    id: str
    listing_id: str
    buyer_id: str
    seller_id: str
    amount_cents: int
    amount_display: str
    platform_fee_cents: int
    seller_payout_cents: int
    seller_payout_display: str
    currency: str
    payment_intent_id: str | None
    transfer_id: str | None
    status: str
    pickup_address: str | None
    pickup_scheduled_at: str | None
    pickup_notes: str | None
    cancel_reason: str | None
    buyer_confirmed_at: str | None
    seller_confirmed_at: str | None
    completed_at: str | None
    payout_at: str | None
    cancelled_at: str | None
    created_at: str | None
    updated_at: str | None

    @classmethod
    def from_domain(cls, tx: Transaction) -> "TransactionResponse":
        return cls(
            id=tx.id,
            listing_id=tx.listing_id,
            buyer_id=tx.buyer_id,
            seller_id=tx.seller_id,
            amount_cents=tx.amount,
            amount_display=cents_to_display(tx.amount),
            platform_fee_cents=tx.platform_fee,
            seller_payout_cents=tx.seller_payout,
            seller_payout_display=cents_to_display(tx.seller_payout),
            currency=tx.currency,
            payment_intent_id=tx.payment_intent_id,
            transfer_id=tx.transfer_id,
            status=tx.status,
            pickup_address=tx.pickup_address,
            pickup_scheduled_at=to_iso(tx.pickup_scheduled_at),
            pickup_notes=tx.pickup_notes,
            cancel_reason=tx.cancel_reason,
            buyer_confirmed_at=to_iso(tx.buyer_confirmed_at),
            seller_confirmed_at=to_iso(tx.seller_confirmed_at),
            completed_at=to_iso(tx.completed_at),
            payout_at=to_iso(tx.payout_at),
            cancelled_at=to_iso(tx.cancelled_at),
            created_at=to_iso(tx.created_at),
            updated_at=to_iso(tx.updated_at),
        )


class CreateTransactionResponse(BaseModel):
    transaction: TransactionResponse
    # Continuation token for the buyer's payment UI
    client_secret: str | None


class CancelTransactionResponse(BaseModel):
    transaction: TransactionResponse
    payment_action: PaymentAction


class AppraisalOut(BaseModel):
    id: str
    item_name: str | None
    image_url: str | None
    ai_image_url: str | None


class ListingOut(BaseModel):
    id: str
    asking_price_cents: int
    pickup_city: str | None
    pickup_state: str | None
    appraisal: AppraisalOut | None

    @classmethod
    def from_domain(cls, listing: ListingSummary) -> "ListingOut":
        appraisal = None
        if listing.appraisal is not None:
            appraisal = AppraisalOut(
                id=listing.appraisal.id,
                item_name=listing.appraisal.item_name,
                image_url=listing.appraisal.image_url,
                ai_image_url=listing.appraisal.ai_image_url,
            )
        return cls(
            id=listing.id,
            asking_price_cents=listing.asking_price,
            pickup_city=listing.pickup_city,
            pickup_state=listing.pickup_state,
            appraisal=appraisal,
        )


class PartyOut(BaseModel):
    id: str
    name: str | None
    email: str | None
    picture: str | None

    @classmethod
    def from_domain(cls, party: PartySummary) -> "PartyOut":
        return cls(id=party.id, name=party.name, email=party.email, picture=party.picture)


class SellerOut(PartyOut):
    payouts_connected: bool

    @classmethod
    def from_domain(cls, party: PartySummary) -> "SellerOut":
        return cls(
            id=party.id,
            name=party.name,
            email=party.email,
            picture=party.picture,
            payouts_connected=party.payout_destination is not None,
        )


class TransactionDetailResponse(BaseModel):
    transaction: TransactionResponse
    listing: ListingOut | None
    buyer: PartyOut | None
    seller: SellerOut | None

    @classmethod
    def from_domain(cls, detail: TransactionDetail) -> "TransactionDetailResponse":
        return cls(
            transaction=TransactionResponse.from_domain(detail.transaction),
            listing=ListingOut.from_domain(detail.listing) if detail.listing else None,
            buyer=PartyOut.from_domain(detail.buyer) if detail.buyer else None,
            seller=SellerOut.from_domain(detail.seller) if detail.seller else None,
        )


class TransactionListResponse(BaseModel):
    items: list[TransactionDetailResponse]


class WebhookAck(BaseModel):
    event_id: str
    event_type: str
    result: str
    detail: dict[str, Any] | None = None
