"""Domain models for mp_listing — the engine's read view of a sellable item."""

from dataclasses import dataclass


@dataclass
class ListingForSale:
    id: str
    seller_id: str
    asking_price: int           # cents
    status: str                 # ListingStatus value
    payout_destination: str | None  # processor connected-account id
    payouts_enabled: bool

    @property
    def is_seller_payable(self) -> bool:
        return bool(self.payout_destination) and self.payouts_enabled
