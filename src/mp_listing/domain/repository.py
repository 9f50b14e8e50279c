"""Listing Store Protocol.

Listing creation and pricing belong to the listings feature; the escrow
engine only reads a listing and flips its status flag through a conditional
write. ``set_status`` returning False means another request won the race.
"""

from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from src.mp_listing.domain.models import ListingForSale


class ListingStoreProtocol(Protocol):
    async def get_active_listing(
        self, db: AsyncSession, listing_id: str
    ) -> ListingForSale | None: ...

    async def get_listing(
        self, db: AsyncSession, listing_id: str
    ) -> ListingForSale | None: ...

    async def set_status(
        self, db: AsyncSession, listing_id: str, from_status: str, to_status: str
    ) -> bool: ...

    async def increment_seller_sale_count(
        self, db: AsyncSession, seller_id: str
    ) -> None: ...
