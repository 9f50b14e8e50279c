"""ListingStore — SQL implementation of ListingStoreProtocol.

The status flip is a compare-and-swap (UPDATE ... WHERE status = :from).
The flip active → pending is the serialization point for purchases: of two
buyers racing for one listing exactly one UPDATE matches a row.

Transaction ownership: the caller commits.
"""

from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from src.mp_common.enums import ListingStatus
from src.mp_listing.domain.models import ListingForSale

_LISTING_SELECT = """
    SELECT l.id, l.seller_id, l.asking_price, l.status,
           sp.payout_account_id,
           COALESCE(sp.payouts_enabled, FALSE) AS payouts_enabled
    FROM listings l
    LEFT JOIN seller_profiles sp ON sp.user_id = l.seller_id
    WHERE l.id = :listing_id
"""

_GET_LISTING_SQL = text(_LISTING_SELECT)

_GET_ACTIVE_LISTING_SQL = text(_LISTING_SELECT + "  AND l.status = :active\n")

_SET_STATUS_SQL = text("""
    UPDATE listings
    SET status = CAST(:to_status AS TEXT),
        sold_at = CASE WHEN CAST(:to_status AS TEXT) = 'sold' THEN NOW() ELSE sold_at END,
        updated_at = NOW()
    WHERE id = :listing_id
      AND status = CAST(:from_status AS TEXT)
    RETURNING id
""")

_INCREMENT_SALES_SQL = text("""
    INSERT INTO seller_profiles (user_id, total_sales)
    VALUES (:seller_id, 1)
    ON CONFLICT (user_id) DO UPDATE
        SET total_sales = seller_profiles.total_sales + 1,
            updated_at = NOW()
""")


def _row_to_listing(row: Any) -> ListingForSale | None:
    if row is None:
        return None
    return ListingForSale(
        id=row.id,
        seller_id=row.seller_id,
        asking_price=row.asking_price,
        status=row.status,
        payout_destination=row.payout_account_id,
        payouts_enabled=row.payouts_enabled,
    )


class ListingStore:
    async def get_active_listing(
        self, db: AsyncSession, listing_id: str
    ) -> ListingForSale | None:
        result = await db.execute(
            _GET_ACTIVE_LISTING_SQL,
            {"listing_id": listing_id, "active": ListingStatus.ACTIVE.value},
        )
        return _row_to_listing(result.fetchone())

    async def get_listing(self, db: AsyncSession, listing_id: str) -> ListingForSale | None:
        """Any status; used to resume a purchase whose listing is already held."""
        result = await db.execute(_GET_LISTING_SQL, {"listing_id": listing_id})
        return _row_to_listing(result.fetchone())

    async def set_status(
        self, db: AsyncSession, listing_id: str, from_status: str, to_status: str
    ) -> bool:
        result = await db.execute(
            _SET_STATUS_SQL,
            {"listing_id": listing_id, "from_status": from_status, "to_status": to_status},
        )
        return result.fetchone() is not None

    async def increment_seller_sale_count(self, db: AsyncSession, seller_id: str) -> None:
        await db.execute(_INCREMENT_SALES_SQL, {"seller_id": seller_id})
