"""Transaction Ledger Protocol — dependency inversion for testability.

Unit tests inject a mock (or the in-memory ledger) that conforms to this
Protocol. Infrastructure provides the Postgres implementation.

Every ``attach_*``/``mark_*``/``schedule_*``/``claim_*`` method is a guarded update: it
applies only when the row is still in an allowed source status and returns
None when it is not, so a stale read never overwrites a newer state.
"""

from datetime import datetime
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from src.mp_escrow.domain.models import Transaction, TransactionDetail


class TransactionRepositoryProtocol(Protocol):
    async def insert(self, db: AsyncSession, tx: Transaction) -> Transaction: ...

    async def get_by_id(
        self, db: AsyncSession, transaction_id: str
    ) -> Transaction | None: ...

    async def find_active_for_listing(
        self, db: AsyncSession, listing_id: str
    ) -> Transaction | None: ...

    async def attach_payment(
        self, db: AsyncSession, transaction_id: str, payment_intent_id: str
    ) -> Transaction | None: ...

    async def mark_payment_authorized(
        self, db: AsyncSession, transaction_id: str, payment_intent_id: str
    ) -> Transaction | None: ...

    async def schedule_pickup(
        self,
        db: AsyncSession,
        transaction_id: str,
        seller_id: str,
        pickup_address: str,
        pickup_scheduled_at: datetime | None,
    ) -> Transaction | None: ...

    async def claim_capture(
        self,
        db: AsyncSession,
        transaction_id: str,
        buyer_id: str,
        claimed_at: datetime,
        stale_before: datetime,
    ) -> Transaction | None: ...

    async def release_capture_claim(
        self, db: AsyncSession, transaction_id: str, claimed_at: datetime
    ) -> None: ...

    async def mark_completed(
        self, db: AsyncSession, transaction_id: str, completed_at: datetime
    ) -> Transaction | None: ...

    async def mark_cancelled(
        self,
        db: AsyncSession,
        transaction_id: str,
        cancelled_by: str,
        reason: str | None,
    ) -> Transaction | None: ...

    async def mark_paid_out(
        self, db: AsyncSession, transaction_id: str, transfer_id: str
    ) -> Transaction | None: ...

    async def list_completed_unpaid(
        self, db: AsyncSession, limit: int
    ) -> list[Transaction]: ...

    async def get_detail(
        self, db: AsyncSession, transaction_id: str, user_id: str
    ) -> TransactionDetail | None: ...

    async def list_details_for_user(
        self, db: AsyncSession, user_id: str, role: str | None, limit: int
    ) -> list[TransactionDetail]: ...
