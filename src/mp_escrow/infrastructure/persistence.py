"""TransactionRepository — Postgres Transaction Ledger.

All queries use raw text() SQL (no ORM). Every state change is a guarded
UPDATE ... WHERE id = :id AND status IN (...) RETURNING; zero returned rows
means the row was not in an allowed source status and nothing was written.
The IN-lists come from state_machine.TRANSITIONS.

The partial unique index uq_transactions_listing_active backs the
one-active-transaction-per-listing rule at the database level.

Transaction ownership: the CALLER (application service) commits or rolls back.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.mp_common.errors import DuplicateActiveTransactionError, InternalError
from src.mp_escrow.domain.models import (
    AppraisalSummary,
    ListingSummary,
    PartySummary,
    Transaction,
    TransactionDetail,
)
from src.mp_escrow.domain.state_machine import (
    ACTIVE_STATUSES,
    CANCELLED,
    COMPLETED,
    PAID_OUT,
    PAYMENT_AUTHORIZED,
    PENDING,
    PICKUP_SCHEDULED,
    TRANSITIONS,
    sql_status_list,
)

ACTIVE_LISTING_CONSTRAINT = "uq_transactions_listing_active"

_COLUMNS = (
    "id", "listing_id", "buyer_id", "seller_id",
    "amount", "platform_fee", "seller_payout", "currency",
    "payment_intent_id", "transfer_id", "status",
    "pickup_address", "pickup_scheduled_at", "pickup_notes",
    "cancel_reason", "cancelled_by", "capture_requested_at",
    "buyer_confirmed_at", "seller_confirmed_at", "completed_at",
    "payout_at", "cancelled_at", "created_at", "updated_at",
)
_RETURNING = ", ".join(_COLUMNS)
_T_COLUMNS = ", ".join(f"t.{c}" for c in _COLUMNS)


def _from(trigger: str) -> str:
    return sql_status_list(TRANSITIONS[trigger].from_statuses)


# ---------------------------------------------------------------------------
# SQL
# ---------------------------------------------------------------------------

_INSERT_SQL = text(f"""
    INSERT INTO transactions
        (id, listing_id, buyer_id, seller_id,
         amount, platform_fee, seller_payout, currency,
         payment_intent_id, status, pickup_notes)
    VALUES
        (:id, :listing_id, :buyer_id, :seller_id,
         :amount, :platform_fee, :seller_payout, :currency,
         :payment_intent_id, :status, :pickup_notes)
    RETURNING {_RETURNING}
""")

_GET_BY_ID_SQL = text(f"""
    SELECT {_RETURNING}
    FROM transactions
    WHERE id = :id
""")

_FIND_ACTIVE_FOR_LISTING_SQL = text(f"""
    SELECT {_RETURNING}
    FROM transactions
    WHERE listing_id = :listing_id
      AND status IN ({sql_status_list(ACTIVE_STATUSES)})
    LIMIT 1
""")

_ATTACH_PAYMENT_SQL = text(f"""
    UPDATE transactions
    SET payment_intent_id = :payment_intent_id,
        updated_at = NOW()
    WHERE id = :id
      AND payment_intent_id IS NULL
      AND status = '{PENDING}'
    RETURNING {_RETURNING}
""")

_MARK_AUTHORIZED_SQL = text(f"""
    UPDATE transactions
    SET status = '{PAYMENT_AUTHORIZED}',
        updated_at = NOW()
    WHERE id = :id
      AND payment_intent_id = :payment_intent_id
      AND status IN ({_from("confirm_payment_authorized")})
    RETURNING {_RETURNING}
""")

_SCHEDULE_PICKUP_SQL = text(f"""
    UPDATE transactions
    SET status = '{PICKUP_SCHEDULED}',
        pickup_address = :pickup_address,
        pickup_scheduled_at = CAST(:pickup_scheduled_at AS TIMESTAMPTZ),
        seller_confirmed_at = COALESCE(seller_confirmed_at, NOW()),
        updated_at = NOW()
    WHERE id = :id
      AND seller_id = :seller_id
      AND capture_requested_at IS NULL
      AND status IN ({_from("set_pickup_details")})
    RETURNING {_RETURNING}
""")

# A live claim excludes every other capture attempt. A claim older than
# :stale_before belongs to a request that died mid-capture and may be taken over;
# the retried capture reuses the idempotency key.
_CLAIM_CAPTURE_SQL = text(f"""
    UPDATE transactions
    SET capture_requested_at = :claimed_at,
        updated_at = NOW()
    WHERE id = :id
      AND buyer_id = :buyer_id
      AND (capture_requested_at IS NULL OR capture_requested_at < :stale_before)
      AND status IN ({_from("confirm_pickup_complete")})
    RETURNING {_RETURNING}
""")

_RELEASE_CAPTURE_CLAIM_SQL = text(f"""
    UPDATE transactions
    SET capture_requested_at = NULL,
        updated_at = NOW()
    WHERE id = :id
      AND capture_requested_at = :claimed_at
      AND status IN ({_from("confirm_pickup_complete")})
""")

_MARK_COMPLETED_SQL = text(f"""
    UPDATE transactions
    SET status = '{COMPLETED}',
        buyer_confirmed_at = COALESCE(buyer_confirmed_at, :completed_at),
        completed_at = COALESCE(completed_at, :completed_at),
        updated_at = :completed_at
    WHERE id = :id
      AND capture_requested_at IS NOT NULL
      AND status IN ({_from("confirm_pickup_complete")})
    RETURNING {_RETURNING}
""")

_MARK_CANCELLED_SQL = text(f"""
    UPDATE transactions
    SET status = '{CANCELLED}',
        cancel_reason = :reason,
        cancelled_by = :cancelled_by,
        cancelled_at = NOW(),
        updated_at = NOW()
    WHERE id = :id
      AND capture_requested_at IS NULL
      AND status IN ({_from("cancel_transaction")})
    RETURNING {_RETURNING}
""")

_MARK_PAID_OUT_SQL = text(f"""
    UPDATE transactions
    SET status = '{PAID_OUT}',
        transfer_id = :transfer_id,
        payout_at = COALESCE(payout_at, NOW()),
        updated_at = NOW()
    WHERE id = :id
      AND status IN ({_from("record_payout")})
    RETURNING {_RETURNING}
""")

_LIST_COMPLETED_UNPAID_SQL = text(f"""
    SELECT {_RETURNING}
    FROM transactions
    WHERE status = '{COMPLETED}'
    ORDER BY completed_at ASC, id ASC
    LIMIT :limit
""")

_DETAIL_SELECT = f"""
    SELECT {_T_COLUMNS},
           l.id AS l_id, l.asking_price AS l_asking_price,
           l.pickup_city AS l_pickup_city, l.pickup_state AS l_pickup_state,
           a.id AS a_id, a.item_name AS a_item_name,
           a.image_url AS a_image_url, a.ai_image_url AS a_ai_image_url,
           b.id AS b_id, b.name AS b_name, b.email AS b_email, b.picture AS b_picture,
           s.id AS s_id, s.name AS s_name, s.email AS s_email, s.picture AS s_picture,
           sp.payout_account_id AS s_payout_account_id
    FROM transactions t
    LEFT JOIN listings l ON l.id = t.listing_id
    LEFT JOIN appraisals a ON a.id = l.appraisal_id
    LEFT JOIN users b ON b.id = t.buyer_id
    LEFT JOIN users s ON s.id = t.seller_id
    LEFT JOIN seller_profiles sp ON sp.user_id = t.seller_id
"""

_GET_DETAIL_SQL = text(f"""
    {_DETAIL_SELECT}
    WHERE t.id = :id
      AND (t.buyer_id = :user_id OR t.seller_id = :user_id)
""")

_LIST_DETAILS_FOR_USER_SQL = text(f"""
    {_DETAIL_SELECT}
    WHERE (
        (CAST(:role AS TEXT) IS NULL AND (t.buyer_id = :user_id OR t.seller_id = :user_id))
        OR (CAST(:role AS TEXT) = 'buyer' AND t.buyer_id = :user_id)
        OR (CAST(:role AS TEXT) = 'seller' AND t.seller_id = :user_id)
    )
    ORDER BY t.created_at DESC, t.id DESC
    LIMIT :limit
""")

# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_transaction(row: Any) -> Transaction:
    return Transaction(**{c: getattr(row, c) for c in _COLUMNS})


def _row_to_detail(row: Any) -> TransactionDetail:
    listing: ListingSummary | None = None
    if row.l_id is not None:
        appraisal = None
        if row.a_id is not None:
            appraisal = AppraisalSummary(
                id=row.a_id,
                item_name=row.a_item_name,
                image_url=row.a_image_url,
                ai_image_url=row.a_ai_image_url,
            )
        listing = ListingSummary(
            id=row.l_id,
            asking_price=row.l_asking_price,
            pickup_city=row.l_pickup_city,
            pickup_state=row.l_pickup_state,
            appraisal=appraisal,
        )

    buyer = None
    if row.b_id is not None:
        buyer = PartySummary(
            id=row.b_id, name=row.b_name, email=row.b_email, picture=row.b_picture
        )

    seller = None
    if row.s_id is not None:
        seller = PartySummary(
            id=row.s_id,
            name=row.s_name,
            email=row.s_email,
            picture=row.s_picture,
            payout_destination=row.s_payout_account_id,
        )

    return TransactionDetail(
        transaction=_row_to_transaction(row),
        listing=listing,
        buyer=buyer,
        seller=seller,
    )


def _is_active_listing_violation(exc: IntegrityError) -> bool:
    return ACTIVE_LISTING_CONSTRAINT in str(exc.orig)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class TransactionRepository:
    """Concrete ledger — every transition is atomic at the SQL level."""

    async def insert(self, db: AsyncSession, tx: Transaction) -> Transaction:
        try:
            result = await db.execute(
                _INSERT_SQL,
                {
                    "id": tx.id,
                    "listing_id": tx.listing_id,
                    "buyer_id": tx.buyer_id,
                    "seller_id": tx.seller_id,
                    "amount": tx.amount,
                    "platform_fee": tx.platform_fee,
                    "seller_payout": tx.seller_payout,
                    "currency": tx.currency,
                    "payment_intent_id": tx.payment_intent_id,
                    "status": tx.status,
                    "pickup_notes": tx.pickup_notes,
                },
            )
        except IntegrityError as exc:
            if _is_active_listing_violation(exc):
                raise DuplicateActiveTransactionError(tx.listing_id) from exc
            raise
        row = result.fetchone()
        if row is None:
            raise InternalError("Transaction insert returned no rows")
        return _row_to_transaction(row)

    async def get_by_id(self, db: AsyncSession, transaction_id: str) -> Transaction | None:
        result = await db.execute(_GET_BY_ID_SQL, {"id": transaction_id})
        row = result.fetchone()
        return _row_to_transaction(row) if row else None

    async def find_active_for_listing(
        self, db: AsyncSession, listing_id: str
    ) -> Transaction | None:
        result = await db.execute(_FIND_ACTIVE_FOR_LISTING_SQL, {"listing_id": listing_id})
        row = result.fetchone()
        return _row_to_transaction(row) if row else None

    async def attach_payment(
        self, db: AsyncSession, transaction_id: str, payment_intent_id: str
    ) -> Transaction | None:
        return await self._guarded(
            db,
            _ATTACH_PAYMENT_SQL,
            {"id": transaction_id, "payment_intent_id": payment_intent_id},
        )

    async def mark_payment_authorized(
        self, db: AsyncSession, transaction_id: str, payment_intent_id: str
    ) -> Transaction | None:
        return await self._guarded(
            db,
            _MARK_AUTHORIZED_SQL,
            {"id": transaction_id, "payment_intent_id": payment_intent_id},
        )

    async def schedule_pickup(
        self,
        db: AsyncSession,
        transaction_id: str,
        seller_id: str,
        pickup_address: str,
        pickup_scheduled_at: datetime | None,
    ) -> Transaction | None:
        return await self._guarded(
            db,
            _SCHEDULE_PICKUP_SQL,
            {
                "id": transaction_id,
                "seller_id": seller_id,
                "pickup_address": pickup_address,
                "pickup_scheduled_at": pickup_scheduled_at,
            },
        )

    async def claim_capture(
        self,
        db: AsyncSession,
        transaction_id: str,
        buyer_id: str,
        claimed_at: datetime,
        stale_before: datetime,
    ) -> Transaction | None:
        return await self._guarded(
            db,
            _CLAIM_CAPTURE_SQL,
            {
                "id": transaction_id,
                "buyer_id": buyer_id,
                "claimed_at": claimed_at,
                "stale_before": stale_before,
            },
        )

    async def release_capture_claim(
        self, db: AsyncSession, transaction_id: str, claimed_at: datetime
    ) -> None:
        await db.execute(
            _RELEASE_CAPTURE_CLAIM_SQL, {"id": transaction_id, "claimed_at": claimed_at}
        )

    async def mark_completed(
        self, db: AsyncSession, transaction_id: str, completed_at: datetime
    ) -> Transaction | None:
        return await self._guarded(
            db, _MARK_COMPLETED_SQL, {"id": transaction_id, "completed_at": completed_at}
        )

    async def mark_cancelled(
        self,
        db: AsyncSession,
        transaction_id: str,
        cancelled_by: str,
        reason: str | None,
    ) -> Transaction | None:
        return await self._guarded(
            db,
            _MARK_CANCELLED_SQL,
            {"id": transaction_id, "cancelled_by": cancelled_by, "reason": reason},
        )

    async def mark_paid_out(
        self, db: AsyncSession, transaction_id: str, transfer_id: str
    ) -> Transaction | None:
        return await self._guarded(
            db, _MARK_PAID_OUT_SQL, {"id": transaction_id, "transfer_id": transfer_id}
        )

    async def list_completed_unpaid(self, db: AsyncSession, limit: int) -> list[Transaction]:
        result = await db.execute(_LIST_COMPLETED_UNPAID_SQL, {"limit": limit})
        return [_row_to_transaction(row) for row in result.fetchall()]

    async def get_detail(
        self, db: AsyncSession, transaction_id: str, user_id: str
    ) -> TransactionDetail | None:
        result = await db.execute(_GET_DETAIL_SQL, {"id": transaction_id, "user_id": user_id})
        row = result.fetchone()
        return _row_to_detail(row) if row else None

    async def list_details_for_user(
        self, db: AsyncSession, user_id: str, role: str | None, limit: int
    ) -> list[TransactionDetail]:
        result = await db.execute(
            _LIST_DETAILS_FOR_USER_SQL,
            {"user_id": user_id, "role": role, "limit": limit},
        )
        return [_row_to_detail(row) for row in result.fetchall()]

    async def _guarded(
        self, db: AsyncSession, stmt: Any, params: dict[str, Any]
    ) -> Transaction | None:
        result = await db.execute(stmt, params)
        row = result.fetchone()
        return _row_to_transaction(row) if row else None
