"""SQLAlchemy ORM model for the transactions table.

Used for type reference and migration drift checks; persistence.py
uses raw text() SQL. Alembic migration 002_create_transactions.py is the
authoritative DDL source.
"""

from datetime import datetime

from sqlalchemy import BigInteger, CheckConstraint, DateTime, Index, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from src.mp_common.database import Base
from src.mp_escrow.domain.state_machine import ACTIVE_STATUSES, sql_status_list


class TransactionORM(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint("buyer_id <> seller_id", name="ck_transactions_distinct_parties"),
        CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
        CheckConstraint(
            "platform_fee + seller_payout = amount", name="ck_transactions_fee_split"
        ),
        Index(
            "uq_transactions_listing_active",
            "listing_id",
            unique=True,
            postgresql_where=text(f"status IN ({sql_status_list(ACTIVE_STATUSES)})"),
        ),
    )

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    listing_id: Mapped[str] = mapped_column(Text, nullable=False)
    buyer_id: Mapped[str] = mapped_column(Text, nullable=False)
    seller_id: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    platform_fee: Mapped[int] = mapped_column(BigInteger, nullable=False)
    seller_payout: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(Text, nullable=False, server_default="usd")
    payment_intent_id: Mapped[str | None] = mapped_column(Text)
    transfer_id: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, nullable=False)
    pickup_address: Mapped[str | None] = mapped_column(Text)
    pickup_scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    pickup_notes: Mapped[str | None] = mapped_column(Text)
    cancel_reason: Mapped[str | None] = mapped_column(Text)
    cancelled_by: Mapped[str | None] = mapped_column(Text)
    capture_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    buyer_confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    seller_confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    payout_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )
