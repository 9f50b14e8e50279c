"""002: create transactions ledger

Revision ID: 002
Revises: 001
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE transactions (
            id                      TEXT            PRIMARY KEY,
            listing_id              TEXT            NOT NULL REFERENCES listings(id),
            buyer_id                TEXT            NOT NULL REFERENCES users(id),
            seller_id               TEXT            NOT NULL REFERENCES users(id),
            amount                  BIGINT          NOT NULL,
            platform_fee            BIGINT          NOT NULL,
            seller_payout           BIGINT          NOT NULL,
            currency                TEXT            NOT NULL DEFAULT 'usd',
            payment_intent_id       TEXT,
            transfer_id             TEXT,
            status                  TEXT            NOT NULL DEFAULT 'pending',
            pickup_address          TEXT,
            pickup_scheduled_at     TIMESTAMPTZ,
            pickup_notes            TEXT,
            cancel_reason           TEXT,
            cancelled_by            TEXT,
            capture_requested_at    TIMESTAMPTZ,
            buyer_confirmed_at      TIMESTAMPTZ,
            seller_confirmed_at     TIMESTAMPTZ,
            completed_at            TIMESTAMPTZ,
            payout_at               TIMESTAMPTZ,
            cancelled_at            TIMESTAMPTZ,
            created_at              TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            updated_at              TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            CONSTRAINT ck_transactions_distinct_parties CHECK (buyer_id <> seller_id),
            CONSTRAINT ck_transactions_amount_positive  CHECK (amount > 0),
            CONSTRAINT ck_transactions_fee_non_negative CHECK (platform_fee >= 0 AND seller_payout >= 0),
            CONSTRAINT ck_transactions_fee_split        CHECK (platform_fee + seller_payout = amount),
            CONSTRAINT ck_transactions_status           CHECK (
                status IN ('pending', 'payment_authorized', 'pickup_scheduled',
                           'completed', 'paid_out', 'cancelled', 'disputed')
            ),
            CONSTRAINT ck_transactions_pickup_after_auth CHECK (
                pickup_address IS NULL OR status NOT IN ('pending', 'payment_authorized')
            ),
            CONSTRAINT ck_transactions_completed_at     CHECK (
                status NOT IN ('completed', 'paid_out') OR completed_at IS NOT NULL
            )
        );
    """)

    # At most one live transaction per listing
    op.execute("""
        CREATE UNIQUE INDEX uq_transactions_listing_active
            ON transactions (listing_id)
            WHERE status IN ('pending', 'payment_authorized', 'pickup_scheduled');
    """)
    op.execute(
        "CREATE INDEX idx_transactions_buyer ON transactions (buyer_id, created_at DESC);"
    )
    op.execute(
        "CREATE INDEX idx_transactions_seller ON transactions (seller_id, created_at DESC);"
    )
    op.execute("""
        CREATE INDEX idx_transactions_payment_intent
            ON transactions (payment_intent_id)
            WHERE payment_intent_id IS NOT NULL;
    """)
    op.execute("""
        CREATE INDEX idx_transactions_unpaid
            ON transactions (completed_at)
            WHERE status = 'completed';
    """)

    op.execute("""
        CREATE TRIGGER trg_transactions_updated_at
            BEFORE UPDATE ON transactions
            FOR EACH ROW EXECUTE FUNCTION fn_update_timestamp();
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS transactions;")
