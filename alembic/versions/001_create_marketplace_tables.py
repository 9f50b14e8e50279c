"""001: create marketplace tables (users, appraisals, listings, seller_profiles)

Revision ID: 001
Revises: 
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("""
        CREATE OR REPLACE FUNCTION fn_update_timestamp()
        RETURNS TRIGGER AS $$
        BEGIN
            NEW.updated_at = NOW();
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql;
    """)

    op.execute("""
        CREATE TABLE users (
            id          TEXT            PRIMARY KEY,
            email       TEXT            NOT NULL,
            name        TEXT,
            picture     TEXT,
            created_at  TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            updated_at  TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_users_email UNIQUE (email)
        );
    """)

    op.execute("""
        CREATE TABLE appraisals (
            id              TEXT            PRIMARY KEY,
            user_id         TEXT            NOT NULL REFERENCES users(id),
            item_name       TEXT,
            image_url       TEXT,
            ai_image_url    TEXT,
            created_at      TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            updated_at      TIMESTAMPTZ     NOT NULL DEFAULT NOW()
        );
    """)

    op.execute("""
        CREATE TABLE listings (
            id              TEXT            PRIMARY KEY,
            seller_id       TEXT            NOT NULL REFERENCES users(id),
            appraisal_id    TEXT            REFERENCES appraisals(id),
            asking_price    BIGINT          NOT NULL,
            status          TEXT            NOT NULL DEFAULT 'active',
            pickup_city     TEXT,
            pickup_state    TEXT,
            sold_at         TIMESTAMPTZ,
            created_at      TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            updated_at      TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            CONSTRAINT ck_listings_asking_price CHECK (asking_price > 0),
            CONSTRAINT ck_listings_status       CHECK (
                status IN ('active', 'pending', 'sold', 'cancelled')
            )
        );
    """)
    op.execute("CREATE INDEX idx_listings_seller ON listings (seller_id);")
    op.execute("CREATE INDEX idx_listings_status ON listings (status);")

    op.execute("""
        CREATE TABLE seller_profiles (
            user_id             TEXT            PRIMARY KEY REFERENCES users(id),
            payout_account_id   TEXT,
            payouts_enabled     BOOLEAN         NOT NULL DEFAULT FALSE,
            total_sales         INT             NOT NULL DEFAULT 0,
            created_at          TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            updated_at          TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            CONSTRAINT ck_seller_profiles_total_sales CHECK (total_sales >= 0)
        );
    """)

    for table in ("users", "appraisals", "listings", "seller_profiles"):
        op.execute(f"""
            CREATE TRIGGER trg_{table}_updated_at
                BEFORE UPDATE ON {table}
                FOR EACH ROW EXECUTE FUNCTION fn_update_timestamp();
        """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS seller_profiles;")
    op.execute("DROP TABLE IF EXISTS listings;")
    op.execute("DROP TABLE IF EXISTS appraisals;")
    op.execute("DROP TABLE IF EXISTS users;")
    op.execute("DROP FUNCTION IF EXISTS fn_update_timestamp();")
