"""Integration-test fixtures.

All integration tests share a single event-loop so that the module-level
SQLAlchemy async engine pool (created at import time) remains valid across
the entire test session. They need a Postgres migrated with `alembic upgrade
head`; the processor is replaced by an in-process stub.
"""

import uuid
from collections.abc import AsyncGenerator, Iterator
from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import text

from src.main import app
from src.mp_common.database import async_session_factory, engine
from src.mp_common.enums import GatewayOutcome
from src.mp_escrow.api import router as transactions_api
from src.mp_escrow.application.service import EscrowService
from src.mp_escrow.domain.gateway import AuthorizationRequest, GatewayResult


class StubStripe:
    """Processor stub: every hold is immediately capturable."""

    def __init__(self) -> None:
        self.intents: dict[str, str] = {}

    def _ok(self, intent_id: str, status: str, **extra: str) -> GatewayResult:
        self.intents[intent_id] = status
        return GatewayResult(
            outcome=GatewayOutcome.SUCCEEDED, reference_id=intent_id, status=status, **extra
        )

    async def authorize(self, request: AuthorizationRequest) -> GatewayResult:
        intent_id = f"pi_{request.transaction_id}"
        return self._ok(intent_id, "requires_capture", client_secret=f"{intent_id}_secret")

    async def capture(self, transaction_id: str, intent_id: str) -> GatewayResult:
        return self._ok(intent_id, "succeeded")

    async def cancel_authorization(self, transaction_id: str, intent_id: str) -> GatewayResult:
        return self._ok(intent_id, "canceled")

    async def refund(self, transaction_id: str, intent_id: str) -> GatewayResult:
        return GatewayResult(outcome=GatewayOutcome.SUCCEEDED, reference_id=f"re_{intent_id}")

    async def retrieve_status(self, intent_id: str) -> GatewayResult:
        return GatewayResult(
            outcome=GatewayOutcome.SUCCEEDED,
            reference_id=intent_id,
            status=self.intents.get(intent_id),
            client_secret=f"{intent_id}_secret",
        )

    async def get_transfer_id(self, intent_id: str) -> GatewayResult:
        return GatewayResult(
            outcome=GatewayOutcome.SUCCEEDED, reference_id=intent_id, transfer_id=f"tr_{intent_id}"
        )


@pytest_asyncio.fixture(loop_scope="session", scope="session")
async def client() -> AsyncGenerator[AsyncClient, None]:  # type: ignore[override]
    """Session-scoped async HTTP client; keeps the engine pool alive."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1 FROM transactions LIMIT 1"))
    except Exception as exc:  # noqa: BLE001
        pytest.skip(f"migrated Postgres not available: {exc}")
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture(loop_scope="session")
async def marketplace(client: AsyncClient) -> dict[str, str]:
    """Seed a seller with a payable listing plus two buyers; returns their ids."""
    suffix = uuid.uuid4().hex[:8]
    ids = {
        "seller": f"u_seller_{suffix}",
        "buyer": f"u_buyer_{suffix}",
        "buyer2": f"u_buyer2_{suffix}",
        "listing": f"lst_{suffix}",
    }
    async with async_session_factory() as db:
        for key in ("seller", "buyer", "buyer2"):
            await db.execute(
                text("INSERT INTO users (id, email, name) VALUES (:id, :email, :name)"),
                {"id": ids[key], "email": f"{ids[key]}@example.com", "name": key},
            )
        await db.execute(
            text("""
                INSERT INTO seller_profiles (user_id, payout_account_id, payouts_enabled)
                VALUES (:id, 'acct_test', TRUE)
            """),
            {"id": ids["seller"]},
        )
        await db.execute(
            text("""
                INSERT INTO listings (id, seller_id, asking_price, pickup_city, pickup_state)
                VALUES (:id, :seller, 12000, 'Austin', 'TX')
            """),
            {"id": ids["listing"], "seller": ids["seller"]},
        )
        await db.commit()
    return ids


@pytest.fixture
def stub_service() -> Iterator[EscrowService]:
    """Route the transactions API through an EscrowService backed by StubStripe."""
    service = EscrowService(gateway=StubStripe())
    with patch.object(transactions_api, "_service", service):
        yield service
