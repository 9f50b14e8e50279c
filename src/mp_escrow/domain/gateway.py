"""Payment Gateway Adapter contract.

The adapter owns no state. Every call is keyed by an idempotency key derived
from the transaction id and the operation name, so a retried call can never
authorize, capture, cancel or refund twice. Every call returns a GatewayResult
with a tri-state outcome instead of raising, leaving the compensate-or-retry
decision to the engine.
"""

from dataclasses import dataclass, field
from typing import Protocol

from src.mp_common.enums import GatewayOutcome

# Live processor statuses the engine reasons about
AUTHORIZED_STATUS = "requires_capture"
CAPTURED_STATUS = "succeeded"
CANCELED_STATUS = "canceled"
RELEASABLE_STATUSES = frozenset({
    "requires_payment_method",
    "requires_confirmation",
    "requires_action",
    AUTHORIZED_STATUS,
})


def idempotency_key(transaction_id: str, operation: str) -> str:
    return f"{transaction_id}:{operation}"


@dataclass(frozen=True)
class AuthorizationRequest:
    transaction_id: str
    listing_id: str
    buyer_id: str
    seller_id: str
    amount: int
    currency: str
    platform_fee: int
    payee_ref: str              # seller's connected payout account
    payer_contact: str | None   # receipt email

    @property
    def metadata(self) -> dict[str, str]:
        # Enough to find the ledger row from the processor side
        return {
            "transaction_id": self.transaction_id,
            "listing_id": self.listing_id,
            "buyer_id": self.buyer_id,
            "seller_id": self.seller_id,
        }


@dataclass(frozen=True)
class GatewayResult:
    outcome: GatewayOutcome
    reference_id: str | None = None
    status: str | None = None          # live processor status after the call
    client_secret: str | None = None
    transfer_id: str | None = None
    error: str | None = None
    details: dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.outcome == GatewayOutcome.SUCCEEDED

    @property
    def retryable(self) -> bool:
        return self.outcome == GatewayOutcome.FAILED_RETRYABLE


class PaymentGatewayProtocol(Protocol):
    async def authorize(self, request: AuthorizationRequest) -> GatewayResult: ...

    async def capture(self, transaction_id: str, intent_id: str) -> GatewayResult: ...

    async def cancel_authorization(
        self, transaction_id: str, intent_id: str
    ) -> GatewayResult: ...

    async def refund(self, transaction_id: str, intent_id: str) -> GatewayResult: ...

    async def retrieve_status(self, intent_id: str) -> GatewayResult: ...

    async def get_transfer_id(self, intent_id: str) -> GatewayResult: ...
