"""Unified error codes and custom exceptions.

Error code ranges:
  1xxx: Identity
  2xxx: Listing
  3xxx: Transaction
  4xxx: Payment gateway
  9xxx: System

Precondition (2xxx/3xxx 4xx statuses) and conflict (409) errors are rejected
before any side effect and are safe to show to the user. 4xxx errors carry a
``retryable`` flag: a retryable failure leaves the transaction in its prior
state for a client-driven retry.
"""


class AppError(Exception):
    """Base application error."""

    def __init__(
        self,
        code: int,
        message: str,
        http_status: int = 500,
    ) -> None:
        self.code = code
        self.message = message
        self.http_status = http_status
        super().__init__(message)


# --- 1xxx: Identity ---

class InvalidCredentialsError(AppError):
    def __init__(self) -> None:
        super().__init__(1003, "Invalid or expired credentials", 401)


# --- 2xxx: Listing ---

class ListingUnavailableError(AppError):
    def __init__(self, listing_id: str) -> None:
        super().__init__(2001, f"Listing not found or no longer available: {listing_id}", 409)


class SelfPurchaseError(AppError):
    def __init__(self) -> None:
        super().__init__(2002, "You cannot buy your own listing", 422)


class SellerNotPayableError(AppError):
    def __init__(self, seller_id: str) -> None:
        super().__init__(2003, f"Seller {seller_id} is not set up to receive payments", 422)


class InvalidAmountError(AppError):
    def __init__(self, amount: int) -> None:
        super().__init__(2004, f"Amount must be a positive number of cents, got {amount}", 422)


# --- 3xxx: Transaction ---

class TransactionNotFoundError(AppError):
    def __init__(self, transaction_id: str) -> None:
        super().__init__(3001, f"Transaction not found: {transaction_id}", 404)


class DuplicateActiveTransactionError(AppError):
    def __init__(self, listing_id: str) -> None:
        super().__init__(
            3002, f"Listing {listing_id} already has an active transaction", 409
        )


class NotSellerError(AppError):
    def __init__(self) -> None:
        super().__init__(3003, "Only the seller can perform this action", 403)


class NotBuyerError(AppError):
    def __init__(self) -> None:
        super().__init__(3004, "Only the buyer can confirm pickup", 403)


class NotPartyToTransactionError(AppError):
    def __init__(self) -> None:
        super().__init__(3005, "Not authorized to act on this transaction", 403)


class InvalidStateForPickupError(AppError):
    def __init__(self, status: str) -> None:
        super().__init__(
            3006, f"Transaction in status {status} is not ready for pickup scheduling", 422
        )


class InvalidStateForCompletionError(AppError):
    def __init__(self, status: str) -> None:
        super().__init__(
            3007, f"Transaction in status {status} is not ready for pickup confirmation", 422
        )


class AlreadyTerminalError(AppError):
    def __init__(self, transaction_id: str, status: str) -> None:
        super().__init__(
            3008, f"Transaction {transaction_id} is already {status}", 409
        )


class CaptureInProgressError(AppError):
    def __init__(self, transaction_id: str) -> None:
        super().__init__(
            3009, f"Payment capture is in progress for transaction {transaction_id}", 409
        )


class InvalidStateForPayoutError(AppError):
    def __init__(self, status: str) -> None:
        super().__init__(
            3010, f"Only a completed transaction can be paid out (current status: {status})", 422
        )


# --- 4xxx: Payment gateway ---

class GatewayError(AppError):
    def __init__(self, detail: str, retryable: bool = False) -> None:
        self.retryable = retryable
        super().__init__(4001, f"Payment processor error: {detail}", 502)


class PaymentNotAuthorizedError(AppError):
    def __init__(self, payment_intent_id: str, status: str | None) -> None:
        super().__init__(
            4002, f"Payment {payment_intent_id} was not authorized (status: {status})", 422
        )


class CaptureFailedError(AppError):
    def __init__(self, detail: str, retryable: bool = False) -> None:
        self.retryable = retryable
        super().__init__(4003, f"Payment capture failed: {detail}", 402)


class InvalidWebhookError(AppError):
    def __init__(self, detail: str) -> None:
        super().__init__(4004, f"Rejected processor webhook: {detail}", 400)


# --- 9xxx: System ---

class InternalError(AppError):
    def __init__(self, detail: str = "Internal server error") -> None:
        super().__init__(9002, detail, 500)


class InvariantViolationError(AppError):
    """Programming-logic failure; never a user error."""

    def __init__(self, detail: str) -> None:
        super().__init__(9003, f"Invariant violated: {detail}", 500)
