"""Global enums — must match DB CHECK constraints exactly.

Transaction and listing statuses are lowercase text in the database.
"""

from enum import Enum


class TransactionStatus(str, Enum):
    PENDING = "pending"
    PAYMENT_AUTHORIZED = "payment_authorized"
    PICKUP_SCHEDULED = "pickup_scheduled"
    COMPLETED = "completed"
    PAID_OUT = "paid_out"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class ListingStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    SOLD = "sold"
    CANCELLED = "cancelled"


class GatewayOutcome(str, Enum):
    """Tri-state result of every payment processor call."""
    SUCCEEDED = "succeeded"
    FAILED_TERMINAL = "failed_terminal"
    FAILED_RETRYABLE = "failed_retryable"


class PaymentAction(str, Enum):
    """What cancellation did to the money held at the processor."""
    AUTHORIZATION_CANCELLED = "authorization_cancelled"
    REFUNDED = "refunded"
    NONE = "none"
    RELEASE_FAILED = "release_failed"


class TransactionRole(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"


class TransactionAction(str, Enum):
    CONFIRM_PAYMENT = "confirm_payment"
    SET_PICKUP = "set_pickup"
    CONFIRM_COMPLETE = "confirm_complete"
    CANCEL = "cancel"
