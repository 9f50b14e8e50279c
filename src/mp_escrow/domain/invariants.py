"""Transaction invariant checks.

A failed check is a programming error, not a user error: it is logged at
CRITICAL and raised as InvariantViolationError.

INV-1: platform_fee + seller_payout == amount
INV-2: buyer_id != seller_id
INV-3: pickup fields present only from pickup_scheduled onward
"""

import logging

from src.mp_common.errors import InvariantViolationError
from src.mp_escrow.domain.models import Transaction
from src.mp_escrow.domain.state_machine import PAYMENT_AUTHORIZED, PENDING

logger = logging.getLogger(__name__)


def _fail(msg: str) -> None:
    logger.critical(msg)
    raise InvariantViolationError(msg)


def verify_transaction_invariants(tx: Transaction) -> None:
    if tx.platform_fee + tx.seller_payout != tx.amount:
        _fail(
            f"INV-1 violated on {tx.id}: platform_fee({tx.platform_fee}) + "
            f"seller_payout({tx.seller_payout}) != amount({tx.amount})"
        )
    if tx.buyer_id == tx.seller_id:
        _fail(f"INV-2 violated on {tx.id}: buyer and seller are both {tx.buyer_id}")
    if tx.status in (PENDING, PAYMENT_AUTHORIZED) and tx.pickup_address is not None:
        _fail(f"INV-3 violated on {tx.id}: pickup address set in status {tx.status}")

    logger.debug("Invariants OK: transaction=%s amount=%d", tx.id, tx.amount)
