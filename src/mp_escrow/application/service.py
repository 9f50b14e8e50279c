"""EscrowService — the escrow transaction engine.

Drives one purchase as a saga across three independent parties: the
Transaction Ledger (Postgres), the Listing Store, and the payment processor.

Rules every operation follows:
  - No database transaction is open while the processor is called. Each
    ledger step commits on its own; correctness comes from guarded updates
    and idempotency keys, not from held locks.
  - A forward transition is committed only after its external effect is
    confirmed. Cancellation is the exception: it is the compensation, so the
    ledger is cancelled first and the processor hold released after.
  - Listing status active → pending is the purchase serialization point. The
    pending ledger row is written in the same database transaction.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.mp_common.datetime_utils import utc_now
from src.mp_common.enums import ListingStatus, PaymentAction
from src.mp_common.errors import (
    AlreadyTerminalError,
    CaptureFailedError,
    CaptureInProgressError,
    GatewayError,
    InvalidAmountError,
    InvalidStateForCompletionError,
    InvalidStateForPayoutError,
    InvalidStateForPickupError,
    InvariantViolationError,
    ListingUnavailableError,
    NotBuyerError,
    NotPartyToTransactionError,
    NotSellerError,
    PaymentNotAuthorizedError,
    SelfPurchaseError,
    SellerNotPayableError,
    TransactionNotFoundError,
)
from src.mp_common.id_generator import generate_id
from src.mp_escrow.application.schemas import (
    CancelTransactionResponse,
    CreateTransactionRequest,
    CreateTransactionResponse,
    TransactionDetailResponse,
    TransactionListResponse,
    TransactionResponse,
)
from src.mp_escrow.domain.fee import compute_fee_split
from src.mp_escrow.domain.gateway import (
    AUTHORIZED_STATUS,
    CANCELED_STATUS,
    CAPTURED_STATUS,
    RELEASABLE_STATUSES,
    AuthorizationRequest,
    PaymentGatewayProtocol,
)
from src.mp_escrow.domain.invariants import verify_transaction_invariants
from src.mp_escrow.domain.models import Transaction
from src.mp_escrow.domain.repository import TransactionRepositoryProtocol
from src.mp_escrow.domain.state_machine import (
    CANCELLED,
    COMPLETED,
    DISPUTED,
    PAID_OUT,
    PENDING,
    PICKUP_SCHEDULED,
    can_apply,
)
from src.mp_escrow.infrastructure.persistence import TransactionRepository
from src.mp_escrow.infrastructure.stripe_gateway import StripeGateway
from src.mp_listing.domain.repository import ListingStoreProtocol
from src.mp_listing.infrastructure.persistence import ListingStore

logger = logging.getLogger(__name__)

_ACTIVE = ListingStatus.ACTIVE.value
_PENDING = ListingStatus.PENDING.value
_SOLD = ListingStatus.SOLD.value


class EscrowService:
    def __init__(
        self,
        repo: TransactionRepositoryProtocol | None = None,
        listings: ListingStoreProtocol | None = None,
        gateway: PaymentGatewayProtocol | None = None,
        fee_rate_bps: int | None = None,
        currency: str | None = None,
        claim_timeout_seconds: int | None = None,
    ) -> None:
        self._repo: TransactionRepositoryProtocol = repo or TransactionRepository()
        self._listings: ListingStoreProtocol = listings or ListingStore()
        self._gateway: PaymentGatewayProtocol = gateway or StripeGateway()
        self._fee_rate_bps = settings.PLATFORM_FEE_BPS if fee_rate_bps is None else fee_rate_bps
        self._currency = currency or settings.CURRENCY
        self._claim_timeout_seconds = (
            settings.CAPTURE_CLAIM_TIMEOUT_SECONDS
            if claim_timeout_seconds is None
            else claim_timeout_seconds
        )

    # ------------------------------------------------------------------
    # Purchase
    # ------------------------------------------------------------------

    async def create_transaction(
        self,
        db: AsyncSession,
        buyer_id: str,
        buyer_contact: str | None,
        req: CreateTransactionRequest,
    ) -> CreateTransactionResponse:
        """Hold the listing, open a pending transaction and authorize the buyer's funds.

        The listing hold and the pending ledger row commit together, before the
        processor is called. A request that dies during authorization leaves a
        pending row without a payment; the buyer's retry finds that row and
        finishes the authorization under the same idempotency key.
        """
        if req.amount <= 0:
            raise InvalidAmountError(req.amount)

        existing = await self._repo.find_active_for_listing(db, req.listing_id)
        if existing is not None:
            if existing.buyer_id == buyer_id and existing.status == PENDING:
                return await self._resume_pending(db, existing, buyer_contact)
            raise ListingUnavailableError(req.listing_id)

        listing = await self._listings.get_active_listing(db, req.listing_id)
        if listing is None:
            raise ListingUnavailableError(req.listing_id)
        if listing.seller_id == buyer_id:
            raise SelfPurchaseError()
        if not listing.is_seller_payable:
            raise SellerNotPayableError(listing.seller_id)

        split = compute_fee_split(req.amount, self._fee_rate_bps)
        tx = Transaction(
            id=generate_id("txn_"),
            listing_id=listing.id,
            buyer_id=buyer_id,
            seller_id=listing.seller_id,
            amount=split.amount,
            platform_fee=split.platform_fee,
            seller_payout=split.seller_payout,
            status=PENDING,
            currency=self._currency,
            pickup_notes=req.pickup_notes,
        )
        verify_transaction_invariants(tx)

        # Serialization point: exactly one racing buyer flips the listing
        created: Transaction | None = None
        try:
            reserved = await self._listings.set_status(db, listing.id, _ACTIVE, _PENDING)
            if reserved:
                created = await self._repo.insert(db, tx)
                await db.commit()
            else:
                await db.rollback()
        except Exception:
            await db.rollback()
            raise
        if created is None:
            logger.info(
                "Listing %s lost purchase race: buyer=%s", listing.id, buyer_id
            )
            raise ListingUnavailableError(listing.id)

        logger.info(
            "Transaction %s opened: listing=%s buyer=%s amount=%d fee=%d payout=%d",
            created.id,
            created.listing_id,
            buyer_id,
            created.amount,
            created.platform_fee,
            created.seller_payout,
        )
        return await self._authorize(db, created, listing.payout_destination, buyer_contact)

    async def _resume_pending(
        self, db: AsyncSession, tx: Transaction, buyer_contact: str | None
    ) -> CreateTransactionResponse:
        if tx.payment_intent_id is None:
            logger.info("Create retry resumes authorization of transaction %s", tx.id)
            listing = await self._listings.get_listing(db, tx.listing_id)
            payee = listing.payout_destination if listing is not None else None
            return await self._authorize(db, tx, payee, buyer_contact)

        live = await self._gateway.retrieve_status(tx.payment_intent_id)
        if not live.succeeded:
            raise GatewayError(live.error or "status lookup failed", retryable=live.retryable)
        logger.info("Create retry returned existing transaction %s", tx.id)
        return CreateTransactionResponse(
            transaction=TransactionResponse.from_domain(tx),
            client_secret=live.client_secret,
        )

    async def _authorize(
        self,
        db: AsyncSession,
        tx: Transaction,
        payee_ref: str | None,
        buyer_contact: str | None,
    ) -> CreateTransactionResponse:
        """Authorize a pending transaction and record its payment reference.

        A retryable failure keeps the transaction pending so the buyer's retry
        resumes it. A terminal failure cancels it and frees the listing.
        """
        auth = await self._gateway.authorize(
            AuthorizationRequest(
                transaction_id=tx.id,
                listing_id=tx.listing_id,
                buyer_id=tx.buyer_id,
                seller_id=tx.seller_id,
                amount=tx.amount,
                currency=tx.currency,
                platform_fee=tx.platform_fee,
                payee_ref=payee_ref or "",
                payer_contact=buyer_contact,
            )
        )
        if not auth.succeeded or not auth.reference_id:
            if not auth.retryable:
                await self._abandon_unpaid(db, tx, auth.error or "authorization failed")
            raise GatewayError(auth.error or "authorization failed", retryable=auth.retryable)

        try:
            attached = await self._repo.attach_payment(db, tx.id, auth.reference_id)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        if attached is None:
            current = await self._get_or_raise(db, tx.id)
            if current.payment_intent_id != auth.reference_id:
                # Cancelled while the authorization was in flight
                await self._void_authorization(tx.id, auth.reference_id)
                if current.is_terminal:
                    raise AlreadyTerminalError(current.id, current.status)
                raise InvariantViolationError(
                    f"transaction {current.id} holds payment {current.payment_intent_id}, "
                    f"not {auth.reference_id}"
                )
            attached = current

        logger.info("Transaction %s authorization created: intent=%s", tx.id, auth.reference_id)
        return CreateTransactionResponse(
            transaction=TransactionResponse.from_domain(attached),
            client_secret=auth.client_secret,
        )

    async def _abandon_unpaid(self, db: AsyncSession, tx: Transaction, error: str) -> None:
        try:
            cancelled = await self._repo.mark_cancelled(
                db, tx.id, tx.buyer_id, f"payment authorization failed: {error}"
            )
            if cancelled is not None:
                await self._listings.set_status(db, tx.listing_id, _PENDING, _ACTIVE)
            await db.commit()
        except Exception:
            await db.rollback()
            logger.exception(
                "Transaction %s left pending after failed authorization; reconciliation required",
                tx.id,
            )
            return
        if cancelled is not None:
            logger.info("Transaction %s cancelled: authorization failed (%s)", tx.id, error)

    # ------------------------------------------------------------------
    # Payment authorization
    # ------------------------------------------------------------------

    async def confirm_payment_authorized(
        self,
        db: AsyncSession,
        transaction_id: str,
        payment_intent_id: str,
        caller_id: str | None = None,
    ) -> TransactionResponse:
        """pending → payment_authorized once the processor holds the funds.

        Idempotent: a repeat after the transition is a no-op. ``caller_id`` is
        None when driven by the processor webhook.
        """
        tx = await self._get_or_raise(db, transaction_id)
        if caller_id is not None and not tx.is_party(caller_id):
            raise NotPartyToTransactionError()
        if tx.payment_intent_id != payment_intent_id:
            raise PaymentNotAuthorizedError(payment_intent_id, "unknown payment")
        if tx.status in (CANCELLED, DISPUTED):
            raise AlreadyTerminalError(tx.id, tx.status)
        if not can_apply("confirm_payment_authorized", tx.status):
            logger.info("confirm_payment no-op: transaction %s already %s", tx.id, tx.status)
            return TransactionResponse.from_domain(tx)

        live = await self._gateway.retrieve_status(payment_intent_id)
        if not live.succeeded:
            raise GatewayError(live.error or "status lookup failed", retryable=live.retryable)
        if live.status != AUTHORIZED_STATUS:
            raise PaymentNotAuthorizedError(payment_intent_id, live.status)

        try:
            updated = await self._repo.mark_payment_authorized(db, tx.id, payment_intent_id)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        if updated is None:
            # A concurrent confirmation (or a cancellation) got there first
            current = await self._get_or_raise(db, tx.id)
            if current.status in (CANCELLED, DISPUTED):
                raise AlreadyTerminalError(current.id, current.status)
            logger.info("confirm_payment no-op after race: %s is %s", current.id, current.status)
            return TransactionResponse.from_domain(current)

        logger.info("Transaction %s payment authorized: intent=%s", updated.id, payment_intent_id)
        return TransactionResponse.from_domain(updated)

    # ------------------------------------------------------------------
    # Pickup scheduling
    # ------------------------------------------------------------------

    async def set_pickup_details(
        self,
        db: AsyncSession,
        seller_id: str,
        transaction_id: str,
        pickup_address: str,
        pickup_scheduled_at: datetime | None = None,
    ) -> TransactionResponse:
        tx = await self._get_or_raise(db, transaction_id)
        if tx.seller_id != seller_id:
            raise NotSellerError()
        if not can_apply("set_pickup_details", tx.status):
            raise InvalidStateForPickupError(tx.status)
        if tx.capture_requested_at is not None:
            raise CaptureInProgressError(tx.id)

        try:
            updated = await self._repo.schedule_pickup(
                db, tx.id, seller_id, pickup_address.strip(), pickup_scheduled_at
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        if updated is None:
            current = await self._get_or_raise(db, tx.id)
            if current.capture_requested_at is not None and current.status == PICKUP_SCHEDULED:
                raise CaptureInProgressError(current.id)
            raise InvalidStateForPickupError(current.status)

        logger.info(
            "Transaction %s pickup scheduled%s",
            updated.id,
            " (rescheduled)" if tx.status == PICKUP_SCHEDULED else "",
        )
        return TransactionResponse.from_domain(updated)

    # ------------------------------------------------------------------
    # Completion (capture)
    # ------------------------------------------------------------------

    async def confirm_pickup_complete(
        self, db: AsyncSession, buyer_id: str, transaction_id: str
    ) -> TransactionResponse:
        """Capture the held funds; the only point at which money moves.

        The capture claim (capture_requested_at) is committed before the
        processor call. While it is live it blocks cancellation and any second
        capture attempt. A failed capture releases the claim and leaves
        pickup_scheduled. Repeating the call after completion is a no-op.
        """
        tx = await self._get_or_raise(db, transaction_id)
        if tx.buyer_id != buyer_id:
            raise NotBuyerError()
        if tx.status in (COMPLETED, PAID_OUT):
            logger.info("confirm_complete no-op: transaction %s already %s", tx.id, tx.status)
            return TransactionResponse.from_domain(tx)
        if not can_apply("confirm_pickup_complete", tx.status):
            raise InvalidStateForCompletionError(tx.status)

        claimed_at = utc_now()
        stale_before = claimed_at - timedelta(seconds=self._claim_timeout_seconds)
        try:
            claimed = await self._repo.claim_capture(db, tx.id, buyer_id, claimed_at, stale_before)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        if claimed is None:
            current = await self._get_or_raise(db, tx.id)
            if current.status in (COMPLETED, PAID_OUT):
                logger.info(
                    "confirm_complete no-op after race: %s is %s", current.id, current.status
                )
                return TransactionResponse.from_domain(current)
            if current.status == PICKUP_SCHEDULED and current.capture_requested_at is not None:
                raise CaptureInProgressError(current.id)
            raise InvalidStateForCompletionError(current.status)
        if not claimed.payment_intent_id:
            raise InvariantViolationError(f"transaction {tx.id} has no payment to capture")

        capture = await self._gateway.capture(claimed.id, claimed.payment_intent_id)
        if not capture.succeeded:
            await self._release_capture_claim(db, claimed.id, claimed_at)
            raise CaptureFailedError(
                capture.error or "capture was not confirmed", retryable=capture.retryable
            )

        try:
            completed = await self._repo.mark_completed(db, claimed.id, utc_now())
            if completed is not None:
                sold = await self._listings.set_status(db, completed.listing_id, _PENDING, _SOLD)
                if not sold:
                    logger.critical(
                        "Listing %s was not pending when transaction %s completed",
                        completed.listing_id,
                        completed.id,
                    )
                await self._listings.increment_seller_sale_count(db, completed.seller_id)
            await db.commit()
        except Exception:
            await db.rollback()
            logger.critical(
                "Captured payment %s for transaction %s but the completion write failed; "
                "reconciliation required (a buyer retry re-captures idempotently)",
                claimed.payment_intent_id,
                claimed.id,
                exc_info=True,
            )
            raise

        if completed is None:
            current = await self._get_or_raise(db, claimed.id)
            if (
                current.status in (COMPLETED, PAID_OUT)
                and current.payment_intent_id == claimed.payment_intent_id
            ):
                logger.info(
                    "confirm_complete no-op: %s completed by a concurrent request", current.id
                )
                return TransactionResponse.from_domain(current)
            logger.critical(
                "Captured payment %s for transaction %s but it is now %s (claim=%s)",
                claimed.payment_intent_id,
                current.id,
                current.status,
                current.capture_requested_at,
            )
            raise InvariantViolationError(
                f"capture succeeded for {current.id} but it is {current.status}"
            )

        logger.info(
            "Transaction %s completed: captured %d, seller payout %d",
            completed.id,
            completed.amount,
            completed.seller_payout,
        )
        return TransactionResponse.from_domain(completed)


    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel_transaction(
        self,
        db: AsyncSession,
        caller_id: str,
        transaction_id: str,
        reason: str | None = None,
    ) -> CancelTransactionResponse:
        tx = await self._get_or_raise(db, transaction_id)
        if not tx.is_party(caller_id):
            raise NotPartyToTransactionError()
        if tx.is_terminal:
            raise AlreadyTerminalError(tx.id, tx.status)
        if tx.capture_requested_at is not None:
            raise CaptureInProgressError(tx.id)

        try:
            cancelled = await self._repo.mark_cancelled(db, tx.id, caller_id, reason)
            if cancelled is not None:
                reactivated = await self._listings.set_status(
                    db, cancelled.listing_id, _PENDING, _ACTIVE
                )
                if not reactivated:
                    logger.warning(
                        "Listing %s was not pending when transaction %s was cancelled",
                        cancelled.listing_id,
                        cancelled.id,
                    )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        if cancelled is None:
            current = await self._get_or_raise(db, tx.id)
            if current.is_terminal:
                raise AlreadyTerminalError(current.id, current.status)
            raise CaptureInProgressError(current.id)

        logger.info(
            "Transaction %s cancelled by %s from %s: %s",
            cancelled.id,
            caller_id,
            tx.status,
            reason or "no reason given",
        )
        action = await self._release_payment(cancelled)
        return CancelTransactionResponse(
            transaction=TransactionResponse.from_domain(cancelled),
            payment_action=action,
        )

    async def _release_payment(self, tx: Transaction) -> PaymentAction:
        """Compensate at the processor for a cancelled transaction.

        Failures are logged for manual reconciliation and reported to the
        caller as RELEASE_FAILED; the ledger already says cancelled.
        """
        if not tx.payment_intent_id:
            return PaymentAction.NONE

        live = await self._gateway.retrieve_status(tx.payment_intent_id)
        if not live.succeeded:
            logger.error(
                "Cancelled transaction %s: could not read payment %s (%s); reconciliation required",
                tx.id,
                tx.payment_intent_id,
                live.error,
            )
            return PaymentAction.RELEASE_FAILED

        if live.status == CANCELED_STATUS:
            return PaymentAction.NONE
        if live.status == CAPTURED_STATUS:
            logger.warning(
                "Cancelled transaction %s had a captured payment %s; refunding",
                tx.id,
                tx.payment_intent_id,
            )
            result = await self._gateway.refund(tx.id, tx.payment_intent_id)
            action = PaymentAction.REFUNDED
        elif live.status in RELEASABLE_STATUSES:
            result = await self._gateway.cancel_authorization(tx.id, tx.payment_intent_id)
            action = PaymentAction.AUTHORIZATION_CANCELLED
        else:
            logger.error(
                "Cancelled transaction %s: payment %s in status %s cannot be released; "
                "reconciliation required",
                tx.id,
                tx.payment_intent_id,
                live.status,
            )
            return PaymentAction.RELEASE_FAILED

        if not result.succeeded:
            logger.error(
                "Cancelled transaction %s: %s of payment %s failed (%s); reconciliation required",
                tx.id,
                action.value,
                tx.payment_intent_id,
                result.error,
            )
            return PaymentAction.RELEASE_FAILED
        return action

    # ------------------------------------------------------------------
    # Payout sweep (completed → paid_out)
    # ------------------------------------------------------------------

    async def record_payout(
        self, db: AsyncSession, transaction_id: str, transfer_id: str
    ) -> TransactionResponse:
        try:
            updated = await self._repo.mark_paid_out(db, transaction_id, transfer_id)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        if updated is None:
            current = await self._get_or_raise(db, transaction_id)
            if current.status == PAID_OUT:
                return TransactionResponse.from_domain(current)
            raise InvalidStateForPayoutError(current.status)
        logger.info("Transaction %s paid out: transfer=%s", updated.id, transfer_id)
        return TransactionResponse.from_domain(updated)

    async def sweep_payouts(self, db: AsyncSession, limit: int = 100) -> list[str]:
        """Mark completed transactions paid_out once their seller transfer exists.

        Returns the ids advanced. Transactions whose transfer is not visible yet
        are left for the next sweep.
        """
        paid: list[str] = []
        for tx in await self._repo.list_completed_unpaid(db, limit):
            if tx.status != COMPLETED or not tx.payment_intent_id:
                continue
            result = await self._gateway.get_transfer_id(tx.payment_intent_id)
            if not result.succeeded or not result.transfer_id:
                logger.info("Payout sweep: no transfer yet for transaction %s", tx.id)
                continue
            await self.record_payout(db, tx.id, result.transfer_id)
            paid.append(tx.id)
        return paid

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_transaction(
        self, db: AsyncSession, transaction_id: str, user_id: str
    ) -> TransactionDetailResponse:
        detail = await self._repo.get_detail(db, transaction_id, user_id)
        if detail is None:
            raise TransactionNotFoundError(transaction_id)
        return TransactionDetailResponse.from_domain(detail)

    async def list_user_transactions(
        self, db: AsyncSession, user_id: str, role: str | None = None, limit: int = 50
    ) -> TransactionListResponse:
        details = await self._repo.list_details_for_user(db, user_id, role, limit)
        return TransactionListResponse(
            items=[TransactionDetailResponse.from_domain(d) for d in details]
        )

    # ------------------------------------------------------------------
    # Processor events
    # ------------------------------------------------------------------

    async def handle_payment_event(
        self,
        db: AsyncSession,
        event_type: str,
        payment_intent_id: str,
        transaction_id: str | None,
    ) -> str:
        """Apply a processor webhook event. Returns a short outcome label."""
        if not transaction_id:
            return "ignored"

        if event_type == "payment_intent.amount_capturable_updated":
            try:
                await self.confirm_payment_authorized(db, transaction_id, payment_intent_id)
            except AlreadyTerminalError:
                logger.warning(
                    "Authorization %s arrived for terminal transaction %s",
                    payment_intent_id,
                    transaction_id,
                )
                return "ignored_terminal"
            return "payment_authorized"

        if event_type == "payment_intent.canceled":
            tx = await self._repo.get_by_id(db, transaction_id)
            if tx is not None and tx.is_active:
                logger.error(
                    "Processor cancelled payment %s of active transaction %s (%s); "
                    "reconciliation required",
                    payment_intent_id,
                    tx.id,
                    tx.status,
                )
                return "flagged"
            return "ignored"

        return "ignored"

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _get_or_raise(self, db: AsyncSession, transaction_id: str) -> Transaction:
        tx = await self._repo.get_by_id(db, transaction_id)
        if tx is None:
            raise TransactionNotFoundError(transaction_id)
        return tx

    async def _void_authorization(self, transaction_id: str, intent_id: str) -> None:
        result = await self._gateway.cancel_authorization(transaction_id, intent_id)
        if not result.succeeded:
            logger.error(
                "Orphaned authorization %s for transaction %s could not be cancelled (%s); "
                "reconciliation required",
                intent_id,
                transaction_id,
                result.error,
            )
        else:
            logger.info("Cancelled authorization %s of cancelled transaction %s",
                        intent_id, transaction_id)

    async def _release_capture_claim(
        self, db: AsyncSession, transaction_id: str, claimed_at: datetime
    ) -> None:
        try:
            await self._repo.release_capture_claim(db, transaction_id, claimed_at)
            await db.commit()
        except Exception:
            await db.rollback()
            logger.exception(
                "Capture claim on %s not released; cancellation stays blocked until retry",
                transaction_id,
            )
