"""Tests for mp_common.errors and mp_common.response."""

from src.mp_common.errors import (
    AlreadyTerminalError,
    AppError,
    CaptureFailedError,
    CaptureInProgressError,
    GatewayError,
    InvalidStateForCompletionError,
    InvariantViolationError,
    ListingUnavailableError,
    NotPartyToTransactionError,
    SelfPurchaseError,
    TransactionNotFoundError,
)
from src.mp_common.response import ApiResponse, error_response, success_response


class TestAppError:
    def test_base_error(self) -> None:
        err = AppError(code=9002, message="Internal error")
        assert err.code == 9002
        assert err.message == "Internal error"
        assert err.http_status == 500
        assert isinstance(err, Exception)


class TestEscrowErrors:
    def test_listing_unavailable_is_conflict(self) -> None:
        err = ListingUnavailableError("lst-9")
        assert err.code == 2001
        assert err.http_status == 409
        assert "lst-9" in err.message

    def test_self_purchase(self) -> None:
        err = SelfPurchaseError()
        assert err.code == 2002
        assert err.http_status == 422

    def test_transaction_not_found(self) -> None:
        err = TransactionNotFoundError("txn_1")
        assert err.code == 3001
        assert err.http_status == 404

    def test_not_party(self) -> None:
        assert NotPartyToTransactionError().http_status == 403

    def test_invalid_state_carries_status(self) -> None:
        err = InvalidStateForCompletionError("pending")
        assert err.code == 3007
        assert "pending" in err.message

    def test_terminal_and_in_flight_are_conflicts(self) -> None:
        assert AlreadyTerminalError("txn_1", "completed").http_status == 409
        assert CaptureInProgressError("txn_1").http_status == 409

    def test_gateway_errors_carry_retryable(self) -> None:
        assert GatewayError("timeout", retryable=True).retryable is True
        assert GatewayError("declined").retryable is False
        err = CaptureFailedError("card expired")
        assert err.code == 4003
        assert err.http_status == 402
        assert err.retryable is False

    def test_invariant_violation_is_server_error(self) -> None:
        err = InvariantViolationError("fee mismatch")
        assert err.code == 9003
        assert err.http_status == 500


class TestApiResponse:
    def test_success_response(self) -> None:
        resp = success_response({"id": "txn_1"})
        assert isinstance(resp, ApiResponse)
        assert resp.code == 0
        assert resp.message == "success"
        assert resp.data == {"id": "txn_1"}
        assert resp.request_id.startswith("req_")

    def test_error_response_with_detail(self) -> None:
        resp = error_response(4001, "Payment processor error", {"retryable": True})
        assert resp.code == 4001
        assert resp.data == {"retryable": True}
