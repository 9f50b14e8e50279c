"""mp_escrow REST API — 4 endpoints, all require JWT authentication.

PATCH /transactions/{id} dispatches on ``action``; every action answers with
the transaction's joined detail view.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.mp_common.database import get_db_session
from src.mp_common.enums import TransactionAction, TransactionRole
from src.mp_common.response import ApiResponse, success_response
from src.mp_escrow.application.schemas import (
    CreateTransactionRequest,
    UpdateTransactionRequest,
)
from src.mp_escrow.application.service import EscrowService
from src.mp_gateway.auth.dependencies import CurrentUser, get_current_user

router = APIRouter(prefix="/transactions", tags=["transactions"])

_service = EscrowService()


def _wrap(request: Request, data: dict) -> ApiResponse:
    resp = success_response(data)
    resp.request_id = getattr(request.state, "request_id", resp.request_id)
    return resp


@router.post("", status_code=201)
async def create_transaction(
    body: CreateTransactionRequest,
    current_user: Annotated[CurrentUser, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
) -> ApiResponse:
    data = await _service.create_transaction(db, current_user.id, current_user.email, body)
    return _wrap(request, data.model_dump(mode="json"))


@router.get("")
async def list_transactions(
    current_user: Annotated[CurrentUser, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
    role: TransactionRole | None = Query(None, description="Only transactions where I am buyer/seller"),
    limit: int = Query(50, ge=1, le=100),
) -> ApiResponse:
    data = await _service.list_user_transactions(
        db, current_user.id, role.value if role else None, limit
    )
    return _wrap(request, data.model_dump(mode="json"))


@router.get("/{transaction_id}")
async def get_transaction(
    transaction_id: str,
    current_user: Annotated[CurrentUser, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
) -> ApiResponse:
    data = await _service.get_transaction(db, transaction_id, current_user.id)
    return _wrap(request, data.model_dump(mode="json"))


@router.patch("/{transaction_id}")
async def update_transaction(
    transaction_id: str,
    body: UpdateTransactionRequest,
    current_user: Annotated[CurrentUser, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
) -> ApiResponse:
    payment_action = None
    if body.action == TransactionAction.CONFIRM_PAYMENT:
        await _service.confirm_payment_authorized(
            db, transaction_id, body.payment_intent_id or "", caller_id=current_user.id
        )
    elif body.action == TransactionAction.SET_PICKUP:
        await _service.set_pickup_details(
            db,
            current_user.id,
            transaction_id,
            body.pickup_address or "",
            body.pickup_scheduled_at,
        )
    elif body.action == TransactionAction.CONFIRM_COMPLETE:
        await _service.confirm_pickup_complete(db, current_user.id, transaction_id)
    else:
        cancelled = await _service.cancel_transaction(
            db, current_user.id, transaction_id, body.reason
        )
        payment_action = cancelled.payment_action.value

    detail = await _service.get_transaction(db, transaction_id, current_user.id)
    data = detail.model_dump(mode="json")
    data["payment_action"] = payment_action
    return _wrap(request, data)
