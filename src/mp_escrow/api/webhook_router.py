"""Stripe webhook endpoint.

Events are verified with the endpoint signing secret and de-duplicated in
Redis by event id, so a redelivered event is acknowledged without being
applied twice. A claim is dropped again if handling fails, letting Stripe's
retry reprocess it.
"""

import logging
from typing import Annotated

import redis.asyncio as aioredis
import stripe
from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.mp_common.database import get_db_session
from src.mp_common.errors import InvalidWebhookError
from src.mp_common.redis_client import claim_once, get_redis, release_claim
from src.mp_common.response import ApiResponse, success_response
from src.mp_escrow.application.schemas import WebhookAck
from src.mp_escrow.application.service import EscrowService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

_EVENT_KEY_PREFIX = "stripe:event:"

_service = EscrowService()


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db_session)],
    redis: Annotated[aioredis.Redis, Depends(get_redis)],
    stripe_signature: Annotated[str | None, Header(alias="Stripe-Signature")] = None,
) -> ApiResponse:
    payload = await request.body()
    if not stripe_signature:
        raise InvalidWebhookError("missing signature")
    try:
        event = stripe.Webhook.construct_event(
            payload, stripe_signature, settings.STRIPE_WEBHOOK_SECRET
        )
    except ValueError:
        raise InvalidWebhookError("invalid payload") from None
    except stripe.SignatureVerificationError:
        logger.warning("Stripe webhook signature verification failed")
        raise InvalidWebhookError("invalid signature") from None

    event_id = event["id"]
    event_type = event["type"]
    key = f"{_EVENT_KEY_PREFIX}{event_id}"

    if not await claim_once(redis, key, settings.WEBHOOK_EVENT_TTL_SECONDS):
        logger.info("Duplicate Stripe event %s (%s) skipped", event_id, event_type)
        ack = WebhookAck(event_id=event_id, event_type=event_type, result="duplicate")
    else:
        intent = event["data"]["object"]
        metadata = intent.get("metadata") or {}
        try:
            result = await _service.handle_payment_event(
                db, event_type, intent.get("id", ""), metadata.get("transaction_id")
            )
        except Exception:
            await release_claim(redis, key)
            raise
        logger.info("Stripe event %s (%s): %s", event_id, event_type, result)
        ack = WebhookAck(event_id=event_id, event_type=event_type, result=result)

    resp = success_response(ack.model_dump())
    resp.request_id = getattr(request.state, "request_id", resp.request_id)
    return resp
