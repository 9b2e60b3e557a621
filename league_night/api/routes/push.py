"""Push notification subscription route handlers."""

import logging
import os

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from league_night.api.auth_dependencies import get_current_user_id
from league_night.api.routes import limiter, WRITE_RATE_LIMIT
from league_night.database.db import get_db_session
from league_night.models.schemas import (
    ok,
    PushSubscribeRequest,
    PushSubscriptionResponse,
    PushUnsubscribeRequest,
)
from league_night.services import push_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/api/push/vapid-public-key")
async def get_vapid_public_key():
    """Public VAPID key browsers need before subscribing. No auth required."""
    public_key = os.getenv("VAPID_PUBLIC_KEY")
    if not public_key:
        raise HTTPException(status_code=503, detail="Push notifications are not configured")
    return ok({"public_key": public_key})


@router.post("/api/push/subscribe")
@limiter.limit(WRITE_RATE_LIMIT)
async def subscribe(
    request: Request,
    payload: PushSubscribeRequest,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Register (or reactivate) the caller's device for push notifications."""
    subscription = await push_service.subscribe(
        session,
        user_id,
        endpoint=payload.subscription.endpoint,
        p256dh_key=payload.subscription.keys.p256dh,
        auth_key=payload.subscription.keys.auth,
        device_info=payload.device_info,
        user_agent=request.headers.get("user-agent"),
    )
    return ok(PushSubscriptionResponse.model_validate(subscription).model_dump(mode="json"))


@router.post("/api/push/unsubscribe")
async def unsubscribe(
    payload: PushUnsubscribeRequest,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Deactivate the caller's subscription for an endpoint."""
    count = await push_service.unsubscribe(session, user_id, payload.endpoint)
    return ok({"deactivated": count})


@router.get("/api/push/subscriptions")
async def list_subscriptions(
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """List the caller's active push devices."""
    subscriptions = await push_service.list_active_subscriptions(session, user_id)
    return ok(
        [PushSubscriptionResponse.model_validate(s).model_dump(mode="json") for s in subscriptions]
    )


@router.post("/api/push/test")
@limiter.limit("5/minute")
async def send_test_notification(
    request: Request,
    user_id: int = Depends(get_current_user_id),
):
    """Send a test notification to all of the caller's devices."""
    result = await push_service.send_test(user_id)
    return ok(result.to_dict())
