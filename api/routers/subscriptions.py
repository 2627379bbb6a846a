"""
Subscription endpoints: premium payment, status, cancellation, auto-renewal.

All endpoints need a bearer token of a non-banned user.
Responses: {"success": true, "data": ...}; errors: {"detail": {"success": false, "message": ...}}
"""

import math

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import get_db
from deps import get_current_user, get_lifecycle, http_error
from models.user import User
from schemas import (
    CancelRequest,
    PaymentCreate,
    PaymentCreated,
    PaymentStatus,
    SubscriptionResponse,
    SubscriptionStatus,
)
from services.errors import SubscriptionError

router = APIRouter()


@router.post("/payment", status_code=201)
async def create_payment(
    body: PaymentCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    lifecycle=Depends(get_lifecycle),
):
    """Create a one-month premium payment through Duitku."""
    try:
        sub = await lifecycle.create_payment(db, user, body.payment_method, body.contact())
    except SubscriptionError as e:
        raise http_error(e)

    return {
        "success": True,
        "message": "Payment created successfully",
        "data": PaymentCreated.model_validate(sub).model_dump(mode="json"),
    }


@router.get("/status/{order_id}")
async def payment_status(
    order_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    lifecycle=Depends(get_lifecycle),
):
    try:
        sub = await lifecycle.check_status(db, user, order_id)
    except SubscriptionError as e:
        raise http_error(e)
    return {"success": True, "data": PaymentStatus.model_validate(sub).model_dump(mode="json")}


@router.post("/cancel")
async def cancel_subscription(
    body: CancelRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    lifecycle=Depends(get_lifecycle),
):
    """
    Cancel the current subscription.

    With request_refund=true and within 5 days of payment the full amount is
    refunded and premium ends now; otherwise premium stays until the end date.
    """
    try:
        sub = await lifecycle.cancel(db, user, body.reason, body.request_refund)
    except SubscriptionError as e:
        raise http_error(e)

    if sub.status == "refunded":
        message = "Subscription cancelled and refunded"
    else:
        message = "Subscription cancelled. Premium stays active until the end of the period"
    return {
        "success": True,
        "message": message,
        "data": SubscriptionResponse.model_validate(sub).model_dump(mode="json"),
    }


@router.patch("/auto-renewal")
async def toggle_auto_renewal(
    payload: dict = Body(...),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    lifecycle=Depends(get_lifecycle),
):
    enabled = payload.get("enabled")
    if not isinstance(enabled, bool):
        raise HTTPException(
            status_code=400,
            detail={"success": False, "message": "enabled must be a boolean value"},
        )

    try:
        sub = await lifecycle.set_auto_renewal(db, user, enabled)
    except SubscriptionError as e:
        raise http_error(e)

    return {
        "success": True,
        "message": f"Auto-renewal {'enabled' if enabled else 'disabled'}",
        "data": {
            "order_id": sub.order_id,
            "status": sub.status,
            "auto_renewal_enabled": sub.auto_renewal_enabled,
            "subscription_end_date": sub.subscription_end_date,
        },
    }


@router.get("/history")
async def subscription_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: SubscriptionStatus | None = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    lifecycle=Depends(get_lifecycle),
):
    items, total = await lifecycle.history(
        db, user, page=page, limit=limit, status=status.value if status else None,
    )
    return {
        "success": True,
        "data": {
            "subscriptions": [
                SubscriptionResponse.model_validate(s).model_dump(mode="json") for s in items
            ],
            "pagination": {
                "current_page": page,
                "total_pages": math.ceil(total / limit),
                "total_items": total,
                "items_per_page": limit,
            },
        },
    }


@router.get("/current")
async def current_subscription(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    lifecycle=Depends(get_lifecycle),
):
    return {"success": True, "data": await lifecycle.current(db, user)}


@router.get("/refund-eligibility")
async def refund_eligibility(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    lifecycle=Depends(get_lifecycle),
):
    try:
        data = await lifecycle.refund_eligibility(db, user)
    except SubscriptionError as e:
        raise http_error(e)
    return {"success": True, "data": data}


@router.get("/details")
async def subscription_details(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    lifecycle=Depends(get_lifecycle),
):
    """Latest subscription with refund, renewal and grace-period figures."""
    try:
        data = await lifecycle.details(db, user)
    except SubscriptionError as e:
        raise http_error(e)
    return {"success": True, "data": data}


@router.get("/methods")
async def payment_methods(
    user: User = Depends(get_current_user),
    lifecycle=Depends(get_lifecycle),
):
    try:
        data = await lifecycle.payment_methods()
    except SubscriptionError as e:
        raise http_error(e)
    return {"success": True, "data": data}
