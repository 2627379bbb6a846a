"""
Duitku webhook endpoints: payment callbacks called BY the gateway.

Duitku posts application/x-www-form-urlencoded; JSON bodies are accepted too.
The callback answers in plain text, which is what Duitku expects:
  OK               → 200 (also for repeated callbacks of a settled order)
  Bad Signature    → 400
  Order not found  → 404
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import get_db
from deps import get_lifecycle, http_error
from schemas import PaymentStatus, SimulateCallbackRequest
from services.errors import InvalidSignature, NotFoundError, SubscriptionError

logger = logging.getLogger(__name__)

router = APIRouter()


async def _read_payload(request: Request) -> dict:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


@router.post("", response_class=PlainTextResponse)
async def duitku_callback(
    request: Request,
    db: AsyncSession = Depends(get_db),
    lifecycle=Depends(get_lifecycle),
):
    payload = await _read_payload(request)
    logger.info(
        "Duitku callback: order=%s resultCode=%s",
        payload.get("merchantOrderId"),
        payload.get("resultCode"),
    )

    try:
        await lifecycle.handle_callback(db, payload)
    except InvalidSignature:
        return PlainTextResponse("Bad Signature", status_code=400)
    except NotFoundError:
        return PlainTextResponse("Order not found", status_code=404)

    return PlainTextResponse("OK", status_code=200)


@router.post("/simulate")
async def simulate_callback(
    body: SimulateCallbackRequest,
    db: AsyncSession = Depends(get_db),
    lifecycle=Depends(get_lifecycle),
):
    """Sandbox only: mark an order as paid through a correctly signed callback."""
    try:
        sub = await lifecycle.simulate_callback(db, body.order_id)
    except SubscriptionError as e:
        raise http_error(e)

    return {
        "success": True,
        "message": "Callback simulated",
        "data": PaymentStatus.model_validate(sub).model_dump(mode="json"),
    }
