import hmac
import os
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from . import documents, payments, pricing
from .checkout_routes import ORDERS, place_order
from .db import get_session
from .emails import EmailError, email_service
from .log import log_event
from .settings_store import get_store_settings

router = APIRouter()


def _check_cron_key(key: Optional[str]) -> None:
    expected = os.environ.get("CRON_SECRET_KEY", "").strip()
    if expected and not hmac.compare_digest(str(key or ""), expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


def _payment_http_error(e: Exception) -> HTTPException:
    if isinstance(e, payments.PaymentConfigError):
        return HTTPException(status_code=400, detail=str(e))
    return HTTPException(status_code=502, detail=str(e))


async def _order_for_reference(db: AsyncSession, reference: str) -> Optional[Dict[str, Any]]:
    orders = await documents.get_items_by_key_value(db, "eupagoReference", reference, ORDERS)
    return orders[0] if orders else None


async def _send_confirmed(order: Dict[str, Any]) -> None:
    if not order.get("cst_email"):
        return
    try:
        await email_service.send_order_update_email(order["cst_email"], {
            "status": "confirmed",
            "orderId": order["id"],
            "customerName": order.get("cst_name"),
            "items": order.get("items") or [],
            "total": order.get("amount") or order.get("total") or 0,
        })
    except EmailError as e:
        log_event("eupago", action="confirmation_email_failed", order_id=order["id"], error=str(e))


async def confirm_if_paid(db: AsyncSession, settings: Dict[str, Any], reference: str, entity: Optional[str] = None) -> Dict[str, Any]:
    """Ask EuPago about `reference` and mark its order paid when the provider says so."""
    status = await payments.eupago_payment_status(settings, reference, entity)
    out = {"success": True, "reference": reference, "paid": status["paid"], "status": status["status"], "orderUpdated": False}
    order = await _order_for_reference(db, reference)
    if order:
        out["orderId"] = order["id"]
    if not status["paid"] or not order or order.get("paymentStatus") == "paid":
        return out

    now = documents.now_iso()
    updated = {**order, "paymentStatus": "paid", "paidAt": now, "updatedAt": now}
    if order.get("status", "pending") == "pending":
        updated["status"] = "confirmed"
    await documents.update(db, order["id"], updated, ORDERS)
    out["orderUpdated"] = True
    log_event("eupago", action="order_paid", order_id=order["id"], reference=reference)
    await _send_confirmed(updated)
    return out


async def check_pending(db: AsyncSession) -> Dict[str, Any]:
    settings = await get_store_settings(db)
    pending = [
        o for o in await documents.read_all(db, ORDERS)
        if o.get("eupagoReference") and o.get("paymentStatus") == "pending"
    ]
    paid, errors = [], []
    for order in pending:
        try:
            result = await confirm_if_paid(db, settings, order["eupagoReference"], order.get("eupagoEntity"))
        except (payments.PaymentConfigError, payments.PaymentError) as e:
            errors.append({"orderId": order["id"], "error": str(e)})
            continue
        if result["orderUpdated"]:
            paid.append(order["id"])
    log_event("eupago", action="pending_checked", checked=len(pending), paid=len(paid), errors=len(errors))
    return {"success": True, "checked": len(pending), "paid": paid, "errors": errors}


async def _process_payment(db: AsyncSession, settings: Dict[str, Any], order_data: Dict[str, Any]) -> Dict[str, Any]:
    method = order_data.get("paymentMethod")
    if method not in ("mbway", "multibanco"):
        raise HTTPException(status_code=400, detail="paymentMethod must be mbway or multibanco")
    mobile = order_data.get("mobile") or (order_data.get("customer") or {}).get("phone")
    if method == "mbway" and not payments.portuguese_mobile(mobile):
        raise HTTPException(status_code=400, detail="A valid Portuguese mobile number is required for MB WAY")
    try:
        order, _ = await place_order(db, {**order_data, "paymentStatus": "pending"})
    except payments.PaymentConfigError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except documents.DocumentExists:
        raise HTTPException(status_code=409, detail="Order already exists")

    try:
        payment = await payments.create_eupago_reference(settings, order["id"], order.get("amount"), method, mobile)
    except (payments.PaymentConfigError, payments.PaymentError) as e:
        await documents.update(db, order["id"], {**order, "paymentStatus": "failed", "updatedAt": documents.now_iso()}, ORDERS)
        raise _payment_http_error(e)

    order = await documents.update(db, order["id"], {
        **order,
        "eupagoReference": payment["reference"],
        "eupagoEntity": payment.get("entity"),
        "updatedAt": documents.now_iso(),
    }, ORDERS)
    return {"success": True, "order": order, "payment": payment, "instructions": payments.eupago_instructions(payment)}


@router.post("/api/eupago")
async def eupago_action(body: Dict[str, Any] = Body(...), db: AsyncSession = Depends(get_session)):
    action = body.get("action")
    settings = await get_store_settings(db)
    try:
        if action == "create_payment":
            amount = pricing.as_number(body.get("amount"))
            if not body.get("orderId") or not amount or amount <= 0:
                raise HTTPException(status_code=400, detail="orderId and a positive amount are required")
            payment = await payments.create_eupago_reference(
                settings, str(body["orderId"]), amount, body.get("method") or "multibanco", body.get("mobile"),
            )
            return {"success": True, "payment": payment, "instructions": payments.eupago_instructions(payment)}
        if action == "process_payment":
            if not isinstance(body.get("orderData"), dict):
                raise HTTPException(status_code=400, detail="orderData is required")
            return await _process_payment(db, settings, body["orderData"])
        if action == "check_status":
            if not body.get("reference"):
                raise HTTPException(status_code=400, detail="reference is required")
            return await confirm_if_paid(db, settings, str(body["reference"]), body.get("entity"))
        if action == "check_pending":
            _check_cron_key(body.get("key"))
            return await check_pending(db)
        if action == "get_instructions":
            if not isinstance(body.get("paymentData"), dict):
                raise HTTPException(status_code=400, detail="paymentData is required")
            return {"success": True, "instructions": payments.eupago_instructions(body["paymentData"])}
    except (payments.PaymentConfigError, payments.PaymentError) as e:
        raise _payment_http_error(e)
    raise HTTPException(status_code=400, detail="Invalid action")


@router.get("/api/eupago")
async def eupago_query(
    action: Optional[str] = Query(default=None),
    key: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_session),
):
    settings = await get_store_settings(db)
    if action == "status":
        cfg = payments.eupago_config(settings)
        return {
            "success": True,
            "enabled": payments.eupago_enabled(settings),
            "sandbox": bool(cfg.get("sandbox", True)),
            "methods": [m["id"] for m in payments.enabled_payment_methods(settings) if m["id"] in ("mbway", "multibanco")],
        }
    if action == "check_enabled":
        return {"success": True, "enabled": payments.eupago_enabled(settings)}
    if action == "check_pending":
        _check_cron_key(key)
        return await check_pending(db)
    raise HTTPException(status_code=400, detail="Invalid action")


async def _status(db: AsyncSession, reference: Optional[str], entity: Optional[str]) -> Dict[str, Any]:
    if not reference:
        raise HTTPException(status_code=400, detail="reference is required")
    try:
        return await confirm_if_paid(db, await get_store_settings(db), reference, entity)
    except (payments.PaymentConfigError, payments.PaymentError) as e:
        raise _payment_http_error(e)


@router.get("/api/payments/eupago/status")
async def eupago_status(
    reference: Optional[str] = Query(default=None),
    entity: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_session),
):
    return await _status(db, reference, entity)


@router.post("/api/payments/eupago/status")
async def eupago_status_post(body: Dict[str, Any] = Body(default_factory=dict), db: AsyncSession = Depends(get_session)):
    return await _status(db, body.get("reference"), body.get("entity"))


@router.post("/api/payments/eupago/webhook")
async def eupago_webhook(body: Dict[str, Any] = Body(default_factory=dict), db: AsyncSession = Depends(get_session)):
    reference = body.get("reference") or body.get("referencia")
    if not reference:
        raise HTTPException(status_code=400, detail="reference is required")
    state = str(body.get("state") or body.get("estado") or "").lower()
    log_event("eupago", action="webhook", reference=reference, state=state)
    if state in payments.EUPAGO_PAID_STATES:
        # Re-checked with the provider; the webhook body is not trusted.
        try:
            await confirm_if_paid(db, await get_store_settings(db), str(reference), body.get("entity") or body.get("entidade"))
        except (payments.PaymentConfigError, payments.PaymentError) as e:
            raise _payment_http_error(e)
    return {"success": True, "message": "Webhook processed"}


@router.api_route("/api/cronjobs/check-eupago-payments", methods=["GET", "POST"])
async def cron_check_eupago(key: Optional[str] = Query(default=None), db: AsyncSession = Depends(get_session)):
    _check_cron_key(key)
    return await check_pending(db)
