import json
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from . import coupons, documents, payments, pricing
from .auth_routes import get_current_user, require_admin
from .db import get_session
from .emails import EmailError, ORDER_UPDATE_STATUSES, email_service
from .log import log_event
from .models import User
from .settings_store import get_store_settings, public_store_settings, save_store_settings

router = APIRouter()

ORDERS = "orders"
CUSTOMERS = "customers"

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def new_order_id() -> str:
    return f"ORD-{documents.now_ms()}"


def _order_date() -> str:
    return datetime.now(timezone.utc).strftime("%A %d %B %Y, %H:%M")


def _maybe_json(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


# ---------- Store settings ----------

class StoreSettingsBody(BaseModel):
    businessName: Optional[str] = None
    tvaNumber: Optional[str] = None
    address: Optional[str] = None
    vatEnabled: Optional[bool] = None
    vatPercentage: Optional[float] = None
    vatIncludedInPrice: Optional[bool] = None
    applyVatAtCheckout: Optional[bool] = None
    paymentMethods: Optional[Dict[str, Any]] = None
    freeShippingEnabled: Optional[bool] = None
    freeShippingThreshold: Optional[float] = None
    internationalShipping: Optional[bool] = None
    allowedCountries: Optional[List[str]] = None
    bannedCountries: Optional[List[str]] = None
    currency: Optional[str] = None
    carriers: Optional[List[Dict[str, Any]]] = None


@router.get("/api/store/settings")
async def store_settings(db: AsyncSession = Depends(get_session)):
    return {"success": True, "data": public_store_settings(await get_store_settings(db))}


@router.put("/api/store/settings")
async def update_store_settings(body: StoreSettingsBody, db: AsyncSession = Depends(get_session), _: User = Depends(require_admin)):
    values = body.model_dump(exclude_none=True)
    if "vatPercentage" in values and not 0 <= values["vatPercentage"] <= 100:
        raise HTTPException(status_code=400, detail="vatPercentage must be between 0 and 100")
    if "freeShippingThreshold" in values and values["freeShippingThreshold"] < 0:
        raise HTTPException(status_code=400, detail="freeShippingThreshold must be >= 0")
    if "currency" in values:
        if not re.fullmatch(r"[A-Za-z]{3}", values["currency"]):
            raise HTTPException(status_code=400, detail="currency must be a 3-letter code")
        values["currency"] = values["currency"].upper()
    saved = await save_store_settings(db, values)
    log_event("store_settings", action="updated", fields=sorted(values.keys()))
    return {"success": True, "data": public_store_settings(saved)}


@router.get("/api/payments/methods")
async def payment_methods(db: AsyncSession = Depends(get_session)):
    settings = await get_store_settings(db)
    return {"success": True, "data": payments.enabled_payment_methods(settings)}


# ---------- Shipping + quote ----------

@router.get("/api/shop/shipping")
async def shipping_methods(
    country: Optional[str] = Query(default=None),
    cartTotal: float = Query(default=0.0),
    db: AsyncSession = Depends(get_session),
):
    if not country:
        raise HTTPException(status_code=400, detail="country is required")
    settings = await get_store_settings(db)
    eligible = pricing.is_eligible_for_free_shipping(cartTotal, settings)
    methods = pricing.available_shipping_methods(country, settings, eligible)
    return {
        "success": True,
        "data": methods,
        "selected": pricing.auto_select_shipping_method(methods, eligible),
        "freeShipping": pricing.free_shipping_progress(cartTotal, pricing.free_shipping_threshold(settings)),
    }


class QuoteBody(BaseModel):
    items: List[Dict[str, Any]]
    country: str
    shippingMethodId: Optional[str] = None
    couponCode: Optional[str] = None
    email: Optional[str] = None


@router.post("/api/checkout/quote")
async def checkout_quote(body: QuoteBody, db: AsyncSession = Depends(get_session)):
    settings = await get_store_settings(db)
    cart = pricing.cart_total(body.items)
    eligible = pricing.is_eligible_for_free_shipping(cart, settings)
    methods = pricing.available_shipping_methods(body.country, settings, eligible)
    current = next((m for m in methods if m["id"] == body.shippingMethodId), None)
    selected = current if current and (current["id"] != pricing.FREE_SHIPPING_ID or eligible) else None
    if selected is None:
        selected = pricing.auto_select_shipping_method(methods, eligible)

    discount, coupon_info, coupon_error = 0.0, None, None
    if body.couponCode:
        coupon = await coupons.find_by_code(db, body.couponCode)
        if not coupon:
            coupon_error = "Invalid coupon code"
        else:
            try:
                coupons.check_coupon(coupon, cart, body.email)
                discount = pricing.coupon_discount(coupon, cart)
                coupon_info = {"id": coupon["id"], "code": coupon.get("code"), "type": coupon.get("type"), "value": coupon.get("value")}
            except coupons.CouponError as e:
                coupon_error = str(e)

    totals = pricing.checkout_totals(body.items, settings, selected, discount)
    return {
        "success": True,
        "data": {
            **totals,
            "currency": settings.get("currency", "EUR"),
            "shippingMethods": methods,
            "shippingMethod": selected,
            "coupon": coupon_info,
            "couponError": coupon_error,
            "freeShipping": pricing.free_shipping_progress(cart, pricing.free_shipping_threshold(settings)),
        },
    }


# ---------- Coupons ----------

class ValidateCouponBody(BaseModel):
    code: Optional[str] = None
    orderAmount: Optional[Any] = None
    customerEmail: Optional[str] = None


@router.post("/api/query/public/validate-coupon")
async def validate_coupon(body: ValidateCouponBody, db: AsyncSession = Depends(get_session)):
    if not (body.code or "").strip():
        raise HTTPException(status_code=400, detail="Coupon code is required")
    amount = pricing.as_number(body.orderAmount)
    if amount is None or amount <= 0:
        raise HTTPException(status_code=400, detail="Valid order amount is required")

    coupon = await coupons.find_by_code(db, body.code)
    if not coupon:
        return {"success": True, "valid": False, "message": "Invalid coupon code"}
    try:
        coupons.check_coupon(coupon, amount, body.customerEmail)
    except coupons.CouponError as e:
        return {"success": True, "valid": False, "message": str(e)}

    discount = pricing.coupon_discount(coupon, amount)
    return {
        "success": True,
        "valid": True,
        "coupon": {k: coupon.get(k) for k in ("id", "code", "name", "description", "type", "value")},
        "discount": {"amount": discount, "type": coupon.get("type"), "value": coupon.get("value")},
        "message": f"Coupon applied! You saved €{discount:.2f}",
    }


class ApplyCouponBody(BaseModel):
    couponId: Optional[str] = None
    orderId: Optional[str] = None
    customerEmail: Optional[str] = None
    orderAmount: Optional[Any] = None
    discountAmount: Optional[Any] = None


@router.post("/api/query/public/apply-coupon")
async def apply_coupon(body: ApplyCouponBody, db: AsyncSession = Depends(get_session)):
    order_amount = pricing.as_number(body.orderAmount)
    discount_amount = pricing.as_number(body.discountAmount)
    if not body.couponId or not body.orderId or order_amount is None or discount_amount is None:
        raise HTTPException(status_code=400, detail="couponId, orderId, orderAmount and discountAmount are required")
    coupon = await documents.read(db, body.couponId, coupons.COUPONS)
    if not coupon:
        raise HTTPException(status_code=404, detail="Coupon not found")
    try:
        coupons.check_usage(coupon)
    except coupons.CouponError as e:
        raise HTTPException(status_code=409, detail=str(e))

    updated = await coupons.record_usage(db, coupon, body.customerEmail)
    try:
        await coupons.log_usage(db, coupon, body.orderId, body.customerEmail, order_amount, discount_amount)
    except (SQLAlchemyError, documents.DocumentExists) as e:
        log_event("coupons", action="usage_log_failed", coupon_id=coupon["id"], error=str(e))
    log_event("coupons", action="applied", coupon_id=coupon["id"], order_id=body.orderId, used_count=updated["usedCount"])
    return {
        "success": True,
        "message": "Coupon applied successfully",
        "data": {
            "couponId": coupon["id"],
            "code": coupon.get("code"),
            "usedCount": updated["usedCount"],
            "discountAmount": discount_amount,
        },
    }


# ---------- Payments ----------

class StripeBody(BaseModel):
    amount: Optional[Any] = None
    currency: str = "eur"
    email: Optional[str] = None
    automatic_payment_methods: bool = False
    metadata: Optional[Dict[str, Any]] = None


@router.post("/api/stripe")
async def stripe_payment_intent(body: StripeBody, db: AsyncSession = Depends(get_session)):
    amount = pricing.as_number(body.amount)
    if amount is None or amount <= 0:
        raise HTTPException(status_code=400, detail="Valid amount is required")
    if not (body.email or "").strip():
        raise HTTPException(status_code=400, detail="Email is required")
    settings = await get_store_settings(db)
    try:
        return await payments.create_payment_intent(
            settings,
            int(round(amount)),
            body.email.strip(),
            currency=body.currency,
            automatic_payment_methods=body.automatic_payment_methods,
            metadata=body.metadata,
        )
    except payments.PaymentConfigError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except payments.PaymentError as e:
        raise HTTPException(status_code=502, detail=str(e))


class BankTransferBody(BaseModel):
    orderId: str
    amount: float


@router.post("/api/payments/bank-transfer")
async def bank_transfer(body: BankTransferBody, db: AsyncSession = Depends(get_session)):
    settings = await get_store_settings(db)
    try:
        return {"success": True, "data": payments.bank_transfer_instructions(settings, body.amount, body.orderId)}
    except payments.PaymentConfigError as e:
        raise HTTPException(status_code=400, detail=str(e))


# ---------- Checkout email flow ----------

def validate_email_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Check and normalize the confirmation email payload; raises HTTPException(400)."""
    missing = [f for f in ("email", "customerName", "orderId", "items", "total") if not payload.get(f)]
    if missing:
        raise HTTPException(status_code=400, detail=f"Missing required fields: {', '.join(missing)}")
    if not EMAIL_RE.match(str(payload["email"]).strip()):
        raise HTTPException(status_code=400, detail="Invalid email format")
    total = pricing.as_number(payload["total"])
    if total is None or total < 0:
        raise HTTPException(status_code=400, detail="Total must be a number")
    items = _maybe_json(payload["items"])
    if not isinstance(items, list) or not items:
        raise HTTPException(status_code=400, detail="Items must be a non-empty array")
    for i, item in enumerate(items):
        if not isinstance(item, dict) or not item.get("name"):
            raise HTTPException(status_code=400, detail=f"Item {i} is missing a name")
        if pricing.as_number(item.get("price")) is None or pricing.as_number(item.get("quantity")) is None:
            raise HTTPException(status_code=400, detail=f"Item {i} has an invalid price or quantity")
    address = _maybe_json(payload.get("shippingAddress"))
    return {
        **payload,
        "email": str(payload["email"]).strip(),
        "total": total,
        "items": items,
        "shippingAddress": address if isinstance(address, dict) else {},
    }


class CheckoutBody(BaseModel):
    orderData: Optional[Dict[str, Any]] = None
    emailPayload: Optional[Dict[str, Any]] = None


@router.post("/api/checkout")
async def checkout(body: CheckoutBody, db: AsyncSession = Depends(get_session)):
    if not body.orderData or not body.emailPayload:
        raise HTTPException(status_code=400, detail="orderData and emailPayload are required")
    payload = validate_email_payload(body.emailPayload)
    payload.setdefault("orderDate", _order_date())

    order = dict(body.orderData)
    order.setdefault("id", body.emailPayload.get("orderId") or new_order_id())
    order.setdefault("createdAt", documents.now_iso())
    try:
        await documents.create(db, order, ORDERS)
    except (SQLAlchemyError, documents.DocumentExists) as e:
        await db.rollback()
        log_event("checkout", action="order_save_failed", order_id=order["id"], error=str(e))

    try:
        email_id = await email_service.send_order_confirmation_email(payload["email"], payload)
    except EmailError as e:
        log_event("checkout", action="confirmation_email_failed", order_id=payload["orderId"], error=str(e))
        raise HTTPException(status_code=502, detail="Failed to send confirmation email")

    try:
        await email_service.send_order_admin_notification(payload)
    except EmailError as e:
        log_event("checkout", action="admin_email_failed", order_id=payload["orderId"], error=str(e))

    return {
        "success": True,
        "message": "Order confirmation email sent successfully",
        "emailId": email_id,
        "orderId": payload["orderId"],
    }


# ---------- Orders ----------

class OrderBody(BaseModel):
    id: Optional[str] = None
    customer: Optional[Dict[str, Any]] = None
    items: Optional[List[Dict[str, Any]]] = None
    total: Optional[float] = None
    subtotal: Optional[float] = None
    shippingCost: Optional[float] = None
    vatAmount: Optional[float] = None
    discountAmount: Optional[float] = None
    coupon: Optional[Dict[str, Any]] = None
    paymentMethod: Optional[str] = None
    paymentStatus: Optional[str] = None
    shippingMethod: Optional[Dict[str, Any]] = None
    status: Optional[str] = None
    sendEmail: bool = True

    model_config = {"extra": "allow"}


def build_order_record(data: Dict[str, Any]) -> Dict[str, Any]:
    customer = data.get("customer") or {}
    name = f"{customer.get('firstName') or ''} {customer.get('lastName') or ''}".strip()
    now = documents.now_iso()
    record = {k: v for k, v in data.items() if k != "sendEmail"}
    record.update({
        "uid": data["id"],
        "cst_email": customer.get("email"),
        "cst_name": name,
        "amount": data.get("total"),
        "subtotal": data.get("subtotal"),
        "shipping_address": {
            "streetAddress": customer.get("streetAddress"),
            "apartmentUnit": customer.get("apartmentUnit") or "",
            "city": customer.get("city"),
            "state": customer.get("state"),
            "zipCode": customer.get("zipCode"),
            "country": customer.get("country"),
            "countryIso": customer.get("countryIso"),
        },
        "phone": customer.get("phone"),
        "status": data.get("status") or "pending",
        "createdAt": now,
        "updatedAt": now,
    })
    return record


async def _ensure_customer(db: AsyncSession, order: Dict[str, Any]) -> None:
    email = order.get("cst_email")
    if not email or await documents.get_item_key(db, "email", email, CUSTOMERS):
        return
    await documents.create(db, {
        "name": order.get("cst_name"),
        "email": email,
        "phone": order.get("phone"),
        "address": order.get("shipping_address"),
        "createdAt": documents.now_iso(),
    }, CUSTOMERS)


async def place_order(db: AsyncSession, data: Dict[str, Any], send_email: bool = True) -> Tuple[Dict[str, Any], bool]:
    """Store a storefront order and its customer, then mail the confirmation.

    Raises PaymentConfigError when the payment method is missing or disabled and
    DocumentExists when the id is taken.
    """
    settings = await get_store_settings(db)
    method = data.get("paymentMethod")
    if not method:
        raise payments.PaymentConfigError("paymentMethod is required")
    if not payments.is_method_enabled(settings, method):
        raise payments.PaymentConfigError(f"Payment method {method} is not enabled")
    record = build_order_record({**data, "id": data.get("id") or new_order_id()})
    await documents.create(db, record, ORDERS)

    try:
        await _ensure_customer(db, record)
    except (SQLAlchemyError, documents.DocumentExists) as e:
        await db.rollback()
        log_event("orders", action="customer_create_failed", order_id=record["id"], error=str(e))

    emailed = False
    if send_email and record.get("cst_email"):
        payload = {
            "customerName": record["cst_name"],
            "orderId": record["id"],
            "orderDate": _order_date(),
            "items": record.get("items") or [],
            "subtotal": record.get("subtotal") or 0,
            "shippingCost": record.get("shippingCost") or 0,
            "vatAmount": record.get("vatAmount") or 0,
            "discountAmount": record.get("discountAmount") or 0,
            "total": record.get("total") or 0,
            "shippingAddress": record["shipping_address"],
            "paymentMethod": method,
            "bankTransferDetails": (settings.get("paymentMethods") or {}).get("bankTransferDetails")
            if method == "bank_transfer" else None,
        }
        try:
            await email_service.send_order_confirmation_email(record["cst_email"], payload)
            emailed = True
        except EmailError as e:
            log_event("orders", action="confirmation_email_failed", order_id=record["id"], error=str(e))

    log_event("orders", action="created", order_id=record["id"], amount=record.get("amount"), method=method, email_sent=emailed)
    return record, emailed


@router.post("/api/orders")
async def create_order(body: OrderBody, db: AsyncSession = Depends(get_session)):
    if not body.customer or not body.items or not body.total:
        raise HTTPException(status_code=400, detail="Missing required order data")
    try:
        record, _ = await place_order(db, body.model_dump(exclude_none=True), body.sendEmail)
    except payments.PaymentConfigError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except documents.DocumentExists:
        raise HTTPException(status_code=409, detail="Order already exists")
    return {"success": True, "message": "Order created successfully", "orderId": record["id"], "data": record}


@router.get("/api/orders")
async def list_orders(db: AsyncSession = Depends(get_session), _: User = Depends(require_admin)):
    return {"success": True, "data": await documents.read_all(db, ORDERS)}


@router.get("/api/orders/{order_id}")
async def get_order(order_id: str, db: AsyncSession = Depends(get_session), _: User = Depends(require_admin)):
    order = await documents.read(db, order_id, ORDERS)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return {"success": True, "data": order}


class OrderStatusBody(BaseModel):
    orderId: Optional[str] = None
    newStatus: Optional[str] = None
    customerEmail: Optional[str] = None
    trackingNumber: Optional[str] = None
    trackingUrl: Optional[str] = None
    customMessage: Optional[str] = None


@router.post("/api/orders/status")
async def update_order_status(body: OrderStatusBody, db: AsyncSession = Depends(get_session), user: User = Depends(get_current_user)):
    if not body.orderId or not body.newStatus:
        raise HTTPException(status_code=400, detail="orderId and newStatus are required")
    order = await documents.read(db, body.orderId, ORDERS)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")

    old_status = order.get("status")
    changed = old_status != body.newStatus
    updated = {
        **order,
        "status": body.newStatus,
        "statusChangedBy": user.id,
        "updatedAt": documents.now_iso(),
    }
    if body.trackingNumber:
        updated["trackingNumber"] = body.trackingNumber
    if body.trackingUrl:
        updated["trackingUrl"] = body.trackingUrl
    await documents.update(db, body.orderId, updated, ORDERS)

    email_sent = False
    recipient = body.customerEmail or order.get("cst_email")
    if changed and recipient and body.newStatus in ORDER_UPDATE_STATUSES:
        try:
            await email_service.send_order_update_email(recipient, {
                "customerName": order.get("cst_name"),
                "orderId": body.orderId,
                "orderDate": order.get("createdAt"),
                "status": body.newStatus,
                "items": order.get("items") or [],
                "total": order.get("amount") or order.get("total") or 0,
                "trackingNumber": updated.get("trackingNumber"),
                "trackingUrl": updated.get("trackingUrl"),
                "customMessage": body.customMessage,
            })
            email_sent = True
        except EmailError as e:
            log_event("orders", action="status_email_failed", order_id=body.orderId, error=str(e))

    log_event("orders", action="status_changed", order_id=body.orderId, old=old_status, new=body.newStatus, by=user.id)
    return {
        "success": True,
        "message": "Order status updated",
        "orderId": body.orderId,
        "oldStatus": old_status,
        "newStatus": body.newStatus,
        "statusChanged": changed,
        "notificationsCleared": changed and body.newStatus not in ("pending", "unconfirmed"),
        "emailSent": email_sent,
    }
