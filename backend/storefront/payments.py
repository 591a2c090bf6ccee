import asyncio
import base64
import re
from functools import lru_cache
from io import BytesIO
from typing import Any, Dict, List, Optional, Tuple

import httpx
import qrcode
import stripe
from qrcode.constants import ERROR_CORRECT_M

from .log import log_event
from .pricing import money


class PaymentConfigError(Exception):
    pass


class PaymentError(Exception):
    pass


def enabled_payment_methods(settings: Dict[str, Any]) -> List[Dict[str, Any]]:
    pm = settings.get("paymentMethods") or {}
    methods = []
    if pm.get("cardPayments") and pm.get("stripePublicKey"):
        methods.append({"id": "card", "name": "Credit card", "publicKey": pm.get("stripePublicKey")})
    if pm.get("bankTransfer"):
        details = pm.get("bankTransferDetails") or {}
        methods.append({"id": "bank_transfer", "name": "Bank transfer", "details": details})
    if pm.get("payOnDelivery"):
        methods.append({"id": "pay_on_delivery", "name": "Pay on delivery"})
    if eupago_enabled(settings):
        eupago = pm["eupago"]
        if eupago.get("mbway", True):
            methods.append({"id": "mbway", "name": "MB WAY"})
        if eupago.get("multibanco", True):
            methods.append({"id": "multibanco", "name": "Multibanco"})
    return methods


def is_method_enabled(settings: Dict[str, Any], method: str) -> bool:
    return any(m["id"] == method for m in enabled_payment_methods(settings))


def stripe_secret_key(settings: Dict[str, Any]) -> str:
    key = ((settings.get("paymentMethods") or {}).get("stripeSecretKey") or "").strip()
    if not key:
        raise PaymentConfigError("Stripe secret key is not configured")
    return key


def _create_intent(secret_key: str, amount: int, currency: str, email: str, automatic: bool, metadata: Dict[str, Any]) -> Dict[str, Any]:
    customer = stripe.Customer.create(
        api_key=secret_key,
        email=email,
        description=f"Customer for {email}",
    )
    params: Dict[str, Any] = {
        "api_key": secret_key,
        "amount": amount,
        "currency": currency,
        "customer": customer["id"],
        "metadata": {"customer_email": email, **{k: str(v) for k, v in (metadata or {}).items()}},
    }
    if automatic:
        params["automatic_payment_methods"] = {"enabled": True}
    else:
        params["payment_method_types"] = ["card"]
    intent = stripe.PaymentIntent.create(**params)
    return {
        "client_secret": intent["client_secret"],
        "customer_id": customer["id"],
        "payment_intent_id": intent["id"],
    }


async def create_payment_intent(
    settings: Dict[str, Any],
    amount: int,
    email: str,
    currency: str = "eur",
    automatic_payment_methods: bool = False,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Create a Stripe customer + PaymentIntent for `amount` cents."""
    key = stripe_secret_key(settings)
    try:
        result = await asyncio.to_thread(
            _create_intent, key, int(amount), (currency or "eur").lower(), email, automatic_payment_methods, metadata or {}
        )
    except stripe.StripeError as e:
        log_event("payments", action="stripe_intent_failed", email=email, amount=amount, error=str(e))
        raise PaymentError(getattr(e, "user_message", None) or str(e)) from e
    log_event("payments", action="stripe_intent_created", email=email, amount=amount, payment_intent_id=result["payment_intent_id"])
    return result


def epc_payload(details: Dict[str, Any], amount: Any, reference: str) -> str:
    """EPC069-12 (SEPA credit transfer) QR payload understood by European banking apps."""
    lines = [
        "BCD",
        "002",
        "1",
        "SCT",
        (details.get("bic") or "").replace(" ", "").upper(),
        (details.get("accountHolder") or "")[:70],
        (details.get("iban") or "").replace(" ", "").upper(),
        f"EUR{money(amount):.2f}",
        "",
        "",
        (reference or "")[:140],
    ]
    return "\n".join(lines)


@lru_cache(maxsize=1024)
def qr_png_b64(text: str, box_size: int = 8, border: int = 2) -> str:
    """Generate a QR PNG (base64-encoded, ASCII) for the given text."""
    qr = qrcode.QRCode(
        version=None,
        error_correction=ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(text)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = BytesIO()
    img.save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode("ascii")


def bank_transfer_instructions(settings: Dict[str, Any], amount: Any, order_id: str) -> Dict[str, Any]:
    if not is_method_enabled(settings, "bank_transfer"):
        raise PaymentConfigError("Bank transfer is not enabled")
    details = (settings.get("paymentMethods") or {}).get("bankTransferDetails") or {}
    if not details.get("iban"):
        raise PaymentConfigError("Bank transfer details are incomplete")
    payload = epc_payload(details, amount, order_id)
    return {
        "method": "bank_transfer",
        "amount": money(amount),
        "reference": order_id,
        "details": details,
        "qr_text": payload,
        "qr_png_b64": qr_png_b64(payload),
    }


# ---------- EuPago (MB WAY / Multibanco) ----------

EUPAGO_LIVE_URL = "https://clientes.eupago.pt"
EUPAGO_SANDBOX_URL = "https://sandbox.eupago.pt"
EUPAGO_PAID_STATES = ("paga", "paid")

_PT_MOBILE_RE = re.compile(r"^(?:\+?351|00351)?(9[1236]\d{7})$")


def eupago_config(settings: Dict[str, Any]) -> Dict[str, Any]:
    return (settings.get("paymentMethods") or {}).get("eupago") or {}


def eupago_enabled(settings: Dict[str, Any]) -> bool:
    cfg = eupago_config(settings)
    return bool(cfg.get("enabled") and (cfg.get("apiKey") or "").strip())


def portuguese_mobile(value: Any) -> Optional[str]:
    """Nine-digit national number for a Portuguese mobile, else None."""
    m = _PT_MOBILE_RE.match(re.sub(r"[\s\-()]", "", str(value or "")))
    return m.group(1) if m else None


def _eupago_base(settings: Dict[str, Any]) -> Tuple[str, str]:
    if not eupago_enabled(settings):
        raise PaymentConfigError("EuPago is not enabled")
    cfg = eupago_config(settings)
    base = EUPAGO_SANDBOX_URL if cfg.get("sandbox", True) else EUPAGO_LIVE_URL
    return base, cfg["apiKey"].strip()


async def _eupago_post(url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    async with httpx.AsyncClient(timeout=30) as client:
        r = await client.post(url, json=payload)
        r.raise_for_status()
        return r.json()


async def _eupago_call(settings: Dict[str, Any], path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    base, key = _eupago_base(settings)
    try:
        data = await _eupago_post(f"{base}/clientes/rest_api/{path}", {"chave": key, **payload})
    except (httpx.HTTPError, ValueError) as e:
        log_event("payments", action="eupago_request_failed", path=path, error=str(e))
        raise PaymentError("EuPago request failed") from e
    if not data.get("sucesso"):
        log_event("payments", action="eupago_refused", path=path, response=data.get("resposta"))
        raise PaymentError(data.get("resposta") or "EuPago refused the request")
    return data


async def create_eupago_reference(
    settings: Dict[str, Any],
    order_id: str,
    amount: Any,
    method: str,
    mobile: Optional[str] = None,
) -> Dict[str, Any]:
    """Request a Multibanco reference or an MB WAY push for `amount` euros."""
    value = money(amount)
    if value <= 0:
        raise PaymentConfigError("amount must be positive")
    cfg = eupago_config(settings)
    if method in ("mb", "multibanco"):
        if not cfg.get("multibanco", True):
            raise PaymentConfigError("Multibanco is not enabled")
        data = await _eupago_call(settings, "multibanco/create", {"valor": value, "id": order_id, "per_dup": 0})
        payment = {"method": "multibanco", "entity": data.get("entidade"), "reference": str(data.get("referencia"))}
    elif method == "mbway":
        if not cfg.get("mbway", True):
            raise PaymentConfigError("MB WAY is not enabled")
        phone = portuguese_mobile(mobile)
        if not phone:
            raise PaymentConfigError("A valid Portuguese mobile number is required for MB WAY")
        data = await _eupago_call(settings, "mbway/create", {
            "valor": value, "id": order_id, "alias": phone, "descricao": f"Order {order_id}",
        })
        payment = {"method": "mbway", "entity": None, "reference": str(data.get("referencia")), "mobile": phone}
    else:
        raise PaymentConfigError(f"Unsupported EuPago method: {method}")
    payment.update({"orderId": order_id, "amount": value, "status": "pending"})
    log_event("payments", action="eupago_reference_created", order_id=order_id, method=payment["method"], reference=payment["reference"])
    return payment


async def eupago_payment_status(settings: Dict[str, Any], reference: str, entity: Optional[str] = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"referencia": reference}
    if entity:
        payload["entidade"] = entity
    data = await _eupago_call(settings, "pedido/info", payload)
    state = str(data.get("estado_referencia") or "").strip().lower()
    return {"reference": reference, "status": state or "unknown", "paid": state in EUPAGO_PAID_STATES}


def _group_reference(reference: str) -> str:
    digits = re.sub(r"\s", "", reference or "")
    return " ".join(digits[i:i + 3] for i in range(0, len(digits), 3))


def eupago_instructions(payment: Dict[str, Any]) -> Dict[str, Any]:
    amount = money(payment.get("amount"))
    if payment.get("method") == "mbway":
        return {
            "method": "mbway",
            "title": "MB WAY",
            "mobile": payment.get("mobile"),
            "amount": amount,
            "steps": [
                "Open the MB WAY app on your phone",
                "Accept the pending payment request",
                "Confirm with your MB WAY PIN",
            ],
        }
    return {
        "method": "multibanco",
        "title": "Multibanco",
        "entity": payment.get("entity"),
        "reference": _group_reference(str(payment.get("reference") or "")),
        "amount": amount,
        "steps": [
            "Go to an ATM or your home banking",
            "Choose Payments of services (Pagamento de servicos)",
            "Enter the entity, reference and amount",
        ],
    }
