"""
Checkout price computation.

Everything here is pure: inputs are the store settings dict (see
`settings_store.default_store_settings`) and plain cart data, outputs are plain
dicts/floats ready to be serialized. Money is rounded half-up to cents.
"""
from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional

from .settings_store import country_iso3

FREE_SHIPPING_ID = "free_shipping"
DEFAULT_FREE_SHIPPING_THRESHOLD = 50.0

_CENT = Decimal("0.01")


def _dec(value: Any) -> Decimal:
    try:
        return Decimal(str(value if value is not None else 0))
    except ArithmeticError:
        return Decimal(0)


def money(value: Any) -> float:
    return float(_dec(value).quantize(_CENT, rounding=ROUND_HALF_UP))


def to_cents(value: Any) -> int:
    return int((_dec(value) * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def as_number(value: Any) -> Optional[float]:
    """Parse a numeric field coming from JSON; None when it is not a finite number."""
    if isinstance(value, bool):
        return None
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    if n != n or n in (float("inf"), float("-inf")):
        return None
    return n


def cart_total(items: Iterable[Dict[str, Any]]) -> float:
    total = Decimal(0)
    for item in items or []:
        total += _dec(item.get("price")) * _dec(item.get("quantity", 1))
    return money(total)


def vat_breakdown(amount: Any, settings: Dict[str, Any]) -> Dict[str, float]:
    """Split a cart amount into subtotal / VAT / total according to the store VAT mode."""
    cart = _dec(amount)
    if not settings.get("vatEnabled"):
        return {"subtotal": money(cart), "vatAmount": 0.0, "total": money(cart)}
    rate = _dec(settings.get("vatPercentage", 20)) / 100
    if settings.get("vatIncludedInPrice", True):
        subtotal = cart / (1 + rate)
        return {"subtotal": money(subtotal), "vatAmount": money(cart - subtotal), "total": money(cart)}
    vat = cart * rate if settings.get("applyVatAtCheckout", True) else Decimal(0)
    return {"subtotal": money(cart), "vatAmount": money(vat), "total": money(cart + vat)}


def free_shipping_threshold(settings: Dict[str, Any]) -> float:
    n = as_number(settings.get("freeShippingThreshold"))
    return DEFAULT_FREE_SHIPPING_THRESHOLD if n is None else n


def is_eligible_for_free_shipping(amount: Any, settings: Dict[str, Any]) -> bool:
    if not settings.get("freeShippingEnabled"):
        return False
    return _dec(amount) >= _dec(free_shipping_threshold(settings))


def free_shipping_progress(amount: Any, threshold: Any) -> Dict[str, Any]:
    cart, limit = _dec(amount), _dec(threshold)
    if limit <= 0:
        return {"progress": 100.0, "remaining": 0.0, "eligible": True}
    progress = min(cart / limit * 100, Decimal(100))
    remaining = max(limit - cart, Decimal(0))
    return {"progress": money(progress), "remaining": money(remaining), "eligible": cart >= limit}


def _country_in(country: str, codes: Iterable[str]) -> bool:
    target = country_iso3(country)
    return any(country_iso3(c) == target for c in codes or [])


def is_country_allowed(country: str, settings: Dict[str, Any]) -> bool:
    allowed = settings.get("allowedCountries") or []
    banned = settings.get("bannedCountries") or []
    if _country_in(country, banned):
        return False
    return not allowed or _country_in(country, allowed)


def _carrier_serves(carrier: Dict[str, Any], country: str) -> bool:
    supported = carrier.get("supportedCountries") or []
    if not supported or "ALL" in supported:
        return True
    return _country_in(country, supported)


def free_shipping_method(settings: Dict[str, Any]) -> Dict[str, Any]:
    threshold = free_shipping_threshold(settings)
    return {
        "id": FREE_SHIPPING_ID,
        "name": "Free Shipping",
        "carrier_name": "Standard",
        "description": f"Free shipping on orders over €{threshold:g}",
        "delivery_time": "5-7 business days",
        "fixed_rate": 0.0,
        "logo": None,
    }


def available_shipping_methods(country: str, settings: Dict[str, Any], eligible: bool) -> List[Dict[str, Any]]:
    methods = []
    for carrier in settings.get("carriers") or []:
        if not carrier.get("enabled") or not _carrier_serves(carrier, country):
            continue
        methods.append({
            "id": str(carrier.get("id") or carrier.get("name") or len(methods)),
            "name": carrier.get("name") or "",
            "carrier_name": carrier.get("carrierName") or carrier.get("name") or "",
            "description": carrier.get("description") or "",
            "delivery_time": carrier.get("deliveryTime") or "",
            "fixed_rate": money(carrier.get("basePrice")),
            "logo": carrier.get("logo"),
        })
    if eligible and settings.get("freeShippingEnabled") and is_country_allowed(country, settings):
        methods.insert(0, free_shipping_method(settings))
    return methods


def auto_select_shipping_method(
    methods: List[Dict[str, Any]],
    eligible: bool,
    current: Optional[Dict[str, Any]] = None,
) -> Optional[Dict[str, Any]]:
    """Pick the method the checkout should show as selected after the cart or country changed."""
    if not methods:
        return None
    by_id = {m["id"]: m for m in methods}
    if eligible:
        if FREE_SHIPPING_ID in by_id:
            return by_id[FREE_SHIPPING_ID]
        if current and current.get("id") in by_id:
            return by_id[current["id"]]
        return methods[0]
    if current and current.get("id") in by_id and current.get("id") != FREE_SHIPPING_ID:
        return by_id[current["id"]]
    for m in methods:
        if m["id"] != FREE_SHIPPING_ID:
            return m
    return None


def shipping_cost(method: Optional[Dict[str, Any]], eligible: bool) -> float:
    if not method:
        return 0.0
    if method.get("id") == FREE_SHIPPING_ID:
        return 0.0 if eligible else money(method.get("fixed_rate"))
    return money(method.get("fixed_rate"))


def coupon_discount(coupon: Dict[str, Any], amount: Any) -> float:
    value = _dec(coupon.get("value"))
    order = _dec(amount)
    if coupon.get("type") == "percentage":
        return money(order * value / 100)
    return money(min(value, order))


def checkout_totals(
    items: Iterable[Dict[str, Any]],
    settings: Dict[str, Any],
    shipping_method: Optional[Dict[str, Any]] = None,
    discount: Any = 0,
) -> Dict[str, Any]:
    cart = cart_total(items)
    vat = vat_breakdown(cart, settings)
    eligible = is_eligible_for_free_shipping(cart, settings)
    shipping = shipping_cost(shipping_method, eligible)
    total = max(_dec(vat["total"]) + _dec(shipping) - _dec(discount), Decimal(0))
    return {
        "cartTotal": cart,
        "subtotal": vat["subtotal"],
        "vatAmount": vat["vatAmount"],
        "vatTotal": vat["total"],
        "shippingCost": shipping,
        "discountAmount": money(discount),
        "total": money(total),
        "amountCents": to_cents(money(total)),
        "freeShippingEligible": eligible,
    }


INFORMATION_FIELDS = ("email", "firstName", "lastName", "streetAddress", "city", "state", "zipCode", "phone")


def validate_information_step(info: Dict[str, Any], shipping_method: Optional[Dict[str, Any]]) -> Optional[str]:
    """Return the first missing field name, `shippingMethod`, or None when the step is complete."""
    for field in INFORMATION_FIELDS:
        if not str(info.get(field) or "").strip():
            return field
    if not shipping_method:
        return "shippingMethod"
    return None
