from __future__ import annotations

import copy
import os
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from . import documents

STORE_SETTINGS = "store_settings"
SITE_SETTINGS = "site_settings"

STRIPE_PUBLIC_KEY = os.environ.get("STRIPE_PUBLIC_KEY", "").strip()
EUPAGO_API_KEY = os.environ.get("EUPAGO_API_KEY", "").strip()

# name, ISO2, ISO3
COUNTRIES = [
    ("France", "FR", "FRA"),
    ("Germany", "DE", "DEU"),
    ("Italy", "IT", "ITA"),
    ("Spain", "ES", "ESP"),
    ("Portugal", "PT", "PRT"),
    ("Belgium", "BE", "BEL"),
    ("Netherlands", "NL", "NLD"),
    ("Luxembourg", "LU", "LUX"),
    ("Austria", "AT", "AUT"),
    ("Switzerland", "CH", "CHE"),
    ("Ireland", "IE", "IRL"),
    ("United Kingdom", "GB", "GBR"),
    ("Denmark", "DK", "DNK"),
    ("Sweden", "SE", "SWE"),
    ("Norway", "NO", "NOR"),
    ("Finland", "FI", "FIN"),
    ("Poland", "PL", "POL"),
    ("Czech Republic", "CZ", "CZE"),
    ("Greece", "GR", "GRC"),
    ("Morocco", "MA", "MAR"),
    ("United States", "US", "USA"),
    ("Canada", "CA", "CAN"),
    ("Brazil", "BR", "BRA"),
    ("Japan", "JP", "JPN"),
    ("Australia", "AU", "AUS"),
]
_ISO2_TO_ISO3 = {iso2: iso3 for _, iso2, iso3 in COUNTRIES}
_NAME_TO_ISO2 = {name.lower(): iso2 for name, iso2, _ in COUNTRIES}

LANGUAGES = ("en", "fr", "de", "es", "it", "pt", "nl")


def country_iso3(code: Optional[str]) -> str:
    """Normalize an ISO2 / ISO3 country code to ISO3 (unknown codes pass through upper-cased)."""
    c = (code or "").strip().upper()
    if len(c) == 2:
        return _ISO2_TO_ISO3.get(c, c)
    return c


def country_iso2_for_name(name: Optional[str]) -> str:
    return _NAME_TO_ISO2.get((name or "").strip().lower(), "")


def default_store_settings() -> Dict[str, Any]:
    return {
        "businessName": "Your Store",
        "tvaNumber": "",
        "address": "",
        "vatEnabled": False,
        "vatPercentage": 20,
        "vatIncludedInPrice": True,
        "applyVatAtCheckout": True,
        "paymentMethods": {
            "cardPayments": True,
            "stripePublicKey": STRIPE_PUBLIC_KEY,
            "stripeSecretKey": "",
            "bankTransfer": False,
            "payOnDelivery": False,
            "bankTransferDetails": {
                "bankName": "",
                "accountHolder": "",
                "iban": "",
                "bic": "",
                "additionalInfo": "",
            },
            "eupago": {
                "enabled": False,
                "apiKey": EUPAGO_API_KEY,
                "sandbox": True,
                "mbway": True,
                "multibanco": True,
            },
        },
        "freeShippingEnabled": True,
        "freeShippingThreshold": 50,
        "internationalShipping": True,
        "allowedCountries": ["FRA", "DEU", "ITA", "ESP", "BEL", "NLD", "LUX"],
        "bannedCountries": [],
        "currency": "EUR",
        "carriers": [],
    }


def merge_store_settings(stored: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Overlay stored values on the defaults; `paymentMethods` is merged one level deeper."""
    out = default_store_settings()
    if not stored:
        return out
    for k, v in stored.items():
        if k == "paymentMethods" and isinstance(v, dict):
            pm = out["paymentMethods"]
            for pk, pv in v.items():
                if pk in ("bankTransferDetails", "eupago") and isinstance(pv, dict):
                    pm[pk].update(pv)
                else:
                    pm[pk] = pv
        else:
            out[k] = v
    return out


def public_store_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(settings)
    pm = out.get("paymentMethods") or {}
    pm.pop("stripeSecretKey", None)
    if isinstance(pm.get("eupago"), dict):
        pm["eupago"].pop("apiKey", None)
    return out


async def get_store_settings(db: AsyncSession) -> Dict[str, Any]:
    items = await documents.read_all(db, STORE_SETTINGS)
    return merge_store_settings(items[0] if items else None)


async def save_store_settings(db: AsyncSession, values: Dict[str, Any]) -> Dict[str, Any]:
    items = await documents.read_all(db, STORE_SETTINGS)
    current = items[0] if items else {}
    record = {**current, **values, "updatedAt": documents.now_iso()}
    # Partial paymentMethods updates must not drop stored keys (e.g. the Stripe secret).
    if isinstance(current.get("paymentMethods"), dict) and isinstance(values.get("paymentMethods"), dict):
        record["paymentMethods"] = {**current["paymentMethods"], **values["paymentMethods"]}
    if items:
        await documents.update(db, items[0]["id"], record, STORE_SETTINGS)
    else:
        await documents.create(db, record, STORE_SETTINGS)
    return merge_store_settings(record)


def default_site_settings() -> Dict[str, Any]:
    return {
        "siteName": "",
        "siteEmail": "",
        "sitePhone": "",
        "businessAddress": "",
        "latitude": None,
        "longitude": None,
        "country": "",
        "countryIso": "",
        "language": "en",
        "socialNetworks": [],
        "serviceArea": "",
        "serviceRadius": 0,
        "emailProvider": "smtp",
        "emailUser": "",
        "emailPass": "",
        "smtpHost": "",
        "smtpPort": 587,
        "smtpSecure": False,
        "allowRegistration": False,
        "enableFrontend": True,
        "baseUrl": "",
        "providers": {},
    }


async def get_site_settings(db: AsyncSession) -> Dict[str, Any]:
    items = await documents.read_all(db, SITE_SETTINGS)
    if not items:
        return default_site_settings()
    return {**default_site_settings(), **items[0]}


async def save_site_settings(db: AsyncSession, values: Dict[str, Any]) -> Dict[str, Any]:
    """Update the single site settings record, creating it on first save."""
    items = await documents.read_all(db, SITE_SETTINGS)
    values = dict(values)
    if values.get("country") and not values.get("countryIso"):
        values["countryIso"] = country_iso2_for_name(values["country"])
    values["updatedAt"] = documents.now_iso()
    if items:
        saved = await documents.update(db, items[0]["id"], {**items[0], **values}, SITE_SETTINGS)
    else:
        values["createdAt"] = values["updatedAt"]
        saved = await documents.create(db, values, SITE_SETTINGS)
    return {**default_site_settings(), **(saved or {})}


def public_site_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    out = {k: v for k, v in settings.items() if k != "emailPass"}
    providers = out.get("providers")
    if isinstance(providers, dict):
        out["providers"] = {
            name: {k: v for k, v in (conf or {}).items() if k != "clientSecret"}
            for name, conf in providers.items()
        }
    return out
