import os
import re
from time import time as _now
from typing import Any, Dict, List, Optional, Tuple

import httpx
from fastapi import APIRouter, HTTPException, Query

from .log import log_event

router = APIRouter()

GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"

# 7 days TTL
_TTL_SECONDS = 7 * 24 * 60 * 60
_CACHE: Dict[str, Tuple[float, Dict[str, Any]]] = {}
_MAX_KEYS = 5000


def _normalize_spaces(text: str) -> str:
    return re.sub(r"\s+", " ", (text or "").strip())


def _join_non_empty(parts: List[str], sep: str = ", ") -> str:
    return sep.join([p for p in parts if p and str(p).strip()])


def _cache_get(key: str) -> Optional[Dict[str, Any]]:
    ts, val = _CACHE.get(key, (0.0, None))
    if not val:
        return None
    if (_now() - ts) > _TTL_SECONDS:
        _CACHE.pop(key, None)
        return None
    return val


def _cache_set(key: str, val: Dict[str, Any]) -> None:
    _CACHE[key] = (_now(), val)
    if len(_CACHE) > _MAX_KEYS:
        oldest_key = min(_CACHE.items(), key=lambda kv: kv[1][0])[0]
        _CACHE.pop(oldest_key, None)


def _component(comp: Dict[str, Any], long: bool = True) -> Optional[str]:
    # Geocoding API uses long_name/short_name, Places API (New) longText/shortText.
    if long:
        return comp.get("long_name") or comp.get("longText")
    return comp.get("short_name") or comp.get("shortText")


def extract_address_components(place: Dict[str, Any]) -> Dict[str, str]:
    """Pull city / state / zip / country out of a Google place or geocoding result."""
    out = {"city": "", "state": "", "zipCode": "", "country": "", "countryCode": ""}
    fallback_city = ""
    for comp in place.get("address_components") or place.get("addressComponents") or []:
        types = comp.get("types") or []
        if "locality" in types and not out["city"]:
            out["city"] = _component(comp) or ""
        elif "postal_town" in types and not fallback_city:
            fallback_city = _component(comp) or ""
        elif "administrative_area_level_2" in types and not fallback_city:
            fallback_city = _component(comp) or ""
        if "administrative_area_level_1" in types and not out["state"]:
            out["state"] = _component(comp) or ""
        if "postal_code" in types and not out["zipCode"]:
            out["zipCode"] = _component(comp) or ""
        if "country" in types and not out["country"]:
            out["country"] = _component(comp) or ""
            out["countryCode"] = (_component(comp, long=False) or "").upper()
    out["city"] = out["city"] or fallback_city
    return out


def candidate_addresses(street: str, city: str, state: str, zip_code: str, country: str) -> List[str]:
    street, city, state = _normalize_spaces(street), _normalize_spaces(city), _normalize_spaces(state)
    zip_code, country = _normalize_spaces(zip_code), _normalize_spaces(country)
    candidates = [
        _join_non_empty([street, city, state, zip_code, country]),
        _join_non_empty([city, state, country]),
        _join_non_empty([city, country]),
    ]
    if zip_code:
        candidates.append(_join_non_empty([zip_code, country]))
    seen, out = set(), []
    for c in candidates:
        if c and c.lower() not in seen:
            seen.add(c.lower())
            out.append(c)
    return out


async def _call(address: str, key: str, region: str) -> Dict[str, Any]:
    params = {"address": address, "key": key}
    if region:
        params["region"] = region
    async with httpx.AsyncClient(timeout=30) as client:
        r = await client.get(GEOCODE_URL, params=params)
        r.raise_for_status()
        return r.json()


def _failure(reason: str, address: str = "") -> Dict[str, Any]:
    return {"ok": False, "address_string": address, "lat": None, "lng": None, "components": None, "reason": reason}


async def geocode_address(
    street: Optional[str] = None,
    city: Optional[str] = None,
    state: Optional[str] = None,
    zip_code: Optional[str] = None,
    country: Optional[str] = None,
    *,
    api_key: Optional[str] = None,
    region: str = "",
) -> Dict[str, Any]:
    """
    Geocode a checkout address with the Google Geocoding API.

    Tries progressively coarser candidate strings (full, city+state, city, zip) and
    caches each answer. Returns {"ok", "address_string", "lat", "lng", "components", "reason"}.
    """
    key = api_key or os.environ.get("GOOGLE_MAPS_API_KEY", "").strip()
    if not key:
        return _failure("no_api_key")

    for cand in candidate_addresses(street or "", city or "", state or "", zip_code or "", country or ""):
        ck = f"GGEOCODE|{region}|{cand.lower()}"
        cached = _cache_get(ck)
        if cached is not None:
            if cached.get("ok"):
                return cached
            continue
        try:
            js = await _call(cand, key, region)
        except httpx.HTTPError as e:
            log_event("geocode", action="request_failed", address=cand, error=str(e))
            _cache_set(ck, _failure("geocode_failed", cand))
            continue
        status = (js.get("status") or "").upper()
        results = js.get("results") or []
        if status == "OK" and results:
            best = results[0]
            loc = (best.get("geometry") or {}).get("location") or {}
            resp = {
                "ok": True,
                "address_string": best.get("formatted_address") or cand,
                "lat": loc.get("lat"),
                "lng": loc.get("lng"),
                "components": extract_address_components(best),
                "reason": None,
            }
            _cache_set(ck, resp)
            return resp
        _cache_set(ck, _failure(status.lower() if status else "geocode_failed", cand))

    return _failure("geocode_failed")


@router.get("/api/address/lookup")
async def address_lookup(
    q: str = Query(default=""),
    country: Optional[str] = Query(default=None),
):
    if not q.strip():
        raise HTTPException(status_code=400, detail="q is required")
    result = await geocode_address(street=q, country=country or "")
    if not result["ok"] and result["reason"] == "no_api_key":
        raise HTTPException(status_code=503, detail="address lookup is not configured")
    return result
