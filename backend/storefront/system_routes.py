import os
import re
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr
from sqlalchemy.ext.asyncio import AsyncSession

from .auth_routes import require_admin
from .db import get_session
from .emails import EmailError, ORDER_UPDATE_STATUSES, email_service
from .log import log_event
from .models import User
from .settings_store import LANGUAGES, get_site_settings, public_site_settings, save_site_settings

router = APIRouter()

REQUIRED_ENV = (
    "DATABASE_URL",
    "JWT_SECRET",
    "SMTP_HOST",
    "SMTP_USER",
    "SMTP_PASSWORD",
    "APP_URL",
)

_URL_RE = re.compile(r"^https?://[^\s/$.?#].[^\s]*$", re.I)


def setup_status(environ=None) -> Dict[str, Any]:
    env = os.environ if environ is None else environ
    present, missing, empty = [], [], []
    for name in REQUIRED_ENV:
        if name not in env:
            missing.append(name)
        elif not str(env[name]).strip():
            empty.append(name)
        else:
            present.append(name)
    pct = round(len(present) / len(REQUIRED_ENV) * 100)
    return {
        "complete": not missing and not empty,
        "present": present,
        "missing": missing,
        "empty": empty,
        "setupPercentage": pct,
    }


@router.get("/api/setup")
async def setup():
    status = setup_status()
    return JSONResponse(status, status_code=200 if status["complete"] else 206)


@router.get("/api/site/settings")
async def public_site(db: AsyncSession = Depends(get_session)):
    return {"success": True, "data": public_site_settings(await get_site_settings(db))}


@router.get("/api/system/settings")
async def system_settings(db: AsyncSession = Depends(get_session), _: User = Depends(require_admin)):
    return {"success": True, "data": await get_site_settings(db)}


class SiteSettingsBody(BaseModel):
    siteName: str
    siteEmail: Optional[EmailStr] = None
    sitePhone: Optional[str] = None
    businessAddress: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    country: Optional[str] = None
    countryIso: Optional[str] = None
    language: Optional[str] = None
    socialNetworks: Optional[List[Dict[str, Any]]] = None
    serviceArea: Optional[str] = None
    serviceRadius: Optional[float] = None
    emailProvider: Optional[str] = None
    emailUser: Optional[str] = None
    emailPass: Optional[str] = None
    smtpHost: Optional[str] = None
    smtpPort: Optional[int] = None
    smtpSecure: Optional[bool] = None
    allowRegistration: Optional[bool] = None
    enableFrontend: Optional[bool] = None
    baseUrl: Optional[str] = None
    providers: Optional[Dict[str, Any]] = None


@router.put("/api/system/settings")
async def update_system_settings(body: SiteSettingsBody, db: AsyncSession = Depends(get_session), _: User = Depends(require_admin)):
    values = body.model_dump(exclude_none=True)
    if not body.siteName.strip():
        raise HTTPException(status_code=400, detail="siteName is required")
    if body.baseUrl and not _URL_RE.match(body.baseUrl):
        raise HTTPException(status_code=400, detail="baseUrl must be an http(s) URL")
    if body.language and body.language not in LANGUAGES:
        raise HTTPException(status_code=400, detail=f"language must be one of {', '.join(LANGUAGES)}")
    if body.latitude is not None and not -90 <= body.latitude <= 90:
        raise HTTPException(status_code=400, detail="latitude out of range")
    if body.longitude is not None and not -180 <= body.longitude <= 180:
        raise HTTPException(status_code=400, detail="longitude out of range")
    saved = await save_site_settings(db, values)
    log_event("site_settings", action="updated", fields=sorted(values.keys()))
    return {"success": True, "data": saved}


class EmailBody(BaseModel):
    type: str
    email: EmailStr
    name: Optional[str] = None
    password: Optional[str] = None
    changes: Optional[List[str]] = None
    customerName: Optional[str] = None
    orderId: Optional[str] = None
    orderDate: Optional[str] = None
    status: Optional[str] = None
    items: Optional[List[Dict[str, Any]]] = None
    subtotal: Optional[float] = None
    shippingCost: Optional[float] = None
    total: Optional[float] = None
    shippingAddress: Optional[Dict[str, Any]] = None
    verificationUrl: Optional[str] = None


@router.post("/api/email")
async def send_email(body: EmailBody, _: User = Depends(require_admin)):
    try:
        if body.type == "user_created":
            await email_service.send_user_created_email(body.email, body.name, body.password)
        elif body.type == "user_updated":
            await email_service.send_user_updated_email(body.email, body.name, body.changes)
        elif body.type == "email_verification":
            if not body.verificationUrl or not _URL_RE.match(body.verificationUrl):
                raise HTTPException(status_code=400, detail="verificationUrl must be an http(s) URL")
            await email_service.send_email_verification(body.email, body.verificationUrl, body.name)
        elif body.type == "order_status_update":
            if body.status not in ORDER_UPDATE_STATUSES:
                raise HTTPException(status_code=400, detail=f"status must be one of {', '.join(ORDER_UPDATE_STATUSES)}")
            await email_service.send_order_update_email(body.email, body.model_dump())
        else:
            raise HTTPException(status_code=400, detail="Invalid email type")
    except EmailError as e:
        log_event("email", action="api_send_failed", type=body.type, error=str(e))
        raise HTTPException(status_code=502, detail="Failed to send email")
    return {"success": True}
