from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr
from sqlalchemy.ext.asyncio import AsyncSession

from . import documents
from .auth_routes import require_admin
from .db import get_session
from .emails import EmailError, email_service
from .log import log_event
from .models import User

router = APIRouter(prefix="/api/admin/newsletter")

CAMPAIGNS = "newsletter_campaigns"
SUBSCRIBERS = "newsletter_subscribers"
TEMPLATES = "newsletter_templates"

DEFAULT_TEMPLATES = [
    {
        "name": "Welcome Newsletter",
        "description": "Welcome new subscribers to your newsletter",
        "thumbnail": "📧",
        "category": "onboarding",
        "content": "<h2>Welcome to our newsletter!</h2><p>Thank you for subscribing. We're excited to share updates with you.</p>",
    },
    {
        "name": "Product Update",
        "description": "Share product updates and new features",
        "thumbnail": "🚀",
        "category": "promotional",
        "content": "<h2>New Product Updates</h2><p>Check out our latest features and improvements.</p>",
    },
    {
        "name": "Monthly Digest",
        "description": "Regular monthly newsletter template",
        "thumbnail": "📰",
        "category": "newsletter",
        "content": "<h2>Monthly Newsletter</h2><p>Here's what happened this month...</p>",
    },
]


class NoSubscribers(Exception):
    pass


async def ensure_default_templates(db: AsyncSession) -> List[Dict[str, Any]]:
    templates = await documents.read_all(db, TEMPLATES)
    if templates:
        return templates
    now = documents.now_iso()
    return [await documents.create(db, {**t, "createdAt": now}, TEMPLATES) for t in DEFAULT_TEMPLATES]


def new_campaign(subject: str, content: str, preview_text: str = "") -> Dict[str, Any]:
    return {
        "subject": subject,
        "content": content,
        "previewText": preview_text,
        "status": "draft",
        "recipients": 0,
        "openRate": 0,
        "clickRate": 0,
        "createdAt": documents.now_iso(),
    }


def campaign_from_template(template: Dict[str, Any]) -> Dict[str, Any]:
    return new_campaign(
        f"Newsletter - {template.get('name') or ''}",
        template.get("content") or "",
        template.get("description") or "",
    )


def campaign_stats(campaigns: List[Dict[str, Any]], subscribers: List[Dict[str, Any]]) -> Dict[str, Any]:
    sent = [c for c in campaigns if c.get("status") == "sent"]

    def _avg(field: str) -> float:
        if not sent:
            return 0.0
        return round(sum(float(c.get(field) or 0) for c in sent) / len(sent), 1)

    return {
        "totalSubscribers": len(subscribers),
        "activeSubscribers": sum(1 for s in subscribers if s.get("status") == "active"),
        "totalCampaigns": len(campaigns),
        "sentCampaigns": len(sent),
        "avgOpenRate": _avg("openRate"),
        "avgClickRate": _avg("clickRate"),
    }


async def _set_status(db: AsyncSession, campaign: Dict[str, Any], **fields: Any) -> Dict[str, Any]:
    updated = {**campaign, **fields, "updatedAt": documents.now_iso()}
    await documents.update(db, campaign["id"], updated, CAMPAIGNS)
    return updated


def _mailable(sub: Dict[str, Any]) -> bool:
    email = sub.get("email")
    return isinstance(email, str) and bool(email.strip())


async def send_campaign(db: AsyncSession, campaign: Dict[str, Any]) -> Dict[str, Any]:
    """Mail the campaign to every active subscriber; the campaign falls back to draft unless it was sent."""
    campaign = await _set_status(db, campaign, status="sending")
    sent = False
    try:
        active = [s for s in await documents.read_all(db, SUBSCRIBERS) if s.get("status") == "active"]
        skipped = [s.get("id") for s in active if not _mailable(s)]
        recipients = [s for s in active if _mailable(s)]
        if skipped:
            log_event("newsletter", action="skipped_without_email", campaign_id=campaign["id"], subscribers=skipped)
        if not recipients:
            raise NoSubscribers("No active subscribers found")

        delivered, failed = 0, []
        for sub in recipients:
            to = sub["email"].strip()
            try:
                await email_service.send_newsletter(
                    to,
                    campaign.get("subject") or "",
                    campaign.get("content") or "",
                    campaign.get("previewText") or "",
                    sub.get("name"),
                )
                delivered += 1
            except EmailError as e:
                failed.append(to)
                log_event("newsletter", action="send_failed", campaign_id=campaign["id"], to=to, error=str(e))

        if not delivered:
            raise EmailError(f"newsletter could not be delivered to any of {len(recipients)} subscribers")

        campaign = await _set_status(db, campaign, status="sent", sentDate=documents.now_iso(), recipients=delivered)
        sent = True
    finally:
        if not sent:
            await _set_status(db, campaign, status="draft")
    log_event("newsletter", action="sent", campaign_id=campaign["id"], recipients=delivered, failed=len(failed))
    return {"campaign": campaign, "failed": failed, "skipped": skipped}


# ---------- routes ----------

@router.get("/campaigns")
async def list_campaigns(db: AsyncSession = Depends(get_session), _: User = Depends(require_admin)):
    campaigns = await documents.read_all(db, CAMPAIGNS)
    campaigns.sort(key=lambda c: str(c.get("createdAt") or ""), reverse=True)
    return {"success": True, "data": campaigns}


class CampaignBody(BaseModel):
    subject: str
    content: str
    previewText: str = ""


@router.post("/campaigns", status_code=201)
async def create_campaign(body: CampaignBody, db: AsyncSession = Depends(get_session), _: User = Depends(require_admin)):
    if not body.subject.strip() or not body.content.strip():
        raise HTTPException(status_code=400, detail="subject and content are required")
    campaign = await documents.create(db, new_campaign(body.subject.strip(), body.content, body.previewText), CAMPAIGNS)
    return {"success": True, "data": campaign}


@router.post("/templates/{template_id}/use", status_code=201)
async def use_template(template_id: str, db: AsyncSession = Depends(get_session), _: User = Depends(require_admin)):
    template = await documents.read(db, template_id, TEMPLATES)
    if not template:
        raise HTTPException(status_code=404, detail="Template not found")
    campaign = await documents.create(db, campaign_from_template(template), CAMPAIGNS)
    return {"success": True, "data": campaign}


@router.post("/campaigns/{campaign_id}/send")
async def send(campaign_id: str, db: AsyncSession = Depends(get_session), _: User = Depends(require_admin)):
    campaign = await documents.read(db, campaign_id, CAMPAIGNS)
    if not campaign:
        raise HTTPException(status_code=404, detail="Campaign not found")
    if campaign.get("status") == "sent":
        raise HTTPException(status_code=409, detail="Campaign already sent")
    try:
        result = await send_campaign(db, campaign)
    except NoSubscribers as e:
        raise HTTPException(status_code=409, detail=str(e))
    except EmailError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {
        "success": True,
        "message": f"Newsletter sent to {result['campaign']['recipients']} subscribers",
        "data": result["campaign"],
        "failed": result["failed"],
        "skipped": result["skipped"],
    }


@router.delete("/campaigns/{campaign_id}")
async def delete_campaign(campaign_id: str, db: AsyncSession = Depends(get_session), _: User = Depends(require_admin)):
    if not await documents.delete(db, campaign_id, CAMPAIGNS):
        raise HTTPException(status_code=404, detail="Campaign not found")
    return {"success": True}


@router.get("/templates")
async def list_templates(db: AsyncSession = Depends(get_session), _: User = Depends(require_admin)):
    return {"success": True, "data": await ensure_default_templates(db)}


@router.get("/subscribers")
async def list_subscribers(db: AsyncSession = Depends(get_session), _: User = Depends(require_admin)):
    return {"success": True, "data": await documents.read_all(db, SUBSCRIBERS)}


class SubscriberBody(BaseModel):
    email: EmailStr
    name: Optional[str] = None


@router.post("/subscribers", status_code=201)
async def add_subscriber(body: SubscriberBody, db: AsyncSession = Depends(get_session), _: User = Depends(require_admin)):
    email = body.email.lower().strip()
    if await documents.get_item_key(db, "email", email, SUBSCRIBERS):
        raise HTTPException(status_code=409, detail="Subscriber already exists")
    sub = await documents.create(db, {
        "email": email,
        "name": body.name,
        "status": "active",
        "subscribedAt": documents.now_iso(),
        "createdAt": documents.now_iso(),
    }, SUBSCRIBERS)
    return {"success": True, "data": sub}


@router.post("/subscribers/{subscriber_id}/unsubscribe")
async def unsubscribe(subscriber_id: str, db: AsyncSession = Depends(get_session), _: User = Depends(require_admin)):
    sub = await documents.read(db, subscriber_id, SUBSCRIBERS)
    if not sub:
        raise HTTPException(status_code=404, detail="Subscriber not found")
    sub = {**sub, "status": "unsubscribed", "unsubscribedAt": documents.now_iso()}
    await documents.update(db, subscriber_id, sub, SUBSCRIBERS)
    return {"success": True, "data": sub}


@router.get("/stats")
async def stats(db: AsyncSession = Depends(get_session), _: User = Depends(require_admin)):
    campaigns = await documents.read_all(db, CAMPAIGNS)
    subscribers = await documents.read_all(db, SUBSCRIBERS)
    return {"success": True, "data": campaign_stats(campaigns, subscribers)}
