import hmac
import os
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, EmailStr
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from .emails import EmailError, email_service
from .log import log_event
from .models import User
from .auth_routes import ROLES, hash_password, normalize_email, require_admin, user_dict

router = APIRouter()

_TRUTHY = ("1", "true", "yes", "on")


def bootstrap_token() -> str:
    return (os.environ.get("ADMIN_BOOTSTRAP_TOKEN") or "").strip()


def bootstrap_allows_existing() -> bool:
    return (os.environ.get("ADMIN_BOOTSTRAP_ALLOW_EXISTING") or "").strip().lower() in _TRUTHY


async def admin_count(db: AsyncSession) -> int:
    return (await db.scalar(select(func.count()).select_from(User).where(User.role == "admin"))) or 0


async def ensure_admin(db: AsyncSession, email: str, password: str, name: Optional[str] = None) -> User:
    """Create the account as admin, or promote and re-key an existing one."""
    email = normalize_email(email)
    user = await db.scalar(select(User).where(User.email == email))
    if user is None:
        user = User(email=email)
        db.add(user)
    user.name = (name or user.name or "").strip() or None
    user.password_hash = hash_password(password)
    user.role = "admin"
    user.is_active = True
    await db.commit()
    await db.refresh(user)
    log_event("users", action="admin_ensured", user_id=user.id)
    return user


async def _mail(kind: str, send, *args) -> bool:
    try:
        await send(*args)
    except EmailError as e:
        log_event("users", action=f"{kind}_email_failed", error=str(e))
        return False
    return True


def _check_bootstrap_header(x_admin_bootstrap_token: Optional[str] = Header(default=None, alias="X-Admin-Bootstrap-Token")):
    expected = bootstrap_token()
    if not expected:
        raise HTTPException(status_code=404, detail="bootstrap disabled")
    given = (x_admin_bootstrap_token or "").strip()
    if not given or not hmac.compare_digest(given, expected):
        raise HTTPException(status_code=401, detail="invalid bootstrap token")


@router.get("/api/admin/bootstrap/status")
async def bootstrap_status(db: AsyncSession = Depends(get_session)):
    return {
        "enabled": bool(bootstrap_token()),
        "allow_existing": bootstrap_allows_existing(),
        "has_admin": (await admin_count(db)) > 0,
    }


class AccountBody(BaseModel):
    email: EmailStr
    password: str
    name: Optional[str] = None


@router.post("/api/admin/bootstrap/set-admin", dependencies=[Depends(_check_bootstrap_header)])
async def bootstrap_set_admin(body: AccountBody, db: AsyncSession = Depends(get_session)):
    if await admin_count(db) and not bootstrap_allows_existing():
        raise HTTPException(status_code=409, detail="an admin already exists; set ADMIN_BOOTSTRAP_ALLOW_EXISTING=1 to override")
    user = await ensure_admin(db, body.email, body.password, body.name)
    return {"ok": True, "admin": user_dict(user)}


# ---------- User management (admin) ----------

class NewUserBody(AccountBody):
    role: Optional[str] = None  # admin | user
    send_email: bool = True


@router.post("/api/admin/users/create")
async def admin_create_user(body: NewUserBody, db: AsyncSession = Depends(get_session), _: User = Depends(require_admin)):
    email = normalize_email(body.email)
    if await db.scalar(select(User).where(User.email == email)):
        raise HTTPException(status_code=400, detail="email already exists")
    user = User(
        email=email,
        name=(body.name or "").strip() or None,
        password_hash=hash_password(body.password),
        role=body.role if body.role in ROLES else "user",
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    log_event("users", action="created", user_id=user.id, role=user.role)
    sent = body.send_email and await _mail("user_created", email_service.send_user_created_email, user.email, user.name, body.password)
    return {"ok": True, "user": user_dict(user), "email_sent": bool(sent)}


@router.get("/api/admin/users")
async def admin_list_users(db: AsyncSession = Depends(get_session), _: User = Depends(require_admin)):
    users = (await db.scalars(select(User).order_by(User.created_at))).all()
    return {"users": [{**user_dict(u), "is_active": u.is_active} for u in users]}


class UserUpdateBody(BaseModel):
    name: Optional[str] = None
    role: Optional[str] = None
    is_active: Optional[bool] = None
    notify: bool = True


@router.put("/api/admin/users/{user_id}")
async def admin_update_user(
    user_id: str,
    body: UserUpdateBody,
    db: AsyncSession = Depends(get_session),
    me: User = Depends(require_admin),
):
    user = await db.scalar(select(User).where(User.id == user_id))
    if not user:
        raise HTTPException(status_code=404, detail="user not found")
    if body.role is not None and body.role not in ROLES:
        raise HTTPException(status_code=400, detail=f"role must be one of {', '.join(ROLES)}")
    if user.id == me.id and (body.role == "user" or body.is_active is False):
        raise HTTPException(status_code=400, detail="you cannot demote or deactivate yourself")

    changes: List[str] = []
    if body.name is not None and body.name.strip() != (user.name or ""):
        user.name = body.name.strip() or None
        changes.append("Name")
    if body.role is not None and body.role != user.role:
        user.role = body.role
        changes.append("Role")
    if body.is_active is not None and body.is_active != user.is_active:
        user.is_active = body.is_active
        changes.append("Account status")
    await db.commit()
    await db.refresh(user)

    sent = False
    if changes and body.notify:
        sent = await _mail("user_updated", email_service.send_user_updated_email, user.email, user.name, changes)
    return {"ok": True, "user": {**user_dict(user), "is_active": user.is_active}, "changes": changes, "email_sent": sent}


class PasswordResetBody(BaseModel):
    email: EmailStr
    new_password: str


@router.post("/api/admin/users/reset-password")
async def admin_reset_password(body: PasswordResetBody, db: AsyncSession = Depends(get_session), _: User = Depends(require_admin)):
    user = await db.scalar(select(User).where(User.email == normalize_email(body.email)))
    if not user:
        raise HTTPException(status_code=404, detail="user not found")
    user.password_hash = hash_password(body.new_password)
    user.is_active = True
    await db.commit()
    sent = await _mail("user_updated", email_service.send_user_updated_email, user.email, user.name, ["Password"])
    return {"ok": True, "email_sent": sent}
