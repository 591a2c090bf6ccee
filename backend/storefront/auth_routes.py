import hashlib
import hmac
import os
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr
from sqlalchemy import delete as sa_delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from .emails import EmailError, email_service
from .log import log_event
from .models import PasswordReset, User
from .settings_store import get_site_settings

router = APIRouter(prefix="/api/auth")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=True)
oauth2_optional = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)

JWT_SECRET = os.environ.get("JWT_SECRET", "CHANGE_ME_SECRET").strip()
JWT_EXPIRES_MINUTES = int(os.environ.get("JWT_EXPIRES_MINUTES", "720").strip() or 720)

ROLES = ("admin", "user")

RESET_CODE_MINUTES = 10
MAX_RESET_ATTEMPTS = 5


def hash_password(pw: str) -> str:
    return pwd_context.hash(pw)


def verify_password(pw: str, hashed: str) -> bool:
    try:
        return pwd_context.verify(pw, hashed)
    except (ValueError, TypeError):
        return False


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def user_dict(user: User) -> dict:
    return {"id": user.id, "email": user.email, "name": user.name, "role": user.role}


def _issue_token(user: User) -> str:
    exp = datetime.now(timezone.utc) + timedelta(minutes=JWT_EXPIRES_MINUTES)
    return jwt.encode({"sub": str(user.id), "role": user.role, "exp": exp}, JWT_SECRET, algorithm="HS256")


def _token_subject(token: Optional[str]) -> Optional[str]:
    """User id carried by a valid token, else None."""
    if not token:
        return None
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=["HS256"]).get("sub") or None
    except JWTError:
        return None


async def _active_user(db: AsyncSession, uid: Optional[str]) -> Optional[User]:
    if not uid:
        return None
    user = await db.scalar(select(User).where(User.id == uid))
    return user if user and user.is_active else None


async def get_current_user(token: str = Depends(oauth2_scheme), db: AsyncSession = Depends(get_session)) -> User:
    user = await _active_user(db, _token_subject(token))
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid token")
    return user


async def get_current_user_optional(token: Optional[str] = Depends(oauth2_optional), db: AsyncSession = Depends(get_session)) -> Optional[User]:
    return await _active_user(db, _token_subject(token))


async def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != "admin":
        raise HTTPException(status_code=403, detail="admin required")
    return user


def _session_payload(user: User) -> dict:
    return {"access_token": _issue_token(user), "token_type": "bearer", "user": user_dict(user)}


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: dict


class LoginBody(BaseModel):
    email: EmailStr
    password: str


@router.post("/login", response_model=TokenResponse)
async def login(body: LoginBody, db: AsyncSession = Depends(get_session)):
    user = await db.scalar(select(User).where(User.email == normalize_email(body.email)))
    if not user or not user.is_active or not verify_password(body.password, user.password_hash):
        raise HTTPException(status_code=401, detail="invalid credentials")
    user.last_login_at = datetime.now(timezone.utc)
    await db.commit()
    await db.refresh(user)
    return _session_payload(user)


class RegisterBody(BaseModel):
    email: EmailStr
    password: str
    name: Optional[str] = None
    role: Optional[str] = None  # admin | user


@router.post("/register", response_model=TokenResponse)
async def register(
    body: RegisterBody,
    db: AsyncSession = Depends(get_session),
    current_user: Optional[User] = Depends(get_current_user_optional),
):
    is_first_user = (await db.scalar(select(func.count()).select_from(User))) == 0
    is_admin = bool(current_user and current_user.role == "admin")
    if not is_first_user and not is_admin and not (await get_site_settings(db)).get("allowRegistration"):
        raise HTTPException(status_code=403, detail="registration is disabled")

    email = normalize_email(body.email)
    if await db.scalar(select(User).where(User.email == email)):
        raise HTTPException(status_code=400, detail="email already exists")

    if is_first_user:
        role = "admin"
    else:
        role = body.role if is_admin and body.role in ROLES else "user"
    user = User(email=email, name=(body.name or "").strip() or None, password_hash=hash_password(body.password), role=role)
    db.add(user)
    await db.commit()
    await db.refresh(user)
    log_event("auth", action="registered", user_id=user.id, role=role)

    try:
        await email_service.send_welcome_email(user.email, user.name)
    except EmailError as e:
        log_event("auth", action="welcome_email_failed", user_id=user.id, error=str(e))
    return _session_payload(user)


@router.get("/me")
async def me(user: User = Depends(get_current_user)):
    return user_dict(user)


# ---------- Password reset by emailed code ----------

def _code_digest(email: str, code: str) -> str:
    return hmac.new(JWT_SECRET.encode(), f"{email}:{code}".encode(), hashlib.sha256).hexdigest()


def _expired(reset: PasswordReset) -> bool:
    expires = reset.expires_at
    if expires.tzinfo is None:  # SQLite hands back naive values
        expires = expires.replace(tzinfo=timezone.utc)
    return expires <= datetime.now(timezone.utc) or reset.attempts >= MAX_RESET_ATTEMPTS


class ForgotPasswordBody(BaseModel):
    email: EmailStr


@router.post("/forgot-password")
async def forgot_password(body: ForgotPasswordBody, db: AsyncSession = Depends(get_session)):
    """Email a 6-digit reset code. The answer is the same whether or not the account exists."""
    email = normalize_email(body.email)
    user = await db.scalar(select(User).where(User.email == email, User.is_active == True))  # noqa: E712
    if user:
        code = f"{secrets.randbelow(1_000_000):06d}"
        await db.execute(sa_delete(PasswordReset).where(PasswordReset.email == email))
        db.add(PasswordReset(
            email=email,
            digest=_code_digest(email, code),
            expires_at=datetime.now(timezone.utc) + timedelta(minutes=RESET_CODE_MINUTES),
            attempts=0,
        ))
        await db.commit()
        try:
            await email_service.send_password_reset_email(email, code, user.name)
        except EmailError as e:
            log_event("auth", action="reset_email_failed", user_id=user.id, error=str(e))
    return {"success": True, "message": "If the account exists, a reset code was sent"}


class ResetPasswordBody(BaseModel):
    email: EmailStr
    code: str
    password: str


@router.post("/reset-password")
async def reset_password(body: ResetPasswordBody, db: AsyncSession = Depends(get_session)):
    email = normalize_email(body.email)
    invalid = HTTPException(status_code=400, detail="invalid or expired code")
    pending = await db.get(PasswordReset, email)
    if not pending:
        raise invalid
    if _expired(pending):
        await db.delete(pending)
        await db.commit()
        raise invalid
    if not hmac.compare_digest(pending.digest, _code_digest(email, body.code.strip())):
        pending.attempts += 1
        await db.commit()
        raise invalid

    user = await db.scalar(select(User).where(User.email == email))
    if not user:
        raise invalid
    user.password_hash = hash_password(body.password)
    await db.delete(pending)
    await db.commit()
    log_event("auth", action="password_reset", user_id=user.id)
    return {"success": True}
