"""
Shared fixtures: a throwaway SQLite database, an ASGI client and users with tokens.
"""

import os
import tempfile
from unittest.mock import MagicMock, patch

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

# Configure before the app is imported.
_DB_DIR = tempfile.mkdtemp(prefix="storefront-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'test.db')}")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("SMTP_HOST", "smtp.test")
os.environ.setdefault("SMTP_USER", "shop@example.com")
os.environ.setdefault("ADMIN_NOTIFICATION_EMAIL", "owner@example.com")

from storefront.auth_routes import _issue_token, hash_password  # noqa: E402
from storefront.db import Base, SessionLocal, engine  # noqa: E402
from storefront.emails.service import EmailService  # noqa: E402
from storefront.main import app  # noqa: E402
from storefront.models import User  # noqa: E402


@pytest_asyncio.fixture(autouse=True)
async def _tables():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture(autouse=True)
def mailer():
    """Capture outgoing mail instead of talking to SMTP. Calls are (message, recipients)."""
    with patch.object(EmailService, "_deliver", new=MagicMock(return_value=None)) as deliver:
        yield deliver


@pytest_asyncio.fixture
async def session():
    async with SessionLocal() as s:
        yield s


@pytest_asyncio.fixture
async def client():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


async def _make_user(email: str, role: str, name: str = None) -> User:
    async with SessionLocal() as s:
        user = User(email=email, name=name, password_hash=hash_password("secret-pw"), role=role, is_active=True)
        s.add(user)
        await s.commit()
        await s.refresh(user)
        return user


@pytest_asyncio.fixture
async def admin_user():
    return await _make_user("admin@example.com", "admin", "Admin")


@pytest_asyncio.fixture
async def admin_headers(admin_user):
    return {"Authorization": f"Bearer {_issue_token(admin_user)}"}


@pytest_asyncio.fixture
async def user_headers():
    user = await _make_user("staff@example.com", "user", "Staff")
    return {"Authorization": f"Bearer {_issue_token(user)}"}


def _sent_messages(mailer):
    out = []
    for call in mailer.call_args_list:
        msg, recipients = call.args
        html = ""
        for part in msg.walk():
            if part.get_content_type() == "text/html":
                html = part.get_payload(decode=True).decode("utf-8")
        out.append((str(msg["Subject"]), recipients, html))
    return out


@pytest.fixture
def outbox(mailer):
    """Callable returning [(subject, recipients, html)] for every captured message."""
    return lambda: _sent_messages(mailer)
