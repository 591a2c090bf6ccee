import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from sqlalchemy.exc import SQLAlchemyError

from .db import SessionLocal, init_db, provider_name
from .log import log_event
from .auth_routes import router as auth_router
from .admin_bootstrap_routes import admin_count, ensure_admin, router as admin_router
from .checkout_routes import router as checkout_router
from .database_routes import router as database_router
from .eupago_routes import router as eupago_router
from .geocode import router as geocode_router
from .newsletter import router as newsletter_router
from .query_routes import router as query_router
from .system_routes import router as system_router
from .workspace import router as workspace_router

app = FastAPI(title="Storefront Admin API", version="1.0.0")

# Checkout and booking own fixed paths under /api/query/public, so they go
# ahead of the generic /api/query/{collection} routes.
for _router in (
    auth_router,
    admin_router,
    system_router,
    checkout_router,
    eupago_router,
    workspace_router,
    query_router,
    database_router,
    newsletter_router,
    geocode_router,
):
    app.include_router(_router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
# Backups and collection dumps compress well
app.add_middleware(GZipMiddleware, minimum_size=500)


@app.get("/api/health")
async def health():
    return {"ok": True, "database": provider_name()}


@app.on_event("startup")
async def _startup_tables():
    try:
        await init_db()
    except SQLAlchemyError as e:
        log_event("db", action="init_failed", error=str(e))


@app.on_event("startup")
async def _startup_routes():
    paths = [
        f"{','.join(sorted(getattr(r, 'methods', None) or [])) or r.__class__.__name__} {getattr(r, 'path', '?')}"
        for r in app.router.routes
    ]
    log_event("routes", action="registered", count=len(paths), routes=paths)


@app.on_event("startup")
async def _startup_default_admin():
    """Seed an admin from ADMIN_DEFAULT_* only while the database has none."""
    email = (os.environ.get("ADMIN_DEFAULT_EMAIL") or "").strip()
    password = (os.environ.get("ADMIN_DEFAULT_PASSWORD") or "").strip()
    if not email or not password:
        return
    try:
        async with SessionLocal() as session:
            if await admin_count(session):
                return
            await ensure_admin(session, email, password, os.environ.get("ADMIN_DEFAULT_NAME"))
    except SQLAlchemyError as e:
        log_event("auth", action="default_admin_failed", error=str(e))
