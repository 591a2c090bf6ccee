import math
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from . import documents
from .auth_routes import get_current_user, require_admin
from .database_admin import ACTIVITIES, BACKUPS
from .db import get_session
from .log import log_event
from .models import User
from .settings_store import (
    SITE_SETTINGS,
    STORE_SETTINGS,
    merge_store_settings,
    public_site_settings,
    public_store_settings,
)

router = APIRouter()

SEARCH_FIELDS = ("name", "title", "description", "category", "email", "displayName")
MAX_LIMIT = 100
PUBLIC_COLLECTIONS = (STORE_SETTINGS, SITE_SETTINGS, "catalog", "categories", "collections", "blocks")
# Managed only through the database admin endpoints.
INTERNAL_COLLECTIONS = (BACKUPS, ACTIVITIES)


def search_items(items: List[Dict[str, Any]], term: Optional[str]) -> List[Dict[str, Any]]:
    needle = (term or "").strip().lower()
    if not needle:
        return items
    return [
        item for item in items
        if any(needle in str(item.get(f) or "").lower() for f in SEARCH_FIELDS)
    ]


def sort_newest_first(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(items, key=lambda i: str(i.get("createdAt") or ""), reverse=True)


def paginate(items: List[Dict[str, Any]], page: int, limit: int) -> Dict[str, Any]:
    """`limit == 0` returns everything on a single page."""
    total = len(items)
    page = max(page, 1)
    if limit <= 0:
        return {
            "data": items,
            "pagination": {"currentPage": 1, "totalItems": total, "totalPages": 1, "hasNext": False, "hasPrev": False},
        }
    limit = min(limit, MAX_LIMIT)
    pages = max(math.ceil(total / limit), 1)
    start = (page - 1) * limit
    return {
        "data": items[start:start + limit],
        "pagination": {
            "currentPage": page,
            "totalItems": total,
            "totalPages": pages,
            "hasNext": page < pages,
            "hasPrev": page > 1,
        },
    }


async def _find_record(db: AsyncSession, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
    item = await documents.read(db, record_id, collection)
    if item:
        return item
    matches = await documents.get_items_by_key_value(db, "id", record_id, collection)
    return matches[0] if matches else None


async def _query(db, collection, id, key, value, search, page, limit):
    if id:
        item = await _find_record(db, collection, id)
        if not item:
            raise HTTPException(status_code=404, detail="Record not found")
        return {"success": True, "data": item}
    if key and value is not None:
        items = await documents.get_items_by_key_value(db, key, value, collection)
        if not items:
            raise HTTPException(status_code=404, detail="No records found")
    else:
        items = await documents.read_all(db, collection)
    items = sort_newest_first(search_items(items, search))
    return {"success": True, **paginate(items, page, limit)}


def _sanitize_public(collection: str, items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if collection == STORE_SETTINGS:
        return [public_store_settings(merge_store_settings(i)) for i in items]
    if collection == SITE_SETTINGS:
        return [public_site_settings(i) for i in items]
    return items


@router.get("/api/query/public/{collection}")
async def public_query(
    collection: str,
    id: Optional[str] = Query(default=None),
    key: Optional[str] = Query(default=None),
    value: Optional[str] = Query(default=None),
    search: Optional[str] = Query(default=None),
    page: int = Query(default=1),
    limit: int = Query(default=10),
    db: AsyncSession = Depends(get_session),
):
    if collection not in PUBLIC_COLLECTIONS:
        raise HTTPException(status_code=403, detail="collection is not public")
    result = await _query(db, collection, id, key, value, search, page, limit)
    data = result["data"]
    if isinstance(data, dict):
        result["data"] = _sanitize_public(collection, [data])[0]
    else:
        result["data"] = _sanitize_public(collection, data)
    return result



def _reject_internal(collection: str) -> None:
    if collection in INTERNAL_COLLECTIONS:
        raise HTTPException(status_code=403, detail="collection is not accessible")

@router.get("/api/query/{collection}")
async def query_collection(
    collection: str,
    id: Optional[str] = Query(default=None),
    key: Optional[str] = Query(default=None),
    value: Optional[str] = Query(default=None),
    search: Optional[str] = Query(default=None),
    page: int = Query(default=1),
    limit: int = Query(default=10),
    db: AsyncSession = Depends(get_session),
    _: User = Depends(get_current_user),
):
    _reject_internal(collection)
    return await _query(db, collection, id, key, value, search, page, limit)


@router.post("/api/query/{collection}", status_code=201)
async def create_record(
    collection: str,
    data: Dict[str, Any] = Body(...),
    db: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    _reject_internal(collection)
    now = documents.now_iso()
    record = {**data, "createdAt": now, "createdBy": user.id, "updatedAt": now, "updatedBy": user.id}
    try:
        created = await documents.create(db, record, collection)
    except documents.DocumentExists as e:
        raise HTTPException(status_code=409, detail=str(e))
    log_event("query", action="created", collection=collection, id=created["id"], by=user.id)
    return {"success": True, "data": created}


@router.put("/api/query/{collection}")
async def update_record(
    collection: str,
    data: Dict[str, Any] = Body(...),
    db: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    _reject_internal(collection)
    record_id = data.get("id")
    if not record_id:
        raise HTTPException(status_code=400, detail="id is required")
    existing = await documents.read(db, str(record_id), collection)
    if not existing:
        raise HTTPException(status_code=404, detail="Record not found")
    merged = {**existing, **data, "updatedAt": documents.now_iso(), "updatedBy": user.id}
    updated = await documents.update(db, str(record_id), merged, collection)
    log_event("query", action="updated", collection=collection, id=record_id, by=user.id)
    return {"success": True, "data": updated}


@router.delete("/api/query/{collection}")
async def delete_record(
    collection: str,
    id: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_session),
    user: User = Depends(require_admin),
):
    _reject_internal(collection)
    if not id:
        raise HTTPException(status_code=400, detail="id is required")
    if not await documents.delete(db, id, collection):
        raise HTTPException(status_code=404, detail="Record not found")
    log_event("query", action="deleted", collection=collection, id=id, by=user.id)
    return {"success": True, "message": "Record deleted"}
