from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete as sa_delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Document


class DocumentExists(Exception):
    """Raised when creating a document whose id is already taken in the collection."""


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def _as_dict(row: Document) -> Dict[str, Any]:
    data = dict(row.data or {})
    data["id"] = row.doc_id
    return data


def _strip_id(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in (data or {}).items() if k != "id"}


async def _row(db: AsyncSession, doc_id: str, collection: str) -> Optional[Document]:
    return await db.scalar(
        select(Document).where(Document.collection == collection, Document.doc_id == str(doc_id))
    )


async def read_all(db: AsyncSession, collection: str) -> List[Dict[str, Any]]:
    rows = await db.scalars(
        select(Document).where(Document.collection == collection).order_by(Document.seq)
    )
    return [_as_dict(r) for r in rows]


async def read(db: AsyncSession, doc_id: str, collection: str) -> Optional[Dict[str, Any]]:
    row = await _row(db, doc_id, collection)
    return None if not row else _as_dict(row)


async def get_items_by_key_value(db: AsyncSession, key: str, value: Any, collection: str) -> List[Dict[str, Any]]:
    """Documents whose top-level `key` equals `value` (compared as strings)."""
    want = "" if value is None else str(value)
    out = []
    for item in await read_all(db, collection):
        have = item.get(key)
        if have is None:
            continue
        if isinstance(have, bool):
            have = "true" if have else "false"
        if str(have) == want:
            out.append(item)
    return out


async def get_item_key(db: AsyncSession, key: str, value: Any, collection: str) -> Optional[str]:
    items = await get_items_by_key_value(db, key, value, collection)
    return items[0]["id"] if items else None


async def create(db: AsyncSession, data: Dict[str, Any], collection: str) -> Dict[str, Any]:
    doc_id = str(data.get("id") or uuid.uuid4())
    if await _row(db, doc_id, collection) is not None:
        raise DocumentExists(f"{collection}/{doc_id} already exists")
    row = Document(collection=collection, doc_id=doc_id, data=_strip_id(data))
    db.add(row)
    await db.commit()
    return _as_dict(row)


async def update(db: AsyncSession, doc_id: str, data: Dict[str, Any], collection: str) -> Optional[Dict[str, Any]]:
    row = await _row(db, doc_id, collection)
    if not row:
        return None
    # Reassign so the JSON column is flagged dirty.
    row.data = _strip_id(data)
    row.updated_at = datetime.now(timezone.utc)
    await db.commit()
    return _as_dict(row)


async def delete(db: AsyncSession, doc_id: str, collection: str) -> bool:
    res = await db.execute(
        sa_delete(Document).where(Document.collection == collection, Document.doc_id == str(doc_id))
    )
    await db.commit()
    return (res.rowcount or 0) > 0


async def delete_all(db: AsyncSession, collection: str) -> int:
    res = await db.execute(sa_delete(Document).where(Document.collection == collection))
    await db.commit()
    return res.rowcount or 0


async def replace_all(db: AsyncSession, collection: str, items: List[Dict[str, Any]]) -> int:
    """Swap the whole collection for `items` in one transaction; nothing changes on failure."""
    ids = [str(item.get("id") or uuid.uuid4()) for item in items]
    if len(set(ids)) != len(ids):
        raise DocumentExists(f"{collection} has duplicate ids")
    try:
        await db.execute(sa_delete(Document).where(Document.collection == collection))
        db.add_all([
            Document(collection=collection, doc_id=doc_id, data=_strip_id(item))
            for doc_id, item in zip(ids, items)
        ])
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return len(items)


async def list_collections(db: AsyncSession) -> List[str]:
    rows = await db.scalars(select(Document.collection).distinct())
    return sorted(set(rows))


async def count(db: AsyncSession, collection: str) -> int:
    n = await db.scalar(select(func.count()).select_from(Document).where(Document.collection == collection))
    return int(n or 0)


def json_size(items: Any) -> int:
    return len(json.dumps(items, ensure_ascii=False, default=str).encode("utf-8"))
