import json
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from . import database_admin as dbadmin
from . import documents
from .auth_routes import require_admin
from .db import get_session
from .log import log_event
from .models import User

router = APIRouter(prefix="/api/admin/database")


def _actor(user: User) -> str:
    return user.name or user.email or "Admin"


@router.get("")
async def overview(db: AsyncSession = Depends(get_session), _: User = Depends(require_admin)):
    return {"success": True, **(await dbadmin.database_overview(db))}


@router.get("/collections/{name}")
async def view_collection(name: str, db: AsyncSession = Depends(get_session), _: User = Depends(require_admin)):
    items = await documents.read_all(db, name)
    return {"success": True, "collection": name, "count": len(items), "data": items}


class FieldDef(BaseModel):
    name: str
    type: str = "text"


class CreateCollectionBody(BaseModel):
    name: str
    fields: List[FieldDef] = []


@router.post("/collections", status_code=201)
async def create_collection(body: CreateCollectionBody, db: AsyncSession = Depends(get_session), user: User = Depends(require_admin)):
    name = body.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="collection name is required")
    if name in await documents.list_collections(db):
        raise HTTPException(status_code=409, detail="collection already exists")
    doc = await dbadmin.create_collection(db, name, [f.model_dump() for f in body.fields])
    await dbadmin.log_activity(db, "Collection Created", name, f"Created with {len(body.fields)} fields", _actor(user))
    return {"success": True, "data": doc}


@router.post("/collections/{name}/clear")
async def clear_collection(name: str, db: AsyncSession = Depends(get_session), user: User = Depends(require_admin)):
    deleted = await dbadmin.clear_collection(db, name)
    await dbadmin.log_activity(db, "Collection Cleared", name, f"Deleted {deleted} documents", _actor(user))
    log_event("database", action="collection_cleared", collection=name, deleted=deleted)
    return {"success": True, "deleted": deleted}


@router.get("/collections/{name}/export")
async def export_collection(name: str, db: AsyncSession = Depends(get_session), user: User = Depends(require_admin)):
    exported = await dbadmin.export_collection(db, name)
    await dbadmin.log_activity(db, "Collection Exported", name, f"Exported {exported['count']} documents", _actor(user))
    filename = dbadmin.download_filename(name, "json")
    return Response(
        content=json.dumps(exported, ensure_ascii=False, indent=2, default=str),
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/activities")
async def activities(db: AsyncSession = Depends(get_session), _: User = Depends(require_admin)):
    return {"success": True, "data": await dbadmin.recent_activities(db)}


@router.get("/backups")
async def list_backups(db: AsyncSession = Depends(get_session), _: User = Depends(require_admin)):
    return {"success": True, "data": await dbadmin.list_backups(db)}


@router.post("/backups", status_code=201)
async def create_backup(db: AsyncSession = Depends(get_session), user: User = Depends(require_admin)):
    backup = await dbadmin.create_backup(db)
    details = f"{backup['collections']} collections, {backup['entries']} entries, {backup['size']}"
    await dbadmin.log_activity(db, "Full Backup Created", "all", details, _actor(user))
    log_event("database", action="backup_created", id=backup["id"], entries=backup["entries"])
    return {"success": True, "data": dbadmin.backup_summary(backup)}


async def _backup_or_404(db: AsyncSession, backup_id: str) -> Dict[str, Any]:
    backup = await documents.read(db, backup_id, dbadmin.BACKUPS)
    if not backup:
        raise HTTPException(status_code=404, detail="Backup not found")
    return backup


@router.delete("/backups/{backup_id}")
async def delete_backup(backup_id: str, db: AsyncSession = Depends(get_session), user: User = Depends(require_admin)):
    await _backup_or_404(db, backup_id)
    await documents.delete(db, backup_id, dbadmin.BACKUPS)
    await dbadmin.log_activity(db, "Backup Deleted", dbadmin.BACKUPS, backup_id, _actor(user))
    return {"success": True}


@router.get("/backups/{backup_id}/download")
async def download_backup(
    backup_id: str,
    format: str = Query(default="json"),
    db: AsyncSession = Depends(get_session),
    _: User = Depends(require_admin),
):
    backup = await _backup_or_404(db, backup_id)
    try:
        content, filename, media_type = dbadmin.render_download(backup, format)
    except dbadmin.BackupFormatError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


class RestoreBody(BaseModel):
    confirmation: Optional[str] = None


async def _restore(db: AsyncSession, data: Dict[str, Any], source: str, user: User) -> Dict[str, Any]:
    # Read before restoring: a rollback inside restore expires loaded instances.
    actor = _actor(user)
    result = await dbadmin.restore(db, data)
    total = sum(result["restored"].values())
    details = f"Restored {len(result['restored'])} collections ({total} entries) from {source}"
    if result["errors"]:
        details += f"; failed: {', '.join(sorted(result['errors']))}"
    await dbadmin.log_activity(db, "Database Restored", "all", details, actor)
    log_event("database", action="restored", source=source, restored=result["restored"], errors=result["errors"])
    return {"success": not result["errors"], **result}


@router.post("/backups/{backup_id}/restore")
async def restore_backup(backup_id: str, body: RestoreBody, db: AsyncSession = Depends(get_session), user: User = Depends(require_admin)):
    if not dbadmin.confirmation_ok(body.confirmation):
        raise HTTPException(status_code=400, detail='type "restore" to confirm')
    backup = await _backup_or_404(db, backup_id)
    try:
        data = dbadmin.backup_data(backup)
    except dbadmin.BackupFormatError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return await _restore(db, data, backup_id, user)


class ImportBody(BaseModel):
    filename: str
    content: str
    confirmation: Optional[str] = None


@router.post("/import")
async def import_backup(body: ImportBody, db: AsyncSession = Depends(get_session), user: User = Depends(require_admin)):
    if not dbadmin.confirmation_ok(body.confirmation):
        raise HTTPException(status_code=400, detail='type "restore" to confirm')
    try:
        data = dbadmin.parse_backup_file(body.filename, body.content)
    except dbadmin.BackupFormatError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return await _restore(db, data, body.filename, user)
