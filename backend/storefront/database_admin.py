"""
Database browser, backup/restore and SQL/CSV/JSON conversions.

A backup is a snapshot `{collection: [document, ...]}` of every collection in the
document store (except `backups` itself) serialized as JSON in the `data` field
of a record in the `backups` collection. Restores replace a collection's content
wholesale, one collection at a time; a collection that fails is reported and the
next one is still restored.
"""
from __future__ import annotations

import csv
import io
import json
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from . import documents
from .db import DATABASE_URL, provider_name
from .log import log_event

BACKUPS = "backups"
ACTIVITIES = "db_activities"

FIELD_DEFAULTS = {"number": 0, "boolean": False, "text": "", "string": ""}
DOWNLOAD_FORMATS = {
    "json": ("json", "application/json"),
    "txt": ("txt", "text/plain"),
    "sql": ("sql", "application/sql"),
    "csv": ("csv", "text/csv"),
}


class BackupFormatError(Exception):
    pass


def format_bytes(n: int) -> str:
    if n < 1024:
        return f"{n} B"
    if n < 1024 * 1024:
        return f"{n / 1024:.1f} KB"
    return f"{n / (1024 * 1024):.1f} MB"


def _last_modified(items: List[Dict[str, Any]]) -> str:
    stamps = [str(i.get("updatedAt") or i.get("createdAt") or "") for i in items]
    stamps = [s for s in stamps if s]
    return max(stamps) if stamps else documents.now_iso()


async def collection_overview(db: AsyncSession, name: str) -> Dict[str, Any]:
    items = await documents.read_all(db, name)
    size = documents.json_size(items)
    return {
        "name": name,
        "documentCount": len(items),
        "size": format_bytes(size),
        "sizeBytes": size,
        "lastModified": _last_modified(items),
    }


async def database_overview(db: AsyncSession) -> Dict[str, Any]:
    collections = [await collection_overview(db, name) for name in await documents.list_collections(db)]
    total_bytes = sum(c["sizeBytes"] for c in collections)
    return {
        "provider": provider_name(DATABASE_URL),
        "collections": collections,
        "stats": {
            "totalCollections": len(collections),
            "totalDocuments": sum(c["documentCount"] for c in collections),
            "totalSize": format_bytes(total_bytes),
        },
    }


async def log_activity(db: AsyncSession, action: str, collection: str, details: str, user: str = "Admin") -> None:
    """Append to the activity feed; failures are logged and never propagate."""
    entry = {"action": action, "collection": collection, "timestamp": documents.now_iso(), "user": user, "details": details}
    try:
        await documents.create(db, entry, ACTIVITIES)
    except (SQLAlchemyError, documents.DocumentExists) as e:
        await db.rollback()
        log_event("database", action="activity_log_failed", activity=action, error=str(e))


async def recent_activities(db: AsyncSession, limit: int = 20) -> List[Dict[str, Any]]:
    items = await documents.read_all(db, ACTIVITIES)
    items.sort(key=lambda a: str(a.get("timestamp") or ""), reverse=True)
    return items[:limit]


async def clear_collection(db: AsyncSession, name: str) -> int:
    deleted = 0
    for item in await documents.read_all(db, name):
        if item.get("id") and await documents.delete(db, item["id"], name):
            deleted += 1
    return deleted


async def export_collection(db: AsyncSession, name: str) -> Dict[str, Any]:
    items = await documents.read_all(db, name)
    return {"collection": name, "exportedAt": documents.now_iso(), "count": len(items), "data": items}


def template_document(fields: List[Dict[str, Any]]) -> Dict[str, Any]:
    now = documents.now_iso()
    doc: Dict[str, Any] = {}
    for field in fields:
        fname = str(field.get("name") or "").strip()
        if not fname:
            continue
        ftype = str(field.get("type") or "text").lower()
        doc[fname] = now if ftype == "date" else FIELD_DEFAULTS.get(ftype, "")
    doc.update({"_isTemplate": True, "_createdAt": now, "_fields": fields})
    return doc


async def create_collection(db: AsyncSession, name: str, fields: List[Dict[str, Any]]) -> Dict[str, Any]:
    return await documents.create(db, template_document(fields), name)


async def snapshot(db: AsyncSession) -> Dict[str, List[Dict[str, Any]]]:
    data = {}
    for name in await documents.list_collections(db):
        if name == BACKUPS:
            continue
        data[name] = await documents.read_all(db, name)
    return data


async def create_backup(db: AsyncSession) -> Dict[str, Any]:
    data = await snapshot(db)
    payload = json.dumps(data, ensure_ascii=False, default=str)
    record = {
        "id": f"backup_{documents.now_ms()}",
        "name": "Full Database Backup",
        "createdAt": documents.now_iso(),
        "collections": len(data),
        "entries": sum(len(v) for v in data.values()),
        "size": format_bytes(len(payload.encode("utf-8"))),
        "data": payload,
        "type": "full",
    }
    return await documents.create(db, record, BACKUPS)


def backup_summary(backup: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in backup.items() if k != "data"}


async def list_backups(db: AsyncSession) -> List[Dict[str, Any]]:
    items = await documents.read_all(db, BACKUPS)
    items.sort(key=lambda b: str(b.get("createdAt") or ""), reverse=True)
    return [backup_summary(b) for b in items]


def backup_data(backup: Dict[str, Any]) -> Dict[str, Any]:
    raw = backup.get("data")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise BackupFormatError(f"backup data is not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise BackupFormatError("backup data must be an object of collections")
    return raw


def _collection_items(value: Any) -> List[Dict[str, Any]]:
    if isinstance(value, list):
        items = value
    elif isinstance(value, dict):
        items = [{**v, "id": v.get("id") or k} if isinstance(v, dict) else v for k, v in value.items()]
    else:
        raise BackupFormatError("collection data must be a list or an object")
    for item in items:
        if not isinstance(item, dict):
            raise BackupFormatError("collection entries must be objects")
    return items


async def restore(db: AsyncSession, data: Dict[str, Any]) -> Dict[str, Any]:
    """Replace each collection in `data` with the backed-up documents."""
    restored: Dict[str, int] = {}
    errors: Dict[str, str] = {}
    for name, value in data.items():
        try:
            restored[name] = await documents.replace_all(db, name, _collection_items(value))
        except (BackupFormatError, documents.DocumentExists, SQLAlchemyError) as e:
            errors[name] = str(e)
            log_event("database", action="restore_collection_failed", collection=name, error=str(e))
    return {"restored": restored, "errors": errors}


# ---------- conversions ----------

def _columns(rows: List[Dict[str, Any]]) -> List[str]:
    cols: List[str] = []
    for row in rows:
        for k in row.keys():
            if k not in cols:
                cols.append(k)
    return cols


def _sql_value(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, (dict, list)):
        value = json.dumps(value, ensure_ascii=False)
    return "'" + str(value).replace("'", "''") + "'"


def to_sql(data: Dict[str, Any], name: str = "Database Backup") -> str:
    out = [
        "-- Database Backup SQL Export",
        f"-- Backup: {name}",
        f"-- Generated: {documents.now_iso()}",
        "",
    ]
    for table, value in data.items():
        rows = _collection_items(value)
        out.append(f"-- Table: {table}")
        out.append(f"DROP TABLE IF EXISTS `{table}`;")
        cols = _columns(rows)
        if not cols:
            out.append(f"CREATE TABLE `{table}` (id TEXT);")
            out.append("")
            continue
        out.append(f"CREATE TABLE `{table}` (")
        out.append(",\n".join(f"  `{c}` TEXT" for c in cols))
        out.append(");")
        col_list = ", ".join(f"`{c}`" for c in cols)
        for row in rows:
            values = ", ".join(_sql_value(row.get(c)) for c in cols)
            out.append(f"INSERT INTO `{table}` ({col_list}) VALUES ({values});")
        out.append("")
    return "\n".join(out)


def _csv_cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return value


def to_csv(data: Dict[str, Any]) -> str:
    buf = io.StringIO()
    header = csv.writer(buf, lineterminator="\n")
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
    for table, value in data.items():
        rows = _collection_items(value)
        buf.write(f"# Table: {table}\n")
        cols = _columns(rows)
        if cols:
            header.writerow(cols)
            for row in rows:
                writer.writerow([_csv_cell(row.get(c)) for c in cols])
        buf.write("\n")
    return buf.getvalue()


def download_filename(name: str, ext: str, when: Optional[datetime] = None) -> str:
    day = (when or datetime.now(timezone.utc)).strftime("%Y-%m-%d")
    stem = re.sub(r"\s+", "_", (name or "backup").strip())
    return f"{stem}-{day}.{ext}"


def _created_on(backup: Dict[str, Any]) -> Optional[datetime]:
    try:
        return datetime.fromisoformat(str(backup.get("createdAt") or "").replace("Z", "+00:00"))
    except ValueError:
        return None


def render_download(backup: Dict[str, Any], fmt: str) -> Tuple[str, str, str]:
    """Return (content, filename, media_type); unknown formats fall back to JSON."""
    ext, media = DOWNLOAD_FORMATS.get((fmt or "json").lower(), DOWNLOAD_FORMATS["json"])
    data = backup_data(backup)
    name = backup.get("name") or "Database Backup"
    if ext == "sql":
        content = to_sql(data, name)
    elif ext == "csv":
        content = to_csv(data)
    else:
        content = json.dumps(data, ensure_ascii=False, indent=2, default=str)
    return content, download_filename(name, ext, _created_on(backup)), media


# ---------- SQL import ----------

_CREATE_RE = re.compile(r"^CREATE\s+TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?[`\"]?([^`\"\s(]+)[`\"]?\s*\((.*)\)$", re.I | re.S)
_INSERT_RE = re.compile(r"^INSERT\s+INTO\s+[`\"]?([^`\"\s(]+)[`\"]?\s*(?:\(([^)]*)\))?\s*VALUES\s*\((.*)\)$", re.I | re.S)
_NUMBER_RE = re.compile(r"^-?\d+(\.\d+)?([eE][-+]?\d+)?$")


def _statements(text: str) -> List[str]:
    """Split on `;` outside single quotes, dropping `--` comments."""
    out, buf = [], []
    i, n, quoted = 0, len(text), False
    while i < n:
        ch = text[i]
        if quoted:
            buf.append(ch)
            if ch == "'":
                if i + 1 < n and text[i + 1] == "'":
                    buf.append("'")
                    i += 1
                else:
                    quoted = False
        elif ch == "'":
            quoted = True
            buf.append(ch)
        elif ch == "-" and text.startswith("--", i):
            nl = text.find("\n", i)
            i = n if nl < 0 else nl
            continue
        elif ch == ";":
            stmt = "".join(buf).strip()
            if stmt:
                out.append(stmt)
            buf = []
        else:
            buf.append(ch)
        i += 1
    if quoted:
        raise BackupFormatError("unterminated string literal in SQL file")
    tail = "".join(buf).strip()
    if tail:
        out.append(tail)
    return out


def _identifier(token: str) -> str:
    return token.strip().strip("`\"").strip()


def _literal(token: str) -> Any:
    raw = token.strip()
    up = raw.upper()
    if up == "NULL":
        return None
    if up in ("TRUE", "FALSE"):
        return up == "TRUE"
    if _NUMBER_RE.match(raw):
        return float(raw) if any(c in raw for c in ".eE") else int(raw)
    return raw


def _decode_string(value: str) -> Any:
    s = value.strip()
    if s[:1] in ("{", "["):
        try:
            return json.loads(s)
        except ValueError:
            return value
    return value


def parse_values(text: str) -> List[Any]:
    """Tokenize a VALUES list; commas inside quoted strings are kept and `''` unescaped."""
    values: List[Any] = []
    buf: List[str] = []
    i, n = 0, len(text)
    in_str, was_str = False, False
    while i < n:
        ch = text[i]
        if in_str:
            if ch == "'":
                if i + 1 < n and text[i + 1] == "'":
                    buf.append("'")
                    i += 1
                else:
                    in_str = False
            else:
                buf.append(ch)
        elif ch == "'":
            in_str, was_str = True, True
        elif ch == ",":
            values.append(_decode_string("".join(buf)) if was_str else _literal("".join(buf)))
            buf, was_str = [], False
        elif not ch.isspace() or buf:
            if not was_str:
                buf.append(ch)
        i += 1
    if in_str:
        raise BackupFormatError("unterminated string literal in VALUES")
    if buf or was_str or values:
        values.append(_decode_string("".join(buf)) if was_str else _literal("".join(buf)))
    return values


def parse_sql_backup(text: str) -> Dict[str, List[Dict[str, Any]]]:
    tables: Dict[str, List[Dict[str, Any]]] = {}
    columns: Dict[str, List[str]] = {}
    for stmt in _statements(text or ""):
        m = _CREATE_RE.match(stmt)
        if m:
            table = m.group(1)
            defs = [d.strip() for d in m.group(2).split(",") if d.strip()]
            columns[table] = [_identifier(d.split()[0]) for d in defs]
            tables.setdefault(table, [])
            continue
        m = _INSERT_RE.match(stmt)
        if m:
            table = m.group(1)
            cols = [_identifier(c) for c in m.group(2).split(",")] if m.group(2) else columns.get(table)
            if not cols:
                raise BackupFormatError(f"INSERT into {table} without known columns")
            values = parse_values(m.group(3))
            if len(values) != len(cols):
                raise BackupFormatError(f"INSERT into {table}: {len(cols)} columns but {len(values)} values")
            row = dict(zip(cols, values))
            tables.setdefault(table, []).append(row)
    if not tables:
        raise BackupFormatError("no tables found in SQL file")
    return tables


def parse_backup_file(filename: str, content: str) -> Dict[str, Any]:
    lower = (filename or "").lower()
    if lower.endswith(".json"):
        try:
            data = json.loads(content)
        except ValueError as e:
            raise BackupFormatError(f"invalid JSON: {e}") from e
        if isinstance(data, dict) and isinstance(data.get("data"), (str, dict)) and data.get("type") == "full":
            data = backup_data(data)
        if not isinstance(data, dict):
            raise BackupFormatError("JSON backup must be an object of collections")
        return data
    if lower.endswith(".sql"):
        return parse_sql_backup(content)
    raise BackupFormatError("only .json and .sql files are supported")


def confirmation_ok(text: Optional[str]) -> bool:
    return (text or "").strip().lower() == "restore"
