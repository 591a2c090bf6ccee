"""
Backups, restores and the SQL / CSV / JSON conversions behind the database screens.
"""

import json
from datetime import datetime

import pytest

from storefront import database_admin as dba
from storefront import documents
from storefront.database_admin import BackupFormatError


@pytest.mark.unit
class TestFormatting:
    def test_format_bytes(self):
        assert dba.format_bytes(512) == "512 B"
        assert dba.format_bytes(2048) == "2.0 KB"
        assert dba.format_bytes(3 * 1024 * 1024) == "3.0 MB"

    def test_download_filename(self):
        when = datetime(2024, 3, 9)
        assert dba.download_filename("Full Database  Backup", "sql", when) == "Full_Database_Backup-2024-03-09.sql"

    def test_template_document(self):
        doc = dba.template_document([
            {"name": "title", "type": "text"},
            {"name": "stock", "type": "number"},
            {"name": "live", "type": "boolean"},
            {"name": ""},
        ])
        assert doc["title"] == "" and doc["stock"] == 0 and doc["live"] is False
        assert doc["_isTemplate"] is True
        assert len(doc["_fields"]) == 4

    def test_confirmation(self):
        assert dba.confirmation_ok(" RESTORE ")
        assert not dba.confirmation_ok("yes")
        assert not dba.confirmation_ok(None)


@pytest.mark.unit
class TestSqlExport:
    data = {
        "catalog": [
            {"id": "p1", "name": "Tea, green", "price": 4.5, "active": True},
            {"id": "p2", "name": "O'Brien mug", "tags": ["a", "b"], "note": None},
        ],
        "empty": [],
    }

    def test_writes_union_of_columns(self):
        sql = dba.to_sql(self.data, "Nightly")
        assert "-- Backup: Nightly" in sql
        assert "DROP TABLE IF EXISTS `catalog`;" in sql
        assert "`tags` TEXT" in sql and "`note` TEXT" in sql
        assert "CREATE TABLE `empty` (id TEXT);" in sql

    def test_literals(self):
        sql = dba.to_sql(self.data)
        assert "VALUES ('p1', 'Tea, green', 4.5, TRUE, NULL, NULL);" in sql
        assert "'O''Brien mug'" in sql
        assert "'[\"a\", \"b\"]'" in sql

    def test_export_then_import_preserves_rows(self):
        parsed = dba.parse_sql_backup(dba.to_sql(self.data))
        assert parsed["empty"] == []
        first, second = parsed["catalog"]
        assert first == {"id": "p1", "name": "Tea, green", "price": 4.5, "active": True, "tags": None, "note": None}
        assert second["name"] == "O'Brien mug"
        assert second["tags"] == ["a", "b"]


@pytest.mark.unit
class TestSqlImport:
    def test_explicit_column_list(self):
        sql = """
        -- exported by hand
        INSERT INTO "orders" (id, total, paid) VALUES ('o-1', 12, FALSE);
        INSERT INTO orders (id, total, paid) VALUES ('o-2', -3.25, true);
        """
        rows = dba.parse_sql_backup(sql)["orders"]
        assert rows == [
            {"id": "o-1", "total": 12, "paid": False},
            {"id": "o-2", "total": -3.25, "paid": True},
        ]

    def test_columns_from_create_table(self):
        sql = "CREATE TABLE notes (id TEXT, body TEXT);\nINSERT INTO notes VALUES ('n1', 'line one;\nline two');"
        assert dba.parse_sql_backup(sql)["notes"] == [{"id": "n1", "body": "line one;\nline two"}]

    def test_quoted_number_stays_string(self):
        sql = "INSERT INTO t (zip) VALUES ('01234');"
        assert dba.parse_sql_backup(sql)["t"] == [{"zip": "01234"}]

    def test_value_count_mismatch(self):
        with pytest.raises(BackupFormatError, match="2 columns but 1 values"):
            dba.parse_sql_backup("INSERT INTO t (a, b) VALUES (1);")

    def test_insert_without_columns(self):
        with pytest.raises(BackupFormatError):
            dba.parse_sql_backup("INSERT INTO t VALUES (1);")

    def test_unterminated_string(self):
        with pytest.raises(BackupFormatError):
            dba.parse_sql_backup("INSERT INTO t (a) VALUES ('oops);")

    def test_nothing_to_import(self):
        with pytest.raises(BackupFormatError):
            dba.parse_sql_backup("-- just a comment")


@pytest.mark.unit
class TestCsvAndFiles:
    def test_csv_sections(self):
        out = dba.to_csv({"catalog": [{"id": "p1", "meta": {"k": 1}}, {"id": "p2", "price": 3}]})
        lines = out.splitlines()
        assert lines[0] == "# Table: catalog"
        assert lines[1] == "id,meta,price"
        assert lines[2] == '"p1","{""k"": 1}",""'
        assert lines[3] == '"p2","","3"'

    def test_parse_json_file(self):
        assert dba.parse_backup_file("b.json", '{"catalog": []}') == {"catalog": []}

    def test_parse_full_backup_record(self):
        record = {"id": "backup_1", "type": "full", "data": json.dumps({"orders": [{"id": "o"}]})}
        assert dba.parse_backup_file("export.JSON", json.dumps(record)) == {"orders": [{"id": "o"}]}

    def test_rejects_other_extensions(self):
        with pytest.raises(BackupFormatError, match="only .json and .sql"):
            dba.parse_backup_file("dump.xml", "<x/>")

    def test_rejects_bad_json(self):
        with pytest.raises(BackupFormatError):
            dba.parse_backup_file("b.json", "{")

    def test_render_download_unknown_format_falls_back_to_json(self):
        backup = {"name": "Full Database Backup", "data": json.dumps({"a": [{"id": "1"}]})}
        content, filename, media = dba.render_download(backup, "xlsx")
        assert media == "application/json"
        assert filename.endswith(".json")
        assert json.loads(content) == {"a": [{"id": "1"}]}

    def test_download_is_named_after_the_backup_day(self):
        backup = {"name": "Full Database Backup", "createdAt": "2020-01-02T23:10:00+00:00", "data": "{}"}
        _, filename, _ = dba.render_download(backup, "sql")
        assert filename == "Full_Database_Backup-2020-01-02.sql"


@pytest.mark.api
class TestBackupRestore:
    async def test_backup_excludes_backups_collection(self, session):
        await documents.create(session, {"id": "p1", "name": "Mug"}, "catalog")
        await documents.create(session, {"id": "o1", "total": 5}, "orders")
        first = await dba.create_backup(session)
        assert first["collections"] == 2
        assert first["entries"] == 2

        await dba.create_backup(session)
        data = dba.backup_data(await documents.read(session, first["id"], dba.BACKUPS))
        assert set(data) == {"catalog", "orders"}

        summaries = await dba.list_backups(session)
        assert all("data" not in s for s in summaries)

    async def test_restore_replaces_collections(self, session):
        await documents.create(session, {"id": "p1", "name": "Old"}, "catalog")
        await documents.create(session, {"id": "p9", "name": "Stale"}, "catalog")
        result = await dba.restore(session, {
            "catalog": [{"id": "p1", "name": "New"}],
            "orders": {"o1": {"total": 10}},
        })
        assert result == {"restored": {"catalog": 1, "orders": 1}, "errors": {}}
        assert await documents.read_all(session, "catalog") == [{"id": "p1", "name": "New"}]
        assert await documents.read(session, "o1", "orders") == {"id": "o1", "total": 10}

    async def test_restore_reports_bad_collection_and_continues(self, session):
        result = await dba.restore(session, {"broken": "nope", "catalog": [{"id": "p1"}]})
        assert result["restored"] == {"catalog": 1}
        assert "broken" in result["errors"]

    async def test_failed_restore_keeps_existing_documents(self, session):
        await documents.create(session, {"id": "keep1"}, "things")
        await documents.create(session, {"id": "keep2"}, "things")
        result = await dba.restore(session, {"things": [{"id": "a"}, {"id": "a"}]})
        assert result["restored"] == {}
        assert "things" in result["errors"]
        assert [d["id"] for d in await documents.read_all(session, "things")] == ["keep1", "keep2"]

    async def test_overview_and_activity(self, session):
        await documents.create(session, {"id": "p1", "updatedAt": "2024-01-02T00:00:00+00:00"}, "catalog")
        await dba.log_activity(session, "clear", "catalog", "Cleared 1 document")
        overview = await dba.database_overview(session)
        assert overview["provider"] == "SQLite"
        names = [c["name"] for c in overview["collections"]]
        assert names == ["catalog", dba.ACTIVITIES]
        assert overview["stats"]["totalDocuments"] == 2
        catalog = overview["collections"][0]
        assert catalog["lastModified"] == "2024-01-02T00:00:00+00:00"

        recent = await dba.recent_activities(session)
        assert recent[0]["action"] == "clear"
        assert recent[0]["user"] == "Admin"
