import csv
import io
import json
import re
import tempfile
import unittest
from pathlib import Path

from openpyxl import load_workbook

from gridcrud.dispatch import IDLE, MARKER, Dispatcher, dispatch, is_action_request
from gridcrud.grid import Grid
from gridcrud.uploads import UploadedFile
from tests._support import make_conn, make_settings

PUBLISHED = {"column": "status", "operator": "equals", "value": "published"}

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


class DispatchTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.conn = make_conn()
        self.addCleanup(self.conn.close)
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.settings = make_settings(upload_dir=self.tmp.name)
        self.dispatcher = Dispatcher(settings=self.settings, connection=self.conn)

    def grid(self, table: str = "posts") -> Grid:
        return Grid(table, connection=self.conn, settings=self.settings, grid_id=f"{table}-grid")

    def params(self, grid: Grid, action: str, **extra):
        params = {MARKER: "1", "action": action, "table": grid.table, "id": grid.id, "config": grid.to_token()}
        params.update(extra)
        return params

    def call(self, grid: Grid, action: str, files=None, **extra):
        response = self.dispatcher.handle(self.params(grid, action, **extra), files)
        self.assertEqual(self.dispatcher.state, IDLE)
        return response

    def count_posts(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM posts").fetchone()[0]


class TestRequestChecks(DispatchTestCase):
    def test_marker_detection(self) -> None:
        self.assertTrue(is_action_request({MARKER: "1"}))
        self.assertTrue(is_action_request({MARKER: ["true"]}))
        self.assertFalse(is_action_request({MARKER: "0"}))
        self.assertFalse(is_action_request({"action": "fetch"}))

    def test_unknown_action(self) -> None:
        response = self.call(self.grid(), "drop_everything")
        self.assertEqual(response.status, 400)
        self.assertEqual(response.data(), {"success": False, "error": "Action not supported: drop_everything"})

    def test_missing_or_tampered_config(self) -> None:
        grid = self.grid()
        params = self.params(grid, "fetch")
        del params["config"]
        self.assertEqual(self.dispatcher.handle(params).status, 400)

        token = grid.to_token()
        payload, _, signature = token.partition(".")
        forged = json.loads(json.dumps(grid.to_dict()))
        forged["table"] = "users"
        other = Grid.from_dict(forged, connection=self.conn, settings=make_settings(secret_key="attacker"))
        forged_payload = other.to_token().partition(".")[0]
        for bad in (token[:-2] + "xx", forged_payload + "." + signature, payload):
            response = self.dispatcher.handle(self.params(grid, "fetch", config=bad))
            self.assertEqual(response.status, 400, bad)

    def test_table_and_id_must_match(self) -> None:
        grid = self.grid()
        self.assertEqual(self.call(grid, "fetch", table="users").status, 400)
        self.assertEqual(self.call(grid, "fetch", table="users; --").status, 400)
        self.assertEqual(self.call(grid, "fetch", id="other").status, 400)
        params = self.params(grid, "fetch")
        del params["table"]
        self.assertEqual(self.dispatcher.handle(params).status, 400)

    def test_primary_key_column_must_match(self) -> None:
        response = self.call(self.grid(), "delete", primary_key_column="title", primary_key_value="1")
        self.assertEqual(response.status, 400)
        self.assertEqual(self.count_posts(), 12)

    def test_bad_fields_json(self) -> None:
        response = self.call(self.grid(), "create", fields="{not json")
        self.assertEqual(response.status, 400)
        self.assertEqual(response.data()["error"], "fields must be valid JSON")

    def test_module_level_dispatch(self) -> None:
        grid = self.grid()
        response = dispatch(self.params(grid, "fetch"), settings=self.settings, connection=self.conn)
        self.assertEqual(response.status, 200)


class TestReadActions(DispatchTestCase):
    def test_fetch_page(self) -> None:
        response = self.call(self.grid(), "fetch", page="2", per_page="5", sort="id", direction="asc")
        self.assertEqual(response.status, 200)
        body = response.data()
        self.assertTrue(body["success"])
        self.assertEqual([row["id"] for row in body["data"]], [6, 7, 8, 9, 10])
        self.assertEqual(body["pagination"]["total_pages"], 3)
        self.assertEqual(body["id"], "posts-grid")
        self.assertIn("__meta", body["data"][0])

    def test_rehydrated_fetch_matches_first_render(self) -> None:
        grid = self.grid().relation("user_id", "users", "id", "username").order_by("views", "desc").set_per_page(4)
        expected = [(row["id"], row["__meta"]["display"]["user_id"]) for row in grid.get_table_data()["rows"]]
        body = self.call(grid, "fetch").data()
        self.assertEqual([(row["id"], row["__meta"]["display"]["user_id"]) for row in body["data"]], expected)
        self.assertEqual([pk for pk, _ in expected], [12, 11, 10, 9])

    def test_fetch_search(self) -> None:
        grid = self.grid().search_columns("title,content")
        body = self.call(grid, "fetch", search_term="python").data()
        self.assertEqual(sorted(row["id"] for row in body["data"]), [2, 5, 7])

    def test_fetch_bad_sort(self) -> None:
        self.assertEqual(self.call(self.grid(), "fetch", sort="nope").status, 400)

    def test_read_modes(self) -> None:
        grid = self.grid().relation("user_id", "users", "id", "username")
        body = self.call(grid, "read", mode="edit", primary_key_column="id", primary_key_value="2").data()
        self.assertEqual(body["row"]["title"], "Post 2")
        self.assertEqual(body["display"]["user_id"], "bob")

        body = self.call(grid, "read", mode="create").data()
        self.assertEqual(body["row"], {})
        self.assertNotIn("id", [f["name"] for f in body["fields"]])

        self.assertEqual(self.call(grid, "read", mode="delete", primary_key_value="2").status, 400)

    def test_read_missing_record(self) -> None:
        response = self.call(self.grid(), "read", mode="view", primary_key_value="999")
        self.assertEqual(response.status, 404)

    def test_read_outside_where_scope(self) -> None:
        grid = self.grid().where("user_id", 1)
        self.assertEqual(self.call(grid, "read", primary_key_value="2").status, 404)

    def test_nested_fetch(self) -> None:
        inner = self.grid().columns("id,title")
        grid = self.grid("users").nested_table("posts", "id", inner, "user_id")
        response = self.call(grid, "nested_fetch", nested="posts", primary_key_value="1")
        self.assertEqual(response.status, 200)
        body = response.data()
        self.assertIn("data-gridcrud", body["html"])
        self.assertIn("Page 1 of 1", body["html"])
        self.assertNotIn("window.GridCrud", body["html"])
        self.assertEqual(self.call(grid, "nested_fetch", primary_key_value="1").status, 400)


class TestWriteActions(DispatchTestCase):
    def test_create(self) -> None:
        response = self.call(self.grid(), "create", fields=json.dumps({"title": "Created", "user_id": 2}))
        self.assertEqual(response.status, 201)
        body = response.data()
        self.assertEqual(body["row"]["id"], 13)
        self.assertIn("title", body["columns"])

    def test_create_validation_errors(self) -> None:
        grid = self.grid().validation_required("title")
        response = self.call(grid, "create", fields={"title": ""})
        self.assertEqual(response.status, 422)
        self.assertEqual(response.data()["errors"], {"title": "Title is required."})
        self.assertEqual(self.count_posts(), 12)

    def test_constraint_violation(self) -> None:
        response = self.call(self.grid("users"), "create", fields={"username": "alice"})
        self.assertEqual(response.status, 409)

    def test_update(self) -> None:
        response = self.call(self.grid(), "update", primary_key_value="3", fields={"title": "Edited"})
        self.assertEqual(response.status, 200)
        self.assertEqual(response.data()["row"]["title"], "Edited")

    def test_delete_disabled(self) -> None:
        grid = self.grid().unset_delete()
        response = self.call(grid, "delete", primary_key_column="id", primary_key_value="1")
        self.assertEqual(response.status, 403)
        self.assertEqual(self.count_posts(), 12)

    def test_delete_gated_by_row(self) -> None:
        grid = self.grid().unset_delete(PUBLISHED)
        self.assertEqual(self.call(grid, "delete", primary_key_value="3").status, 403)
        response = self.call(grid, "delete", primary_key_value="1")
        self.assertEqual(response.status, 200)
        self.assertEqual(response.data(), {"success": True, "deleted": ["1"]})
        self.assertEqual(self.count_posts(), 11)

    def test_delete_is_audited(self) -> None:
        with self.assertLogs("gridcrud.audit", "INFO") as logs:
            self.call(self.grid(), "delete", primary_key_value="4")
        entry = json.loads(logs.records[0].getMessage())
        self.assertEqual(entry, {"action": "delete", "table": "posts", "grid": "posts-grid", "keys": "4"})

    def test_batch_delete(self) -> None:
        response = self.call(self.grid(), "batch_delete", primary_key_values="1,2")
        self.assertEqual(
            response.data(), {"success": True, "deleted": ["1", "2"], "failures": [], "id": "posts-grid"}
        )
        self.assertEqual(self.count_posts(), 10)
        self.assertEqual(self.call(self.grid(), "batch_delete", primary_key_values="").status, 400)
        self.assertEqual(self.call(self.grid().unset_batch_delete(), "batch_delete", primary_key_values="3").status, 403)

    def test_batch_delete_with_nothing_deleted(self) -> None:
        grid = self.grid().unset_delete(PUBLISHED)
        response = self.call(grid, "batch_delete", primary_key_values="3,6,999")
        self.assertEqual(response.status, 404)
        body = response.data()
        self.assertFalse(body["success"])
        self.assertEqual(body["error"], "No records were deleted.")
        self.assertEqual(body["deleted"], [])
        self.assertEqual([f["value"] for f in body["failures"]], ["3", "6", "999"])
        self.assertEqual(self.count_posts(), 12)

    def test_batch_delete_partial_warns(self) -> None:
        grid = self.grid().unset_delete(PUBLISHED)
        response = self.call(grid, "batch_delete", primary_key_values="1,3")
        self.assertEqual(response.status, 200)
        body = response.data()
        self.assertTrue(body["success"])
        self.assertEqual(body["deleted"], ["1"])
        self.assertEqual(body["warning"], "Some records could not be deleted.")
        self.assertEqual(self.count_posts(), 11)

    def test_bulk_update_with_nothing_updated(self) -> None:
        response = self.call(self.grid(), "bulk_update", primary_key_values="998,999", fields={"status": "archived"})
        self.assertEqual(response.status, 400)
        body = response.data()
        self.assertEqual((body["success"], body["error"]), (False, "No records were updated."))
        self.assertEqual(len(body["failures"]), 2)

        response = self.call(self.grid(), "bulk_update", primary_key_values="4,999", fields={"status": "archived"})
        self.assertEqual(response.status, 200)
        self.assertEqual(response.data()["warning"], "Some records could not be updated.")

    def test_bulk_action(self) -> None:
        grid = self.grid()
        response = self.call(
            grid, "bulk_action", operation="update", primary_key_values="[3, 4]", fields={"status": "archived"}
        )
        self.assertEqual(response.data()["updated"], [3, 4])
        statuses = self.conn.execute("SELECT status FROM posts WHERE id IN (3, 4)").fetchall()
        self.assertEqual({row[0] for row in statuses}, {"archived"})
        self.assertEqual(self.call(grid, "bulk_action", operation="explode", primary_key_values="3").status, 400)

    def test_duplicate(self) -> None:
        response = self.call(self.grid().enable_duplicate(), "duplicate", primary_key_value="7")
        self.assertEqual(response.status, 201)
        self.assertEqual(response.data()["row"]["title"], "Python tips")
        self.assertEqual(self.count_posts(), 13)

    def test_database_failure_is_generic(self) -> None:
        grid = self.grid()
        params = self.params(grid, "fetch")
        self.conn.execute("DROP TABLE posts")
        with self.assertLogs("gridcrud.dispatch", "ERROR"):
            response = self.dispatcher.handle(params)
        self.assertEqual(response.status, 500)
        self.assertEqual(response.data()["error"], "Operation failed.")

    def test_unknown_hook_is_generic_failure(self) -> None:
        grid = self.grid().before_insert("no_such_handler")
        with self.assertLogs("gridcrud.dispatch", "ERROR"):
            response = self.call(grid, "create", fields={"title": "x"})
        self.assertEqual(response.status, 500)
        self.assertEqual(self.count_posts(), 12)


class TestExports(DispatchTestCase):
    def test_csv(self) -> None:
        self.conn.execute("UPDATE posts SET title = '=HYPERLINK(1)' WHERE id = 1")
        response = self.call(self.grid(), "export_csv")
        self.assertEqual(response.status, 200)
        self.assertTrue(response.body.startswith(b"\xef\xbb\xbf"))
        self.assertEqual(response.content_type, "text/csv; charset=utf-8")
        self.assertRegex(
            response.headers["Content-Disposition"], r'^attachment; filename="posts_\d{8}_\d{6}\.csv"$'
        )
        rows = list(csv.reader(io.StringIO(response.body.decode("utf-8-sig"))))
        self.assertEqual(rows[0], ["Id", "User Id", "Title", "Content", "Status", "Views"])
        self.assertEqual(len(rows), 13)
        self.assertEqual(rows[1][2], "'=HYPERLINK(1)")

    def test_csv_selected_rows(self) -> None:
        response = self.call(self.grid(), "export_csv", primary_key_values="[5, 6]")
        rows = list(csv.reader(io.StringIO(response.body.decode("utf-8-sig"))))
        self.assertEqual([row[0] for row in rows[1:]], ["5", "6"])

    def test_excel(self) -> None:
        grid = self.grid().columns("id,title").table_name("Blog: posts")
        response = self.call(grid, "export_excel")
        self.assertEqual(response.status, 200)
        self.assertRegex(response.headers["Content-Disposition"], r'filename="posts_\d{8}_\d{6}\.xlsx"')
        ws = load_workbook(io.BytesIO(response.body)).active
        self.assertEqual(ws.title, "Blog  posts")
        values = list(ws.iter_rows(values_only=True))
        self.assertEqual(values[0], ("Id", "Title"))
        self.assertEqual(values[7], (7, "Python tips"))
        self.assertEqual(len(values), 13)

    def test_export_disabled(self) -> None:
        self.assertEqual(self.call(self.grid().unset_export(), "export_csv").status, 403)


class TestUploads(DispatchTestCase):
    def upload(self, grid: Grid, filename: str, data: bytes = PNG_BYTES, kind: str = "image"):
        files = {"file": UploadedFile(field="file", filename=filename, content_type="application/octet-stream", data=data)}
        return self.call(grid, "upload", files=files, kind=kind)

    def test_upload_and_metadata(self) -> None:
        response = self.upload(self.grid(), "photo.PNG")
        self.assertEqual(response.status, 201)
        body = response.data()
        self.assertRegex(body["name"], r"^posts_\d{8}_\d{6}(_\d+)?\.png$")
        self.assertEqual(body["location"], "/uploads/" + body["name"])
        self.assertEqual((Path(self.tmp.name) / body["name"]).read_bytes(), PNG_BYTES)

        meta = self.call(self.grid(), "file_metadata", name=body["name"]).data()
        self.assertEqual(meta["size"], len(PNG_BYTES))

    def test_rejected_uploads(self) -> None:
        self.assertEqual(self.upload(self.grid(), "shell.php", b"<?php ?>", kind="file").status, 400)
        self.assertEqual(self.upload(self.grid(), "notes.pdf", b"%PDF", kind="image").status, 400)
        self.assertEqual(self.call(self.grid(), "upload").status, 400)
        self.assertEqual(list(Path(self.tmp.name).iterdir()), [])

    def test_upload_needs_write_action(self) -> None:
        grid = self.grid().unset_add().unset_edit()
        self.assertEqual(self.upload(grid, "photo.png").status, 403)

    def test_file_metadata_errors(self) -> None:
        self.assertEqual(self.call(self.grid(), "file_metadata", name="missing.png").status, 404)
        self.assertEqual(self.call(self.grid(), "file_metadata", name="..").status, 400)
        self.assertEqual(self.call(self.grid(), "file_metadata").status, 400)

    def test_file_metadata_bulk(self) -> None:
        stored = self.upload(self.grid(), "photo.png").data()["name"]
        names = json.dumps([stored, "missing.png", "..", stored, 7, ""])
        response = self.call(self.grid(), "file_metadata_bulk", names=names)
        self.assertEqual(response.status, 200)
        self.assertEqual(response.data(), {"success": True, "sizes": {stored: len(PNG_BYTES)}})
        self.assertEqual(self.call(self.grid(), "file_metadata_bulk").data()["sizes"], {})


if __name__ == "__main__":
    unittest.main()
