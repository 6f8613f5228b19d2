import sqlite3
import unittest

from gridcrud import hooks
from gridcrud.grid import MAX_PER_PAGE, ActionRejected, Grid, RecordNotFound
from gridcrud.validation import ValidationError
from tests._support import make_conn, make_settings, post_ids

PUBLISHED = {"column": "status", "operator": "equals", "value": "published"}


class GridTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.conn = make_conn()
        self.settings = make_settings()
        self.addCleanup(self.conn.close)

    def posts(self) -> Grid:
        return Grid("posts", connection=self.conn, settings=self.settings, grid_id="posts-grid")

    def users(self) -> Grid:
        return Grid("users", connection=self.conn, settings=self.settings, grid_id="users-grid")

    def count_posts(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM posts").fetchone()[0]


class TestTableData(GridTestCase):
    def test_pagination(self) -> None:
        grid = self.posts().set_per_page(5)
        data = grid.get_table_data(page=2)
        self.assertEqual(post_ids(data["rows"]), [6, 7, 8, 9, 10])
        self.assertEqual(
            data["pagination"],
            {"current_page": 2, "total_pages": 3, "total_rows": 12, "per_page": 5},
        )
        self.assertEqual(post_ids(grid.get_table_data(page=3)["rows"]), [11, 12])

    def test_page_is_clamped(self) -> None:
        grid = self.posts().set_per_page(5)
        self.assertEqual(grid.get_table_data(page=99)["pagination"]["current_page"], 3)
        self.assertEqual(grid.get_table_data(page=0)["pagination"]["current_page"], 1)
        with self.assertRaises(ValueError):
            grid.get_table_data(page="two")

    def test_all_rows(self) -> None:
        data = self.posts().get_table_data(per_page="all")
        self.assertEqual(len(data["rows"]), 12)
        self.assertEqual(data["pagination"]["per_page"], "all")
        self.assertEqual(data["pagination"]["total_pages"], 1)

    def test_per_page_is_capped(self) -> None:
        self.assertEqual(self.posts().resolve_per_page("50000"), MAX_PER_PAGE)
        with self.assertRaises(ValueError):
            self.posts().resolve_per_page("-1")

    def test_search_over_configured_columns(self) -> None:
        grid = self.posts().search_columns("title,content", "title")
        data = grid.get_table_data(search_term="PYTHON", per_page="all")
        self.assertEqual(sorted(post_ids(data["rows"])), [2, 5, 7])
        data = grid.get_table_data(search_term="python", search_column="title")
        self.assertEqual(post_ids(data["rows"]), [7])
        self.assertEqual(data["pagination"]["total_rows"], 1)

    def test_search_folds_non_ascii_case(self) -> None:
        self.conn.execute("UPDATE posts SET title = 'Über Python' WHERE id = 4")
        grid = self.posts().search_columns("title")
        self.assertEqual(post_ids(grid.get_table_data(search_term="über")["rows"]), [4])
        self.assertEqual(post_ids(grid.get_table_data(search_term="ÜBER PY")["rows"]), [4])

    def test_search_on_plain_sqlite_connection(self) -> None:
        conn = sqlite3.connect(":memory:")
        conn.row_factory = sqlite3.Row
        self.addCleanup(conn.close)
        conn.execute("CREATE TABLE cities (id INTEGER PRIMARY KEY, name TEXT)")
        conn.executemany("INSERT INTO cities (name) VALUES (?)", [("Straße",), ("ÉVORA",), ("Oslo",)])
        grid = Grid("cities", connection=conn, settings=self.settings)
        rows = grid.get_table_data(search_term="évora")["rows"]
        self.assertEqual([row["name"] for row in rows], ["ÉVORA"])

    def test_search_wildcards_are_literal(self) -> None:
        data = self.posts().search_columns("title").get_table_data(search_term="%")
        self.assertEqual(data["rows"], [])

    def test_search_can_be_disabled(self) -> None:
        grid = self.posts().unset_search()
        with self.assertRaises(ActionRejected):
            grid.get_table_data(search_term="post")
        self.assertEqual(grid.get_table_data()["pagination"]["total_rows"], 12)

    def test_sorting(self) -> None:
        grid = self.posts()
        data = grid.get_table_data(sort="views", direction="desc", per_page=3)
        self.assertEqual(post_ids(data["rows"]), [12, 11, 10])
        with self.assertRaises(ValueError):
            grid.get_table_data(sort="views; DROP TABLE posts")

    def test_configured_order(self) -> None:
        data = self.posts().order_by("id", "desc").get_table_data(per_page=2)
        self.assertEqual(post_ids(data["rows"]), [12, 11])

    def test_relation_labels_and_search(self) -> None:
        grid = self.posts().relation("user_id", "users", "id", "username").search_columns("title,user_id")
        data = grid.get_table_data(per_page=2)
        displays = [row["__meta"]["display"]["user_id"] for row in data["rows"]]
        self.assertEqual(displays, ["alice", "bob"])
        self.assertEqual(data["rows"][0]["user_id"], 1)

        data = grid.get_table_data(search_term="bob", per_page="all")
        self.assertEqual(post_ids(data["rows"]), [2, 4, 6, 8, 10, 12])

    def test_relation_sort_uses_label(self) -> None:
        grid = self.posts().relation("user_id", "users", "id", "username").columns("id,user_id,title")
        data = grid.get_table_data(sort="user_id", direction="desc", per_page=1)
        self.assertEqual(data["rows"][0]["__meta"]["display"]["user_id"], "bob")

    def test_where_scopes_rows(self) -> None:
        grid = self.posts().where("user_id", 1).or_where("status", "published")
        ids = post_ids(grid.get_table_data(per_page="all")["rows"])
        self.assertEqual(ids, [1, 3, 5, 6, 7, 9, 11, 12])

    def test_mixed_where_chain_reads_left_to_right(self) -> None:
        grid = self.posts().where("user_id", 1).or_where("status", "published").where("views", 100, ">=")
        self.assertEqual(post_ids(grid.get_table_data(per_page="all")["rows"]), [11, 12])

    def test_where_in_list(self) -> None:
        grid = self.posts().where("id", "1,2,3", "in")
        self.assertEqual(grid.get_table_data()["pagination"]["total_rows"], 3)

    def test_join_columns(self) -> None:
        grid = self.posts().join("user_id", "users", "id", "author").columns("id,title,author.username")
        row = grid.get_table_data(per_page=1)["rows"][0]
        self.assertEqual(row["author.username"], "alice")
        self.assertEqual(grid.labels()["author.username"], "Author Username")

    def test_subselect_count(self) -> None:
        grid = self.users().subselect("post_count", "posts", "user_id").columns("id,username,post_count")
        rows = grid.get_table_data()["rows"]
        self.assertEqual([(r["username"], r["post_count"]) for r in rows], [("alice", 6), ("bob", 6)])

    def test_summaries_follow_filter(self) -> None:
        grid = self.posts().column_summary("views", "sum", "Total views").search_columns("title,content")
        summaries = grid.get_table_data()["meta"]["summaries"]
        self.assertEqual(summaries, [{"column": "views", "type": "sum", "label": "Total views", "value": 780}])
        summaries = grid.get_table_data(search_term="python")["meta"]["summaries"]
        self.assertEqual(summaries[0]["value"], 140)


class TestRowDecoration(GridTestCase):
    def first_rows(self, grid: Grid, count: int = 12):
        return {row["id"]: row["__meta"] for row in grid.get_table_data(per_page=count)["rows"]}

    def test_highlights(self) -> None:
        grid = (
            self.posts()
            .highlight("views", {"operator": ">", "value": 100}, "text-danger")
            .highlight_row(PUBLISHED, "table-success")
            .column_class("title", "fw-bold")
        )
        meta = self.first_rows(grid)
        self.assertEqual(meta[11]["cell_class"], {"title": "fw-bold", "views": "text-danger"})
        self.assertEqual(meta[1]["cell_class"], {"title": "fw-bold"})
        self.assertEqual(meta[3]["row_class"], "table-success")
        self.assertEqual(meta[4]["row_class"], "")

    def test_pattern_and_escaping(self) -> None:
        self.conn.execute("UPDATE posts SET title = '<i>x</i>' WHERE id = 2")
        grid = self.posts().column_pattern("title", "<b>{value}</b> #{id}")
        meta = self.first_rows(grid, 2)
        self.assertEqual(meta[1]["display"]["title"], "<b>Post 1</b> #1")
        self.assertEqual(meta[2]["display"]["title"], "<b>&lt;i&gt;x&lt;/i&gt;</b> #2")

    def test_cut(self) -> None:
        meta = self.first_rows(self.posts().column_cut("content", 4), 2)
        self.assertEqual(meta[2]["display"]["content"], "abou...")
        self.assertEqual(meta[1]["display"]["content"], "misc")

    def test_callable_formatter(self) -> None:
        def shout(value, row, column, formatted):
            return formatted.upper()

        self.addCleanup(hooks.unregister, "shout")
        grid = self.posts().column_callback("title", shout)
        self.assertEqual(grid.config.formatters, {"title": "shout"})
        self.assertEqual(self.first_rows(grid, 1)[1]["display"]["title"], "POST 1")

    def test_row_gated_actions(self) -> None:
        meta = self.first_rows(self.posts().unset_delete(PUBLISHED))
        self.assertFalse(meta[3]["actions"]["delete"])
        self.assertTrue(meta[1]["actions"]["delete"])
        self.assertTrue(meta[3]["actions"]["edit"])


class TestConfiguration(GridTestCase):
    def test_token_round_trip(self) -> None:
        grid = (
            self.posts()
            .columns("id,user_id,title,status")
            .relation("user_id", "users", "id", "username", where={"role": "admin"})
            .where("views", 10, ">")
            .highlight_row(PUBLISHED, "table-success")
            .unset_delete(PUBLISHED)
            .validation_required("title")
            .column_summary("views", "avg")
            .limit_list([5, 10, "all"])
        )
        restored = Grid.from_token(grid.to_token(), settings=self.settings, connection=self.conn)
        self.assertEqual(restored.to_dict(), grid.to_dict())
        self.assertEqual(restored.id, "posts-grid")

    def test_token_needs_same_secret(self) -> None:
        token = self.posts().to_token()
        with self.assertRaises(ValueError):
            Grid.from_token(token, settings=make_settings(secret_key="other"), connection=self.conn)

    def test_limit_list_adjusts_default(self) -> None:
        grid = self.posts().limit_list("25,50")
        self.assertEqual(grid.config.per_page, 25)
        self.assertEqual(grid.per_page_choices(), [25, 50])
        with self.assertRaises(ValueError):
            grid.limit_list("0")

    def test_identifiers_are_checked(self) -> None:
        with self.assertRaises(ValueError):
            Grid("posts; DROP TABLE posts", connection=self.conn, settings=self.settings)
        grid = self.posts()
        for call in (
            lambda: grid.columns("title,content--"),
            lambda: grid.where("id", 1, "; DELETE"),
            lambda: grid.order_by("id", "sideways"),
            lambda: grid.relation("user_id", "users u", "id", "username"),
            lambda: grid.column_class("title", "x\" onclick=\"alert(1)"),
        ):
            with self.assertRaises(ValueError):
                call()

    def test_unknown_table(self) -> None:
        grid = Grid("missing", connection=self.conn, settings=self.settings)
        with self.assertRaises((ValueError, sqlite3.Error)):
            grid.get_table_data()

    def test_labels(self) -> None:
        labels = self.posts().set_column_labels({"user_id": "Author"}).labels()
        self.assertEqual(labels["user_id"], "Author")
        self.assertEqual(labels["views"], "Views")

    def test_form_fields(self) -> None:
        grid = (
            self.posts()
            .relation("user_id", "users", "id", "username")
            .change_type("status", "select", default="draft", options=["draft", "published"])
            .validation_required("title")
        )
        fields = {f["name"]: f for f in grid.form_fields("create")}
        self.assertNotIn("id", fields)
        self.assertEqual(fields["user_id"]["type"], "select")
        self.assertEqual(fields["user_id"]["options"], [{"value": 1, "label": "alice"}, {"value": 2, "label": "bob"}])
        self.assertEqual([o["value"] for o in fields["status"]["options"]], ["draft", "published"])
        self.assertTrue(fields["title"]["required"])
        self.assertEqual(fields["views"]["type"], "int")
        self.assertTrue(all(f["readonly"] for f in grid.form_fields("view")))


class TestRecords(GridTestCase):
    def test_get_record(self) -> None:
        grid = self.posts().relation("user_id", "users", "id", "username").fields("title,user_id", "edit")
        record = grid.get_record("2", "edit")
        self.assertEqual(record["row"], {"title": "Post 2", "user_id": 2, "id": 2})
        self.assertEqual(record["display"]["user_id"], "bob")
        self.assertEqual([f["name"] for f in record["fields"]], ["title", "user_id"])

    def test_missing_record(self) -> None:
        with self.assertRaises(RecordNotFound):
            self.posts().get_record(999)

    def test_create(self) -> None:
        row = self.posts().create_record({"user_id": "1", "title": "New", "views": "5", "bogus": "x"})
        self.assertEqual(row["id"], 13)
        self.assertEqual(row["views"], 5)
        self.assertEqual(row["status"], "draft")

    def test_create_validation(self) -> None:
        grid = self.posts().validation_required("title").validation_rules("views", min=0, message="Views cannot be negative.")
        with self.assertRaises(ValidationError) as ctx:
            grid.create_record({"title": " ", "views": "-3"})
        self.assertEqual(set(ctx.exception.errors), {"title", "views"})
        self.assertEqual(ctx.exception.errors["views"], "Views cannot be negative.")
        self.assertEqual(self.count_posts(), 12)

    def test_create_rejects_bad_number(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            self.posts().create_record({"title": "x", "views": "many"})
        self.assertIn("views", ctx.exception.errors)

    def test_unique_rule(self) -> None:
        grid = self.users().validation_rules("username", unique=True)
        with self.assertRaises(ValidationError):
            grid.create_record({"username": "alice"})
        # Updating a row to its own value is not a conflict.
        grid.update_record(1, {"username": "alice", "email": "a@example.com"})

    def test_add_disabled(self) -> None:
        with self.assertRaises(ActionRejected):
            self.posts().unset_add().create_record({"title": "x"})

    def test_update(self) -> None:
        row = self.posts().update_record("4", {"title": "Changed", "id": 99})
        self.assertEqual((row["id"], row["title"]), (4, "Changed"))

    def test_readonly_and_pass_var(self) -> None:
        grid = self.posts().readonly("views", "edit").pass_var("status", "published", "create")
        row = grid.update_record(1, {"title": "T", "views": 999})
        self.assertEqual((row["title"], row["views"]), ("T", 10))
        created = grid.create_record({"title": "Fresh", "status": "draft"})
        self.assertEqual(created["status"], "published")

    def test_where_scope_blocks_writes(self) -> None:
        grid = self.posts().where("user_id", 1)
        self.assertIsNone(grid.find_row(2))
        with self.assertRaises(RecordNotFound):
            grid.update_record(2, {"title": "nope"})
        with self.assertRaises(RecordNotFound):
            grid.delete_record(2)
        self.assertEqual(self.count_posts(), 12)

    def test_delete_gated_by_row(self) -> None:
        grid = self.posts().unset_delete(PUBLISHED)
        with self.assertRaises(ActionRejected):
            grid.delete_record(3)
        grid.delete_record(1)
        self.assertEqual(self.count_posts(), 11)

    def test_delete_disabled(self) -> None:
        grid = self.posts().unset_delete()
        self.assertFalse(grid.is_action_allowed("delete"))
        with self.assertRaises(ActionRejected):
            grid.delete_record(1)
        self.assertEqual(self.count_posts(), 12)

    def test_duplicate(self) -> None:
        copy = self.posts().enable_duplicate().duplicate_record(7)
        self.assertEqual(copy["id"], 13)
        self.assertEqual(copy["title"], "Python tips")
        with self.assertRaises(ActionRejected):
            self.posts().unset_add().duplicate_record(7)

    def test_delete_records_reports_failures(self) -> None:
        result = self.posts().unset_delete(PUBLISHED).delete_records([1, 3, 999, 1])
        self.assertEqual(result["deleted"], [1])
        self.assertEqual([f["value"] for f in result["failures"]], [3, 999])
        self.assertEqual(self.count_posts(), 11)
        with self.assertRaises(ValueError):
            self.posts().delete_records([])

    def test_update_records(self) -> None:
        grid = self.posts().validation_rules("views", max=1000)
        result = grid.update_records([1, 2], {"status": "archived"})
        self.assertEqual(result, {"updated": [1, 2], "failures": []})
        result = grid.update_records([3], {"views": "5000"})
        self.assertEqual(result["failures"][0]["errors"], {"views": "Views must be at most 1000."})
        with self.assertRaises(ActionRejected):
            self.posts().unset_bulk_update().update_records([1], {"status": "x"})

    def test_batch_failures_do_not_abort_the_loop(self) -> None:
        grid = self.posts().before_delete("no_such_handler")
        with self.assertLogs("gridcrud.grid", "ERROR"):
            result = grid.delete_records([1, 2])
        self.assertEqual(result["deleted"], [])
        self.assertEqual(result["failures"], [{"value": 1, "error": "Operation failed."}, {"value": 2, "error": "Operation failed."}])
        self.assertEqual(self.count_posts(), 12)

        with self.assertLogs("gridcrud.grid", "WARNING"):
            result = self.users().update_records([1, 2], {"username": "carol"})
        self.assertEqual(result["updated"], [1])
        self.assertEqual(result["failures"], [{"value": 2, "error": "The record violates a database constraint."}])
        names = [row[0] for row in self.conn.execute("SELECT username FROM users ORDER BY id")]
        self.assertEqual(names, ["carol", "bob"])

    def test_hooks_run_in_order(self) -> None:
        seen = []

        def stamp_content(data, grid, **context):
            data["content"] = "stamped"
            return data

        def remember_insert(row, grid, **context):
            seen.append((row["id"], context["mode"]))

        self.addCleanup(hooks.unregister, "stamp_content")
        self.addCleanup(hooks.unregister, "remember_insert")
        grid = self.posts().before_insert(stamp_content).after_insert(remember_insert)
        row = grid.create_record({"title": "Hooked"})
        self.assertEqual(row["content"], "stamped")
        self.assertEqual(seen, [(13, "create")])

    def test_export_dataset(self) -> None:
        grid = self.posts().columns("id,user_id,title").relation("user_id", "users", "id", "username")
        header, rows = grid.export_dataset()
        self.assertEqual(header, ["Id", "User Id", "Title"])
        self.assertEqual(rows[0], [1, "alice", "Post 1"])
        self.assertEqual(len(rows), 12)
        _, rows = grid.export_dataset(selected=[2, 3])
        self.assertEqual([r[0] for r in rows], [2, 3])
        with self.assertRaises(ActionRejected):
            grid.unset_export().export_dataset()

    def test_nested_grid(self) -> None:
        inner = self.posts().columns("id,title")
        grid = self.users().nested_table("posts", "id", inner, "user_id", label="Posts")
        child = grid.nested_grid("posts", 2)
        self.assertEqual(child.get_table_data(per_page="all")["pagination"]["total_rows"], 6)
        self.assertNotEqual(child.id, inner.id)
        with self.assertRaises(ValueError):
            grid.nested_grid("comments", 2)

    def test_nested_grid_keeps_parent_scope_with_or_where(self) -> None:
        inner = self.posts().columns("id,title").where("status", "published").or_where("id", 1)
        grid = self.users().nested_table("posts", "id", inner, "user_id")
        child = grid.nested_grid("posts", 2)
        self.assertEqual(post_ids(child.get_table_data(per_page="all")["rows"]), [6, 12])
        with self.assertRaises(RecordNotFound):
            child.get_record(1)
        with self.assertRaises(RecordNotFound):
            child.delete_record(3)
        self.assertEqual(self.count_posts(), 12)


if __name__ == "__main__":
    unittest.main()
