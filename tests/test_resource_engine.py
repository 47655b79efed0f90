import unittest
from unittest import mock

import psycopg2
from psycopg2 import errorcodes

from helpers import PROMPTS_COLUMNS, StubInspector, render
from promptdesk.errors import NotFoundError, ResourceError, StorageError, ValidationError
from promptdesk.filters import Filter, Operator, SortSpec
from promptdesk.resource_engine import ResourceEngine, ResourceRegistry, error_message, is_missing_column

OWNER = "88ea3bcb-d9a8-44b5-ac26-c90885a74686"


class UndefinedCreatedAt(psycopg2.Error):
    pgcode = errorcodes.UNDEFINED_COLUMN

    def __str__(self):
        return 'column "created_at" does not exist'


class EngineTestCase(unittest.TestCase):
    columns = PROMPTS_COLUMNS
    table = "prompts"

    def setUp(self):
        self.client = mock.Mock()
        self.client.execute_query.return_value = []
        self.inspector = StubInspector({self.table: self.columns})
        self.engine = ResourceEngine(
            self.client,
            self.table,
            inspector=self.inspector,
            default_owner_id=OWNER,
        )

    def last_call(self):
        query, params = self.client.execute_query.call_args.args
        return render(query), params


class TestList(EngineTestCase):
    def test_default_sort_is_created_at_desc(self):
        self.client.execute_query.return_value = [{"id": "a"}]
        self.assertEqual(self.engine.list_rows({}), [{"id": "a"}])
        query, params = self.last_call()
        self.assertEqual(query, 'SELECT * FROM "prompts" ORDER BY "created_at" DESC')
        self.assertEqual(params, {})

    def test_filters_sort_and_pagination(self):
        self.engine.list_rows(
            [("is_favorite", "true"), ("rating", "gte.3"), ("order", "rating.asc"), ("limit", "10"), ("offset", "20")]
        )
        query, params = self.last_call()
        self.assertEqual(
            query,
            'SELECT * FROM "prompts" WHERE "is_favorite" = %(p1)s AND "rating" >= %(p2)s'
            ' ORDER BY "rating" ASC LIMIT %(p3)s OFFSET %(p4)s',
        )
        self.assertEqual(params, {"p1": "true", "p2": "3", "p3": 10, "p4": 20})

    def test_search_defaults_to_text_columns(self):
        self.engine.list_rows({"search": "cat", "is_favorite": "true"})
        query, params = self.last_call()
        self.assertEqual(
            query,
            'SELECT * FROM "prompts" WHERE "is_favorite" = %(p1)s AND ("title"::text ILIKE %(p2)s'
            ' OR "content"::text ILIKE %(p2)s OR "notes"::text ILIKE %(p2)s) ORDER BY "created_at" DESC',
        )
        self.assertEqual(params, {"p1": "true", "p2": "%cat%"})

    def test_configured_search_columns(self):
        engine = ResourceEngine(self.client, "prompts", inspector=self.inspector, search_columns=["title"])
        engine.list_rows({"search": "x"})
        query, _ = self.last_call()
        self.assertIn('("title"::text ILIKE %(p1)s)', query)

        bad = ResourceEngine(self.client, "prompts", inspector=self.inspector, search_columns=["nope"])
        with self.assertRaises(ValidationError):
            bad.list_rows({"search": "x"})

    def test_no_created_at_means_unsorted(self):
        self.inspector.schemas["tags"] = {"id": "uuid", "name": "text"}
        engine = ResourceEngine(self.client, "tags", inspector=self.inspector)
        engine.list_rows({})
        query, _ = self.last_call()
        self.assertEqual(query, 'SELECT * FROM "tags"')

    def test_missing_created_at_retries_once_unsorted(self):
        self.client.execute_query.side_effect = [UndefinedCreatedAt(), [{"id": "a"}]]
        with self.assertLogs("promptdesk.resource_engine", level="WARNING"):
            rows = self.engine.list_rows({"limit": "5"})
        self.assertEqual(rows, [{"id": "a"}])
        self.assertEqual(self.client.execute_query.call_count, 2)
        first = render(self.client.execute_query.call_args_list[0].args[0])
        second = render(self.client.execute_query.call_args_list[1].args[0])
        self.assertIn("ORDER BY", first)
        self.assertEqual(second, 'SELECT * FROM "prompts" LIMIT %(p1)s')
        self.assertEqual(self.inspector.invalidated, ["prompts"])

    def test_other_errors_are_not_retried(self):
        err = psycopg2.Error("permission denied for table prompts")
        self.client.execute_query.side_effect = err
        with self.assertRaises(StorageError) as ctx:
            self.engine.list_rows({})
        self.assertIn("permission denied", ctx.exception.message)
        self.assertIs(ctx.exception.__cause__, err)
        self.assertEqual(self.client.execute_query.call_count, 1)

    def test_explicit_sort_errors_are_not_retried(self):
        self.client.execute_query.side_effect = UndefinedCreatedAt()
        with self.assertRaises(StorageError):
            self.engine.list_filtered(sort=SortSpec("title"))
        self.assertEqual(self.client.execute_query.call_count, 1)

    def test_validation(self):
        cases = [
            {"nope": "1"},
            {"order": "nope.desc"},
            {"order": "title.sideways"},
            {"limit": "-1"},
            {"offset": "abc"},
        ]
        for params in cases:
            with self.subTest(params=params):
                with self.assertRaises(ValidationError):
                    self.engine.list_rows(params)
        self.client.execute_query.assert_not_called()

    def test_in_filter_is_cast_to_column_type(self):
        self.engine.list_filtered([Filter("id", Operator.IN, ["a", "b"])])
        query, params = self.last_call()
        self.assertIn('"id" = ANY(%(p1)s::"uuid"[])', query)
        self.assertEqual(params["p1"], ["a", "b"])

    def test_empty_column_map_skips_allow_listing(self):
        engine = ResourceEngine(self.client, "ghost", inspector=StubInspector())
        engine.list_rows({"anything": "1"})
        query, _ = self.last_call()
        self.assertEqual(query, 'SELECT * FROM "ghost" WHERE "anything" = %(p1)s')


class TestGetOne(EngineTestCase):
    def test_found(self):
        self.client.execute_query.return_value = [{"id": "a", "title": "t"}]
        self.assertEqual(self.engine.get_one("a"), {"id": "a", "title": "t"})
        query, params = self.last_call()
        self.assertEqual(query, 'SELECT * FROM "prompts" WHERE "id" = %(p1)s')
        self.assertEqual(params, {"p1": "a"})

    def test_not_found(self):
        with self.assertRaises(NotFoundError) as ctx:
            self.engine.get_one("missing")
        self.assertEqual(ctx.exception.message, "Not found")
        self.assertEqual(ctx.exception.status_code, 404)

    def test_table_without_primary_key(self):
        self.inspector.schemas["prompt_tags"] = {"prompt_id": "uuid", "tag_id": "uuid"}
        engine = ResourceEngine(self.client, "prompt_tags", inspector=self.inspector)
        with self.assertRaises(ResourceError):
            engine.get_one("x")
        self.client.execute_query.assert_not_called()


class TestCreate(EngineTestCase):
    def test_single_row_with_owner_injection_and_json(self):
        self.client.execute_query.return_value = [{"id": "new"}]
        created = self.engine.create({"content": "a cat", "metadata": {"steps": 30}})
        self.assertEqual(created, {"id": "new"})
        query, params = self.last_call()
        self.assertEqual(
            query,
            'INSERT INTO "prompts" ("content", "metadata", "user_id") VALUES (%(p1)s, %(p2)s, %(p3)s) RETURNING *',
        )
        self.assertEqual(params, {"p1": "a cat", "p2": '{"steps": 30}', "p3": OWNER})

    def test_explicit_owner_is_kept(self):
        self.engine.create({"content": "x", "user_id": "someone"})
        _, params = self.last_call()
        self.assertEqual(params["p2"], "someone")

    def test_null_owner_is_replaced(self):
        self.engine.create({"content": "x", "user_id": None})
        _, params = self.last_call()
        self.assertEqual(params["p2"], OWNER)

    def test_no_owner_column_no_injection(self):
        self.inspector.schemas["tags"] = {"id": "uuid", "name": "text"}
        engine = ResourceEngine(self.client, "tags", inspector=self.inspector, default_owner_id=OWNER)
        engine.create({"name": "portrait"})
        query, _ = self.last_call()
        self.assertNotIn("user_id", query)

    def test_batch_uses_first_row_columns(self):
        self.client.execute_query.return_value = [{"id": "1"}, {"id": "2"}]
        created = self.engine.create([{"content": "a", "title": "A"}, {"title": "B", "content": "b"}])
        self.assertEqual(created, [{"id": "1"}, {"id": "2"}])
        query, params = self.last_call()
        self.assertEqual(
            query,
            'INSERT INTO "prompts" ("content", "title", "user_id") VALUES (%(p1)s, %(p2)s, %(p3)s),'
            ' (%(p4)s, %(p5)s, %(p6)s) RETURNING *',
        )
        self.assertEqual([params[f"p{i}"] for i in range(1, 7)], ["a", "A", OWNER, "b", "B", OWNER])

    def test_empty_array_does_not_touch_database(self):
        self.assertEqual(self.engine.create([]), [])
        self.client.execute_query.assert_not_called()

    def test_upsert_updates_everything_but_keys(self):
        self.engine.create(
            {"id": "a", "title": "t", "content": "c", "created_at": "2024-01-01"},
            on_conflict=["id"],
        )
        query, _ = self.last_call()
        self.assertTrue(query.endswith(
            ' ON CONFLICT ("id") DO UPDATE SET "title" = EXCLUDED."title", "content" = EXCLUDED."content",'
            ' "user_id" = EXCLUDED."user_id" RETURNING *'
        ))

    def test_upsert_with_nothing_to_update_does_nothing(self):
        self.inspector.schemas["user_profiles"] = {"id": "uuid", "email": "text", "user_metadata": "jsonb"}
        engine = ResourceEngine(self.client, "user_profiles", inspector=self.inspector, default_owner_id=OWNER)
        self.client.execute_query.return_value = []
        created = engine.create({"id": OWNER, "email": "local@user.com"}, on_conflict=["email"])
        self.assertIsNone(created)
        query, _ = self.last_call()
        self.assertTrue(query.endswith(' ON CONFLICT ("email") DO NOTHING RETURNING *'))

    def test_rejects_bad_payloads_before_sql(self):
        cases = [
            ("text", None),
            ([{"content": "a"}, "b"], None),
            ({}, None),
            ([{"content": "a"}, {"content": "b", "title": "x"}], None),
            ({"nope": 1}, None),
            ({"content": "a"}, ["nope"]),
        ]
        for payload, conflict in cases:
            with self.subTest(payload=payload, conflict=conflict):
                with self.assertRaises(ValidationError):
                    self.engine.create(payload, on_conflict=conflict)
        self.client.execute_query.assert_not_called()

    def test_database_errors_become_storage_errors(self):
        self.client.execute_query.side_effect = psycopg2.Error('null value in column "content" violates not-null constraint')
        with self.assertRaises(StorageError) as ctx:
            self.engine.create({"title": "x"})
        self.assertIn("not-null", ctx.exception.message)


class TestUpdate(EngineTestCase):
    def test_update_by_id_strips_immutables_and_stamps_updated_at(self):
        self.client.execute_query.return_value = [{"id": "a", "title": "new"}]
        updated = self.engine.update_by_id(
            "a", {"id": "b", "created_at": "x", "updated_at": "y", "title": "new", "metadata": [1]}
        )
        self.assertEqual(updated, {"id": "a", "title": "new"})
        query, params = self.last_call()
        self.assertEqual(
            query,
            'UPDATE "prompts" SET "title" = %(p1)s, "metadata" = %(p2)s, "updated_at" = NOW()'
            ' WHERE "id" = %(p3)s RETURNING *',
        )
        self.assertEqual(params, {"p1": "new", "p2": "[1]", "p3": "a"})

    def test_update_by_id_no_changes(self):
        self.assertIsNone(self.engine.update_by_id("a", {"id": "a", "created_at": "now"}))
        self.assertIsNone(self.engine.update_by_id("a", {}))
        self.client.execute_query.assert_not_called()

    def test_update_by_id_not_found(self):
        with self.assertRaises(NotFoundError):
            self.engine.update_by_id("missing", {"title": "x"})

    def test_updated_at_alone_still_touches_the_row(self):
        with self.assertRaises(NotFoundError):
            self.engine.update_by_id("missing", {"updated_at": "2020-01-01"})
        query, params = self.last_call()
        self.assertEqual(query, 'UPDATE "prompts" SET "updated_at" = NOW() WHERE "id" = %(p1)s RETURNING *')
        self.assertEqual(params, {"p1": "missing"})

        self.client.execute_query.return_value = [{"id": "a"}]
        self.assertEqual(self.engine.update_by_id("a", {"updated_at": "2020-01-01"}), {"id": "a"})

    def test_concurrent_updates_are_last_write_wins(self):
        self.client.execute_query.return_value = [{"id": "a"}]
        self.engine.update_by_id("a", {"title": "first"})
        self.engine.update_by_id("a", {"title": "second"})

        statements = [(render(c.args[0]), c.args[1]) for c in self.client.execute_query.call_args_list]
        expected = 'UPDATE "prompts" SET "title" = %(p1)s, "updated_at" = NOW() WHERE "id" = %(p2)s RETURNING *'
        self.assertEqual([q for q, _ in statements], [expected, expected])
        self.assertEqual([p["p1"] for _, p in statements], ["first", "second"])

    def test_update_without_updated_at_column(self):
        self.inspector.schemas["tags"] = {"id": "uuid", "name": "text"}
        engine = ResourceEngine(self.client, "tags", inspector=self.inspector)
        self.client.execute_query.return_value = [{"id": "a"}]
        engine.update_by_id("a", {"name": "n"})
        query, _ = self.last_call()
        self.assertEqual(query, 'UPDATE "tags" SET "name" = %(p1)s WHERE "id" = %(p2)s RETURNING *')

    def test_update_by_filter_numbers_where_after_set(self):
        self.client.execute_query.return_value = [{"id": "a"}, {"id": "b"}]
        rows = self.engine.update_rows({"user_id": "u1", "rating": "lt.2"}, {"is_favorite": False})
        self.assertEqual(len(rows), 2)
        query, params = self.last_call()
        self.assertEqual(
            query,
            'UPDATE "prompts" SET "is_favorite" = %(p1)s, "updated_at" = NOW()'
            ' WHERE "user_id" = %(p2)s AND "rating" < %(p3)s RETURNING *',
        )
        self.assertEqual(params, {"p1": False, "p2": "u1", "p3": "2"})

    def test_update_by_filter_requires_a_filter(self):
        for params in ({}, {"limit": "5"}):
            with self.subTest(params=params):
                with self.assertRaises(ValidationError):
                    self.engine.update_rows(params, {"title": "x"})
        self.client.execute_query.assert_not_called()

    def test_update_by_filter_empty_patch(self):
        self.assertIsNone(self.engine.update_by_filter([Filter("title", Operator.EQ, "x")], {"id": "y"}))
        self.client.execute_query.assert_not_called()

    def test_update_by_filter_checks_filters_before_empty_patch(self):
        with self.assertRaisesRegex(ValidationError, "nope"):
            self.engine.update_by_filter([Filter("nope", Operator.EQ, "1")], {})
        self.client.execute_query.assert_not_called()

    def test_patch_must_be_object(self):
        with self.assertRaises(ValidationError):
            self.engine.update_by_id("a", ["title"])
        with self.assertRaises(ValidationError):
            self.engine.update_by_id("a", {"nope": 1})


class TestDelete(EngineTestCase):
    def test_delete_by_id_is_idempotent(self):
        self.client.execute_query.side_effect = [[{"?column?": 1}], []]
        self.assertEqual(self.engine.delete_by_id("a"), 1)
        self.assertEqual(self.engine.delete_by_id("a"), 0)
        query, params = self.last_call()
        self.assertEqual(query, 'DELETE FROM "prompts" WHERE "id" = %(p1)s RETURNING 1')
        self.assertEqual(params, {"p1": "a"})

    def test_delete_by_filter(self):
        self.client.execute_query.return_value = [{"?column?": 1}] * 3
        self.assertEqual(self.engine.delete_rows({"is_favorite": "false", "id": "in.(a,b,c)"}), 3)
        query, params = self.last_call()
        self.assertEqual(
            query,
            'DELETE FROM "prompts" WHERE "is_favorite" = %(p1)s AND "id" = ANY(%(p2)s::"uuid"[]) RETURNING 1',
        )
        self.assertEqual(params, {"p1": "false", "p2": ["a", "b", "c"]})

    def test_delete_by_filter_requires_a_filter(self):
        with self.assertRaises(ValidationError):
            self.engine.delete_rows({"order": "title"})
        with self.assertRaises(ValidationError):
            self.engine.delete_by_filter([])
        self.client.execute_query.assert_not_called()


class TestSchemaQualifiedTables(EngineTestCase):
    table = "app.prompts"

    def test_identifiers_are_qualified(self):
        self.engine.list_rows({})
        query, _ = self.last_call()
        self.assertTrue(query.startswith('SELECT * FROM "app"."prompts"'))


class TestHelpers(unittest.TestCase):
    def test_error_message_prefers_primary_diagnostic(self):
        exc = mock.Mock()
        exc.diag.message_primary = "duplicate key value violates unique constraint"
        self.assertEqual(error_message(exc), "duplicate key value violates unique constraint")
        self.assertEqual(error_message(RuntimeError("boom\n")), "boom")

    def test_is_missing_column(self):
        self.assertTrue(is_missing_column(UndefinedCreatedAt(), "created_at"))
        self.assertFalse(is_missing_column(UndefinedCreatedAt(), "updated_at"))
        self.assertFalse(is_missing_column(psycopg2.Error("created_at is bad"), "created_at"))


class TestRegistry(unittest.TestCase):
    def test_engines_per_table(self):
        client = mock.Mock()
        registry = ResourceRegistry(client, ["prompts", "tags"], inspector=StubInspector(), default_owner_id=OWNER)
        self.assertEqual(len(registry), 2)
        self.assertIn("prompts", registry)
        self.assertNotIn("users", registry)
        self.assertEqual(list(registry), ["prompts", "tags"])
        self.assertEqual(registry.engine("tags").table, "tags")
        self.assertEqual(registry.engine("prompts").default_owner_id, OWNER)
        with self.assertRaises(NotFoundError):
            registry.engine("users")

    def test_schema_and_search_columns(self):
        registry = ResourceRegistry(
            mock.Mock(), ["prompts"], schema="app", search_columns={"prompts": ["title"]}
        )
        engine = registry.engine("prompts")
        self.assertEqual(engine.table, "app.prompts")
        self.assertEqual(engine.search_columns, ("title",))
        self.assertEqual(registry.inspector.default_schema, "app")

        with self.assertRaisesRegex(ValueError, "unmounted"):
            ResourceRegistry(mock.Mock(), ["prompts"], search_columns={"tags": ["name"]})


if __name__ == "__main__":
    unittest.main()
