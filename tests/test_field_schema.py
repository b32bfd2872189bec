import os
import sys
import unittest
from datetime import date


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.stores import MemoryContentStore
from field_schema import FieldSchema, SchemaError


def _schema(store=None) -> FieldSchema:
    schema = (
        FieldSchema.define("todo_details", "Todo Details", "todo")
        .add_field("priority", "Priority", "select", {"low": "Low", "medium": "Medium", "high": "High"}, {"default": "medium", "required": True})
        .add_field("due_date", "Due Date", "date")
        .add_field("estimated_hours", "Estimated Hours", "number", constraints={"min": 0, "step": 0.5})
        .add_field("notes", "Notes", "text")
    )
    if store is not None:
        schema.bind(store)
    return schema


class TestFieldSchemaDefinition(unittest.TestCase):
    def test_duplicate_key_rejected(self) -> None:
        schema = _schema()
        with self.assertRaises(SchemaError) as ctx:
            schema.add_field("priority", "Again", "text")
        self.assertEqual(ctx.exception.code, "DUPLICATE_KEY")

    def test_unknown_kind_rejected(self) -> None:
        with self.assertRaises(SchemaError) as ctx:
            _schema().add_field("color", "Color", "colour")
        self.assertEqual(ctx.exception.code, "UNKNOWN_KIND")

    def test_describe_exposes_form_metadata(self) -> None:
        described = _schema().describe()
        self.assertEqual([f["key"] for f in described["fields"]], ["priority", "due_date", "estimated_hours", "notes"])
        priority = described["fields"][0]
        self.assertEqual(priority["kind"], "select")
        self.assertTrue(priority["required"])
        self.assertEqual(priority["choices"]["high"], "High")

    def test_unbound_schema_cannot_persist(self) -> None:
        with self.assertRaises(SchemaError) as ctx:
            _schema().persist("r1", {})
        self.assertEqual(ctx.exception.code, "SCHEMA_UNBOUND")


class TestFieldSchemaValidation(unittest.TestCase):
    def test_defaults_fill_absent_keys(self) -> None:
        result = _schema().validate({})
        self.assertTrue(result["ok"])
        self.assertEqual(result["values"]["priority"], "medium")
        self.assertIsNone(result["values"]["due_date"])

    def test_required_blank_is_missing_value(self) -> None:
        result = _schema().validate({"priority": ""})
        self.assertFalse(result["ok"])
        self.assertEqual(result["errors"], {"priority": "MISSING_VALUE"})

    def test_error_kinds(self) -> None:
        result = _schema().validate({"priority": "extreme", "due_date": "31/01/2024", "estimated_hours": -1})
        self.assertEqual(
            result["errors"],
            {"priority": "INVALID_CHOICE", "due_date": "INVALID_FORMAT", "estimated_hours": "OUT_OF_RANGE"},
        )

    def test_unhashable_select_value_is_invalid_choice(self) -> None:
        result = _schema().validate({"priority": ["high"]})
        self.assertFalse(result["ok"])
        self.assertEqual(result["errors"], {"priority": "INVALID_CHOICE"})
        self.assertEqual(_schema().validate({"priority": {"high": 1}})["errors"], {"priority": "INVALID_CHOICE"})

    def test_number_step_policy(self) -> None:
        schema = _schema()
        self.assertEqual(schema.validate({"estimated_hours": "1.5"})["values"]["estimated_hours"], 1.5)
        self.assertEqual(schema.validate({"estimated_hours": 2})["values"]["estimated_hours"], 2)
        self.assertEqual(schema.validate({"estimated_hours": 0.3})["errors"], {"estimated_hours": "OUT_OF_RANGE"})
        self.assertEqual(schema.validate({"estimated_hours": "abc"})["errors"], {"estimated_hours": "INVALID_FORMAT"})
        self.assertEqual(schema.validate({"estimated_hours": "nan"})["errors"], {"estimated_hours": "INVALID_FORMAT"})

    def test_max_enforced(self) -> None:
        schema = FieldSchema.define("s", "S", "todo").add_field("n", "N", "number", constraints={"max": 10})
        self.assertEqual(schema.validate({"n": 11})["errors"], {"n": "OUT_OF_RANGE"})
        self.assertTrue(schema.validate({"n": 10})["ok"])

    def test_dates_are_typed(self) -> None:
        result = _schema().validate({"due_date": "2024-02-01"})
        self.assertEqual(result["values"]["due_date"], date(2024, 2, 1))

    def test_unknown_keys_ignored(self) -> None:
        result = _schema().validate({"bogus": 1})
        self.assertTrue(result["ok"])
        self.assertNotIn("bogus", result["values"])

    def test_sanitizer_runs_before_coercion(self) -> None:
        schema = _schema().register_sanitizer("text", lambda raw: str(raw).upper())
        self.assertEqual(schema.validate({"notes": "call bob"})["values"]["notes"], "CALL BOB")


class TestFieldSchemaPersist(unittest.TestCase):
    def setUp(self) -> None:
        self.store = MemoryContentStore()
        self.schema = _schema(self.store)
        self.events = []
        self.schema.on_success(lambda entity_id, schema: self.events.append(("success", entity_id)))
        self.schema.on_error(lambda errors, entity_id, schema: self.events.append(("error", entity_id, errors)))

    def test_success_writes_group_and_fires_hook(self) -> None:
        result = self.schema.persist("r1", {"priority": "high", "due_date": "2024-03-01", "estimated_hours": 3})
        self.assertTrue(result["ok"])
        self.assertEqual(self.events, [("success", "r1")])
        stored = self.store.get_group("r1", "todo_details")
        self.assertEqual(stored["due_date"], "2024-03-01")
        loaded = self.schema.load("r1")
        self.assertEqual(loaded["due_date"], date(2024, 3, 1))
        self.assertEqual(loaded["priority"], "high")

    def test_failure_writes_nothing(self) -> None:
        self.schema.persist("r1", {"priority": "low", "estimated_hours": 1})
        result = self.schema.persist("r1", {"priority": "high", "estimated_hours": 0.25})
        self.assertFalse(result["ok"])
        self.assertEqual(self.events[-1], ("error", "r1", {"estimated_hours": "OUT_OF_RANGE"}))
        self.assertEqual(self.schema.last_errors, {"estimated_hours": "OUT_OF_RANGE"})
        self.assertEqual(self.store.get_group("r1", "todo_details")["priority"], "low")

    def test_merge_keeps_unsent_values(self) -> None:
        self.schema.persist("r1", {"priority": "high", "notes": "keep me"})
        self.schema.persist("r1", {"estimated_hours": 1}, merge=True)
        loaded = self.schema.load("r1")
        self.assertEqual(loaded["notes"], "keep me")
        self.assertEqual(loaded["priority"], "high")
        self.assertEqual(loaded["estimated_hours"], 1)

    def test_load_falls_back_to_defaults(self) -> None:
        loaded = self.schema.load("missing")
        self.assertEqual(loaded["priority"], "medium")
        self.assertIsNone(loaded["notes"])

    def test_failing_hook_does_not_undo_write(self) -> None:
        def broken(entity_id, schema):
            raise RuntimeError("hook exploded")

        self.schema.on_success(broken)
        with self.assertLogs("recordkit.schema", level="ERROR"):
            result = self.schema.persist("r2", {"priority": "low"})
        self.assertTrue(result["ok"])
        self.assertIsNotNone(self.store.get_group("r2", "todo_details"))

    def test_generic_hooks_fire_in_order(self) -> None:
        order = []
        for event in ("pre_validate", "post_validate", "pre_save", "post_save"):
            self.schema.on(event, lambda *args, _e=event: order.append(_e))
        self.schema.persist("r3", {"priority": "low"})
        self.assertEqual(order, ["pre_validate", "post_validate", "pre_save", "post_save"])


if __name__ == "__main__":
    unittest.main()
