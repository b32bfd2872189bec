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

from record_query import RecordQueryError, build_condition, check_condition, matches, needs_meta, sort_views, validate_query


def _view(record_id, title, priority=None, due=None, hours=None):
    return {
        "id": record_id,
        "entity": {"id": record_id, "title": title, "body": "", "status": "published"},
        "meta": {"todo_details": {"priority": priority, "due_date": due, "estimated_hours": hours}},
    }


class TestRecordQueryMatches(unittest.TestCase):
    def setUp(self) -> None:
        self.view = _view("a", "Write Report", "high", date(2024, 1, 5), 2)

    def test_eq_and_bare_names(self) -> None:
        cond = {"op": "eq", "left": {"var": "title"}, "right": {"literal": "Write Report"}}
        self.assertTrue(matches(cond, self.view))

    def test_logical_nodes(self) -> None:
        cond = {
            "op": "and",
            "children": [
                {"op": "in", "left": {"var": "meta.todo_details.priority"}, "right": {"literal": ["high", "urgent"]}},
                {"op": "not", "children": [{"op": "contains", "left": {"var": "title"}, "right": {"literal": "memo"}}]},
            ],
        }
        self.assertTrue(matches(cond, self.view))

    def test_date_compares_against_iso_literal(self) -> None:
        cond = {"op": "lt", "left": {"var": "meta.todo_details.due_date"}, "right": {"literal": "2024-01-10"}}
        self.assertTrue(matches(cond, self.view))

    def test_range_on_missing_value_is_false(self) -> None:
        view = _view("b", "Empty")
        cond = {"op": "gt", "left": {"var": "meta.todo_details.estimated_hours"}, "right": {"literal": 1}}
        self.assertFalse(matches(cond, view))
        self.assertTrue(matches({"op": "not_exists", "left": {"var": "meta.todo_details.estimated_hours"}}, view))

    def test_contains_is_case_insensitive(self) -> None:
        cond = {"op": "contains", "left": {"var": "title"}, "right": {"literal": "report"}}
        self.assertTrue(matches(cond, self.view))

    def test_unknown_op(self) -> None:
        with self.assertRaises(RecordQueryError) as ctx:
            matches({"op": "like", "left": {"var": "title"}, "right": {"literal": "x"}}, self.view)
        self.assertEqual(ctx.exception.code, "QUERY_UNKNOWN_OP")


class TestRecordQueryShape(unittest.TestCase):
    def test_filters_shorthand(self) -> None:
        cond = build_condition({"filters": [{"field": "meta.todo_details.priority", "value": "high"}]})
        self.assertTrue(matches(cond, _view("a", "x", "high")))
        self.assertFalse(matches(cond, _view("b", "x", "low")))

    def test_validate_rejects_unknown_keys_and_bad_paths(self) -> None:
        with self.assertRaises(RecordQueryError):
            validate_query({"posts_per_page": -1})
        with self.assertRaises(RecordQueryError):
            validate_query({"filters": [{"field": "meta.todo_details", "value": 1}]})
        with self.assertRaises(RecordQueryError):
            validate_query({"limit": -1})

    def test_malformed_where_rejected_without_evaluation(self) -> None:
        bad_trees = [
            {"op": "bogus"},
            "title = x",
            {"op": "or", "children": [{"op": "exists", "left": {"var": "title"}}, {"op": "bogus"}]},
            {"op": "not", "children": []},
            {"op": "eq", "left": {"var": "title"}},
            {"op": "eq", "left": {"field": "title"}, "right": {"literal": 1}},
            {"op": "in", "left": {"var": "title"}, "right": {"literal": "a"}},
        ]
        for tree in bad_trees:
            with self.assertRaises(RecordQueryError):
                validate_query({"where": tree})
        with self.assertRaises(RecordQueryError) as ctx:
            check_condition({"op": "bogus"})
        self.assertEqual(ctx.exception.code, "QUERY_UNKNOWN_OP")

    def test_well_formed_where_passes(self) -> None:
        tree = {"op": "and", "children": [{"op": "not_exists", "left": {"var": "meta.todo_details.due_date"}}]}
        self.assertEqual(validate_query({"where": tree}), {"where": tree})

    def test_needs_meta(self) -> None:
        self.assertFalse(needs_meta({"filters": {"status": "draft"}}))
        self.assertTrue(needs_meta({"order_by": "-meta.todo_details.priority"}))


class TestSortViews(unittest.TestCase):
    def test_stable_sort_with_id_tiebreak_and_missing_last(self) -> None:
        views = [
            _view("c", "c", hours=2),
            _view("a", "a", hours=1),
            _view("d", "d"),
            _view("b", "b", hours=2),
        ]
        ordered = sort_views(views, "-meta.todo_details.estimated_hours")
        self.assertEqual([v["id"] for v in ordered], ["b", "c", "a", "d"])

    def test_multiple_keys(self) -> None:
        views = [_view("a", "z", "high"), _view("b", "y", "low"), _view("c", "x", "high")]
        ordered = sort_views(views, ["meta.todo_details.priority", {"field": "title", "direction": "desc"}])
        self.assertEqual([v["id"] for v in ordered], ["a", "c", "b"])


if __name__ == "__main__":
    unittest.main()
