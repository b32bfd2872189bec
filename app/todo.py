"""Todo entity type: a ``todo_details`` schema plus stats, admin and export wiring."""

from __future__ import annotations

import logging

from entity_model import Entity
from field_schema import FieldSchema

logger = logging.getLogger("recordkit.todo")

TODO_TYPE = "todo"
DETAILS_SCHEMA = "todo_details"

PRIORITIES = {"low": "Low", "medium": "Medium", "high": "High", "urgent": "Urgent"}
TODO_STATUSES = {"pending": "Pending", "in_progress": "In Progress", "completed": "Completed"}
STATUS_ICONS = {"pending": "[ ]", "in_progress": "[~]", "completed": "[x]"}

EXPORT_FIELDS = [
    "entity.title",
    "entity.body",
    "entity.created_at",
    "entity.status",
    f"meta.{DETAILS_SCHEMA}.priority",
    f"meta.{DETAILS_SCHEMA}.status",
    f"meta.{DETAILS_SCHEMA}.due_date",
    f"meta.{DETAILS_SCHEMA}.estimated_hours",
]


def build_details_schema(cache) -> FieldSchema:
    schema = (
        FieldSchema.define(DETAILS_SCHEMA, "Todo Details", TODO_TYPE)
        .add_field("priority", "Priority", "select", PRIORITIES, {"default": "medium", "required": True})
        .add_field("due_date", "Due Date", "date", constraints={"required": False})
        .add_field("status", "Status", "select", TODO_STATUSES, {"default": "pending", "required": True})
        .add_field("estimated_hours", "Estimated Hours", "number", constraints={"min": 0, "step": 0.5})
    )

    def _saved(entity_id, _schema) -> None:
        cache.delete(f"{TODO_TYPE}s", f"{TODO_TYPE}_stats")

    def _failed(errors, entity_id, _schema) -> None:
        logger.warning("todo_details_invalid id=%s errors=%s", entity_id, errors)

    return schema.on_success(_saved).on_error(_failed)


def format_priority(value, view) -> str:
    if value is None:
        return ""
    return PRIORITIES.get(value, str(value).capitalize())


def format_status(value, view) -> str:
    if value is None:
        return ""
    label = TODO_STATUSES.get(value, str(value).replace("_", " ").capitalize())
    return f"{STATUS_ICONS.get(value, '[?]')} {label}"


def format_due_date(value, view) -> str:
    if value is None:
        return ""
    return value.strftime("%b %d, %Y") if hasattr(value, "strftime") else str(value)


ADMIN_COLUMNS = [
    {
        "id": "priority",
        "label": "Priority",
        "type": "text",
        "sortable": True,
        "field": f"meta.{DETAILS_SCHEMA}.priority",
        "formatter": format_priority,
    },
    {
        "id": "status",
        "label": "Status",
        "type": "text",
        "sortable": True,
        "field": f"meta.{DETAILS_SCHEMA}.status",
        "formatter": format_status,
    },
    {
        "id": "due_date",
        "label": "Due Date",
        "type": "date",
        "sortable": True,
        "field": f"meta.{DETAILS_SCHEMA}.due_date",
        "formatter": format_due_date,
    },
]

ADMIN_BUTTONS = [
    {"id": "export_csv", "label": "Export CSV", "order": 10, "pages": ["list"], "position": "header", "action": "export_csv"},
]


def build_todo_entity(store, cache, clock=None, exporter=None) -> Entity:
    def _setup(entity: Entity) -> None:
        entity.register_schema(build_details_schema(cache))

    return Entity(
        TODO_TYPE,
        store,
        cache,
        clock=clock,
        setup=[_setup],
        stats={
            "status": f"meta.{DETAILS_SCHEMA}.status",
            "priority": f"meta.{DETAILS_SCHEMA}.priority",
            "due": f"meta.{DETAILS_SCHEMA}.due_date",
            "completed": "completed",
        },
        admin_columns=ADMIN_COLUMNS,
        admin_buttons=ADMIN_BUTTONS,
        label="Todo",
        exporter=exporter,
    )


def get_by_status(entity: Entity, status: str) -> list[dict]:
    return entity.get_by(f"meta.{DETAILS_SCHEMA}.status", status, with_meta=True)


def export_csv(entity: Entity, query_args: dict | None = None) -> dict:
    return entity.export({"format": "csv", "query_args": query_args, "fields": list(EXPORT_FIELDS), "name": "todos"})
