"""Action handlers writing to a relational database.

``update_database`` inserts, updates or upserts rows of application tables,
which are reflected on first use. ``create_task`` records a
:class:`~litestar_flows.db.models.HumanTaskModel`. Both run one transaction
per action on the session factory they are given, usually the workflow
store's.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import MetaData, Table, insert, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError

from litestar_flows.db.models import HumanTaskModel
from litestar_flows.db.repositories import HumanTaskRepository
from litestar_flows.exceptions import ActionError

if TYPE_CHECKING:
    from collections.abc import Collection

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
    from sqlalchemy.sql import Executable

    from litestar_flows.core.context import ExecutionContext

__all__ = ["CreateTaskActionHandler", "DatabaseActionHandler"]

logger = logging.getLogger(__name__)

DATABASE_OPERATIONS = frozenset({"insert", "update", "upsert"})
TASK_PRIORITIES = frozenset({"low", "medium", "high"})

_UPSERT_INSERTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


class DatabaseActionHandler:
    """Writes one statement to an application table.

    The configuration is read from ``config["database"]``, or from the config
    itself::

        {
            "operation": "insert" | "update" | "upsert",
            "table": "customers",
            "data": {"tier": "{{ formData.tier }}"},
            "where": {"email": "{{ formData.email }}"},
        }

    ``update`` requires ``where``. ``upsert`` inserts ``where`` and ``data``
    together and updates ``data`` when the ``where`` columns conflict; it is
    available on PostgreSQL and SQLite. Tables of the workflow engine itself
    cannot be written.

    Args:
        session_maker: Factory for the sessions of the application database.
        tables: Names of the tables actions may write; every table when
            omitted.
    """

    def __init__(
        self, session_maker: async_sessionmaker[AsyncSession], *, tables: Collection[str] | None = None
    ) -> None:
        self.session_maker = session_maker
        self.tables = frozenset(tables) if tables is not None else None
        self._metadata = MetaData()

    async def handle(self, action_type: str, config: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        database = config.get("database", config)
        operation = database.get("operation")
        table_name = database.get("table")
        data = dict(database.get("data") or {})
        where = dict(database.get("where") or {})
        self._check(operation, table_name, data, where)

        try:
            async with self.session_maker() as session:
                table = await self._table(session, table_name)
                result = await session.execute(self._statement(session, table, operation, data, where))
                await session.commit()
        except KeyError as exc:
            msg = f"Unknown column {exc} in table '{table_name}'"
            raise ActionError(msg) from exc
        except SQLAlchemyError as exc:
            msg = f"Database {operation} on '{table_name}' failed: {exc}"
            raise ActionError(msg) from exc

        logger.debug("Database %s on %s affected %s row(s)", operation, table_name, result.rowcount)
        return {"success": True, "operation": operation, "table": table_name, "affected": result.rowcount}

    def _check(self, operation: Any, table_name: Any, data: dict[str, Any], where: dict[str, Any]) -> None:
        if operation not in DATABASE_OPERATIONS:
            msg = f"Unknown database operation: {operation}"
            raise ActionError(msg)
        if not table_name:
            msg = "Database configuration requires a table"
            raise ActionError(msg)
        if table_name in HumanTaskModel.metadata.tables:
            msg = f"Table '{table_name}' is managed by the workflow engine"
            raise ActionError(msg)
        if self.tables is not None and table_name not in self.tables:
            msg = f"Table '{table_name}' is not writable by workflow actions"
            raise ActionError(msg)
        if not data:
            msg = f"Database {operation} requires data"
            raise ActionError(msg)
        if operation in {"update", "upsert"} and not where:
            msg = f"WHERE clause required for {operation} operation"
            raise ActionError(msg)

    async def _table(self, session: AsyncSession, name: str) -> Table:
        table = self._metadata.tables.get(name)
        if table is None:
            table = await session.run_sync(
                lambda sync_session: Table(name, self._metadata, autoload_with=sync_session.connection())
            )
        return table

    def _statement(
        self, session: AsyncSession, table: Table, operation: str, data: dict[str, Any], where: dict[str, Any]
    ) -> Executable:
        if operation == "insert":
            return insert(table).values(data)
        if operation == "update":
            return update(table).where(*(table.c[column] == value for column, value in where.items())).values(data)

        dialect = session.get_bind().dialect.name
        upsert_insert = _UPSERT_INSERTS.get(dialect)
        if upsert_insert is None:
            msg = f"Upsert is not supported on {dialect}"
            raise ActionError(msg)
        return upsert_insert(table).values({**where, **data}).on_conflict_do_update(
            index_elements=[table.c[column] for column in where], set_=data
        )


def _due_at(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        due = value
    else:
        try:
            due = datetime.fromisoformat(str(value))
        except ValueError as exc:
            msg = f"Invalid task due date: {value!r}"
            raise ActionError(msg) from exc
    return due if due.tzinfo else due.replace(tzinfo=timezone.utc)


class CreateTaskActionHandler:
    """Assigns a task to a person.

    The configuration is read from ``config["task"]``, or from the config
    itself: ``title`` (required), ``description``, ``assignee``, ``dueDate``
    and ``priority`` (``low``, ``medium`` or ``high``; ``medium`` by default).
    The task is linked to the running instance and node.

    Args:
        session_maker: Factory for the sessions of the workflow database.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self.session_maker = session_maker

    async def handle(self, action_type: str, config: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        task = config.get("task", config)
        title = task.get("title")
        if not title:
            msg = "Task configuration requires a title"
            raise ActionError(msg)
        priority = task.get("priority") or "medium"
        if priority not in TASK_PRIORITIES:
            msg = f"Unknown task priority: {priority}"
            raise ActionError(msg)
        instance_id = context.metadata.get("instance_id")

        try:
            async with self.session_maker() as session:
                model = await HumanTaskRepository(session=session).add(
                    HumanTaskModel(
                        instance_id=UUID(str(instance_id)) if instance_id else None,
                        node_id=context.current_node,
                        title=str(title),
                        description=task.get("description"),
                        assignee_id=task.get("assignee"),
                        due_at=_due_at(task.get("due_date", task.get("dueDate"))),
                        priority=priority,
                        status="pending",
                    )
                )
                task_id = model.id
                await session.commit()
        except SQLAlchemyError as exc:
            msg = f"Could not create task '{title}': {exc}"
            raise ActionError(msg) from exc

        logger.info("Created task %s for %s", task_id, task.get("assignee") or "nobody")
        return {"success": True, "task_id": str(task_id), "title": title}
