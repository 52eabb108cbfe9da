"""Relational workflow store on SQLAlchemy async sessions.

:class:`SQLAlchemyWorkflowStore` implements
:class:`~litestar_flows.core.protocols.WorkflowStore` with the repositories of
:mod:`litestar_flows.db.repositories`. Every operation opens its own session
from an ``async_sessionmaker`` and commits before returning, so distinct
instances can be driven concurrently. JSON columns hold values encoded with
:mod:`litestar_flows.state.codec`.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from litestar_flows.core.context import ExecutionContext
from litestar_flows.core.definition import WorkflowDefinition
from litestar_flows.core.models import ApprovalData, HistoryEntry, ScheduledTaskData, WorkflowInstanceData
from litestar_flows.core.types import ALLOWED_TRANSITIONS, TERMINAL_STATUSES, ApprovalStatus, InstanceStatus, NodeType
from litestar_flows.db.models import (
    ApprovalModel,
    HistoryEntryModel,
    ScheduledTaskModel,
    WorkflowDefinitionModel,
    WorkflowInstanceModel,
)
from litestar_flows.db.repositories import (
    ApprovalRepository,
    HistoryEntryRepository,
    ScheduledTaskRepository,
    WorkflowDefinitionRepository,
    WorkflowInstanceRepository,
)
from litestar_flows.exceptions import (
    ApprovalError,
    InvalidTransitionError,
    WorkflowInstanceNotFoundError,
)
from litestar_flows.state import codec

if TYPE_CHECKING:
    from collections.abc import Sequence
    from uuid import UUID

    from sqlalchemy.ext.asyncio import AsyncEngine

    from litestar_flows.core.types import HistoryAction, TaskType, TriggerType

__all__ = ["DatabaseDefinitionSource", "SQLAlchemyWorkflowStore"]

logger = logging.getLogger(__name__)

_INSTANCE_COLUMNS = frozenset(
    {
        "current_node_id",
        "context_data",
        "user_id",
        "trigger_data",
        "paused_at",
        "resumed_at",
        "completed_at",
        "failed_at",
        "cancelled_at",
        "execution_time_ms",
        "error_message",
        "error_detail",
    }
)


def _encode_context(context: ExecutionContext) -> dict[str, Any]:
    return codec.encode(context.to_dict())


def _instance_values(values: dict[str, Any]) -> dict[str, Any]:
    columns = dict(values)
    if "context" in columns:
        columns["context_data"] = _encode_context(columns.pop("context"))
    if "error_detail" in columns and columns["error_detail"] is not None:
        columns["error_detail"] = codec.encode(columns["error_detail"])
    unknown = set(columns) - _INSTANCE_COLUMNS
    if unknown:
        msg = f"Unknown instance fields: {', '.join(sorted(unknown))}"
        raise ValueError(msg)
    return columns


def _to_instance(model: WorkflowInstanceModel) -> WorkflowInstanceData:
    return WorkflowInstanceData(
        id=model.id,
        definition_id=model.definition_id,
        status=InstanceStatus(model.status),
        context=ExecutionContext.from_dict(codec.decode(model.context_data or {})),
        current_node_id=model.current_node_id,
        triggered_by=model.triggered_by,
        started_at=model.started_at,
        trigger_data=codec.decode(model.trigger_data or {}),
        user_id=model.user_id,
        paused_at=model.paused_at,
        resumed_at=model.resumed_at,
        completed_at=model.completed_at,
        failed_at=model.failed_at,
        cancelled_at=model.cancelled_at,
        execution_time_ms=model.execution_time_ms,
        error_message=model.error_message,
        error_detail=codec.decode(model.error_detail) if model.error_detail is not None else None,
    )


def _to_history(model: HistoryEntryModel) -> HistoryEntry:
    return HistoryEntry(
        id=model.id,
        instance_id=model.instance_id,
        sequence=model.sequence,
        action=model.action,
        created_at=model.created_at,
        node_id=model.node_id,
        node_type=NodeType(model.node_type) if model.node_type else None,
        input_data=codec.decode(model.input_data) if model.input_data is not None else None,
        output_data=codec.decode(model.output_data) if model.output_data is not None else None,
        error_data=codec.decode(model.error_data) if model.error_data is not None else None,
        duration_ms=model.duration_ms,
    )


def _to_task(model: ScheduledTaskModel) -> ScheduledTaskData:
    return ScheduledTaskData(
        id=model.id,
        instance_id=model.instance_id,
        node_id=model.node_id,
        task_type=model.task_type,
        scheduled_for=model.scheduled_for,
        payload=codec.decode(model.payload or {}),
        is_executed=model.is_executed,
        failed=model.failed,
        executed_at=model.executed_at,
        retry_count=model.retry_count,
        max_retries=model.max_retries,
        error_message=model.error_message,
    )


def _to_approval(model: ApprovalModel) -> ApprovalData:
    return ApprovalData(
        id=model.id,
        instance_id=model.instance_id,
        node_id=model.node_id,
        status=model.status,
        approver_type=model.approver_type,
        approvers=list(model.approvers or []),
        options=list(model.options or []),
        escalate_to=model.escalate_to,
        due_at=model.due_at,
        decision=model.decision,
        decided_by=model.decided_by,
        comments=model.comments,
        decided_at=model.decided_at,
    )


class SQLAlchemyWorkflowStore:
    """Workflow store backed by SQLAlchemy and advanced-alchemy repositories.

    Args:
        session_maker: Factory for the sessions used by each operation.
        task_max_retries: Default ``max_retries`` of new scheduled tasks.

    Example:
        >>> store = SQLAlchemyWorkflowStore.from_url("sqlite+aiosqlite:///flows.db")
        >>> await store.create_all()
        >>> await store.find_instances(status=InstanceStatus.WAITING)
        []
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], *, task_max_retries: int = 3) -> None:
        self.session_maker = session_maker
        self.task_max_retries = task_max_retries
        self._engine: AsyncEngine | None = None

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> SQLAlchemyWorkflowStore:
        """Create a store owning its engine.

        In-memory SQLite URLs share one connection so every session sees the
        same database.
        """
        engine_options: dict[str, Any] = {}
        if url.startswith("sqlite") and ":memory:" in url:
            engine_options["poolclass"] = StaticPool
        engine = create_async_engine(url, **engine_options)
        store = cls(async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False), **kwargs)
        store._engine = engine
        return store

    async def create_all(self) -> None:
        """Create the workflow tables if they do not exist."""
        bind = self._engine or self.session_maker.kw["bind"]
        async with bind.begin() as conn:
            await conn.run_sync(WorkflowInstanceModel.metadata.create_all)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()

    # Definitions

    async def save_definition(self, definition: WorkflowDefinition) -> None:
        """Insert or replace the row of ``definition``'s id and version."""
        async with self.session_maker() as session:
            repo = WorkflowDefinitionRepository(session=session)
            existing = await repo.get_by_key(definition.id, definition.version, active_only=False)
            if existing is None:
                await repo.add(
                    WorkflowDefinitionModel(
                        definition_key=definition.id,
                        version=definition.version,
                        name=definition.name,
                        description=definition.description,
                        definition_json=definition.to_dict(),
                        is_active=True,
                    )
                )
            else:
                existing.name = definition.name
                existing.description = definition.description
                existing.definition_json = definition.to_dict()
                existing.is_active = True
            await session.commit()

    async def load_definition(self, definition_id: str, version: int | None = None) -> WorkflowDefinition | None:
        async with self.session_maker() as session:
            model = await WorkflowDefinitionRepository(session=session).get_by_key(definition_id, version)
            if model is None:
                return None
            return WorkflowDefinition.from_dict(model.definition_json)

    async def deactivate_definition(self, definition_id: str, version: int) -> bool:
        async with self.session_maker() as session:
            changed = await WorkflowDefinitionRepository(session=session).deactivate_version(definition_id, version)
            await session.commit()
            return changed

    # Instances

    async def create_instance(
        self,
        *,
        definition_id: str,
        context: ExecutionContext,
        current_node_id: str | None,
        triggered_by: TriggerType,
        trigger_data: dict[str, Any],
        user_id: str | None,
        started_at: datetime,
    ) -> WorkflowInstanceData:
        async with self.session_maker() as session:
            model = await WorkflowInstanceRepository(session=session).add(
                WorkflowInstanceModel(
                    definition_id=definition_id,
                    status=InstanceStatus.PENDING,
                    current_node_id=current_node_id,
                    context_data=_encode_context(context),
                    user_id=user_id,
                    triggered_by=triggered_by,
                    trigger_data=codec.encode(trigger_data),
                    started_at=started_at,
                )
            )
            data = _to_instance(model)
            await session.commit()
            return data

    async def get_instance(self, instance_id: UUID) -> WorkflowInstanceData | None:
        async with self.session_maker() as session:
            model = await WorkflowInstanceRepository(session=session).get_one_or_none(id=instance_id)
            return _to_instance(model) if model else None

    async def transition(self, instance_id: UUID, to_status: InstanceStatus, **values: Any) -> WorkflowInstanceData:
        """Move an instance to ``to_status`` with a conditional update.

        Args:
            instance_id: The instance.
            to_status: Target status.
            **values: Other columns to set; ``context`` is encoded.

        Returns:
            The updated instance.

        Raises:
            InvalidTransitionError: If the current status does not allow it.
            WorkflowInstanceNotFoundError: If the instance does not exist.
        """
        allowed_from = [status for status, targets in ALLOWED_TRANSITIONS.items() if to_status in targets]
        columns = _instance_values(values)
        async with self.session_maker() as session:
            repo = WorkflowInstanceRepository(session=session)
            updated = await repo.conditional_update(instance_id, allowed_from, status=to_status, **columns)
            if not updated:
                current = await repo.get_one_or_none(id=instance_id)
                if current is None:
                    raise WorkflowInstanceNotFoundError(instance_id)
                raise InvalidTransitionError(current.status, to_status)
            model = await repo.get_one(id=instance_id)
            await session.refresh(model)
            data = _to_instance(model)
            await session.commit()
        logger.debug("Instance %s moved to %s", instance_id, to_status)
        return data

    async def update_instance(self, instance_id: UUID, **values: Any) -> None:
        """Update columns of a non-terminal instance; terminal rows are left untouched."""
        columns = _instance_values(values)
        async with self.session_maker() as session:
            updated = await WorkflowInstanceRepository(session=session).update_if_active(instance_id, **columns)
            await session.commit()
        if not updated:
            logger.debug("Skipped update of instance %s: missing or terminal", instance_id)

    async def find_instances(
        self, *, status: InstanceStatus | None = None, definition_id: str | None = None, limit: int = 100
    ) -> Sequence[WorkflowInstanceData]:
        async with self.session_maker() as session:
            models = await WorkflowInstanceRepository(session=session).find_instances(
                status=status, definition_id=definition_id, limit=limit
            )
            return [_to_instance(model) for model in models]

    # History

    async def add_history(
        self,
        instance_id: UUID,
        action: HistoryAction,
        *,
        node_id: str | None = None,
        node_type: NodeType | None = None,
        input_data: dict[str, Any] | None = None,
        output_data: dict[str, Any] | None = None,
        error_data: dict[str, Any] | None = None,
        duration_ms: int | None = None,
    ) -> HistoryEntry | None:
        """Append a history entry; nothing is written once the instance is terminal."""
        async with self.session_maker() as session:
            instance = await WorkflowInstanceRepository(session=session).get_one_or_none(id=instance_id)
            if instance is None:
                raise WorkflowInstanceNotFoundError(instance_id)
            if instance.status in TERMINAL_STATUSES:
                logger.debug("Skipped %s history entry of terminal instance %s", action, instance_id)
                return None
            repo = HistoryEntryRepository(session=session)
            model = await repo.add(
                HistoryEntryModel(
                    instance_id=instance_id,
                    sequence=await repo.next_sequence(instance_id),
                    action=action,
                    node_id=node_id,
                    node_type=str(node_type) if node_type else None,
                    input_data=codec.encode(input_data) if input_data is not None else None,
                    output_data=codec.encode(output_data) if output_data is not None else None,
                    error_data=codec.encode(error_data) if error_data is not None else None,
                    duration_ms=duration_ms,
                )
            )
            data = _to_history(model)
            await session.commit()
            return data

    async def list_history(self, instance_id: UUID) -> Sequence[HistoryEntry]:
        async with self.session_maker() as session:
            models = await HistoryEntryRepository(session=session).find_by_instance(instance_id)
            return [_to_history(model) for model in models]

    # Scheduled tasks

    async def create_task(
        self,
        instance_id: UUID,
        node_id: str,
        task_type: TaskType,
        scheduled_for: datetime,
        *,
        payload: dict[str, Any] | None = None,
        max_retries: int | None = None,
    ) -> ScheduledTaskData:
        async with self.session_maker() as session:
            model = await ScheduledTaskRepository(session=session).add(
                ScheduledTaskModel(
                    instance_id=instance_id,
                    node_id=node_id,
                    task_type=task_type,
                    scheduled_for=scheduled_for,
                    payload=codec.encode(payload or {}),
                    is_executed=False,
                    failed=False,
                    retry_count=0,
                    max_retries=self.task_max_retries if max_retries is None else max_retries,
                )
            )
            data = _to_task(model)
            await session.commit()
            return data

    async def list_tasks(self, instance_id: UUID, *, pending_only: bool = False) -> Sequence[ScheduledTaskData]:
        async with self.session_maker() as session:
            models = await ScheduledTaskRepository(session=session).find_by_instance(
                instance_id, pending_only=pending_only
            )
            return [_to_task(model) for model in models]

    async def get_due_tasks(self, now: datetime, limit: int) -> Sequence[ScheduledTaskData]:
        async with self.session_maker() as session:
            models = await ScheduledTaskRepository(session=session).find_due(now, limit)
            return [_to_task(model) for model in models]

    async def mark_task_executed(self, task_id: UUID, executed_at: datetime) -> None:
        async with self.session_maker() as session:
            repo = ScheduledTaskRepository(session=session)
            model = await repo.get_one_or_none(id=task_id)
            if model is None or model.is_executed:
                return
            model.is_executed = True
            model.executed_at = executed_at
            await session.commit()

    async def record_task_failure(self, task_id: UUID, error_message: str, executed_at: datetime) -> ScheduledTaskData:
        """Count a failed attempt; the task is marked failed once retries run out."""
        async with self.session_maker() as session:
            model = await ScheduledTaskRepository(session=session).get_one(id=task_id)
            model.retry_count += 1
            model.error_message = error_message
            if model.retry_count >= model.max_retries:
                model.is_executed = True
                model.failed = True
                model.executed_at = executed_at
            data = _to_task(model)
            await session.commit()
            return data

    async def discard_tasks(
        self,
        instance_id: UUID,
        *,
        node_id: str | None = None,
        task_types: Sequence[TaskType] | None = None,
    ) -> int:
        async with self.session_maker() as session:
            count = await ScheduledTaskRepository(session=session).discard_pending(
                instance_id, datetime.now(timezone.utc), node_id=node_id, task_types=task_types
            )
            await session.commit()
            return count

    # Approvals

    async def create_approval(
        self,
        instance_id: UUID,
        node_id: str,
        *,
        approver_type: str,
        approvers: list[str],
        options: list[str],
        escalate_to: str | None,
        due_at: datetime | None,
    ) -> ApprovalData:
        async with self.session_maker() as session:
            model = await ApprovalRepository(session=session).add(
                ApprovalModel(
                    instance_id=instance_id,
                    node_id=node_id,
                    status=ApprovalStatus.PENDING,
                    approver_type=approver_type,
                    approvers=list(approvers),
                    options=list(options),
                    escalate_to=escalate_to,
                    due_at=due_at,
                )
            )
            data = _to_approval(model)
            await session.commit()
            return data

    async def get_pending_approval(self, instance_id: UUID, node_id: str) -> ApprovalData | None:
        async with self.session_maker() as session:
            model = await ApprovalRepository(session=session).find_pending(instance_id, node_id)
            return _to_approval(model) if model else None

    async def decide_approval(
        self, approval_id: UUID, *, decision: str, decided_by: str, comments: str | None, decided_at: datetime
    ) -> ApprovalData:
        async with self.session_maker() as session:
            model = await ApprovalRepository(session=session).get_one(id=approval_id)
            if model.status != ApprovalStatus.PENDING:
                raise ApprovalError(model.instance_id, model.node_id, f"approval is already {model.status}")
            model.status = ApprovalStatus.DECIDED
            model.decision = decision
            model.decided_by = decided_by
            model.comments = comments
            model.decided_at = decided_at
            data = _to_approval(model)
            await session.commit()
            return data

    async def cancel_approvals(self, instance_id: UUID) -> int:
        async with self.session_maker() as session:
            count = await ApprovalRepository(session=session).cancel_pending(instance_id)
            await session.commit()
            return count


class DatabaseDefinitionSource:
    """Definition source reading the active versions stored in the database.

    Example:
        >>> source = DatabaseDefinitionSource(store)
        >>> await store.save_definition(definition)
        >>> await source.get_definition(definition.id)
    """

    def __init__(self, store: SQLAlchemyWorkflowStore) -> None:
        self.store = store

    async def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        return await self.store.load_definition(definition_id)
