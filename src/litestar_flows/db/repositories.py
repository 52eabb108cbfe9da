"""Repository implementations for workflow persistence.

This module provides async repositories for the workflow models using
advanced-alchemy's repository pattern. Status changes of instances are
conditional updates so concurrent writers cannot leave a terminal state.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from advanced_alchemy.filters import LimitOffset, OrderBy
from advanced_alchemy.repository import SQLAlchemyAsyncRepository
from sqlalchemy import and_, func, select, update

from litestar_flows.core.types import TERMINAL_STATUSES, ApprovalStatus, InstanceStatus
from litestar_flows.db.models import (
    ApprovalModel,
    HistoryEntryModel,
    HumanTaskModel,
    ScheduledTaskModel,
    WorkflowDefinitionModel,
    WorkflowInstanceModel,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence
    from datetime import datetime
    from uuid import UUID

    from litestar_flows.core.types import TaskType

__all__ = [
    "ApprovalRepository",
    "HistoryEntryRepository",
    "HumanTaskRepository",
    "ScheduledTaskRepository",
    "WorkflowDefinitionRepository",
    "WorkflowInstanceRepository",
]


class WorkflowDefinitionRepository(SQLAlchemyAsyncRepository[WorkflowDefinitionModel]):
    """Repository for workflow definition versions."""

    model_type = WorkflowDefinitionModel

    async def get_by_key(
        self,
        definition_key: str,
        version: int | None = None,
        *,
        active_only: bool = True,
    ) -> WorkflowDefinitionModel | None:
        """Get a definition by id and optional version.

        Args:
            definition_key: The definition id.
            version: Optional specific version. If None, returns the highest version.
            active_only: If True, only return active definitions.

        Returns:
            The definition row or None if not found.
        """
        conditions = [WorkflowDefinitionModel.definition_key == definition_key]

        if version is not None:
            conditions.append(WorkflowDefinitionModel.version == version)

        if active_only:
            conditions.append(WorkflowDefinitionModel.is_active == True)  # noqa: E712

        stmt = (
            select(WorkflowDefinitionModel)
            .where(and_(*conditions))
            .order_by(WorkflowDefinitionModel.version.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_active(self) -> Sequence[WorkflowDefinitionModel]:
        stmt = (
            select(WorkflowDefinitionModel)
            .where(WorkflowDefinitionModel.is_active == True)  # noqa: E712
            .order_by(WorkflowDefinitionModel.definition_key, WorkflowDefinitionModel.version.desc())
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def deactivate_version(self, definition_key: str, version: int) -> bool:
        """Deactivate a specific definition version.

        Returns:
            True if a definition was deactivated.
        """
        definition = await self.get_by_key(definition_key, version, active_only=False)
        if definition:
            definition.is_active = False
            await self.session.flush()
            return True
        return False


class WorkflowInstanceRepository(SQLAlchemyAsyncRepository[WorkflowInstanceModel]):
    """Repository for workflow instances."""

    model_type = WorkflowInstanceModel

    async def find_instances(
        self,
        status: InstanceStatus | None = None,
        definition_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Sequence[WorkflowInstanceModel]:
        """Find instances by status and/or definition, oldest first.

        Args:
            status: Optional status filter.
            definition_id: Optional definition filter.
            limit: Maximum number of results.
            offset: Number of results to skip.

        Returns:
            Matching instances.
        """
        conditions: list[Any] = []
        if status:
            conditions.append(WorkflowInstanceModel.status == status)
        if definition_id:
            conditions.append(WorkflowInstanceModel.definition_id == definition_id)

        return await self.list(
            *conditions,
            LimitOffset(limit=limit, offset=offset),
            OrderBy(field_name="started_at", sort_order="asc"),
        )

    async def conditional_update(
        self,
        instance_id: UUID,
        allowed_statuses: Iterable[InstanceStatus],
        **values: Any,
    ) -> bool:
        """Update an instance only while its status is one of ``allowed_statuses``.

        Returns:
            True if a row was updated.
        """
        stmt = (
            update(WorkflowInstanceModel)
            .where(
                WorkflowInstanceModel.id == instance_id,
                WorkflowInstanceModel.status.in_(list(allowed_statuses)),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return bool(result.rowcount)

    async def update_if_active(self, instance_id: UUID, **values: Any) -> bool:
        """Update a non-terminal instance."""
        active = [status for status in InstanceStatus if status not in TERMINAL_STATUSES]
        return await self.conditional_update(instance_id, active, **values)


class HistoryEntryRepository(SQLAlchemyAsyncRepository[HistoryEntryModel]):
    """Repository for history entries."""

    model_type = HistoryEntryModel

    async def next_sequence(self, instance_id: UUID) -> int:
        stmt = select(func.coalesce(func.max(HistoryEntryModel.sequence), 0)).where(
            HistoryEntryModel.instance_id == instance_id
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one()) + 1

    async def find_by_instance(self, instance_id: UUID) -> Sequence[HistoryEntryModel]:
        """Return the history of an instance ordered by sequence."""
        stmt = (
            select(HistoryEntryModel)
            .where(HistoryEntryModel.instance_id == instance_id)
            .order_by(HistoryEntryModel.sequence)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()


class ScheduledTaskRepository(SQLAlchemyAsyncRepository[ScheduledTaskModel]):
    """Repository for scheduled tasks."""

    model_type = ScheduledTaskModel

    async def find_due(self, now: datetime, limit: int = 10) -> Sequence[ScheduledTaskModel]:
        """Find pending tasks due at ``now``, earliest first.

        Args:
            now: Reference time.
            limit: Maximum number of tasks.

        Returns:
            Unexecuted, non-failed tasks with ``scheduled_for <= now``.
        """
        stmt = (
            select(ScheduledTaskModel)
            .where(
                and_(
                    ScheduledTaskModel.is_executed == False,  # noqa: E712
                    ScheduledTaskModel.failed == False,  # noqa: E712
                    ScheduledTaskModel.scheduled_for <= now,
                )
            )
            .order_by(ScheduledTaskModel.scheduled_for)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def find_by_instance(self, instance_id: UUID, *, pending_only: bool = False) -> Sequence[ScheduledTaskModel]:
        conditions = [ScheduledTaskModel.instance_id == instance_id]
        if pending_only:
            conditions.append(ScheduledTaskModel.is_executed == False)  # noqa: E712
        stmt = select(ScheduledTaskModel).where(and_(*conditions)).order_by(ScheduledTaskModel.scheduled_for)
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def discard_pending(
        self,
        instance_id: UUID,
        executed_at: datetime,
        *,
        node_id: str | None = None,
        task_types: Iterable[TaskType] | None = None,
    ) -> int:
        """Mark the pending tasks of an instance as executed without running them.

        Returns:
            Number of tasks discarded.
        """
        conditions = [
            ScheduledTaskModel.instance_id == instance_id,
            ScheduledTaskModel.is_executed == False,  # noqa: E712
        ]
        if node_id is not None:
            conditions.append(ScheduledTaskModel.node_id == node_id)
        if task_types is not None:
            conditions.append(ScheduledTaskModel.task_type.in_(list(task_types)))
        stmt = (
            update(ScheduledTaskModel)
            .where(and_(*conditions))
            .values(is_executed=True, executed_at=executed_at)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return int(result.rowcount or 0)


class ApprovalRepository(SQLAlchemyAsyncRepository[ApprovalModel]):
    """Repository for approvals."""

    model_type = ApprovalModel

    async def find_pending(self, instance_id: UUID, node_id: str) -> ApprovalModel | None:
        stmt = (
            select(ApprovalModel)
            .where(
                ApprovalModel.instance_id == instance_id,
                ApprovalModel.node_id == node_id,
                ApprovalModel.status == ApprovalStatus.PENDING,
            )
            .order_by(ApprovalModel.created_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def cancel_pending(self, instance_id: UUID) -> int:
        stmt = (
            update(ApprovalModel)
            .where(ApprovalModel.instance_id == instance_id, ApprovalModel.status == ApprovalStatus.PENDING)
            .values(status=ApprovalStatus.CANCELLED)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return int(result.rowcount or 0)


class HumanTaskRepository(SQLAlchemyAsyncRepository[HumanTaskModel]):
    """Repository for tasks assigned to people."""

    model_type = HumanTaskModel

    async def find_pending(
        self, assignee_id: str | None = None, instance_id: UUID | None = None
    ) -> Sequence[HumanTaskModel]:
        """Return pending tasks, oldest first, optionally for one assignee or instance."""
        conditions = [HumanTaskModel.status == "pending"]
        if assignee_id is not None:
            conditions.append(HumanTaskModel.assignee_id == assignee_id)
        if instance_id is not None:
            conditions.append(HumanTaskModel.instance_id == instance_id)
        stmt = select(HumanTaskModel).where(and_(*conditions)).order_by(HumanTaskModel.created_at)
        result = await self.session.execute(stmt)
        return result.scalars().all()
