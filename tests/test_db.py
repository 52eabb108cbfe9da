"""Integration tests for database persistence layer.

Tests the SQLAlchemy models, repositories, and SQLAlchemyWorkflowStore
using an async SQLite in-memory database.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import pytest

from litestar_flows.core.context import ExecutionContext
from litestar_flows.core.definition import WorkflowDefinition
from litestar_flows.core.types import (
    ApprovalStatus,
    HistoryAction,
    InstanceStatus,
    NodeType,
    TaskType,
    TriggerType,
)
from litestar_flows.db import DatabaseDefinitionSource, WorkflowInstanceRepository
from litestar_flows.exceptions import ApprovalError, InvalidTransitionError, WorkflowInstanceNotFoundError

if TYPE_CHECKING:
    from litestar_flows.core.models import WorkflowInstanceData
    from litestar_flows.db import SQLAlchemyWorkflowStore

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _definition(version: int = 1, name: str = "Expense") -> WorkflowDefinition:
    return WorkflowDefinition.from_dict(
        {
            "id": "expense",
            "name": name,
            "version": version,
            "nodes": [{"id": "start", "type": "start"}, {"id": "end", "type": "end"}],
            "connections": [{"from": "start", "to": "end"}],
        }
    )


async def _instance(store: SQLAlchemyWorkflowStore, **context: Any) -> WorkflowInstanceData:
    return await store.create_instance(
        definition_id="expense",
        context=ExecutionContext(**context),
        current_node_id="start",
        triggered_by=TriggerType.MANUAL,
        trigger_data={},
        user_id="u-1",
        started_at=NOW,
    )


# =============================================================================
# Definitions
# =============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
class TestDefinitionPersistence:
    """Tests for storing definition versions."""

    async def test_save_and_load(self, store: SQLAlchemyWorkflowStore) -> None:
        await store.save_definition(_definition(1))
        await store.save_definition(_definition(2))

        latest = await store.load_definition("expense")
        pinned = await store.load_definition("expense", version=1)

        assert latest.version == 2
        assert pinned.version == 1
        assert [node.id for node in latest.nodes] == ["start", "end"]
        assert await store.load_definition("missing") is None

    async def test_save_replaces_same_version(self, store: SQLAlchemyWorkflowStore) -> None:
        await store.save_definition(_definition(1))
        await store.save_definition(_definition(1, name="Expense claims"))

        assert (await store.load_definition("expense")).name == "Expense claims"

    async def test_deactivated_versions_are_skipped(self, store: SQLAlchemyWorkflowStore) -> None:
        """Test the latest active version is served once a newer one is deactivated."""
        await store.save_definition(_definition(1))
        await store.save_definition(_definition(2))

        assert await store.deactivate_definition("expense", 2)
        assert not await store.deactivate_definition("expense", 9)

        source = DatabaseDefinitionSource(store)
        assert (await source.get_definition("expense")).version == 1
        assert await store.load_definition("expense", version=2) is None

    async def test_saving_reactivates(self, store: SQLAlchemyWorkflowStore) -> None:
        await store.save_definition(_definition(1))
        await store.deactivate_definition("expense", 1)
        await store.save_definition(_definition(1))

        assert (await store.load_definition("expense")).version == 1


# =============================================================================
# Instances
# =============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
class TestInstancePersistence:
    """Tests for instance rows and status transitions."""

    async def test_create_instance(self, store: SQLAlchemyWorkflowStore) -> None:
        instance = await _instance(store, form_data={"amount": Decimal("12.50")})

        loaded = await store.get_instance(instance.id)

        assert loaded.status == InstanceStatus.PENDING
        assert loaded.started_at == NOW
        assert loaded.context.form_data == {"amount": Decimal("12.50")}
        assert await store.get_instance(uuid4()) is None

    async def test_allowed_transition(self, store: SQLAlchemyWorkflowStore) -> None:
        instance = await _instance(store)

        running = await store.transition(instance.id, InstanceStatus.RUNNING)
        waiting = await store.transition(instance.id, InstanceStatus.WAITING, current_node_id="review")

        assert running.status == InstanceStatus.RUNNING
        assert waiting.status == InstanceStatus.WAITING
        assert waiting.current_node_id == "review"

    @pytest.mark.parametrize(
        ("path", "target"),
        [
            ([], InstanceStatus.COMPLETED),
            ([], InstanceStatus.WAITING),
            ([InstanceStatus.RUNNING, InstanceStatus.WAITING], InstanceStatus.PAUSED),
            ([InstanceStatus.RUNNING, InstanceStatus.COMPLETED], InstanceStatus.RUNNING),
            ([InstanceStatus.CANCELLED], InstanceStatus.FAILED),
        ],
    )
    async def test_disallowed_transition(
        self, store: SQLAlchemyWorkflowStore, path: list[InstanceStatus], target: InstanceStatus
    ) -> None:
        """Test disallowed transitions raise and leave the row untouched."""
        instance = await _instance(store)
        for status in path:
            await store.transition(instance.id, status)
        before = await store.get_instance(instance.id)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await store.transition(instance.id, target)

        assert exc_info.value.to_status == target
        assert (await store.get_instance(instance.id)).status == before.status

    async def test_transition_unknown_instance(self, store: SQLAlchemyWorkflowStore) -> None:
        with pytest.raises(WorkflowInstanceNotFoundError):
            await store.transition(uuid4(), InstanceStatus.RUNNING)

    async def test_transition_values(self, store: SQLAlchemyWorkflowStore) -> None:
        instance = await _instance(store)
        await store.transition(instance.id, InstanceStatus.RUNNING)

        failed = await store.transition(
            instance.id,
            InstanceStatus.FAILED,
            failed_at=NOW,
            error_message="boom",
            error_detail={"type": "RuntimeError", "node_id": "start"},
            context=ExecutionContext(variables={"attempt": 2}),
        )

        assert failed.failed_at == NOW
        assert failed.error_detail == {"type": "RuntimeError", "node_id": "start"}
        assert failed.context.variables == {"attempt": 2}

    async def test_update_skips_terminal_instances(self, store: SQLAlchemyWorkflowStore) -> None:
        instance = await _instance(store)
        await store.update_instance(instance.id, current_node_id="review")
        assert (await store.get_instance(instance.id)).current_node_id == "review"

        await store.transition(instance.id, InstanceStatus.CANCELLED)
        await store.update_instance(instance.id, current_node_id="end")

        assert (await store.get_instance(instance.id)).current_node_id == "review"

    async def test_find_instances(self, store: SQLAlchemyWorkflowStore) -> None:
        first = await _instance(store)
        second = await _instance(store)
        await store.transition(second.id, InstanceStatus.RUNNING)

        running = await store.find_instances(status=InstanceStatus.RUNNING)
        everything = await store.find_instances(definition_id="expense")

        assert [instance.id for instance in running] == [second.id]
        assert {instance.id for instance in everything} == {first.id, second.id}
        assert await store.find_instances(definition_id="other") == []

    async def test_repository_conditional_update(self, store: SQLAlchemyWorkflowStore) -> None:
        """Test the repository only updates rows in an allowed status."""
        instance = await _instance(store)

        async with store.session_maker() as session:
            repo = WorkflowInstanceRepository(session=session)
            assert not await repo.conditional_update(
                instance.id, [InstanceStatus.RUNNING], status=InstanceStatus.COMPLETED
            )
            assert await repo.conditional_update(instance.id, [InstanceStatus.PENDING], status=InstanceStatus.RUNNING)
            await session.commit()

        assert (await store.get_instance(instance.id)).status == InstanceStatus.RUNNING


# =============================================================================
# History
# =============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
class TestHistoryPersistence:
    """Tests for the append-only history."""

    async def test_sequence_per_instance(self, store: SQLAlchemyWorkflowStore) -> None:
        first = await _instance(store)
        second = await _instance(store)

        await store.add_history(first.id, HistoryAction.ENTERED, node_id="start", node_type=NodeType.START)
        await store.add_history(second.id, HistoryAction.ENTERED, node_id="start")
        entry = await store.add_history(
            first.id,
            HistoryAction.COMPLETED,
            node_id="start",
            node_type=NodeType.START,
            output_data={"at": NOW},
            duration_ms=4,
        )

        history = await store.list_history(first.id)

        assert entry.sequence == 2
        assert [item.sequence for item in history] == [1, 2]
        assert history[0].node_type == NodeType.START
        assert history[1].output_data == {"at": NOW}
        assert history[1].duration_ms == 4
        assert [item.sequence for item in await store.list_history(second.id)] == [1]

    async def test_no_history_after_terminal(self, store: SQLAlchemyWorkflowStore) -> None:
        instance = await _instance(store)
        await store.add_history(instance.id, HistoryAction.ENTERED, node_id="start")
        await store.transition(instance.id, InstanceStatus.CANCELLED)

        assert await store.add_history(instance.id, HistoryAction.COMPLETED, node_id="start") is None
        assert len(await store.list_history(instance.id)) == 1

    async def test_unknown_instance(self, store: SQLAlchemyWorkflowStore) -> None:
        with pytest.raises(WorkflowInstanceNotFoundError):
            await store.add_history(uuid4(), HistoryAction.ENTERED)


# =============================================================================
# Scheduled tasks
# =============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
class TestTaskPersistence:
    """Tests for scheduled task rows."""

    async def test_due_tasks_earliest_first(self, store: SQLAlchemyWorkflowStore) -> None:
        instance = await _instance(store)
        late = await store.create_task(instance.id, "wait", TaskType.WAIT, NOW + timedelta(minutes=5))
        early = await store.create_task(instance.id, "wait", TaskType.TIMEOUT, NOW + timedelta(minutes=1))
        await store.create_task(instance.id, "wait", TaskType.REMINDER, NOW + timedelta(hours=1))

        due = await store.get_due_tasks(NOW + timedelta(minutes=10), limit=10)

        assert [task.id for task in due] == [early.id, late.id]
        assert await store.get_due_tasks(NOW, limit=10) == []
        assert len(await store.get_due_tasks(NOW + timedelta(minutes=10), limit=1)) == 1

    async def test_payload_and_defaults(self, store: SQLAlchemyWorkflowStore) -> None:
        instance = await _instance(store)
        task = await store.create_task(
            instance.id, "review", TaskType.ESCALATION, NOW, payload={"escalate_to": "director"}
        )

        assert task.payload == {"escalate_to": "director"}
        assert task.max_retries == store.task_max_retries
        assert task.retry_count == 0
        assert not task.is_executed

    async def test_mark_executed(self, store: SQLAlchemyWorkflowStore) -> None:
        instance = await _instance(store)
        task = await store.create_task(instance.id, "wait", TaskType.WAIT, NOW)

        await store.mark_task_executed(task.id, NOW + timedelta(seconds=1))

        stored = (await store.list_tasks(instance.id))[0]
        assert stored.is_executed
        assert stored.executed_at == NOW + timedelta(seconds=1)
        assert await store.get_due_tasks(NOW + timedelta(days=1), limit=10) == []

    async def test_failure_counting(self, store: SQLAlchemyWorkflowStore) -> None:
        instance = await _instance(store)
        task = await store.create_task(instance.id, "wait", TaskType.WAIT, NOW, max_retries=2)

        first = await store.record_task_failure(task.id, "timeout", NOW)
        second = await store.record_task_failure(task.id, "timeout again", NOW)

        assert (first.retry_count, first.failed) == (1, False)
        assert (second.retry_count, second.failed) == (2, True)
        assert second.error_message == "timeout again"
        assert await store.get_due_tasks(NOW, limit=10) == []

    async def test_discard_by_node_and_type(self, store: SQLAlchemyWorkflowStore) -> None:
        instance = await _instance(store)
        await store.create_task(instance.id, "review", TaskType.ESCALATION, NOW)
        await store.create_task(instance.id, "review", TaskType.REMINDER, NOW)
        await store.create_task(instance.id, "wait", TaskType.WAIT, NOW)

        assert await store.discard_tasks(instance.id, node_id="review", task_types=[TaskType.REMINDER]) == 1
        assert await store.discard_tasks(instance.id, node_id="review") == 1
        pending = await store.list_tasks(instance.id, pending_only=True)

        assert [task.node_id for task in pending] == ["wait"]
        assert await store.discard_tasks(instance.id) == 1
        assert len(await store.list_tasks(instance.id)) == 3


# =============================================================================
# Approvals
# =============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
class TestApprovalPersistence:
    """Tests for approval rows."""

    async def test_create_and_decide(self, store: SQLAlchemyWorkflowStore) -> None:
        instance = await _instance(store)
        approval = await store.create_approval(
            instance.id,
            "review",
            approver_type="user",
            approvers=["mgr-1"],
            options=["approve", "reject"],
            escalate_to="director",
            due_at=NOW + timedelta(hours=1),
        )

        pending = await store.get_pending_approval(instance.id, "review")
        assert pending.id == approval.id
        assert pending.status == ApprovalStatus.PENDING

        decided = await store.decide_approval(
            approval.id, decision="approve", decided_by="mgr-1", comments=None, decided_at=NOW
        )

        assert decided.status == ApprovalStatus.DECIDED
        assert decided.decided_at == NOW
        assert await store.get_pending_approval(instance.id, "review") is None

        with pytest.raises(ApprovalError, match="already decided"):
            await store.decide_approval(approval.id, decision="reject", decided_by="mgr-1", comments=None, decided_at=NOW)

    async def test_cancel_pending(self, store: SQLAlchemyWorkflowStore) -> None:
        instance = await _instance(store)
        for node_id in ("legal", "finance"):
            await store.create_approval(
                instance.id, node_id, approver_type="role", approvers=["counsel"], options=[], escalate_to=None, due_at=None
            )

        assert await store.cancel_approvals(instance.id) == 2
        assert await store.get_pending_approval(instance.id, "legal") is None
        assert await store.cancel_approvals(instance.id) == 0
