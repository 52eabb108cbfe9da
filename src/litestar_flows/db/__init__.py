"""Relational persistence for workflow instances.

Models, repositories and :class:`SQLAlchemyWorkflowStore`, built on SQLAlchemy
2 async and advanced-alchemy.
"""

from __future__ import annotations

from litestar_flows.db.models import (
    ApprovalModel,
    HistoryEntryModel,
    HumanTaskModel,
    ScheduledTaskModel,
    WorkflowDefinitionModel,
    WorkflowInstanceModel,
)
from litestar_flows.db.repositories import (
    ApprovalRepository,
    HistoryEntryRepository,
    HumanTaskRepository,
    ScheduledTaskRepository,
    WorkflowDefinitionRepository,
    WorkflowInstanceRepository,
)
from litestar_flows.db.store import DatabaseDefinitionSource, SQLAlchemyWorkflowStore

__all__ = [
    "ApprovalModel",
    "ApprovalRepository",
    "DatabaseDefinitionSource",
    "HistoryEntryModel",
    "HistoryEntryRepository",
    "HumanTaskModel",
    "HumanTaskRepository",
    "SQLAlchemyWorkflowStore",
    "ScheduledTaskModel",
    "ScheduledTaskRepository",
    "WorkflowDefinitionModel",
    "WorkflowDefinitionRepository",
    "WorkflowInstanceModel",
    "WorkflowInstanceRepository",
]
