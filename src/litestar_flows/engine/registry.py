"""In-memory workflow definition registry.

The registry is the simplest :class:`~litestar_flows.core.protocols.DefinitionSource`:
definitions are kept per id and version, and lookups return the latest
version unless one is requested.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from litestar_flows.core.definition import WorkflowDefinition
from litestar_flows.exceptions import WorkflowNotFoundError

__all__ = ["WorkflowRegistry"]


class WorkflowRegistry:
    """Registry for storing and retrieving workflow definitions.

    Attributes:
        _definitions: Nested dict mapping id -> version -> WorkflowDefinition.
    """

    def __init__(self) -> None:
        self._definitions: dict[str, dict[int, WorkflowDefinition]] = {}

    def register(self, definition: WorkflowDefinition | Mapping[str, Any]) -> WorkflowDefinition:
        """Store a definition under its id and version.

        Definitions are not validated here; the engine validates before
        starting an instance.

        Args:
            definition: A definition, or its persisted mapping.

        Returns:
            The stored definition.

        Example:
            >>> registry = WorkflowRegistry()
            >>> registry.register({"id": "signup", "name": "Signup", "nodes": [...], "connections": [...]})
        """
        if not isinstance(definition, WorkflowDefinition):
            definition = WorkflowDefinition.from_dict(definition)
        self._definitions.setdefault(definition.id, {})[definition.version] = definition
        return definition

    async def get_definition(self, definition_id: str, version: int | None = None) -> WorkflowDefinition | None:
        """Fetch a definition, the latest version by default.

        Args:
            definition_id: The definition id.
            version: Optional specific version.

        Returns:
            The definition or None if it is not registered.
        """
        versions = self._definitions.get(definition_id)
        if not versions:
            return None
        if version is None:
            version = max(versions)
        return versions.get(version)

    async def require(self, definition_id: str, version: int | None = None) -> WorkflowDefinition:
        """Like :meth:`get_definition` but raises when nothing is registered.

        Raises:
            WorkflowNotFoundError: If the definition or version is unknown.
        """
        definition = await self.get_definition(definition_id, version)
        if definition is None:
            raise WorkflowNotFoundError(definition_id)
        return definition

    def list_definitions(self, *, latest_only: bool = True) -> list[WorkflowDefinition]:
        definitions: list[WorkflowDefinition] = []
        for versions in self._definitions.values():
            if latest_only:
                definitions.append(versions[max(versions)])
            else:
                definitions.extend(versions[v] for v in sorted(versions))
        return definitions

    def unregister(self, definition_id: str, version: int | None = None) -> None:
        """Remove a definition, or one version of it.

        Example:
            >>> registry.unregister("signup")
            >>> registry.unregister("signup", 2)
        """
        if definition_id not in self._definitions:
            return
        if version is None:
            del self._definitions[definition_id]
            return
        self._definitions[definition_id].pop(version, None)
        if not self._definitions[definition_id]:
            del self._definitions[definition_id]

    def has_workflow(self, definition_id: str, version: int | None = None) -> bool:
        if definition_id not in self._definitions:
            return False
        return version is None or version in self._definitions[definition_id]

    def get_versions(self, definition_id: str) -> list[int]:
        """Return the registered versions of a definition, oldest first.

        Raises:
            WorkflowNotFoundError: If the definition is unknown.
        """
        if definition_id not in self._definitions:
            raise WorkflowNotFoundError(definition_id)
        return sorted(self._definitions[definition_id])
