"""In-process registry of workflow definitions."""

from __future__ import annotations

import importlib
import logging
from typing import Dict, Iterable, List, Optional

from ..errors import DefinitionNotFoundError, DuplicateDefinitionError
from .models import WorkflowDefinition

logger = logging.getLogger(__name__)


class WorkflowDefinitionRegistry:
    """Resolve ``(definition_key, version)`` pairs to definitions."""

    def __init__(self, definitions: Iterable[WorkflowDefinition] = ()) -> None:
        self._definitions: Dict[str, Dict[str, WorkflowDefinition]] = {}
        for definition in definitions:
            self.register(definition)

    def register(
        self, definition: WorkflowDefinition, replace: bool = False
    ) -> WorkflowDefinition:
        versions = self._definitions.setdefault(definition.key, {})
        version = str(definition.version)
        if version in versions and not replace:
            raise DuplicateDefinitionError(definition.key, version)
        versions[version] = definition
        logger.debug(f"Registered workflow definition {definition.key}@{version}")
        return definition

    def get(self, key: str, version: Optional[str] = None) -> WorkflowDefinition:
        if version is None:
            return self.get_latest(key)
        try:
            return self._definitions[key][version]
        except KeyError:
            raise DefinitionNotFoundError(key, version) from None

    def get_latest(self, key: str) -> WorkflowDefinition:
        versions = self._definitions.get(key)
        if not versions:
            raise DefinitionNotFoundError(key)
        return max(
            versions.values(),
            key=lambda d: d.version.as_tuple(),
        )

    def list_definitions(self) -> List[WorkflowDefinition]:
        return [d for versions in self._definitions.values() for d in versions.values()]


def load_registry(target: str) -> WorkflowDefinitionRegistry:
    """Import definitions from ``module:attribute``.

    The attribute may be a registry, a single definition or an iterable of
    definitions.
    """
    module_name, _, attribute = target.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Expected 'module:attribute', got '{target}'")
    module = importlib.import_module(module_name)
    value = getattr(module, attribute)
    if isinstance(value, WorkflowDefinitionRegistry):
        return value
    if isinstance(value, WorkflowDefinition):
        return WorkflowDefinitionRegistry([value])
    return WorkflowDefinitionRegistry(value)
