"""
In-memory node catalog
"""

from typing import Dict, Iterable, List, Optional

import structlog

from .execution.models import NodeDefinition

logger = structlog.get_logger(__name__)


class InMemoryCatalog:
    """Catalog keyed by node type, holding every registered version"""

    def __init__(self, definitions: Optional[Iterable[NodeDefinition]] = None):
        self._definitions: Dict[str, Dict[str, NodeDefinition]] = {}
        for definition in definitions or []:
            self.register(definition)

    def register(self, definition: NodeDefinition) -> None:
        self._definitions.setdefault(definition.type, {})[definition.version] = definition
        logger.debug(
            "node_definition_registered",
            node_type=definition.type,
            version=definition.version
        )

    async def get_node_definition(
        self,
        node_type: str,
        version: Optional[str] = None
    ) -> Optional[NodeDefinition]:
        """
        Look up a definition.

        Falls back to the latest registered version when the requested
        version is unknown or not given.
        """
        versions = self._definitions.get(node_type)
        if not versions:
            return None
        if version and version in versions:
            return versions[version]
        latest = max(versions, key=_version_key)
        return versions[latest]

    def list_types(self) -> List[str]:
        return sorted(self._definitions)


def _version_key(version: str):
    parts = []
    for part in version.split("."):
        parts.append(int(part) if part.isdigit() else 0)
    return tuple(parts)
