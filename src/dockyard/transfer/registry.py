"""Resolve ``(type, id)`` resource references to database records.

Transfers point at their source and target through a :class:`ResourceRef`
so that one record can name a standalone database or a database inside a
service stack.  Each type tag gets a loader; the pipeline never branches
on the tag itself.

Example:
    registry = ResourceRegistry()
    registry.register("database", databases.get)
    source = registry.resolve(ResourceRef("database", 42))
"""

from __future__ import annotations

from collections.abc import Callable

from dockyard.backup.models import DatabaseResource
from dockyard.core.errors import ValidationError
from dockyard.persistence import DatabaseRepository
from dockyard.transfer.models import ResourceRef

ResourceLoader = Callable[[int], DatabaseResource | None]

STANDALONE_DATABASE = "database"
SERVICE_DATABASE = "service_database"


class ResourceRegistry:
    """Type tag → loader table."""

    def __init__(self) -> None:
        self._loaders: dict[str, ResourceLoader] = {}

    def register(self, type_tag: str, loader: ResourceLoader) -> None:
        self._loaders[type_tag] = loader

    def resolve(self, ref: ResourceRef) -> DatabaseResource | None:
        """Load the record *ref* points at; ``None`` when it no longer exists.

        Raises:
            ValidationError: No loader is registered for ``ref.type``.
        """
        loader = self._loaders.get(ref.type)
        if loader is None:
            raise ValidationError(f"Unknown resource type: {ref.type}", field="type", value=ref.type)
        return loader(ref.id)

    @property
    def types(self) -> list[str]:
        return sorted(self._loaders)


def database_registry(databases: DatabaseRepository) -> ResourceRegistry:
    """Registry with both database tags backed by one repository."""
    registry = ResourceRegistry()
    registry.register(STANDALONE_DATABASE, databases.get)
    registry.register(SERVICE_DATABASE, databases.get)
    return registry


__all__ = [
    "ResourceLoader",
    "STANDALONE_DATABASE",
    "SERVICE_DATABASE",
    "ResourceRegistry",
    "database_registry",
]
