from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

from src.app.domain.exceptions import UnknownToolError
from src.app.domain.models.tool_descriptor import ToolCatalog, ToolDescriptor

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Registry mapping tool names to backend descriptors.

    The table is an immutable mapping; :meth:`reload` builds a new one and
    swaps the reference in a single assignment, so readers see either the old
    table or the new one, never a mix.
    """

    def __init__(self, descriptors: Iterable[ToolDescriptor] = ()) -> None:
        self._table: Mapping[str, ToolDescriptor] = self._build(descriptors)

    @classmethod
    def from_file(cls, path: str | Path) -> "ToolRegistry":
        registry = cls()
        registry.reload_from_file(path)
        return registry

    def resolve(self, tool_name: str) -> ToolDescriptor:
        try:
            return self._table[tool_name]
        except KeyError as exc:
            raise UnknownToolError(tool_name) from exc

    def list(self) -> Iterator[ToolDescriptor]:
        table = self._table
        for name in sorted(table):
            yield table[name]

    def names(self) -> list[str]:
        return sorted(self._table)

    def __contains__(self, tool_name: object) -> bool:
        return tool_name in self._table

    def __len__(self) -> int:
        return len(self._table)

    def reload(self, descriptors: Iterable[ToolDescriptor]) -> dict[str, list[str]]:
        """Atomically replace the table; return which names changed."""
        new_table = self._build(descriptors)
        old_table = self._table
        self._table = new_table
        changes = {
            "added": sorted(set(new_table) - set(old_table)),
            "removed": sorted(set(old_table) - set(new_table)),
            "changed": sorted(
                name
                for name in set(new_table) & set(old_table)
                if new_table[name] != old_table[name]
            ),
        }
        logger.info("Tool registry reloaded", extra={"count": len(new_table), **changes})
        return changes

    def reload_from_file(self, path: str | Path) -> dict[str, list[str]]:
        catalog = ToolCatalog.model_validate_json(Path(path).read_text(encoding="utf-8"))
        return self.reload(catalog.tools)

    @staticmethod
    def _build(descriptors: Iterable[ToolDescriptor]) -> Mapping[str, ToolDescriptor]:
        table: dict[str, ToolDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.name in table:
                raise ValueError(f"Duplicate tool name {descriptor.name!r} in catalog")
            table[descriptor.name] = descriptor
        return MappingProxyType(table)
