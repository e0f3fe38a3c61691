import json

import pytest

from conftest import fake_descriptor
from src.app.application.registry import ToolRegistry
from src.app.domain.exceptions import UnknownToolError


def test_resolve_returns_descriptor_or_raises() -> None:
    registry = ToolRegistry([fake_descriptor("a"), fake_descriptor("b")])

    assert registry.resolve("a").name == "a"
    with pytest.raises(UnknownToolError) as excinfo:
        registry.resolve("does-not-exist")
    assert excinfo.value.kind == "UnknownTool"


def test_list_is_lazy_and_restartable() -> None:
    registry = ToolRegistry([fake_descriptor("b"), fake_descriptor("a")])

    listing = registry.list()
    assert next(listing).name == "a"

    assert [descriptor.name for descriptor in registry.list()] == ["a", "b"]


def test_iteration_keeps_its_snapshot_across_reload() -> None:
    registry = ToolRegistry([fake_descriptor("a"), fake_descriptor("b")])

    listing = registry.list()
    next(listing)
    registry.reload([fake_descriptor("z")])

    assert [descriptor.name for descriptor in listing] == ["b"]
    assert registry.names() == ["z"]


def test_reload_reports_changes() -> None:
    registry = ToolRegistry([fake_descriptor("a"), fake_descriptor("b")])

    changes = registry.reload([fake_descriptor("b", max_concurrent_calls=2), fake_descriptor("c")])

    assert changes == {"added": ["c"], "removed": ["a"], "changed": ["b"]}
    assert "a" not in registry
    assert len(registry) == 2


def test_duplicate_names_keep_previous_table() -> None:
    registry = ToolRegistry([fake_descriptor("a")])

    with pytest.raises(ValueError):
        registry.reload([fake_descriptor("x"), fake_descriptor("x")])

    assert registry.names() == ["a"]


def test_from_file_reads_catalog(tmp_path) -> None:
    catalog = {
        "tools": [
            {
                "name": "filesystem.list",
                "transport": "stdio",
                "launch": {"command": "python3", "args": ["-m", "src.tool_servers.filesystem"]},
                "max_concurrent_calls": 4,
                "tags": ["filesystem"],
            }
        ]
    }
    path = tmp_path / "tools.json"
    path.write_text(json.dumps(catalog), encoding="utf-8")

    registry = ToolRegistry.from_file(path)

    descriptor = registry.resolve("filesystem.list")
    assert descriptor.launch.argv == ["python3", "-m", "src.tool_servers.filesystem"]
    assert descriptor.public_view() == {
        "name": "filesystem.list",
        "description": "",
        "tags": ["filesystem"],
        "transport": "stdio",
        "max_concurrent_calls": 4,
    }
