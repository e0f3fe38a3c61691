from __future__ import annotations

from pathlib import Path
from typing import Any

from src.setup.tool_server_config import FilesystemServerSettings
from src.tool_servers.server import ToolHandler, ToolInputError, main


class _Confined:
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()

    def resolve(self, relative: Any) -> Path:
        if relative is None:
            relative = "."
        if not isinstance(relative, str):
            raise ToolInputError("'path' must be a string")
        target = (self.root / relative).resolve()
        if target != self.root and not target.is_relative_to(self.root):
            raise ToolInputError(f"Path {relative!r} escapes the filesystem root")
        return target

    def display(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix() or "."


class ListFiles(_Confined, ToolHandler):
    name = "filesystem.list"
    description = "List the entries of a directory under the filesystem root."
    parameters = {"path": {"type": "string", "description": "Directory, relative to the root."}}

    def handle(self, params: dict[str, Any]) -> dict:
        directory = self.resolve(params.get("path"))
        if not directory.is_dir():
            raise ToolInputError(f"{self.display(directory)!r} is not a directory")
        entries = []
        for child in sorted(directory.iterdir(), key=lambda p: p.name):
            entries.append(
                {
                    "name": child.name,
                    "type": "directory" if child.is_dir() else "file",
                    "size": child.stat().st_size if child.is_file() else None,
                }
            )
        return {"path": self.display(directory), "entries": entries}


class ReadFile(_Confined, ToolHandler):
    name = "filesystem.read"
    description = "Read a UTF-8 text file under the filesystem root."
    parameters = {
        "path": {"type": "string", "description": "File, relative to the root."},
        "max_bytes": {"type": "integer", "description": "Truncate after this many bytes."},
    }

    def __init__(self, root: str | Path, max_bytes: int) -> None:
        super().__init__(root)
        self.max_bytes = max_bytes

    def handle(self, params: dict[str, Any]) -> dict:
        if not params.get("path"):
            raise ToolInputError("'path' is required")
        target = self.resolve(params["path"])
        if not target.is_file():
            raise ToolInputError(f"{self.display(target)!r} is not a file")
        limit = min(int(params.get("max_bytes") or self.max_bytes), self.max_bytes)
        with target.open("rb") as handle:
            data = handle.read(limit + 1)
        return {
            "path": self.display(target),
            "content": data[:limit].decode("utf-8", errors="replace"),
            "truncated": len(data) > limit,
        }


def build_handlers(settings: FilesystemServerSettings | None = None) -> list[ToolHandler]:
    settings = settings or FilesystemServerSettings()
    return [
        ListFiles(settings.FILESYSTEM_ROOT),
        ReadFile(settings.FILESYSTEM_ROOT, settings.FILESYSTEM_MAX_READ_BYTES),
    ]


if __name__ == "__main__":
    main(build_handlers())
