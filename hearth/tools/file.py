"""File tool for listing, reading and writing local files."""

import asyncio
from pathlib import Path

from hearth.logging import get_logger
from hearth.tools.registry import (
    RiskLevel,
    Tool,
    ToolContext,
    ToolParameter,
    ToolResult,
    ToolSchema,
    parse_bool_argument,
)

log = get_logger(__name__)

MAX_READ_BYTES = 100_000
MAX_LIST_ENTRIES = 500


class FileTool(Tool):
    """List directories and read or write text files."""

    name = "file"
    description = "Work with local files: list a directory, read or write a text file, or check a path exists."
    risk_level = RiskLevel.MEDIUM
    schema = ToolSchema(
        properties={
            "action": ToolParameter(
                description="What to do",
                enum=["list", "read", "write", "exists"],
            ),
            "path": ToolParameter(description="File or directory path"),
            "content": ToolParameter(description="Text to write (write only)"),
            "append": ToolParameter(type="boolean", description="Append instead of overwrite (write only)"),
            "limit": ToolParameter(type="integer", description="Maximum number of lines to read"),
            "offset": ToolParameter(type="integer", description="Line number to start reading from (1-indexed)"),
        },
        required=["action", "path"],
    )

    def __init__(self, root: Path | str | None = None):
        self.root = Path(root).expanduser().resolve() if root else None

    def _resolve(self, path: str) -> Path:
        file_path = Path(path).expanduser()
        if self.root is not None and not file_path.is_absolute():
            file_path = self.root / file_path
        file_path = file_path.resolve()
        if self.root is not None and not file_path.is_relative_to(self.root):
            raise PermissionError(f"Path is outside the allowed root: {path}")
        return file_path

    async def execute(self, arguments: dict[str, str], context: ToolContext | None = None) -> ToolResult:
        action = arguments["action"].strip()
        path = arguments["path"].strip()
        try:
            file_path = self._resolve(path)
            if action == "list":
                return await asyncio.to_thread(self._list, file_path, path)
            if action == "read":
                limit = int(float(arguments["limit"])) if arguments.get("limit") else None
                offset = int(float(arguments["offset"])) if arguments.get("offset") else None
                return await asyncio.to_thread(self._read, file_path, path, limit, offset)
            if action == "write":
                append = parse_bool_argument(arguments.get("append"))
                return await asyncio.to_thread(self._write, file_path, arguments.get("content", ""), append)
            return ToolResult(success=True, output="true" if file_path.exists() else "false")
        except (OSError, UnicodeDecodeError) as e:
            log.error("File action failed", action=action, path=path, error=str(e))
            return ToolResult(success=False, error=str(e))

    def _list(self, dir_path: Path, raw_path: str) -> ToolResult:
        if not dir_path.exists():
            return ToolResult(success=False, error=f"Directory not found: {raw_path}")
        if not dir_path.is_dir():
            return ToolResult(success=False, error=f"Not a directory: {raw_path}")

        entries = sorted(dir_path.iterdir(), key=lambda item: (not item.is_dir(), item.name.lower()))
        lines = []
        for entry in entries[:MAX_LIST_ENTRIES]:
            if entry.is_dir():
                lines.append(f"{entry.name}/")
            else:
                try:
                    size = entry.stat().st_size
                except OSError:
                    size = 0
                lines.append(f"{entry.name} ({size} bytes)")
        header = f"[{dir_path} {len(entries)} entries]"
        if len(entries) > MAX_LIST_ENTRIES:
            header += f" [showing first {MAX_LIST_ENTRIES}]"
        return ToolResult(success=True, output="\n".join([header, *lines]))

    def _read(self, file_path: Path, raw_path: str, limit: int | None, offset: int | None) -> ToolResult:
        if not file_path.exists():
            return ToolResult(success=False, error=f"File not found: {raw_path}")
        if not file_path.is_file():
            return ToolResult(success=False, error=f"Not a file: {raw_path}")

        file_size = file_path.stat().st_size
        if file_size > MAX_READ_BYTES:
            return ToolResult(
                success=False,
                error=f"File too large: {file_size} bytes (max {MAX_READ_BYTES})",
            )

        lines = file_path.read_text(encoding="utf-8").splitlines()
        if offset:
            lines = lines[offset - 1:]
        if limit:
            lines = lines[:limit]
        content = "\n".join(lines)

        info = f"[{file_path} {len(content)} chars]"
        if offset or limit:
            start = offset or 1
            info += f" [lines {start}-{start + len(lines) - 1}]"
        return ToolResult(success=True, output=f"{info}\n{content}")

    def _write(self, file_path: Path, content: str, append: bool) -> ToolResult:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        mode = "a" if append else "w"
        with open(file_path, mode, encoding="utf-8") as f:
            f.write(content)
        verb = "Appended" if append else "Wrote"
        return ToolResult(success=True, output=f"{verb} {len(content)} chars to {file_path}")
