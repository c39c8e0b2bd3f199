"""文件系统工具。

每个工具在访问磁盘之前都先经过 SecurityGuard 校验，
返回给模型的路径统一相对于工作目录展示。
"""

from __future__ import annotations

import fnmatch
import os
import threading
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field

from toolchat.tools.definitions import Tool, ToolDef, ToolParam
from toolchat.tools.security import SecurityGuard

MAX_SEARCH_RESULTS = 500


class PathArgs(BaseModel):
    path: str = Field(min_length=1)


class WriteFileArgs(BaseModel):
    path: str = Field(min_length=1)
    content: str


class SearchFilesArgs(BaseModel):
    path: str = Field(min_length=1)
    pattern: str = Field(min_length=1)


def _path_param(description: str) -> ToolParam:
    return ToolParam(name="path", description=description, required=True, schema={"type": "string"})


class _FilesystemTool(Tool):
    def __init__(self, guard: SecurityGuard):
        self._guard = guard


class ReadFileTool(_FilesystemTool):
    definition = ToolDef(
        name="read_file",
        description="Read the contents of a file",
        params={"path": _path_param("Path to the file to read")},
    )
    Arguments = PathArgs

    def execute(self, args: PathArgs, cancel: Optional[threading.Event] = None) -> str:
        path = self._guard.validate_read(args.path)
        self.check_cancelled(cancel)
        if not path.is_file():
            raise IsADirectoryError(f"'{args.path}' is not a regular file")
        return path.read_text(encoding="utf-8", errors="replace")


class WriteFileTool(_FilesystemTool):
    definition = ToolDef(
        name="write_file",
        description="Write content to a file",
        params={
            "path": _path_param("Path to the file to write"),
            "content": ToolParam(
                name="content",
                description="Content to write to the file",
                required=True,
                schema={"type": "string"},
            ),
        },
    )
    Arguments = WriteFileArgs

    def execute(self, args: WriteFileArgs, cancel: Optional[threading.Event] = None) -> str:
        path = self._guard.validate_write(args.path, args.content)
        self.check_cancelled(cancel)
        data = args.content.encode("utf-8")
        path.write_bytes(data)
        return f"Successfully wrote {len(data)} bytes to {self._guard.relative(path)}"


class ListDirectoryTool(_FilesystemTool):
    definition = ToolDef(
        name="list_directory",
        description="List files and directories in a given path",
        params={"path": _path_param("Path to the directory to list")},
    )
    Arguments = PathArgs

    def execute(self, args: PathArgs, cancel: Optional[threading.Event] = None) -> str:
        path = self._guard.validate_path(args.path)
        self.check_cancelled(cancel)
        lines = [f"Contents of {args.path}:"]
        for entry in sorted(path.iterdir(), key=lambda p: p.name):
            if entry.is_dir():
                lines.append(f"[DIR]  {entry.name}/")
                continue
            try:
                size = entry.stat().st_size
            except OSError:
                lines.append(f"[FILE] {entry.name} (size unknown)")
            else:
                lines.append(f"[FILE] {entry.name} ({size} bytes)")
        return "\n".join(lines) + "\n"


class SearchFilesTool(_FilesystemTool):
    definition = ToolDef(
        name="search_files",
        description="Search for files matching a pattern",
        params={
            "path": _path_param("Directory path to search in"),
            "pattern": ToolParam(
                name="pattern",
                description="File name pattern to search for, e.g. *.py",
                required=True,
                schema={"type": "string"},
            ),
        },
    )
    Arguments = SearchFilesArgs

    def execute(self, args: SearchFilesArgs, cancel: Optional[threading.Event] = None) -> str:
        base = self._guard.validate_path(args.path)
        if not base.is_dir():
            raise NotADirectoryError(f"'{args.path}' is not a directory")
        matches: List[str] = []
        truncated = False
        # 不可访问的子目录直接跳过，继续遍历
        for dirpath, dirnames, filenames in os.walk(base, onerror=lambda _err: None):
            self.check_cancelled(cancel)
            current = Path(dirpath)
            dirnames[:] = sorted(d for d in dirnames if not self._guard.is_restricted(current / d))
            for name in sorted(dirnames + filenames):
                if fnmatch.fnmatch(name, args.pattern):
                    matches.append(self._guard.relative(current / name))
            if len(matches) >= MAX_SEARCH_RESULTS:
                matches = matches[:MAX_SEARCH_RESULTS]
                truncated = True
                break
        if not matches:
            return f"No files matching pattern '{args.pattern}' found in {args.path}"
        lines = [f"Found {len(matches)} files matching pattern '{args.pattern}':"]
        lines.extend(f"- {m}" for m in matches)
        if truncated:
            lines.append("... truncated ...")
        return "\n".join(lines) + "\n"


class CreateDirectoryTool(_FilesystemTool):
    definition = ToolDef(
        name="create_directory",
        description="Create a new directory",
        params={"path": _path_param("Path to the directory to create")},
    )
    Arguments = PathArgs

    def execute(self, args: PathArgs, cancel: Optional[threading.Event] = None) -> str:
        path = self._guard.validate_path(args.path)
        self.check_cancelled(cancel)
        path.mkdir(parents=True, exist_ok=True)
        return f"Successfully created directory: {self._guard.relative(path)}"


def filesystem_tools(guard: SecurityGuard) -> List[Tool]:
    return [
        ReadFileTool(guard),
        WriteFileTool(guard),
        ListDirectoryTool(guard),
        SearchFilesTool(guard),
        CreateDirectoryTool(guard),
    ]
