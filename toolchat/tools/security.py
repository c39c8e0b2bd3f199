"""文件工具的安全校验。

所有文件类工具在访问磁盘前都必须经过 SecurityGuard：
路径必须位于工作目录内、不能包含受限片段，读写内容大小受限。
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple, Union

from toolchat.domain.exceptions import SecurityViolation
from toolchat.infrastructure.logging.logger import logger

MAX_FILE_SIZE = 10 * 1024 * 1024  # 10 MiB
MAX_PATH_LENGTH = 4096
RESTRICTED_PATHS: Tuple[str, ...] = (
    "/etc/passwd",
    "/etc/shadow",
    "/proc",
    "/sys",
    ".ssh",
    ".git",
    "node_modules",
)


@dataclass(frozen=True)
class SecurityPolicy:
    """只读的安全策略，构造后在整个会话中共享。"""

    root: Path = field(default_factory=Path.cwd)
    max_file_size: int = MAX_FILE_SIZE
    max_path_length: int = MAX_PATH_LENGTH
    restricted: Tuple[str, ...] = RESTRICTED_PATHS

    def __post_init__(self) -> None:
        object.__setattr__(self, "root", Path(self.root).expanduser().resolve())


class SecurityGuard:
    def __init__(self, policy: Optional[SecurityPolicy] = None):
        self.policy = policy or SecurityPolicy()

    @property
    def root(self) -> Path:
        return self.policy.root

    def validate_path(self, path: Union[str, Path]) -> Path:
        """校验路径并返回解析后的绝对路径。

        相对路径相对于策略根目录解析；`.`/`..` 与符号链接都会被展开，
        无论写法如何，只要最终落在根目录之外就拒绝。
        """

        raw = str(path) if path is not None else ""
        if not raw:
            raise self._reject("EMPTY_PATH", "path cannot be empty", raw)
        if len(raw) > self.policy.max_path_length:
            raise self._reject(
                "PATH_TOO_LONG",
                f"path too long (max {self.policy.max_path_length} characters)",
                raw,
            )
        candidate = Path(raw).expanduser()
        if not candidate.is_absolute():
            candidate = self.root / candidate
        try:
            resolved = candidate.resolve()
        except (OSError, RuntimeError) as exc:
            raise self._reject("PATH_UNRESOLVABLE", f"failed to resolve path: {exc}", raw)
        try:
            resolved.relative_to(self.root)
        except ValueError:
            raise self._reject(
                "OUTSIDE_WORKING_DIRECTORY",
                f"path '{raw}' attempts to access files outside working directory",
                raw,
            )
        if self.is_restricted(resolved):
            raise self._reject("RESTRICTED_PATH", f"access to '{raw}' is restricted", raw)
        return resolved

    def is_restricted(self, path: Path) -> bool:
        lowered = str(path).lower()
        return any(r.lower() in lowered for r in self.policy.restricted)

    def validate_size(self, size: int) -> None:
        if size > self.policy.max_file_size:
            raise SecurityViolation(
                code="FILE_TOO_LARGE",
                message=(
                    f"size {size} bytes exceeds maximum allowed size of "
                    f"{self.policy.max_file_size} bytes"
                ),
            )

    def validate_read(self, path: Union[str, Path]) -> Path:
        resolved = self.validate_path(path)
        try:
            stat = resolved.stat()
        except FileNotFoundError:
            raise self._reject("FILE_NOT_FOUND", f"file '{path}' does not exist", str(path))
        except OSError as exc:
            raise self._reject("FILE_UNREADABLE", f"cannot access file '{path}': {exc}", str(path))
        self.validate_size(stat.st_size)
        return resolved

    def validate_write(self, path: Union[str, Path], content: Union[str, bytes]) -> Path:
        resolved = self.validate_path(path)
        data = content.encode("utf-8") if isinstance(content, str) else content
        self.validate_size(len(data))
        try:
            os.makedirs(resolved.parent, exist_ok=True)
        except OSError as exc:
            raise self._reject(
                "DIRECTORY_NOT_WRITABLE",
                f"cannot create directory '{resolved.parent}': {exc}",
                str(path),
            )
        return resolved

    def relative(self, path: Path) -> str:
        try:
            return str(path.relative_to(self.root)) or "."
        except ValueError:
            return str(path)

    @staticmethod
    def _reject(code: str, message: str, raw: str) -> SecurityViolation:
        logger.warning("Security check rejected path", extra={"extra": {"code": code, "path": raw}})
        return SecurityViolation(code=code, message=message, path=raw)
