import json
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import List
from uuid import uuid4

from toolchat.domain.exceptions import BusinessError, ValidationError
from toolchat.domain.models import ChatMessage, messages_from_payload, messages_to_payload

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


class JsonHistoryStore:
    """按名称保存 / 加载对话历史快照，每个快照一个 JSON 文件。"""

    def __init__(self, root: str | Path):
        self._root = Path(root).resolve()
        self._hist_root = self._root / "histories"
        self._hist_root.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def default_name() -> str:
        return datetime.now(timezone.utc).strftime("%Y-%m-%d_%H-%M-%S")

    def save(self, name: str, messages: List[ChatMessage]) -> Path:
        path = self._path(name)
        obj = {
            "name": name,
            "saved_at": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "messages": messages_to_payload(messages),
        }
        tmp_path = self._hist_root / f"{name}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False, indent=2), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))
        return path

    def load(self, name: str) -> List[ChatMessage]:
        path = self._path(name)
        if not path.exists():
            raise BusinessError(code="HISTORY_NOT_FOUND", message=f"history '{name}' not found", http_status=404)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e))
        return messages_from_payload(data.get("messages") or [])

    def list_names(self) -> List[str]:
        return sorted(p.stem for p in self._hist_root.glob("*.json"))

    def delete(self, name: str) -> None:
        path = self._path(name)
        if not path.exists():
            raise BusinessError(code="HISTORY_NOT_FOUND", message=f"history '{name}' not found", http_status=404)
        try:
            path.unlink()
        except OSError as e:
            raise BusinessError(code="STORE_DELETE_ERROR", message=str(e))

    def delete_all(self) -> int:
        names = self.list_names()
        for name in names:
            self.delete(name)
        return len(names)

    def _path(self, name: str) -> Path:
        if not _NAME_RE.match(name or "") or name.endswith(".tmp"):
            raise ValidationError(code="INVALID_HISTORY_NAME", message=f"invalid history name: {name!r}")
        return self._hist_root / f"{name}.json"
