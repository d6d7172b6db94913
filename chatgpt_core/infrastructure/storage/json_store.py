import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote
from uuid import uuid4

from chatgpt_core.config.settings import settings
from chatgpt_core.domain.conversation import Conversation, ConversationStore
from chatgpt_core.domain.exceptions import BusinessError
from chatgpt_core.domain.models import ChatMessage, Role


class JsonConversationStore(ConversationStore):
    """每个会话一个 JSON 文件的落盘存储。

    已读出或写入过的会话对象缓存在实例里，同一个 id 的 find 返回同一个对象，
    与内存存储的行为一致；对象上的修改仍需 upsert 才会落盘。
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._conv_root = self._root / "conversations"
        self._conv_root.mkdir(parents=True, exist_ok=True)
        self._cache: Dict[str, Conversation] = {}

    def find(self, conversation_id: str) -> Optional[Conversation]:
        cached = self._cache.get(conversation_id)
        if cached is not None:
            return cached
        path = self._path_for(conversation_id)
        if not path.exists():
            return None
        try:
            conv = self._to_conversation(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError) as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e))
        self._cache[conversation_id] = conv
        return conv

    def upsert(self, conversation: Conversation) -> None:
        path = self._path_for(conversation.id)
        tmp_path = self._conv_root / f"{path.stem}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(self._to_payload(conversation), ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))
        self._cache[conversation.id] = conversation

    def remove_by_id(self, conversation_id: str) -> None:
        self._cache.pop(conversation_id, None)
        path = self._path_for(conversation_id)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise BusinessError(code="STORE_DELETE_ERROR", message=str(e))

    def clear_all(self) -> None:
        self._cache.clear()
        for path in self._conv_root.glob("*.json"):
            try:
                path.unlink()
            except OSError as e:
                raise BusinessError(code="STORE_DELETE_ERROR", message=str(e))

    def list_all(self) -> List[Conversation]:
        items: List[Conversation] = []
        for path in self._conv_root.glob("*.json"):
            try:
                conv = self._to_conversation(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, ValueError, KeyError):
                # 损坏的文件不影响其他会话的列举
                continue
            # 已经交给调用方的对象优先，保证与 find 返回同一实例
            conv = self._cache.setdefault(conv.id, conv)
            items.append(conv)
        items.sort(key=lambda c: c.updated_at)
        return items

    def _path_for(self, conversation_id: str) -> Path:
        return self._conv_root / f"{quote(conversation_id, safe='')}.json"

    @staticmethod
    def _to_payload(conv: Conversation) -> Dict[str, Any]:
        return {
            "id": conv.id,
            "messages": [{"role": m.role.value, "content": m.content} for m in conv.messages],
            "updated_at": conv.updated_at.astimezone(timezone.utc).isoformat().replace("+00:00", "Z"),
        }

    @staticmethod
    def _to_conversation(data: Dict[str, Any]) -> Conversation:
        return Conversation(
            id=data["id"],
            messages=[
                ChatMessage(role=Role(m["role"]), content=m.get("content") or "")
                for m in data.get("messages") or []
            ],
            updated_at=datetime.fromisoformat(str(data["updated_at"]).replace("Z", "+00:00")),
        )
