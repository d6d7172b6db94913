from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Protocol

from .models import ChatMessage


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Conversation:
    id: str
    messages: List[ChatMessage] = field(default_factory=list)
    updated_at: datetime = field(default_factory=_utcnow)

    def touch(self) -> None:
        self.updated_at = _utcnow()


class ConversationStore(Protocol):
    def find(self, conversation_id: str) -> Optional[Conversation]:
        ...

    def upsert(self, conversation: Conversation) -> None:
        ...

    def remove_by_id(self, conversation_id: str) -> None:
        ...

    def clear_all(self) -> None:
        ...

    def list_all(self) -> List[Conversation]:
        ...
