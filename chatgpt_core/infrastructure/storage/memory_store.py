from typing import Dict, List, Optional

from chatgpt_core.domain.conversation import Conversation, ConversationStore


class InMemoryConversationStore(ConversationStore):
    """进程内会话存储，按插入顺序保存，find 返回的就是存储的那个实例。"""

    def __init__(self, conversations: Optional[List[Conversation]] = None):
        self._items: Dict[str, Conversation] = {}
        for conv in conversations or []:
            self.upsert(conv)

    def find(self, conversation_id: str) -> Optional[Conversation]:
        return self._items.get(conversation_id)

    def upsert(self, conversation: Conversation) -> None:
        # 已存在的 id 原位替换引用，保持原有顺序
        self._items[conversation.id] = conversation

    def remove_by_id(self, conversation_id: str) -> None:
        self._items.pop(conversation_id, None)

    def clear_all(self) -> None:
        self._items.clear()

    def list_all(self) -> List[Conversation]:
        return list(self._items.values())
