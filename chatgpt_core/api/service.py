"""对外 API 服务模块。

提供简化的函数接口供上层应用调用，内部共用一个按配置懒加载的 ChatGpt 实例。
"""

from typing import Any, Callable, Dict, Optional

from chatgpt_core.agents.chatgpt import ChatGpt
from chatgpt_core.config.settings import settings
from chatgpt_core.domain.conversation import ConversationStore
from chatgpt_core.infrastructure.logging.logger import logger
from chatgpt_core.infrastructure.storage.json_store import JsonConversationStore
from chatgpt_core.infrastructure.storage.memory_store import InMemoryConversationStore


_store: Optional[ConversationStore] = None
_chatgpt: Optional[ChatGpt] = None


def get_default_chatgpt() -> ChatGpt:
    """获取默认的 ChatGpt 实例（单例）。"""
    global _store, _chatgpt
    if _store is None:
        if settings.conversation_store == "json":
            _store = JsonConversationStore(root=settings.storage_root)
        else:
            _store = InMemoryConversationStore()
    if _chatgpt is None:
        _chatgpt = ChatGpt(store=_store, cfg=settings)
    return _chatgpt


def ask(prompt: str, conversation_id: Optional[str] = None) -> str:
    """非流式提问。

    Args:
        prompt: 用户输入内容
        conversation_id: 会话ID（可选，不提供则使用一次性会话）

    Returns:
        助手回答文本

    Raises:
        各种 domain.exceptions 中定义的异常
    """
    try:
        return get_default_chatgpt().ask(prompt, conversation_id)
    except Exception as e:
        logger.error(f"Ask failed: {e}", extra={"extra": {
            "conversation_id": conversation_id,
            "error": str(e),
        }})
        raise


def ask_stream(
    callback: Callable[[str], None],
    prompt: str,
    conversation_id: Optional[str] = None,
) -> str:
    """流式提问，每个增量回调一次 callback，返回完整回答。"""
    try:
        return get_default_chatgpt().ask_stream(callback, prompt, conversation_id)
    except Exception as e:
        logger.error(f"Ask stream failed: {e}", extra={"extra": {
            "conversation_id": conversation_id,
            "error": str(e),
        }})
        raise


def list_conversations() -> list[Dict[str, Any]]:
    """列出所有会话。

    Returns:
        会话列表，每项包含 id, message_count, updated_at
    """
    convs = get_default_chatgpt().get_conversations()
    return [
        {
            "id": c.id,
            "message_count": len(c.messages),
            "updated_at": c.updated_at.isoformat(),
        }
        for c in convs
    ]


def get_conversation_messages(conversation_id: str) -> list[Dict[str, Any]]:
    """获取会话的所有消息，会话不存在时会新建一个空会话。"""
    conv = get_default_chatgpt().get_conversation(conversation_id)
    return [{"role": m.role.value, "content": m.content} for m in conv.messages]
