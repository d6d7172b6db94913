"""ChatGPT Core 顶层包。

该包提供多轮对话的 chat/completions 客户端，
包括配置加载、领域模型、请求构造、HTTP 调用、
流式事件解码与会话存储等能力。
"""

from chatgpt_core.agents.chatgpt import ChatGpt
from chatgpt_core.domain.models import ChatGptOptions

__all__ = ["ChatGpt", "ChatGptOptions"]
