"""chat/completions 集成层。

该包下的模块负责：
- 维护进程级共享的 httpx 连接池 (http_client)。
- 由会话构造请求快照 (request_builder)。
- 发送请求并解析响应 (chat_client)。
- 流式事件的解码与累积 (stream_decoder)。
"""

from chatgpt_core.config.settings import settings
from chatgpt_core.providers.chat_client import ChatCompletionsClient


def create_client(cfg=None) -> ChatCompletionsClient:
    """根据配置创建客户端，默认取全局 settings。"""

    return ChatCompletionsClient.from_settings(cfg or settings)


__all__ = ["ChatCompletionsClient", "create_client"]
