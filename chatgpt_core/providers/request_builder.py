from chatgpt_core.domain.conversation import Conversation
from chatgpt_core.domain.models import ChatGptOptions, ChatRequest


def build_request(conversation: Conversation, options: ChatGptOptions, stream: bool) -> ChatRequest:
    """用会话当前的消息序列和采样配置构造一次请求快照。

    消息按值拷贝成 tuple；不校验内容，空消息列表原样发出，由服务端决定是否拒绝。
    """

    return ChatRequest(
        messages=tuple(conversation.messages),
        model=options.model,
        stream=stream,
        temperature=options.temperature,
        top_p=options.top_p,
        frequency_penalty=options.frequency_penalty,
        presence_penalty=options.presence_penalty,
        stop=options.stop,
        max_tokens=options.max_tokens,
    )
