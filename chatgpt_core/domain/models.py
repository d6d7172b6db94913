"""统一的对话与结果数据模型。

本模块定义了客户端内部共享的标准数据结构：

- ChatMessage: 一条对话消息（system/user/assistant）。
- ChatGptOptions: 每个客户端实例固定的采样配置。
- ChatRequest: 发给 chat/completions 端点的完整请求快照。
- ChatResult: 解析后的统一响应结果。
- ChatStreamChunk: 流式返回中的单条增量。

ChatCompletionsClient 只依赖这些模型，负责在 API JSON 和这些模型之间做转换。
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


DEFAULT_MODEL = "gpt-3.5-turbo"


class Role(str, Enum):
    """消息角色。

    使用封闭枚举而不是裸字符串，拼写错误会在构造时直接报错，
    而不是被远端 API 拒绝。
    """

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"

    @classmethod
    def parse(cls, value: Optional[str], default: Optional["Role"] = None) -> "Role":
        """解析响应里的 role 字段，未知值回落到 default（默认 assistant）。"""

        try:
            return cls(value)
        except ValueError:
            return default or cls.ASSISTANT


@dataclass(frozen=True)
class ChatMessage:
    """一条对话消息，既可用于请求，也可用于响应。"""

    role: Role
    content: str


@dataclass(frozen=True)
class ChatGptOptions:
    """采样配置，每个 ChatGpt 实例一份，复制进每一次请求。"""

    model: str = DEFAULT_MODEL
    temperature: float = 0.7
    top_p: float = 0.9
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    stop: Optional[Tuple[str, ...]] = None
    max_tokens: Optional[int] = None
    base_url: str = "https://api.openai.com"

    @classmethod
    def from_settings(cls, cfg) -> "ChatGptOptions":
        stop = getattr(cfg, "stop", None)
        return cls(
            model=cfg.model,
            temperature=cfg.temperature,
            top_p=cfg.top_p,
            frequency_penalty=cfg.frequency_penalty,
            presence_penalty=cfg.presence_penalty,
            stop=tuple(stop) if stop else None,
            max_tokens=getattr(cfg, "max_tokens", None),
            base_url=cfg.openai_base_url,
        )


@dataclass(frozen=True)
class ChatRequest:
    """一次完整的聊天请求快照。

    messages 是构造时会话消息的拷贝，之后会话再怎么追加消息都不会影响
    已经发出的请求。stream 决定了响应按哪种方式解码。
    """

    messages: Tuple[ChatMessage, ...]
    model: str
    stream: bool = False
    temperature: float = 0.7
    top_p: float = 0.9
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    stop: Optional[Tuple[str, ...]] = None
    max_tokens: Optional[int] = None


@dataclass
class ChatError:
    """响应体里的 error 字段。"""

    message: str
    type: Optional[str] = None
    code: Optional[str] = None


@dataclass
class ChatChoice:
    """单个候选回答（目前通常只用 index=0 的一条）。"""

    index: int
    message: ChatMessage
    finish_reason: Optional[str] = None


@dataclass
class ChatResult:
    """一次对话调用的最终结果。

    - id/model/created: 服务端返回的元数据；流式调用时取最后一条成功解码的增量。
    - choices: 一个或多个候选回答。
    - error: 服务端返回的错误信息（正常结果中为 None）。
    - raw: 原始响应 JSON，用于调试或日志记录；流式合成的结果没有 raw。
    """

    id: str
    model: str
    created: int
    choices: List[ChatChoice]
    error: Optional[ChatError] = None
    raw: Optional[dict] = None

    @property
    def content(self) -> str:
        """第一个候选的文本，没有候选时返回空串。"""

        if not self.choices:
            return ""
        return self.choices[0].message.content or ""


@dataclass
class ChatDelta:
    """流式增量里的 delta 字段，role 通常只在第一条出现。"""

    role: Optional[Role] = None
    content: Optional[str] = None


@dataclass
class ChatStreamChoice:
    """流式返回中的单个候选增量。"""

    index: int
    delta: ChatDelta
    finish_reason: Optional[str] = None


@dataclass
class ChatStreamChunk:
    """流式对话的增量结果，结构与 ChatResult 类似。

    每条 data 事件解析为一个 chunk，choice.delta 代表本次增量内容。
    """

    id: Optional[str]
    model: Optional[str]
    created: Optional[int]
    choices: List[ChatStreamChoice] = field(default_factory=list)
    raw: Optional[Dict[str, Any]] = None

    @property
    def delta_content(self) -> Optional[str]:
        if not self.choices:
            return None
        return self.choices[0].delta.content
