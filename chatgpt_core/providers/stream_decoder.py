"""流式响应（text/event-stream）的解码与累积。

服务端按行推送事件，每行形如 ``data: {json}``，以 ``data: [DONE]`` 结束，
中间可能夹杂空行作为 keep-alive。本模块分三层处理：

1. iter_stream_chunks: 惰性地把原始文本行解码成 ChatStreamChunk。
   它是一个生成器，调用方每取一条才会去读下一行，读完即止，不可重放。
2. StreamAccumulator: 按到达顺序拼接增量文本，并记住最后一条成功解码的
   增量的 id/model/created，用来合成最终的 ChatResult。
3. accumulate / decode_stream: 把前两者串起来，并在每次累积之后回调 observer。
"""

import json
import logging
from typing import Any, Callable, Dict, Iterable, Iterator, Optional
from uuid import uuid4

from chatgpt_core.domain.exceptions import ProtocolError
from chatgpt_core.domain.models import (
    DEFAULT_MODEL,
    ChatChoice,
    ChatDelta,
    ChatMessage,
    ChatResult,
    ChatStreamChoice,
    ChatStreamChunk,
    Role,
)
from chatgpt_core.infrastructure.logging.logger import logger


DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"

Observer = Callable[[str], None]


def iter_stream_chunks(lines: Iterable[str]) -> Iterator[ChatStreamChunk]:
    """将原始事件行逐条解码为 ChatStreamChunk。

    - 空行/纯空白行、以 ":" 开头的 SSE 注释行直接跳过。
    - 去掉 "data:" 前缀后若等于 [DONE]，立即结束，后续行不再读取。
    - JSON 解析失败或结构不对抛 ProtocolError；JSON null 视为空增量，跳过并记一条日志。
    """

    for line in lines:
        if not line or not line.strip():
            continue
        if line.startswith(":"):
            continue
        data_str = line
        if data_str.startswith(DATA_PREFIX):
            data_str = data_str[len(DATA_PREFIX):]
            # 规范写法是 "data: "，只去掉一个空格，保留内容本身的空白
            if data_str.startswith(" "):
                data_str = data_str[1:]
        if not data_str.strip():
            continue
        if data_str.strip() == DONE_SENTINEL:
            return
        try:
            payload = json.loads(data_str)
        except json.JSONDecodeError as e:
            raise ProtocolError(code="STREAM_DECODE_ERROR", message=f"Invalid stream chunk: {e}")
        if payload is None:
            logger.info("Skipped empty stream chunk")
            continue
        yield parse_stream_chunk(payload)


def parse_stream_chunk(data: Any) -> ChatStreamChunk:
    """解析流式响应中的单条增量。"""

    if not isinstance(data, dict):
        raise ProtocolError(code="STREAM_DECODE_ERROR", message="Stream chunk is not a JSON object")
    raw_choices = data.get("choices") or []
    if not isinstance(raw_choices, list):
        raise ProtocolError(code="STREAM_DECODE_ERROR", message="Stream chunk 'choices' is not a list")

    choices: list[ChatStreamChoice] = []
    try:
        for i, ch in enumerate(raw_choices):
            delta_payload: Dict[str, Any] = ch.get("delta") or {}
            role = delta_payload.get("role")
            choices.append(
                ChatStreamChoice(
                    index=ch.get("index", i),
                    delta=ChatDelta(
                        role=Role.parse(role) if role else None,
                        content=_content_or_none(delta_payload.get("content")),
                    ),
                    finish_reason=ch.get("finish_reason"),
                )
            )
        created = data.get("created")
        return ChatStreamChunk(
            id=data.get("id"),
            model=data.get("model"),
            created=int(created) if created is not None else None,
            choices=choices,
            raw=data,
        )
    except (AttributeError, TypeError, ValueError) as e:
        raise ProtocolError(code="STREAM_DECODE_ERROR", message=f"Malformed stream chunk: {e}")


def _content_or_none(value: Any) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    raise TypeError(f"content must be a string, got {type(value).__name__}")


class StreamAccumulator:
    """按到达顺序累积增量文本，并合成最终结果。"""

    def __init__(self):
        self._pieces: list[str] = []
        self._last: Optional[ChatStreamChunk] = None
        self._finish_reason: Optional[str] = None
        self.chunk_count = 0

    @property
    def text(self) -> str:
        return "".join(self._pieces)

    def feed(self, chunk: ChatStreamChunk) -> Optional[str]:
        """吸收一条增量；有非空白内容时返回该内容，否则返回 None。"""

        self._last = chunk
        self.chunk_count += 1
        if chunk.choices and chunk.choices[0].finish_reason:
            self._finish_reason = chunk.choices[0].finish_reason
        content = chunk.delta_content
        if not content or not content.strip():
            return None
        self._pieces.append(content)
        return content

    def result(self) -> ChatResult:
        """合成最终的 ChatResult，choices 恒有且仅有一项。"""

        last = self._last
        return ChatResult(
            id=(last.id if last and last.id else None) or str(uuid4()),
            model=(last.model if last and last.model else None) or DEFAULT_MODEL,
            created=(last.created if last and last.created is not None else 0),
            choices=[
                ChatChoice(
                    index=0,
                    message=ChatMessage(role=Role.ASSISTANT, content=self.text),
                    finish_reason=self._finish_reason,
                )
            ],
        )


def decode_stream(lines: Iterable[str], observer: Optional[Observer] = None) -> ChatResult:
    """消费整条事件流并返回合成后的 ChatResult。"""

    return accumulate(iter_stream_chunks(lines), observer)


def accumulate(
    chunks: Iterable[ChatStreamChunk],
    observer: Optional[Observer] = None,
    accumulator: Optional[StreamAccumulator] = None,
) -> ChatResult:
    """把已解码的增量累积成一个 ChatResult。

    observer 在累积更新之后同步调用，只会收到非空白的增量文本；
    observer 自身抛出的异常不做捕获，直接中断本次流。
    """

    acc = accumulator or StreamAccumulator()
    for chunk in chunks:
        delta = acc.feed(chunk)
        if delta is not None and observer is not None:
            observer(delta)
    logger.log(
        logging.INFO,
        "Stream completed",
        extra={"extra": {"chunks": acc.chunk_count, "chars": len(acc.text)}},
    )
    return acc.result()
