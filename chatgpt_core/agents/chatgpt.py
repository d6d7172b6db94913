"""多轮对话编排。

ChatGpt 把会话存储、请求构造与 chat/completions 客户端串起来，对外提供：

- ask: 非流式提问，返回完整回答。
- ask_stream: 流式提问，每个非空白增量回调一次，返回完整回答。
- iter_ask_stream: 与 ask_stream 相同，但以生成器形式逐个产出增量。

三者都会先把用户消息追加进会话，成功后再追加助手回答；调用失败时撤回
本次追加的用户消息，会话保持调用前的样子。

同一个会话 id 上的并发调用没有加锁，调用方需要自行串行化。
"""

import logging
import time
from contextlib import closing, contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional
from uuid import uuid4

from chatgpt_core.config.settings import settings
from chatgpt_core.domain.conversation import Conversation, ConversationStore
from chatgpt_core.domain.exceptions import ValidationError
from chatgpt_core.domain.models import ChatGptOptions, ChatMessage, ChatRequest, ChatResult, Role
from chatgpt_core.infrastructure.logging.logger import logger
from chatgpt_core.infrastructure.storage.memory_store import InMemoryConversationStore
from chatgpt_core.providers.chat_client import ChatCompletionsClient
from chatgpt_core.providers.request_builder import build_request
from chatgpt_core.providers.stream_decoder import StreamAccumulator


class ChatGpt:
    def __init__(
        self,
        api_key: Optional[str] = None,
        options: Optional[ChatGptOptions] = None,
        store: Optional[ConversationStore] = None,
        client: Optional[ChatCompletionsClient] = None,
        cfg=settings,
        timeout: Optional[float] = None,
    ):
        self.session_id = uuid4()
        self._options = options or ChatGptOptions.from_settings(cfg)
        self._store = store if store is not None else InMemoryConversationStore()
        self._client = client or ChatCompletionsClient(
            api_key=api_key or getattr(cfg, "openai_api_key", None),
            base_url=self._options.base_url,
            timeout=timeout or cfg.http_timeout,
        )

    @property
    def options(self) -> ChatGptOptions:
        return self._options

    # ---- 提问 ----

    def ask(self, prompt: str, conversation_id: Optional[str] = None) -> str:
        """非流式提问，返回第一个候选的文本（没有候选时为空串）。"""

        conv, user_msg, log_ctx = self._begin(prompt, conversation_id)
        with self._rollback_on_error(conv, user_msg, log_ctx):
            result = self.send_message(build_request(conv, self._options, stream=False), log_ctx=log_ctx)
        return self._finish(conv, conversation_id, result.content, log_ctx)

    def ask_stream(
        self,
        callback: Callable[[str], None],
        prompt: str,
        conversation_id: Optional[str] = None,
    ) -> str:
        """流式提问。

        callback 对每个非空白增量同步调用一次，按到达顺序；所有回调内容拼起来
        就是返回值。callback 抛出的异常会中断本次调用。
        """

        conv, user_msg, log_ctx = self._begin(prompt, conversation_id)
        with self._rollback_on_error(conv, user_msg, log_ctx):
            result = self.send_message(
                build_request(conv, self._options, stream=True),
                callback,
                log_ctx=log_ctx,
            )
        return self._finish(conv, conversation_id, result.content, log_ctx)

    def iter_ask_stream(self, prompt: str, conversation_id: Optional[str] = None) -> Iterator[str]:
        """流式提问的生成器版本，逐个产出非空白增量。

        只有完整迭代结束后才会把回答写回会话；中途放弃迭代视为失败，
        已累积的部分文本丢弃，用户消息撤回。
        """

        conv, user_msg, log_ctx = self._begin(prompt, conversation_id)
        acc = StreamAccumulator()
        with self._rollback_on_error(conv, user_msg, log_ctx):
            req = build_request(conv, self._options, stream=True)
            self._log(logging.INFO, "Calling provider (stream)", log_ctx, model=req.model, message_count=len(req.messages))
            with closing(self._client.stream(req)) as chunks:
                for chunk in chunks:
                    delta = acc.feed(chunk)
                    if delta is not None:
                        yield delta
        self._log(logging.INFO, "Stream completed", log_ctx, chunks=acc.chunk_count, chars=len(acc.text))
        self._finish(conv, conversation_id, acc.result().content, log_ctx)

    def send_message(
        self,
        req: ChatRequest,
        callback: Optional[Callable[[str], None]] = None,
        log_ctx: Optional[Dict[str, Any]] = None,
    ) -> ChatResult:
        """发送一次请求；req.stream 为 True 时逐个增量回调 callback。"""

        log_ctx = log_ctx if log_ctx is not None else {"call_id": f"tr-{uuid4().hex}"}
        start_time = time.time()
        self._log(
            logging.INFO,
            "Calling provider (stream)" if req.stream else "Calling provider",
            log_ctx,
            model=req.model,
            message_count=len(req.messages),
        )
        result = self._client.complete(req, callback)
        self._log(
            logging.INFO,
            "Provider returned",
            log_ctx,
            response_id=result.id,
            elapsed_seconds=round(time.time() - start_time, 2),
        )
        return result

    # ---- 会话管理 ----

    def get_conversation(self, conversation_id: Optional[str]) -> Conversation:
        """按 id 取会话。

        id 为 None 时返回一个不登记的临时会话；id 不存在时新建并登记。
        """

        if conversation_id is None:
            return Conversation(id=f"c-{uuid4().hex}")
        conv = self._store.find(conversation_id)
        if conv is not None:
            return conv
        conv = Conversation(id=conversation_id)
        self._store.upsert(conv)
        self._log(logging.INFO, "Created new conversation", {"conversation_id": conversation_id})
        return conv

    def get_conversations(self) -> List[Conversation]:
        return self._store.list_all()

    def set_conversations(self, conversations: List[Conversation]) -> None:
        self._store.clear_all()
        for conv in conversations:
            self._store.upsert(conv)

    def set_conversation(self, conversation_id: str, conversation: Conversation) -> None:
        """用 conversation 替换存储中同 id 的会话，不存在则新增。"""

        if conversation.id != conversation_id:
            raise ValidationError(
                code="CONVERSATION_ID_MISMATCH",
                message=f"{conversation.id!r} != {conversation_id!r}",
            )
        self._store.upsert(conversation)

    def remove_conversation(self, conversation_id: str) -> None:
        self._store.remove_by_id(conversation_id)

    def reset_conversation(self, conversation_id: str) -> None:
        """清空会话的消息，会话本身保留；不存在时什么也不做。"""

        conv = self._store.find(conversation_id)
        if conv is None:
            return
        conv.messages = []
        self._store.upsert(conv)

    def clear_conversations(self) -> None:
        self._store.clear_all()

    def set_conversation_system_message(self, conversation_id: str, message: str) -> None:
        conv = self.get_conversation(conversation_id)
        conv.messages.append(ChatMessage(role=Role.SYSTEM, content=message))
        self._store.upsert(conv)

    def replace_conversation_system_message(self, conversation_id: str, message: str) -> None:
        """删除会话里所有 system 消息，再追加一条新的。"""

        conv = self.get_conversation(conversation_id)
        conv.messages = [m for m in conv.messages if m.role is not Role.SYSTEM]
        conv.messages.append(ChatMessage(role=Role.SYSTEM, content=message))
        self._store.upsert(conv)

    def remove_conversation_system_messages(self, conversation_id: str) -> None:
        conv = self.get_conversation(conversation_id)
        conv.messages = [m for m in conv.messages if m.role is not Role.SYSTEM]
        self._store.upsert(conv)

    # ---- 内部 ----

    def _begin(self, prompt: str, conversation_id: Optional[str]):
        conv = self.get_conversation(conversation_id)
        user_msg = ChatMessage(role=Role.USER, content=prompt)
        conv.messages.append(user_msg)
        log_ctx: Dict[str, Any] = {
            "call_id": f"tr-{uuid4().hex}",
            "conversation_id": conversation_id,
        }
        return conv, user_msg, log_ctx

    def _finish(
        self,
        conv: Conversation,
        conversation_id: Optional[str],
        content: str,
        log_ctx: Dict[str, Any],
    ) -> str:
        conv.messages.append(ChatMessage(role=Role.ASSISTANT, content=content))
        conv.touch()
        # 临时会话不写回存储
        if conversation_id is not None:
            self._store.upsert(conv)
        self._log(
            logging.INFO,
            "Stored assistant message",
            log_ctx,
            message_count=len(conv.messages),
        )
        return content

    @contextmanager
    def _rollback_on_error(self, conv: Conversation, user_msg: ChatMessage, log_ctx: Dict[str, Any]):
        try:
            yield
        except BaseException as e:
            # 按身份撤回本次追加的那条用户消息
            for i in range(len(conv.messages) - 1, -1, -1):
                if conv.messages[i] is user_msg:
                    del conv.messages[i]
                    break
            self._log(logging.WARNING, "Call failed, user message rolled back", log_ctx, error=repr(e))
            raise

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
