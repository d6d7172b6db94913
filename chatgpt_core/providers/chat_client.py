"""chat/completions 端点适配器。

本模块负责：

1. 将 ChatRequest 序列化为 HTTP 请求体并 POST 到 {base_url}/v1/chat/completions。
2. 校验状态码与 Content-Type，把网络/HTTP 异常包装为 TransportError。
3. 非流式：把整个响应体解析为 ChatResult。
4. 流式：把响应体逐行交给 stream_decoder，不在解码前缓冲整个 body。

请求统一用 client.stream(...) 发出，先拿到响应头再决定如何读取响应体。
"""

import json
from contextlib import closing, contextmanager
from typing import Any, Dict, Iterator, Optional

import httpx

from chatgpt_core.domain.exceptions import ProtocolError, RateLimitError, TransportError, ValidationError
from chatgpt_core.domain.models import (
    DEFAULT_MODEL,
    ChatChoice,
    ChatError,
    ChatMessage,
    ChatRequest,
    ChatResult,
    ChatStreamChunk,
    Role,
)
from chatgpt_core.providers.http_client import get_http_client
from chatgpt_core.providers.stream_decoder import Observer, accumulate, iter_stream_chunks


EVENT_STREAM_MEDIA_TYPE = "text/event-stream"
UNKNOWN_ERROR = "Unknown error"


class ChatCompletionsClient:
    """chat/completions 客户端实现。

    - send(req): 非流式调用，返回 ChatResult。
    - stream(req): 流式调用，惰性产出 ChatStreamChunk。
    - complete(req, observer): 按 req.stream 分派，流式时累积为一个 ChatResult。
    """

    name = "openai"

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str,
        timeout: float = 100.0,
        http_client: Optional[httpx.Client] = None,
    ):
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        # 未显式传入时使用进程级共享连接池
        self._http_client = http_client

    @classmethod
    def from_settings(cls, cfg, http_client: Optional[httpx.Client] = None) -> "ChatCompletionsClient":
        return cls(
            api_key=getattr(cfg, "openai_api_key", None),
            base_url=cfg.openai_base_url,
            timeout=cfg.http_timeout,
            http_client=http_client,
        )

    @property
    def url(self) -> str:
        return f"{self._base_url}/v1/chat/completions"

    def complete(self, req: ChatRequest, observer: Optional[Observer] = None) -> ChatResult:
        if req.stream:
            # 回调或解码中途出错时也要立即关闭响应，把连接还给连接池
            with closing(self.stream(req)) as chunks:
                return accumulate(chunks, observer)
        return self.send(req)

    # ---- 非流式 ----

    def send(self, req: ChatRequest) -> ChatResult:
        """执行一次非流式调用。

        响应体无法解析，或解析后 error 字段有值，均抛出 ProtocolError。
        """

        try:
            with self._open(req) as resp:
                resp.read()
        except httpx.TimeoutException as e:
            raise TransportError(code="TIMEOUT", message=str(e) or "Request timed out")
        except httpx.RequestError as e:
            raise TransportError(code="NETWORK_ERROR", message=str(e))
        data = self._load_json(resp)
        if data is None:
            raise ProtocolError(code="PROTOCOL_ERROR", message=UNKNOWN_ERROR)
        result = self._parse_response(data)
        if result.error is not None:
            raise ProtocolError(
                code="API_ERROR",
                message=result.error.message,
                error_type=result.error.type,
            )
        return result

    # ---- 流式 ----

    def stream(self, req: ChatRequest) -> Iterator[ChatStreamChunk]:
        """执行一次流式调用，逐步 yield ChatStreamChunk。

        生成器是惰性的：只有开始迭代才会发出请求。Content-Type 不是
        text/event-stream 时说明服务端拒绝流式输出，直接按错误响应处理，
        不会进入逐行解码。
        """

        try:
            with self._open(req) as resp:
                media_type = resp.headers.get("content-type", "").split(";")[0].strip().lower()
                if media_type != EVENT_STREAM_MEDIA_TYPE:
                    resp.read()
                    data = self._load_json(resp)
                    error = self._parse_error(data) if isinstance(data, dict) else None
                    raise ProtocolError(
                        code="API_ERROR",
                        message=(error.message if error else None) or UNKNOWN_ERROR,
                        content_type=media_type,
                    )
                yield from iter_stream_chunks(resp.iter_lines())
        except httpx.TimeoutException as e:
            raise TransportError(code="TIMEOUT", message=str(e) or "Request timed out")
        except httpx.RequestError as e:
            raise TransportError(code="NETWORK_ERROR", message=str(e))

    # ---- HTTP ----

    @contextmanager
    def _open(self, req: ChatRequest) -> Iterator[httpx.Response]:
        """发出请求并在读取响应体之前检查状态码。"""

        if not self._api_key:
            # 配置缺失走 ValidationError，不发任何请求
            raise ValidationError(code="MISSING_API_KEY", message="OPENAI_API_KEY not set")
        client = self._http_client or get_http_client()
        with client.stream(
            "POST",
            self.url,
            json=self._build_payload(req),
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            timeout=self._timeout,
        ) as resp:
            if not resp.is_success:
                resp.read()
                self._raise_for_status(resp)
            yield resp

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        body = resp.text
        if resp.status_code == 429:
            # 限流同样不重试，交给调用方决定退避
            raise RateLimitError(code="RATE_LIMIT", message=body or "Rate limited", http_status=429)
        raise TransportError(
            code="HTTP_ERROR",
            message=body or f"HTTP {resp.status_code}",
            http_status=resp.status_code,
        )

    def _build_payload(self, req: ChatRequest) -> Dict[str, Any]:
        """将 ChatRequest 转成请求 JSON；stop/max_tokens 为 None 时不发送。"""

        payload: Dict[str, Any] = {
            "messages": [{"role": m.role.value, "content": m.content} for m in req.messages],
            "model": req.model,
            "stream": req.stream,
            "temperature": req.temperature,
            "top_p": req.top_p,
            "frequency_penalty": req.frequency_penalty,
            "presence_penalty": req.presence_penalty,
        }
        if req.stop:
            payload["stop"] = list(req.stop)
        if req.max_tokens is not None:
            payload["max_tokens"] = req.max_tokens
        return payload

    # ---- 解析 ----

    @staticmethod
    def _load_json(resp: httpx.Response) -> Any:
        try:
            return json.loads(resp.content or b"null")
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None

    def _parse_response(self, data: Any) -> ChatResult:
        """将原始响应 JSON 解析为统一的 ChatResult。"""

        if not isinstance(data, dict):
            raise ProtocolError(code="PROTOCOL_ERROR", message=UNKNOWN_ERROR)
        try:
            choices: list[ChatChoice] = []
            for i, ch in enumerate(data.get("choices") or []):
                msg = ch.get("message") or {}
                content = msg.get("content")
                if content is not None and not isinstance(content, str):
                    raise TypeError(f"content must be a string, got {type(content).__name__}")
                choices.append(
                    ChatChoice(
                        index=ch.get("index", i),
                        message=ChatMessage(
                            role=Role.parse(msg.get("role")),
                            content=content or "",
                        ),
                        finish_reason=ch.get("finish_reason"),
                    )
                )
            return ChatResult(
                id=data.get("id") or "",
                model=data.get("model") or DEFAULT_MODEL,
                created=int(data.get("created") or 0),
                choices=choices,
                error=self._parse_error(data),
                raw=data,
            )
        except (AttributeError, TypeError, ValueError) as e:
            raise ProtocolError(code="PROTOCOL_ERROR", message=f"Malformed response: {e}")

    @staticmethod
    def _parse_error(data: Dict[str, Any]) -> Optional[ChatError]:
        raw = data.get("error")
        if not raw:
            return None
        if isinstance(raw, str):
            return ChatError(message=raw)
        if isinstance(raw, dict):
            return ChatError(
                message=raw.get("message") or UNKNOWN_ERROR,
                type=raw.get("type"),
                code=raw.get("code"),
            )
        return ChatError(message=UNKNOWN_ERROR)
