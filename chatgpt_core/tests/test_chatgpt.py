import json
import logging
import tempfile
from pathlib import Path

import httpx
import pytest

from chatgpt_core.agents.chatgpt import ChatGpt
from chatgpt_core.domain.conversation import Conversation
from chatgpt_core.domain.exceptions import ProtocolError, TransportError, ValidationError
from chatgpt_core.domain.models import ChatGptOptions, ChatMessage, Role
from chatgpt_core.infrastructure.storage.json_store import JsonConversationStore
from chatgpt_core.infrastructure.storage.memory_store import InMemoryConversationStore
from chatgpt_core.providers.chat_client import ChatCompletionsClient


def make_chatgpt(handler, store=None):
    http = httpx.Client(transport=httpx.MockTransport(handler))
    client = ChatCompletionsClient(api_key="sk-test-key", base_url="https://api.example.com", http_client=http)
    return ChatGpt(options=ChatGptOptions(), store=store or InMemoryConversationStore(), client=client)


def reply(content):
    def handler(request):
        return httpx.Response(200, json={"id": "r", "choices": [{"message": {"role": "assistant", "content": content}}]})

    return handler


def stream_reply(*deltas):
    lines = [json.dumps({"id": "s", "choices": [{"delta": {"content": d}}]}) for d in deltas]
    body = "".join(f"data: {line}\n\n" for line in lines) + "data: [DONE]\n\n"

    def handler(request):
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body.encode("utf-8"))

    return handler


def roles(conv):
    return [m.role for m in conv.messages]


# ---- ask ----


def test_ask_appends_user_then_assistant():
    chatgpt = make_chatgpt(reply("hello!"))
    before = chatgpt.get_conversation("c1").updated_at

    answer = chatgpt.ask("hi", "c1")

    conv = chatgpt.get_conversation("c1")
    assert answer == "hello!"
    assert roles(conv) == [Role.USER, Role.ASSISTANT]
    assert [m.content for m in conv.messages] == ["hi", "hello!"]
    assert conv.updated_at >= before


def test_ask_sends_full_history():
    sent = []

    def handler(request):
        sent.append(json.loads(request.content)["messages"])
        return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

    chatgpt = make_chatgpt(handler)
    chatgpt.set_conversation_system_message("c1", "be brief")
    chatgpt.ask("one", "c1")
    chatgpt.ask("two", "c1")

    assert [m["role"] for m in sent[1]] == ["system", "user", "assistant", "user"]
    assert sent[1][-1]["content"] == "two"
    # 第一次请求的快照不受后续追加影响
    assert len(sent[0]) == 2


def test_ask_error_leaves_history_untouched():
    def handler(request):
        return httpx.Response(200, json={"error": {"message": "rate limited"}})

    chatgpt = make_chatgpt(handler)
    with pytest.raises(ProtocolError) as ei:
        chatgpt.ask("hi", "c1")
    assert ei.value.message == "rate limited"
    assert chatgpt.get_conversation("c1").messages == []


def test_ask_without_choices_returns_empty_string():
    def handler(request):
        return httpx.Response(200, json={"choices": []})

    chatgpt = make_chatgpt(handler)
    assert chatgpt.ask("hi", "c1") == ""
    conv = chatgpt.get_conversation("c1")
    assert conv.messages[-1] == ChatMessage(role=Role.ASSISTANT, content="")


def test_ask_without_conversation_id_does_not_register():
    chatgpt = make_chatgpt(reply("ok"))
    assert chatgpt.ask("hi") == "ok"
    assert chatgpt.get_conversations() == []


# ---- ask_stream ----


def test_ask_stream_callback_concatenation_equals_answer():
    chatgpt = make_chatgpt(stream_reply("Hi", " ", " there", "!"))
    seen = []

    answer = chatgpt.ask_stream(seen.append, "hello", "c1")

    assert seen == ["Hi", " there", "!"]
    assert "".join(seen) == answer == "Hi there!"


def test_ask_stream_appends_assistant_reply():
    chatgpt = make_chatgpt(stream_reply("a", "b"))
    chatgpt.ask_stream(lambda _: None, "hello", "c1")
    conv = chatgpt.get_conversation("c1")
    assert roles(conv) == [Role.USER, Role.ASSISTANT]
    assert conv.messages[-1].content == "ab"


def test_ask_stream_refused_rolls_back():
    def handler(request):
        return httpx.Response(200, json={"error": {"message": "no streaming for you"}})

    chatgpt = make_chatgpt(handler)
    with pytest.raises(ProtocolError) as ei:
        chatgpt.ask_stream(lambda _: None, "hello", "c1")
    assert ei.value.message == "no streaming for you"
    assert chatgpt.get_conversation("c1").messages == []


def test_ask_stream_callback_error_propagates_and_rolls_back():
    chatgpt = make_chatgpt(stream_reply("a", "b"))

    def callback(delta):
        raise RuntimeError("consumer failed")

    with pytest.raises(RuntimeError):
        chatgpt.ask_stream(callback, "hello", "c1")
    assert chatgpt.get_conversation("c1").messages == []


def test_iter_ask_stream_yields_deltas_then_stores_reply():
    chatgpt = make_chatgpt(stream_reply("x", "y"))
    deltas = list(chatgpt.iter_ask_stream("hello", "c1"))
    assert deltas == ["x", "y"]
    assert chatgpt.get_conversation("c1").messages[-1].content == "xy"


def test_iter_ask_stream_abandoned_rolls_back():
    chatgpt = make_chatgpt(stream_reply("x", "y"))
    gen = chatgpt.iter_ask_stream("hello", "c1")
    assert next(gen) == "x"
    gen.close()
    assert chatgpt.get_conversation("c1").messages == []


class SseBody(httpx.SyncByteStream):
    """逐段吐出事件流，可选地在末尾抛出异常，并记录是否被关闭。"""

    def __init__(self, *deltas, fail_with=None):
        self._deltas = deltas
        self._fail_with = fail_with
        self.closed = False

    def __iter__(self):
        for d in self._deltas:
            yield f"data: {json.dumps({'choices': [{'delta': {'content': d}}]})}\n\n".encode("utf-8")
        if self._fail_with is not None:
            raise self._fail_with
        yield b"data: [DONE]\n\n"

    def close(self):
        self.closed = True


def serve(body):
    def handler(request):
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, stream=body)

    return handler


def test_ask_stream_timeout_mid_stream_rolls_back():
    chatgpt = make_chatgpt(serve(SseBody("a", fail_with=httpx.ReadTimeout("timed out"))))
    seen = []

    with pytest.raises(TransportError) as ei:
        chatgpt.ask_stream(seen.append, "hello", "c1")
    assert ei.value.code == "TIMEOUT"
    assert seen == ["a"]
    assert chatgpt.get_conversation("c1").messages == []


def test_iter_ask_stream_abandoned_closes_response():
    body = SseBody("x", "y")
    chatgpt = make_chatgpt(serve(body))
    gen = chatgpt.iter_ask_stream("hello", "c1")
    assert next(gen) == "x"
    gen.close()
    assert body.closed is True


def test_iter_ask_stream_logs_completion(caplog):
    chatgpt = make_chatgpt(stream_reply("x", "y"))
    with caplog.at_level(logging.INFO, logger="chatgpt_core"):
        assert list(chatgpt.iter_ask_stream("hello", "c1")) == ["x", "y"]

    done = [r for r in caplog.records if r.getMessage() == "Stream completed"]
    assert len(done) == 1
    assert done[0].extra["chunks"] == 2
    assert done[0].extra["chars"] == 2


# ---- 落盘存储 ----


def test_json_store_ask_persists_and_failed_ask_leaves_file_untouched():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        handlers = [reply("hello!")]
        chatgpt = make_chatgpt(lambda request: handlers[-1](request), store=JsonConversationStore(root=root))

        assert chatgpt.get_conversation("X") is chatgpt.get_conversation("X")
        assert chatgpt.ask("hi", "X") == "hello!"

        stored = JsonConversationStore(root=root).find("X")
        assert [(m.role, m.content) for m in stored.messages] == [
            (Role.USER, "hi"),
            (Role.ASSISTANT, "hello!"),
        ]

        path = next((root / "conversations").glob("*.json"))
        before = path.read_text(encoding="utf-8")

        handlers.append(lambda request: httpx.Response(200, json={"error": {"message": "boom"}}))
        with pytest.raises(ProtocolError):
            chatgpt.ask("again", "X")

        assert path.read_text(encoding="utf-8") == before
        assert len(chatgpt.get_conversation("X").messages) == 2


# ---- 会话管理 ----


def test_get_conversation_none_is_fresh_and_unregistered():
    chatgpt = make_chatgpt(reply("unused"))
    a = chatgpt.get_conversation(None)
    b = chatgpt.get_conversation(None)
    assert a is not b
    assert chatgpt.get_conversations() == []


def test_get_conversation_registers_and_returns_same_instance():
    chatgpt = make_chatgpt(reply("unused"))
    first = chatgpt.get_conversation("X")
    second = chatgpt.get_conversation("X")
    assert first is second
    assert [c.id for c in chatgpt.get_conversations()] == ["X"]


def test_set_conversation_replaces_stored_entry():
    chatgpt = make_chatgpt(reply("unused"))
    chatgpt.get_conversation("c1").messages.append(ChatMessage(role=Role.USER, content="old"))

    replacement = Conversation(id="c1", messages=[ChatMessage(role=Role.USER, content="new")])
    chatgpt.set_conversation("c1", replacement)

    assert chatgpt.get_conversation("c1") is replacement
    assert len(chatgpt.get_conversations()) == 1


def test_set_conversation_adds_when_missing():
    chatgpt = make_chatgpt(reply("unused"))
    conv = Conversation(id="new")
    chatgpt.set_conversation("new", conv)
    assert chatgpt.get_conversation("new") is conv


def test_set_conversation_id_mismatch():
    chatgpt = make_chatgpt(reply("unused"))
    with pytest.raises(ValidationError):
        chatgpt.set_conversation("a", Conversation(id="b"))


def test_system_message_operations():
    chatgpt = make_chatgpt(reply("unused"))
    chatgpt.set_conversation_system_message("c1", "first")
    chatgpt.get_conversation("c1").messages.append(ChatMessage(role=Role.USER, content="q"))
    chatgpt.set_conversation_system_message("c1", "second")

    chatgpt.replace_conversation_system_message("c1", "only")
    conv = chatgpt.get_conversation("c1")
    assert [(m.role, m.content) for m in conv.messages] == [(Role.USER, "q"), (Role.SYSTEM, "only")]

    chatgpt.remove_conversation_system_messages("c1")
    assert roles(chatgpt.get_conversation("c1")) == [Role.USER]


def test_reset_remove_and_clear():
    chatgpt = make_chatgpt(reply("ok"))
    chatgpt.ask("hi", "a")
    chatgpt.ask("hi", "b")

    chatgpt.reset_conversation("a")
    assert chatgpt.get_conversation("a").messages == []
    chatgpt.reset_conversation("missing")

    chatgpt.remove_conversation("b")
    assert [c.id for c in chatgpt.get_conversations()] == ["a"]

    chatgpt.clear_conversations()
    assert chatgpt.get_conversations() == []


def test_set_conversations_replaces_all():
    chatgpt = make_chatgpt(reply("unused"))
    chatgpt.get_conversation("old")
    chatgpt.set_conversations([Conversation(id="n1"), Conversation(id="n2")])
    assert [c.id for c in chatgpt.get_conversations()] == ["n1", "n2"]


def test_options_copied_into_request():
    captured = {}

    def handler(request):
        captured["payload"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": []})

    http = httpx.Client(transport=httpx.MockTransport(handler))
    client = ChatCompletionsClient(api_key="sk-test-key", base_url="https://api.example.com", http_client=http)
    options = ChatGptOptions(model="gpt-4", temperature=0.1, top_p=0.5, stop=("END",), max_tokens=10)
    ChatGpt(options=options, client=client).ask("hi")

    payload = captured["payload"]
    assert payload["model"] == "gpt-4"
    assert payload["temperature"] == 0.1
    assert payload["top_p"] == 0.5
    assert payload["stop"] == ["END"]
    assert payload["max_tokens"] == 10
