"""Tests for stream framing, provider decoders and the assistant message lifecycle."""

from __future__ import annotations

import json
import logging

import pytest

from handsfree.cancel import CancelToken
from handsfree.conversation import (
    ASSISTANT, ASSISTANT_ERROR, ASSISTANT_PARTIAL, USER, ChatMessage, Conversation,
)
from handsfree.errors import CancellationUnwind, NetworkError, ProviderError
from handsfree.llm_client import (
    LLMStreamConsumer,
    StreamingProvider,
    decode_claude,
    decode_gemini,
    decode_ollama,
    decode_openai,
    iter_ndjson,
    iter_sse_data,
)


@pytest.fixture()
def logger():
    return logging.getLogger("test_llm")


class TestFraming:
    def test_sse_data_lines(self):
        lines = [b"event: delta", b'data: {"a": 1}', b"", b": keepalive", b"data:{}", b"data: [DONE]"]
        assert list(iter_sse_data(lines)) == ['{"a": 1}', "{}"]

    def test_ndjson_skips_blank_lines(self):
        assert list(iter_ndjson(['{"x": 1}', "", "  ", '{"y": 2}\r'])) == ['{"x": 1}', '{"y": 2}']


class TestDecoders:
    def test_openai(self):
        assert decode_openai({"type": "response.output_text.delta", "delta": "Hi"}) == "Hi"
        assert decode_openai({"type": "response.created"}) is None
        with pytest.raises(ProviderError):
            decode_openai({"type": "error", "error": {"message": "quota"}})

    def test_claude(self):
        event = {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hello"}}
        assert decode_claude(event) == "Hello"
        assert decode_claude({"type": "message_start"}) is None
        with pytest.raises(ProviderError):
            decode_claude({"type": "error", "error": {"message": "overloaded"}})

    def test_gemini(self):
        event = {"candidates": [{"content": {"parts": [{"text": "Bon"}, {"text": "jour"}]}}]}
        assert decode_gemini(event) == "Bonjour"
        assert decode_gemini({"candidates": []}) is None
        with pytest.raises(ProviderError):
            decode_gemini({"error": {"message": "bad key"}})

    def test_ollama(self):
        assert decode_ollama({"message": {"content": "Hey"}, "done": False}) == "Hey"
        assert decode_ollama({"done": True}) is None
        with pytest.raises(ProviderError):
            decode_ollama({"error": "model not found"})


class TestBuildRequest:
    def history(self):
        return [{"role": "user", "content": "Hi"}, {"role": "assistant", "content": "Hello"}]

    def test_ollama(self, logger):
        provider = StreamingProvider({"llm": {"provider": "ollama", "system_prompt": "Be brief."}}, logger)
        url, headers, payload, decoder, framing = provider.build_request(self.history())
        assert url == "http://127.0.0.1:11434/api/chat"
        assert payload["messages"][0] == {"role": "system", "content": "Be brief."}
        assert payload["stream"] is True
        assert framing == "ndjson"
        assert decoder is decode_ollama

    def test_claude_headers(self, logger, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "k-1")
        cfg = {"llm": {"provider": "claude", "model": "claude-x", "api_key_env": "ANTHROPIC_API_KEY"}}
        url, headers, payload, _, framing = StreamingProvider(cfg, logger).build_request(self.history())
        assert url == "https://api.anthropic.com/v1/messages"
        assert headers["x-api-key"] == "k-1"
        assert headers["anthropic-version"] == "2023-06-01"
        assert payload["messages"] == self.history()
        assert framing == "sse"

    def test_gemini_roles(self, logger, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "g-1")
        cfg = {"llm": {"provider": "gemini", "model": "gemini-x", "api_key_env": "GEMINI_API_KEY"}}
        url, _, payload, _, _ = StreamingProvider(cfg, logger).build_request(self.history())
        assert url.endswith("/models/gemini-x:streamGenerateContent?alt=sse")
        assert [c["role"] for c in payload["contents"]] == ["user", "model"]

    def test_missing_key(self, logger, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        cfg = {"llm": {"provider": "openai", "api_key_env": "OPENAI_API_KEY"}}
        with pytest.raises(ProviderError):
            StreamingProvider(cfg, logger).build_request(self.history())

    def test_unknown_provider(self, logger):
        with pytest.raises(ValueError):
            StreamingProvider({"llm": {"provider": "nope"}}, logger)


class FakeStreamResponse:
    def __init__(self, lines, status_code=200, text=""):
        self.lines = lines
        self.status_code = status_code
        self.text = text
        self.closed = False

    def iter_lines(self):
        for line in self.lines:
            if isinstance(line, Exception):
                raise line
            yield line

    def close(self):
        self.closed = True


class FakeSession:
    def __init__(self, response):
        self.response = response
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        return self.response


def ollama_lines(*parts):
    lines = [json.dumps({"message": {"content": p}, "done": False}).encode() for p in parts]
    lines.append(json.dumps({"done": True}).encode())
    return lines


class TestStreamCompletion:
    def test_streams_deltas_and_closes(self, logger):
        response = FakeStreamResponse(ollama_lines("It's", " sunny"))
        provider = StreamingProvider({"llm": {}}, logger, session=FakeSession(response))
        out = list(provider.stream_completion([{"role": "user", "content": "Weather?"}], CancelToken()))
        assert out == ["It's", " sunny"]
        assert response.closed
        assert provider.session.calls[0][1]["stream"] is True

    def test_http_error(self, logger):
        response = FakeStreamResponse([], status_code=503, text="busy")
        provider = StreamingProvider({"llm": {}}, logger, session=FakeSession(response))
        with pytest.raises(ProviderError) as exc:
            list(provider.stream_completion([], CancelToken()))
        assert exc.value.status == 503

    def test_read_error_is_network_error(self, logger):
        response = FakeStreamResponse([ollama_lines("a")[0], ConnectionError("reset")])
        provider = StreamingProvider({"llm": {}}, logger, session=FakeSession(response))
        with pytest.raises(NetworkError):
            list(provider.stream_completion([], CancelToken()))

    def test_read_error_after_cancel_unwinds(self, logger):
        token = CancelToken()

        class ClosedMidStream(FakeStreamResponse):
            def iter_lines(self):
                token.cancel()
                raise OSError("response closed")

        response = ClosedMidStream([])
        provider = StreamingProvider({"llm": {}}, logger, session=FakeSession(response))
        with pytest.raises(CancellationUnwind):
            list(provider.stream_completion([], token))
        assert response.closed


class FakeProvider:
    def __init__(self, deltas, error=None, cancel_after=None):
        self.deltas = deltas
        self.error = error
        self.cancel_after = cancel_after
        self.history = None

    def stream_completion(self, history, token):
        self.history = history
        for i, delta in enumerate(self.deltas):
            if self.cancel_after is not None and i == self.cancel_after:
                token.cancel()
            yield delta
        if self.error is not None:
            raise self.error


def conversation_with(*messages):
    conv = Conversation()
    for role, content in messages:
        conv.add(ChatMessage(role=role, content=content))
    return conv


class TestLLMStreamConsumer:
    def test_sanitized_history(self):
        messages = [
            ChatMessage(role=USER, content="one"),
            ChatMessage(role=ASSISTANT_PARTIAL, content="cut off"),
            ChatMessage(role=ASSISTANT_ERROR, content=""),
            ChatMessage(role=ASSISTANT, content="two"),
            ChatMessage(role=USER, content=""),
        ]
        assert LLMStreamConsumer.sanitized_history(messages) == [
            {"role": "user", "content": "one"}, {"role": "assistant", "content": "two"},
        ]

    def test_completed_message_role(self, logger):
        conv = conversation_with((USER, "Weather?"))
        seen = []
        consumer = LLMStreamConsumer({"llm": {}}, logger, provider=FakeProvider(["Sun", "ny."]))
        message = consumer.consume(conv, CancelToken(1), seen.append)
        assert message.role == ASSISTANT
        assert message.content == "Sunny."
        assert seen == ["Sun", "ny."]
        assert conv.messages[-1] is message

    def test_cancel_freezes_partial(self, logger):
        conv = conversation_with((USER, "Tell me a story"))
        consumer = LLMStreamConsumer({"llm": {}}, logger,
                                     provider=FakeProvider(["Once", " upon", " a time"], cancel_after=2))
        placeholder = ChatMessage(role=ASSISTANT_PARTIAL, content="")
        with pytest.raises(CancellationUnwind):
            consumer.consume(conv, CancelToken(1), lambda d: None, placeholder=placeholder)
        assert placeholder.role == ASSISTANT_PARTIAL
        assert placeholder.content == "Once upon"
        assert conv.messages[-1] is placeholder

    def test_failure_marks_error(self, logger):
        conv = conversation_with((USER, "Hi"))
        provider = FakeProvider(["Hel"], error=NetworkError("connection lost"))
        consumer = LLMStreamConsumer({"llm": {}}, logger, provider=provider)
        with pytest.raises(NetworkError):
            consumer.consume(conv, CancelToken(1), lambda d: None)
        assert conv.messages[-1].role == ASSISTANT_ERROR
        assert conv.messages[-1].content == "Hel"

    def test_history_excludes_partial_and_trims(self, logger):
        conv = conversation_with(
            (USER, "a"), (ASSISTANT, "b"), (USER, "c"), (ASSISTANT_PARTIAL, "d"), (USER, "e"),
        )
        provider = FakeProvider(["ok"])
        consumer = LLMStreamConsumer({"llm": {"max_context_messages": 3}}, logger, provider=provider)
        consumer.consume(conv, CancelToken(), lambda d: None)
        assert provider.history == [{"role": "user", "content": "c"}, {"role": "user", "content": "e"}]
