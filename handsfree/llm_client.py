"""
Streaming LLM responses.

A provider turns sanitized history into an iterator of text deltas. The
LLMStreamConsumer owns the assistant placeholder message for a turn and
decides its final role: ``assistant`` on completion, ``assistant_partial``
when the turn is cancelled, ``assistant_error`` on failure.
"""

from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Union

import requests

from handsfree.cancel import CancelToken
from handsfree.conversation import (
    ASSISTANT, ASSISTANT_ERROR, ASSISTANT_PARTIAL, USER, ChatMessage, Conversation,
)
from handsfree.errors import CancellationUnwind, NetworkError, ProviderError, StreamFailure

Line = Union[str, bytes]


# =========================
# Stream framing
# =========================

def _text(line: Line) -> str:
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    return line.rstrip("\r")


def iter_sse_data(lines: Iterable[Line]) -> Iterator[str]:
    """Yield the payload of each ``data:`` line of a server-sent event stream."""
    for raw in lines:
        if raw is None:
            continue
        line = _text(raw)
        if not line or line.startswith(":") or not line.startswith("data:"):
            continue
        payload = line[5:]
        if payload.startswith(" "):
            payload = payload[1:]
        if payload.strip() == "[DONE]":
            continue
        yield payload


def iter_ndjson(lines: Iterable[Line]) -> Iterator[str]:
    for raw in lines:
        if raw is None:
            continue
        line = _text(raw).strip()
        if line:
            yield line


# =========================
# Provider event decoders
# =========================

def _error_message(event: Dict[str, Any]) -> str:
    err = event.get("error")
    if isinstance(err, dict):
        return str(err.get("message") or err)
    if err:
        return str(err)
    return json.dumps(event)[:300]


def decode_openai(event: Dict[str, Any]) -> Optional[str]:
    kind = event.get("type")
    if kind == "response.output_text.delta":
        return event.get("delta")
    if kind in ("error", "response.failed"):
        raise ProviderError(f"OpenAI stream error: {_error_message(event.get('response', event))}")
    return None


def decode_claude(event: Dict[str, Any]) -> Optional[str]:
    kind = event.get("type")
    if kind in ("content_block_delta", "message_delta"):
        return (event.get("delta") or {}).get("text")
    if kind == "error":
        raise ProviderError(f"Claude stream error: {_error_message(event)}")
    return None


def decode_gemini(event: Dict[str, Any]) -> Optional[str]:
    if "error" in event:
        raise ProviderError(f"Gemini stream error: {_error_message(event)}")
    candidates = event.get("candidates") or []
    if not candidates:
        return None
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return "".join(p.get("text", "") for p in parts) or None


def decode_ollama(event: Dict[str, Any]) -> Optional[str]:
    if event.get("error"):
        raise ProviderError(f"Ollama error: {event['error']}")
    return (event.get("message") or {}).get("content") or None


# =========================
# Providers
# =========================

_DEFAULT_BASES = {
    "openai": "https://api.openai.com",
    "claude": "https://api.anthropic.com",
    "gemini": "https://generativelanguage.googleapis.com",
    "ollama": "http://127.0.0.1:11434",
}


class StreamingProvider:
    """One HTTP streaming chat endpoint; ``provider`` picks the wire shape."""

    def __init__(self, cfg: Dict[str, Any], logger: logging.Logger,
                 session: Optional[requests.Session] = None):
        self.cfg = cfg.get("llm", {})
        self.logger = logger
        self.session = session or requests.Session()
        self.provider = self.cfg.get("provider", "ollama")
        if self.provider not in _DEFAULT_BASES:
            raise ValueError(f"unknown llm provider: {self.provider}")
        self.model = self.cfg.get("model", "llama3.2:3b")
        self.host = (self.cfg.get("host") if self.provider == "ollama" else self.cfg.get("base_url")) \
            or _DEFAULT_BASES[self.provider]
        self.host = self.host.rstrip("/")
        self.api_key_env = self.cfg.get("api_key_env")
        self.timeout = float(self.cfg.get("timeout_s", 60.0))
        self.temperature = float(self.cfg.get("temperature", 0.7))
        self.max_tokens = int(self.cfg.get("max_tokens", 1024))
        self.system_prompt = (self.cfg.get("system_prompt") or "").strip()

    def _api_key(self) -> str:
        if not self.api_key_env:
            return ""
        key = os.environ.get(self.api_key_env, "")
        if not key:
            raise ProviderError(f"API key missing ({self.api_key_env})")
        return key

    def build_request(self, history: List[Dict[str, str]]
                      ) -> Tuple[str, Dict[str, str], Dict[str, Any], Callable, str]:
        """Returns url, headers, payload, decoder and framing ('sse' or 'ndjson')."""
        headers = {"Content-Type": "application/json"}

        if self.provider == "ollama":
            messages = ([{"role": "system", "content": self.system_prompt}] if self.system_prompt else []) + history
            payload = {
                "model": self.model,
                "messages": messages,
                "stream": True,
                "options": {"temperature": self.temperature},
            }
            return f"{self.host}/api/chat", headers, payload, decode_ollama, "ndjson"

        key = self._api_key()

        if self.provider == "openai":
            if key:
                headers["Authorization"] = f"Bearer {key}"
            payload = {
                "model": self.model,
                "input": history,
                "stream": True,
                "max_output_tokens": self.max_tokens,
            }
            if self.system_prompt:
                payload["instructions"] = self.system_prompt
            return f"{self.host}/v1/responses", headers, payload, decode_openai, "sse"

        if self.provider == "claude":
            headers["x-api-key"] = key
            headers["anthropic-version"] = "2023-06-01"
            payload = {
                "model": self.model,
                "messages": history,
                "max_tokens": self.max_tokens,
                "temperature": self.temperature,
                "stream": True,
            }
            if self.system_prompt:
                payload["system"] = self.system_prompt
            return f"{self.host}/v1/messages", headers, payload, decode_claude, "sse"

        # gemini
        headers["x-goog-api-key"] = key
        contents = [
            {"role": "model" if m["role"] == ASSISTANT else "user", "parts": [{"text": m["content"]}]}
            for m in history
        ]
        payload = {
            "contents": contents,
            "generationConfig": {"temperature": self.temperature, "maxOutputTokens": self.max_tokens},
        }
        if self.system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": self.system_prompt}]}
        url = f"{self.host}/v1beta/models/{self.model}:streamGenerateContent?alt=sse"
        return url, headers, payload, decode_gemini, "sse"

    def stream_completion(self, history: List[Dict[str, str]], token: CancelToken) -> Iterator[str]:
        url, headers, payload, decoder, framing = self.build_request(history)
        token.raise_if_cancelled()
        try:
            resp = self.session.post(url, json=payload, headers=headers, stream=True,
                                     timeout=(10.0, self.timeout))
        except requests.RequestException as e:
            if token.cancelled:
                raise CancellationUnwind() from e
            raise NetworkError(f"Could not reach {self.provider}: {e}") from e

        token.add_callback(resp.close)
        try:
            if resp.status_code != 200:
                body = resp.text[:500]
                self.logger.error("llm_http_error %s", json.dumps({
                    "provider": self.provider, "status": resp.status_code, "body": body
                }))
                raise ProviderError(f"{self.provider} returned HTTP {resp.status_code}",
                                    status=resp.status_code, body=body)

            lines = resp.iter_lines()
            payloads = iter_sse_data(lines) if framing == "sse" else iter_ndjson(lines)
            for raw in payloads:
                token.raise_if_cancelled()
                try:
                    event = json.loads(raw)
                except ValueError:
                    self.logger.debug("llm_unparsed_line %s", json.dumps({"line": raw[:200]}))
                    continue
                if not isinstance(event, dict):
                    continue
                text = decoder(event)
                if text:
                    yield text
                if framing == "ndjson" and event.get("done"):
                    break
        except (StreamFailure, CancellationUnwind):
            raise
        except Exception as e:
            # A response closed by cancel() surfaces as an arbitrary read error.
            if token.cancelled:
                raise CancellationUnwind() from e
            raise NetworkError(f"{self.provider} stream interrupted: {e}") from e
        finally:
            token.remove_callback(resp.close)
            resp.close()


# =========================
# Consumer
# =========================

class LLMStreamConsumer:
    """Drives one assistant response into a placeholder message."""

    def __init__(self, cfg: Dict[str, Any], logger: logging.Logger, provider=None):
        self.cfg = cfg.get("llm", {})
        self.logger = logger
        self.provider = provider or StreamingProvider(cfg, logger)
        self.max_context_messages = int(self.cfg.get("max_context_messages", 40))

    @staticmethod
    def sanitized_history(messages: Iterable[ChatMessage]) -> List[Dict[str, str]]:
        """Only completed user/assistant turns are sent upstream."""
        return [
            {"role": m.role, "content": m.content}
            for m in messages
            if m.role in (USER, ASSISTANT) and m.content
        ]

    def consume(self, conversation: Conversation, token: CancelToken,
                on_delta: Callable[[str], None],
                placeholder: Optional[ChatMessage] = None) -> ChatMessage:
        """Stream one response into ``placeholder`` (created if not given)."""
        history = self.sanitized_history(conversation.snapshot())
        if self.max_context_messages > 0:
            history = history[-self.max_context_messages:]
        while history and history[0]["role"] != USER:
            history.pop(0)

        if placeholder is None:
            placeholder = ChatMessage(role=ASSISTANT_PARTIAL, content="")
        placeholder.role = ASSISTANT_PARTIAL
        conversation.add(placeholder)
        parts: List[str] = []
        t0 = time.time()
        first_delta_ms = None

        stream = None
        try:
            token.raise_if_cancelled()
            stream = self.provider.stream_completion(history, token)
            for delta in stream:
                token.raise_if_cancelled()
                if first_delta_ms is None:
                    first_delta_ms = int((time.time() - t0) * 1000)
                parts.append(delta)
                placeholder.content = "".join(parts)
                on_delta(delta)
            token.raise_if_cancelled()
        except CancellationUnwind:
            placeholder.content = "".join(parts)
            self.logger.info("llm_cancelled %s", json.dumps({
                "turn": token.turn_id, "chars": len(placeholder.content)
            }))
            raise
        except StreamFailure as e:
            placeholder.role = ASSISTANT_ERROR
            placeholder.content = "".join(parts)
            self.logger.error("llm_failed %s", json.dumps({
                "turn": token.turn_id, "error": e.message, "type": type(e).__name__
            }))
            raise
        finally:
            close = getattr(stream, "close", None)
            if close:
                close()

        placeholder.role = ASSISTANT
        placeholder.content = "".join(parts)
        self.logger.info("llm_done %s", json.dumps({
            "turn": token.turn_id, "chars": len(placeholder.content),
            "first_delta_ms": first_delta_ms, "ms": int((time.time() - t0) * 1000)
        }))
        return placeholder
