from __future__ import annotations

"""Chat-model clients and structured-output parsing."""

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, AsyncIterator, Protocol, Sequence

import httpx

from ragchat.rag.errors import FailureKind, GenerationFormatError, LLMError, failure_kind_for_status
from ragchat.rag.types import ConversationTurn

logger = logging.getLogger(__name__)

_JSON_OBJECT_RE = re.compile(r"\{.*\}", flags=re.DOTALL)
_JSON_ARRAY_RE = re.compile(r"\[.*\]", flags=re.DOTALL)


class ChatModel(Protocol):
    """Protocol for language-model chat endpoints."""

    async def complete(
        self, messages: Sequence[ConversationTurn], *, json_mode: bool = False
    ) -> str:
        """Return the full text of one completion."""
        raise NotImplementedError

    def stream(
        self, messages: Sequence[ConversationTurn], *, json_mode: bool = False
    ) -> AsyncIterator[str]:
        """Yield completion text fragments as they arrive."""
        raise NotImplementedError


def _as_payload(messages: Sequence[ConversationTurn]) -> list[dict[str, str]]:
    return [{"role": turn.role, "content": turn.content} for turn in messages]


def _status_error(response: httpx.Response) -> LLMError:
    logger.warning("llm_request_rejected", extra={"status": response.status_code})
    return LLMError(
        f"LLM request failed with status {response.status_code}",
        kind=failure_kind_for_status(response.status_code),
    )


@dataclass(frozen=True)
class OllamaChatModel:
    """Chat model backed by the Ollama chat API."""
    base_url: str
    model: str
    temperature: float
    max_tokens: int
    timeout: float

    def _payload(
        self, messages: Sequence[ConversationTurn], json_mode: bool, stream: bool
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": _as_payload(messages),
            "stream": stream,
            "options": {
                "temperature": self.temperature,
                "num_predict": self.max_tokens,
            },
        }
        if json_mode:
            payload["format"] = "json"
        return payload

    async def complete(
        self, messages: Sequence[ConversationTurn], *, json_mode: bool = False
    ) -> str:
        """Return a completion from the Ollama chat API."""
        payload = self._payload(messages, json_mode, stream=False)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(f"{self.base_url}/api/chat", json=payload)
                if response.status_code >= 400:
                    raise _status_error(response)
                data = response.json()
        except httpx.HTTPError as exc:
            raise LLMError(str(exc), kind=FailureKind.UNAVAILABLE) from exc
        message = data.get("message") or {}
        content = message.get("content")
        if not isinstance(content, str):
            raise LLMError("Invalid LLM response", kind=FailureKind.INVALID)
        return content

    async def stream(
        self, messages: Sequence[ConversationTurn], *, json_mode: bool = False
    ) -> AsyncIterator[str]:
        """Stream NDJSON message fragments from the Ollama chat API."""
        payload = self._payload(messages, json_mode, stream=True)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                async with client.stream(
                    "POST", f"{self.base_url}/api/chat", json=payload
                ) as response:
                    if response.status_code >= 400:
                        raise _status_error(response)
                    async for line in response.aiter_lines():
                        if not line.strip():
                            continue
                        data = json.loads(line)
                        fragment = (data.get("message") or {}).get("content")
                        if fragment:
                            yield fragment
                        if data.get("done"):
                            break
        except httpx.HTTPError as exc:
            raise LLMError(str(exc), kind=FailureKind.UNAVAILABLE) from exc
        except json.JSONDecodeError as exc:
            raise LLMError("Invalid LLM stream chunk", kind=FailureKind.UNAVAILABLE) from exc


@dataclass(frozen=True)
class OpenAIChatModel:
    """Chat model backed by OpenAI-compatible chat completions."""
    api_key: str
    base_url: str
    model: str
    temperature: float
    max_tokens: int
    timeout: float

    def _payload(
        self, messages: Sequence[ConversationTurn], json_mode: bool, stream: bool
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": _as_payload(messages),
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": stream,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        return payload

    @property
    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def complete(
        self, messages: Sequence[ConversationTurn], *, json_mode: bool = False
    ) -> str:
        """Return a completion from OpenAI chat completions."""
        payload = self._payload(messages, json_mode, stream=False)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    json=payload,
                    headers=self._headers,
                )
                if response.status_code >= 400:
                    raise _status_error(response)
                data = response.json()
        except httpx.HTTPError as exc:
            raise LLMError(str(exc), kind=FailureKind.UNAVAILABLE) from exc

        choices = data.get("choices") or []
        if not choices:
            raise LLMError("Invalid OpenAI response", kind=FailureKind.INVALID)
        message = choices[0].get("message") or {}
        content = message.get("content")
        if not isinstance(content, str):
            raise LLMError("Invalid OpenAI response content", kind=FailureKind.INVALID)
        return content

    async def stream(
        self, messages: Sequence[ConversationTurn], *, json_mode: bool = False
    ) -> AsyncIterator[str]:
        """Stream server-sent completion deltas."""
        payload = self._payload(messages, json_mode, stream=True)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                async with client.stream(
                    "POST",
                    f"{self.base_url}/chat/completions",
                    json=payload,
                    headers=self._headers,
                ) as response:
                    if response.status_code >= 400:
                        raise _status_error(response)
                    async for line in response.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        body = line[len("data:"):].strip()
                        if body == "[DONE]":
                            break
                        data = json.loads(body)
                        choices = data.get("choices") or []
                        if not choices:
                            continue
                        fragment = (choices[0].get("delta") or {}).get("content")
                        if fragment:
                            yield fragment
        except httpx.HTTPError as exc:
            raise LLMError(str(exc), kind=FailureKind.UNAVAILABLE) from exc
        except json.JSONDecodeError as exc:
            raise LLMError("Invalid OpenAI stream chunk", kind=FailureKind.UNAVAILABLE) from exc


@dataclass(frozen=True)
class GeminiChatModel:
    """Chat model backed by Gemini generative models."""
    api_key: str
    model: str
    temperature: float
    max_tokens: int
    timeout: float

    def _contents(self, messages: Sequence[ConversationTurn]) -> tuple[str, list[dict[str, Any]]]:
        system_parts = [turn.content for turn in messages if turn.role == "system"]
        contents = [
            {"role": "model" if turn.role == "assistant" else "user", "parts": [turn.content]}
            for turn in messages
            if turn.role != "system"
        ]
        return "\n\n".join(system_parts), contents

    async def complete(
        self, messages: Sequence[ConversationTurn], *, json_mode: bool = False
    ) -> str:
        """Return a completion from Gemini."""
        import google.generativeai as genai
        from google.api_core import exceptions as google_exceptions

        system_instruction, contents = self._contents(messages)
        config: dict[str, Any] = {
            "temperature": self.temperature,
            "max_output_tokens": self.max_tokens,
        }
        if json_mode:
            config["response_mime_type"] = "application/json"

        def _run() -> str:
            genai.configure(api_key=self.api_key)
            model = genai.GenerativeModel(
                self.model, system_instruction=system_instruction or None
            )
            response = model.generate_content(contents, generation_config=config)
            return getattr(response, "text", "") or ""

        try:
            return await asyncio.wait_for(asyncio.to_thread(_run), timeout=self.timeout)
        except google_exceptions.ResourceExhausted as exc:
            raise LLMError(str(exc), kind=FailureKind.RATE_LIMITED) from exc
        except google_exceptions.InvalidArgument as exc:
            raise LLMError(str(exc), kind=FailureKind.INVALID) from exc
        except (google_exceptions.GoogleAPIError, asyncio.TimeoutError) as exc:
            raise LLMError(str(exc), kind=FailureKind.UNAVAILABLE) from exc

    async def stream(
        self, messages: Sequence[ConversationTurn], *, json_mode: bool = False
    ) -> AsyncIterator[str]:
        """Yield the whole Gemini completion as a single fragment."""
        yield await self.complete(messages, json_mode=json_mode)


class JsonObjectTracker:
    """Track brace depth across streamed fragments to detect a closed object."""

    def __init__(self) -> None:
        self._depth = 0
        self._started = False
        self._in_string = False
        self._escaped = False
        self.closed = False

    def feed(self, fragment: str) -> bool:
        """Consume a fragment and return True once the top-level object closes."""
        for char in fragment:
            if self.closed:
                break
            if self._in_string:
                if self._escaped:
                    self._escaped = False
                elif char == "\\":
                    self._escaped = True
                elif char == '"':
                    self._in_string = False
                continue
            if char == '"' and self._started:
                self._in_string = True
            elif char == "{":
                self._depth += 1
                self._started = True
            elif char == "}" and self._started:
                self._depth -= 1
                if self._depth == 0:
                    self.closed = True
        return self.closed


def parse_json_object(content: str) -> dict[str, Any]:
    """Parse a JSON object from model output, tolerating surrounding text."""
    text = content.strip()
    try:
        data = json.loads(text)
        if isinstance(data, dict):
            return data
    except json.JSONDecodeError:
        pass
    match = _JSON_OBJECT_RE.search(text)
    if match:
        try:
            data = json.loads(match.group(0))
            if isinstance(data, dict):
                return data
        except json.JSONDecodeError:
            pass
    raise GenerationFormatError("LLM response is not a valid JSON object", raw=content)


def parse_json_array(content: str) -> list[Any]:
    """Parse a JSON array from model output, accepting {"questions": [...]} too."""
    text = content.strip()
    candidates = [text]
    match = _JSON_ARRAY_RE.search(text)
    if match:
        candidates.append(match.group(0))
    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            for value in data.values():
                if isinstance(value, list):
                    return value
    raise GenerationFormatError("LLM response is not a valid JSON array", raw=content)


def build_chat_model(
    provider: str,
    *,
    api_key_openai: str | None,
    api_key_gemini: str | None,
    openai_base_url: str,
    openai_model: str | None,
    gemini_model: str | None,
    ollama_base_url: str,
    ollama_model: str,
    temperature: float,
    max_tokens: int,
    timeout: float,
) -> OllamaChatModel | OpenAIChatModel | GeminiChatModel:
    """Factory for chat models based on provider."""
    normalized = provider.strip().lower()
    if normalized in {"openai"}:
        if not api_key_openai:
            raise LLMError("OPENAI_API_KEY is required for OpenAI provider", kind=FailureKind.INVALID)
        if not openai_model:
            raise LLMError("OPENAI_CHAT_MODEL is required for OpenAI provider", kind=FailureKind.INVALID)
        return OpenAIChatModel(
            api_key=api_key_openai,
            base_url=openai_base_url.rstrip("/"),
            model=openai_model,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
        )
    if normalized in {"gemini", "google"}:
        if not api_key_gemini:
            raise LLMError("GEMINI_API_KEY is required for Gemini provider", kind=FailureKind.INVALID)
        if not gemini_model:
            raise LLMError("GEMINI_CHAT_MODEL is required for Gemini provider", kind=FailureKind.INVALID)
        return GeminiChatModel(
            api_key=api_key_gemini,
            model=gemini_model,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
        )
    return OllamaChatModel(
        base_url=ollama_base_url.rstrip("/"),
        model=ollama_model,
        temperature=temperature,
        max_tokens=max_tokens,
        timeout=timeout,
    )
