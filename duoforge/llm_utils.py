# duoforge/llm_utils.py
from __future__ import annotations

import abc
import asyncio
import base64
import binascii
import logging
import math
import re
from typing import Any, List, Optional, Sequence, Tuple

from google import genai
from google.genai import types
from openai import AsyncOpenAI

from duoforge.config import EngineConfig, GeminiSettings, OpenAISettings
from duoforge.models import Backend, ModelResult, ModelUsage, Role, Turn
from duoforge.usage import UsageEvent, UsageRecorder

logger = logging.getLogger(__name__)

_DATA_URL_RE = re.compile(r"^data:([^;]+);base64,(.+)$", re.DOTALL)

TRIM_BRIDGE_USER = (
    "[Earlier conversation about building and modifying this game was trimmed for space. "
    "The current game code is provided in the system context.]"
)
TRIM_BRIDGE_ASSISTANT = "Got it! I can see the current game. What would you like me to change?"
IMAGE_OMITTED_NOTE = "[The user attached a screenshot, which this assistant cannot view.]"

AUTH_STATUSES = (401, 403)
# Client errors worth another attempt; every other 4xx fails immediately.
RETRYABLE_CLIENT_STATUSES = (408, 429)


# --- Errors ---


class UpstreamError(Exception):
    """A model backend could not produce an answer."""

    def __init__(self, backend: Backend, status: Optional[str], message: str):
        self.backend = backend
        self.status = status
        self.message = message
        label = f"{backend.value} API"
        super().__init__(f"{label} error{f' {status}' if status else ''}: {message}")


class UpstreamUnavailable(UpstreamError):
    """The backend has no usable credential, or the provider rejected it."""


class UpstreamFailure(UpstreamError):
    """Retries ran out (rate limit, 5xx, timeout or empty output), or the request itself was refused."""

    def __init__(self, backend: Backend, status: Optional[str], message: str, attempts: int):
        super().__init__(backend, status, f"failed after {attempts} attempts: {message}")
        self.attempts = attempts


# --- Token budgeting and history trimming ---


def calculate_max_tokens(current_code: Optional[str], base_tokens: int = 16384, hard_max: int = 32768) -> int:
    """Give larger artifacts more room to be regenerated in full, capped at ``hard_max``."""
    code_length = len(current_code or "")
    needed = math.ceil(code_length / 3) + base_tokens
    max_tokens = min(max(base_tokens, needed), hard_max)
    if max_tokens > base_tokens:
        logger.info("Code is %s chars, raised max output tokens to %s", code_length, max_tokens)
    return max_tokens


def trim_history(turns: Sequence[Turn], cap: int = 12) -> List[Turn]:
    """Keep the first turn, a trimmed-history bridge, and the latest ``cap - 1`` turns."""
    if len(turns) <= cap:
        return list(turns)

    trimmed = [
        turns[0],
        Turn(role=Role.USER, content=TRIM_BRIDGE_USER),
        Turn(role=Role.ASSISTANT, content=TRIM_BRIDGE_ASSISTANT),
        *turns[-(cap - 1):],
    ]
    logger.info("Trimmed conversation: %s -> %s turns", len(turns), len(trimmed))
    return trimmed


def parse_data_url(data_url: Optional[str]) -> Optional[Tuple[str, bytes]]:
    """Split a ``data:<mime>;base64,<payload>`` URL into (mime type, raw bytes)."""
    if not data_url:
        return None
    match = _DATA_URL_RE.match(data_url.strip())
    if not match:
        return None
    try:
        return match.group(1), base64.b64decode(match.group(2), validate=False)
    except (binascii.Error, ValueError):
        return None


def _http_status(status: Optional[str]) -> Optional[int]:
    try:
        return int(status) if status is not None else None
    except ValueError:
        return None


# --- Adapter interface ---


class ModelAdapter(abc.ABC):
    """Uniform call contract over one provider SDK.

    Subclasses implement the provider request plus the two normalizers
    (:meth:`extract_text` and :meth:`normalize_usage`); retries, backoff,
    timeouts and usage reporting live here so every backend behaves the same.
    """

    backend: Backend

    def __init__(
        self,
        model_name: str,
        retry_count: int = 2,
        retry_delay_s: float = 1.0,
        request_timeout_s: float = 180.0,
        usage_recorder: Optional[UsageRecorder] = None,
    ) -> None:
        self.model_name = model_name
        self.retry_count = max(1, retry_count)
        self.retry_delay_s = retry_delay_s
        self.request_timeout_s = request_timeout_s
        self.usage_recorder = usage_recorder

    @abc.abstractmethod
    def is_available(self) -> bool:
        """True when the backend has a usable credential."""

    @abc.abstractmethod
    async def _request(self, system_parts: Sequence[str], messages: Sequence[Turn], max_output_tokens: int) -> Any:
        """Issue one provider call and return the raw SDK response."""

    @abc.abstractmethod
    def extract_text(self, raw: Any) -> str:
        ...

    @abc.abstractmethod
    def normalize_usage(self, raw: Any) -> ModelUsage:
        ...

    @staticmethod
    def describe_error(exc: Exception) -> Tuple[Optional[str], str]:
        status = getattr(exc, "status_code", None) or getattr(exc, "code", None)
        message = getattr(exc, "message", None) or str(exc) or type(exc).__name__
        return (str(status) if status is not None else None), str(message)

    async def send(
        self,
        system_parts: Sequence[str],
        messages: Sequence[Turn],
        max_output_tokens: int,
        accounting_id: Optional[str] = None,
    ) -> ModelResult:
        if not self.is_available():
            raise UpstreamUnavailable(self.backend, None, "no API key configured")

        status: Optional[str] = None
        message = ""
        for attempt in range(1, self.retry_count + 1):
            try:
                raw = await asyncio.wait_for(
                    self._request(system_parts, messages, max_output_tokens),
                    timeout=self.request_timeout_s,
                )
                text = self.extract_text(raw)
                if text:
                    usage = self.normalize_usage(raw)
                    self._report_usage(usage, accounting_id)
                    return ModelResult(text=text, usage=usage, backend=self.backend)
                status, message = "empty", "provider returned no text"
            except asyncio.TimeoutError:
                status, message = "timeout", f"no response within {self.request_timeout_s:g}s"
            except Exception as exc:
                status, message = self.describe_error(exc)
                code = _http_status(status)
                if code in AUTH_STATUSES:
                    logger.error("%s rejected the API key: %s %s", self.backend.value, status, message)
                    raise UpstreamUnavailable(self.backend, status, message) from exc
                if code is not None and 400 <= code < 500 and code not in RETRYABLE_CLIENT_STATUSES:
                    logger.error("%s API refused the request: %s %s", self.backend.value, status, message)
                    raise UpstreamFailure(self.backend, status, message, attempts=attempt) from exc

            logger.warning(
                "%s attempt %s/%s failed: %s %s",
                self.backend.value,
                attempt,
                self.retry_count,
                status or "",
                message,
            )
            if attempt < self.retry_count:
                await asyncio.sleep(self.retry_delay_s * 2 ** (attempt - 1))

        logger.error("%s API failed after %s attempts", self.backend.value, self.retry_count)
        raise UpstreamFailure(self.backend, status, message, attempts=self.retry_count)

    def _report_usage(self, usage: ModelUsage, accounting_id: Optional[str]) -> None:
        if self.usage_recorder is None:
            return
        self.usage_recorder.record(
            UsageEvent(
                backend=self.backend,
                model_name=self.model_name,
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                cached_input_tokens=usage.cached_input_tokens,
                accounting_id=accounting_id,
            )
        )


# --- Backend A: Gemini ---


class GeminiAdapter(ModelAdapter):
    """Reliable backend. Multi-part system instruction, images sent inline."""

    backend = Backend.GEMINI

    def __init__(self, settings: GeminiSettings, client: Any = None, **kwargs: Any) -> None:
        super().__init__(settings.model_name, **kwargs)
        self.settings = settings
        self._client = client

    def is_available(self) -> bool:
        return self._client is not None or bool(self.settings.api_key)

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = genai.Client(api_key=self.settings.api_key)
        return self._client

    def _build_contents(self, messages: Sequence[Turn]) -> List[Any]:
        contents = []
        for turn in messages:
            parts = []
            image = parse_data_url(turn.image)
            if image is not None:
                mime_type, data = image
                parts.append(types.Part.from_bytes(data=data, mime_type=mime_type))
            parts.append(types.Part.from_text(text=turn.content))
            role = "model" if turn.role == Role.ASSISTANT else "user"
            contents.append(types.Content(role=role, parts=parts))
        return contents

    async def _request(self, system_parts: Sequence[str], messages: Sequence[Turn], max_output_tokens: int) -> Any:
        generation_config = types.GenerateContentConfig(
            system_instruction=[part for part in system_parts if part],
            max_output_tokens=max_output_tokens,
            temperature=self.settings.temperature,
        )
        return await self.client.aio.models.generate_content(
            model=self.model_name,
            contents=self._build_contents(messages),
            config=generation_config,
        )

    def extract_text(self, raw: Any) -> str:
        try:
            return raw.text or ""
        except (AttributeError, ValueError):
            return ""

    def normalize_usage(self, raw: Any) -> ModelUsage:
        metadata = getattr(raw, "usage_metadata", None)
        if metadata is None:
            return ModelUsage()
        return ModelUsage(
            input_tokens=getattr(metadata, "prompt_token_count", None) or 0,
            output_tokens=getattr(metadata, "candidates_token_count", None) or 0,
            cached_input_tokens=getattr(metadata, "cached_content_token_count", None) or 0,
        )


# --- Backend B: OpenAI-compatible (Grok by default) ---


class OpenAIAdapter(ModelAdapter):
    """Creative backend. One joined system message, image turns flattened to text."""

    backend = Backend.OPENAI

    def __init__(self, settings: OpenAISettings, client: Any = None, **kwargs: Any) -> None:
        super().__init__(settings.model_name, **kwargs)
        self.settings = settings
        self._client = client

    def is_available(self) -> bool:
        return self._client is not None or bool(self.settings.api_key)

    @property
    def client(self) -> Any:
        if self._client is None:
            if self.settings.base_url:
                self._client = AsyncOpenAI(api_key=self.settings.api_key, base_url=self.settings.base_url)
            else:
                self._client = AsyncOpenAI(api_key=self.settings.api_key)
        return self._client

    @staticmethod
    def flatten_turn(turn: Turn) -> str:
        if turn.image:
            return f"{turn.content}\n\n{IMAGE_OMITTED_NOTE}"
        return turn.content

    def _build_messages(self, system_parts: Sequence[str], messages: Sequence[Turn]) -> List[dict]:
        system_prompt = "\n\n".join(part for part in system_parts if part)
        payload = [{"role": "system", "content": system_prompt}]
        payload.extend({"role": turn.role.value, "content": self.flatten_turn(turn)} for turn in messages)
        return payload

    async def _request(self, system_parts: Sequence[str], messages: Sequence[Turn], max_output_tokens: int) -> Any:
        return await self.client.chat.completions.create(
            model=self.model_name,
            messages=self._build_messages(system_parts, messages),
            max_tokens=max_output_tokens,
            temperature=self.settings.temperature,
        )

    def extract_text(self, raw: Any) -> str:
        choices = getattr(raw, "choices", None) or []
        if not choices:
            return ""
        return choices[0].message.content or ""

    def normalize_usage(self, raw: Any) -> ModelUsage:
        usage = getattr(raw, "usage", None)
        if usage is None:
            return ModelUsage()
        details = getattr(usage, "prompt_tokens_details", None)
        return ModelUsage(
            input_tokens=getattr(usage, "prompt_tokens", None) or 0,
            output_tokens=getattr(usage, "completion_tokens", None) or 0,
            cached_input_tokens=getattr(details, "cached_tokens", None) or 0,
        )


def build_adapters(
    engine_config: EngineConfig, usage_recorder: Optional[UsageRecorder] = None
) -> Tuple[GeminiAdapter, OpenAIAdapter]:
    """Create both adapters with the shared retry and timeout policy."""
    common = dict(
        retry_count=engine_config.retry_count,
        retry_delay_s=engine_config.retry_delay_s,
        request_timeout_s=engine_config.request_timeout_s,
        usage_recorder=usage_recorder,
    )
    return (
        GeminiAdapter(engine_config.gemini, **common),
        OpenAIAdapter(engine_config.openai, **common),
    )
