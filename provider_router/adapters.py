"""
Backend Adapters
================
One adapter per BackendKind. Each adapter shapes requests for its backend,
performs exactly one outbound call per operation and parses exactly one
text field out of the response.

Adapters never catch failures: anything raised by the SDK or HTTP client
propagates unchanged to the dispatcher, which hands it to the classifier.
"""

from __future__ import annotations

import base64
import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx
from google import genai
from google.genai import types as genai_types
from openai import AsyncOpenAI

from .types import (
    AnalysisResult,
    BackendConfig,
    BackendKind,
    Capability,
    EmptyResponseError,
)

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a helpful AI assistant. Provide extremely concise answers with "
    "brief explanations. Be direct and to the point. Avoid unnecessary details."
)

IMAGE_PROMPT = """Look at this screenshot and directly answer/solve any question, problem, or topic shown.

If it's a coding problem: Provide the complete, working solution code with clear inline comments explaining the algorithm. After the code, add a brief explanation of the approach and time/space complexity.
If it's a question: Give the direct answer.
If it's educational content: Explain the key concepts concisely.

For code solutions, format as: code block first, then explanation below."""

AUDIO_PROMPT = """Analyze this audio clip extremely concisely:
1. What you hear (1-2 sentences)
2. Key content/transcript summary
3. Next steps or response suggestions (1-2 actions)

Be extremely brief and direct."""

CONNECTION_TEST_PROMPT = "Hello, respond with 'OK' if you can see this message."

DEFAULT_TEMPERATURE = 0.7

# Seconds; local generation on CPU can be slow
DEFAULT_CLIENT_TIMEOUT = 120.0

# Reasoning model families reject the temperature field outright
NO_TEMPERATURE_MODEL_PREFIXES = ("o1", "o3", "o4", "gpt-5")

LOCAL_AUDIO_NOTICE = (
    "Audio analysis not supported with Ollama. "
    "Switch to Gemini or OpenAI for audio processing."
)


def accepts_temperature(model: str) -> bool:
    return not model.lower().startswith(NO_TEMPERATURE_MODEL_PREFIXES)


def _require_text(text: str | None, backend: str) -> str:
    if not text or not text.strip():
        raise EmptyResponseError(f"Empty response from {backend}")
    return text


class BackendAdapter(ABC):
    """Abstract base class for backend adapters"""

    kind: BackendKind

    def __init__(self, config: BackendConfig):
        self.config = config

    @property
    def provider_name(self) -> str:
        return self.kind.value

    @property
    def model(self) -> str:
        return self.config.model_name

    @property
    @abstractmethod
    def endpoint(self) -> str:
        """Base URL of the backend, used in diagnostics"""

    def supports(self, capability: Capability) -> bool:
        return True

    def has_text_fallback(self, capability: Capability) -> bool:
        """Whether an unsupported capability still yields a degraded text answer"""
        return False

    @abstractmethod
    async def analyze_image(
        self, data: bytes, mime_type: str, prompt: str = IMAGE_PROMPT
    ) -> AnalysisResult:
        pass

    @abstractmethod
    async def analyze_audio(
        self, data: bytes, mime_type: str, prompt: str = AUDIO_PROMPT
    ) -> AnalysisResult:
        pass

    @abstractmethod
    async def chat(self, text: str) -> AnalysisResult:
        pass

    async def aclose(self) -> None:
        pass


class GeminiAdapter(BackendAdapter):
    """Google Gemini adapter using the google-genai SDK"""

    kind = BackendKind.HOSTED_MULTIMODAL

    def __init__(
        self,
        config: BackendConfig,
        timeout: float | None = None,
        client: Any | None = None,
    ):
        super().__init__(config)
        if client is None:
            http_options = None
            if timeout is not None:
                # google-genai takes the timeout in milliseconds
                http_options = genai_types.HttpOptions(timeout=int(timeout * 1000))
            client = genai.Client(api_key=config.api_key, http_options=http_options)
        self._client = client

    @property
    def endpoint(self) -> str:
        return "https://generativelanguage.googleapis.com"

    def _generation_config(self) -> genai_types.GenerateContentConfig:
        return genai_types.GenerateContentConfig(
            system_instruction=SYSTEM_PROMPT,
            temperature=DEFAULT_TEMPERATURE,
        )

    async def _generate(self, contents: list[Any] | str) -> str:
        response = await self._client.aio.models.generate_content(
            model=self.model,
            contents=contents,
            config=self._generation_config(),
        )
        return _require_text(response.text, self.provider_name)

    async def analyze_image(
        self, data: bytes, mime_type: str, prompt: str = IMAGE_PROMPT
    ) -> AnalysisResult:
        part = genai_types.Part.from_bytes(data=data, mime_type=mime_type)
        return AnalysisResult(text=await self._generate([prompt, part]))

    async def analyze_audio(
        self, data: bytes, mime_type: str, prompt: str = AUDIO_PROMPT
    ) -> AnalysisResult:
        part = genai_types.Part.from_bytes(data=data, mime_type=mime_type)
        return AnalysisResult(text=await self._generate([prompt, part]))

    async def chat(self, text: str) -> AnalysisResult:
        return AnalysisResult(text=await self._generate(text))

    async def aclose(self) -> None:
        close = getattr(self._client.aio, "aclose", None)
        if close is not None:
            await close()


class OpenAIChatAdapter(BackendAdapter):
    """OpenAI chat-completions adapter"""

    kind = BackendKind.HOSTED_CHAT

    def __init__(
        self,
        config: BackendConfig,
        timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        super().__init__(config)
        options: dict[str, Any] = {"api_key": config.api_key, "max_retries": 0}
        if timeout is not None:
            options["timeout"] = timeout
        if http_client is not None:
            options["http_client"] = http_client
        self._client = AsyncOpenAI(**options)

    @property
    def endpoint(self) -> str:
        return str(self._client.base_url).rstrip("/")

    def build_payload(self, content: str | list[dict[str, Any]]) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": content},
            ],
        }
        if accepts_temperature(self.model):
            payload["temperature"] = DEFAULT_TEMPERATURE
        return payload

    async def _complete(self, content: str | list[dict[str, Any]]) -> str:
        response = await self._client.chat.completions.create(
            **self.build_payload(content)
        )
        text = response.choices[0].message.content if response.choices else None
        return _require_text(text, self.provider_name)

    async def analyze_image(
        self, data: bytes, mime_type: str, prompt: str = IMAGE_PROMPT
    ) -> AnalysisResult:
        encoded = base64.b64encode(data).decode("ascii")
        content = [
            {"type": "text", "text": prompt},
            {
                "type": "image_url",
                "image_url": {"url": f"data:{mime_type};base64,{encoded}"},
            },
        ]
        return AnalysisResult(text=await self._complete(content))

    async def analyze_audio(
        self, data: bytes, mime_type: str, prompt: str = AUDIO_PROMPT
    ) -> AnalysisResult:
        # Chat completions cannot take raw audio; the recording is described instead
        note = (
            f"Audio analysis request: {prompt} "
            f"(Note: a {mime_type} recording was captured but raw audio cannot "
            "be attached to this model, answer from the request alone)"
        )
        return AnalysisResult(text=await self._complete(note), degraded=True)

    async def chat(self, text: str) -> AnalysisResult:
        return AnalysisResult(text=await self._complete(text))

    async def aclose(self) -> None:
        await self._client.close()


class OllamaAdapter(BackendAdapter):
    """Ollama local model adapter"""

    kind = BackendKind.LOCAL_INFERENCE

    def __init__(
        self,
        config: BackendConfig,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(config)
        if client is None:
            client = httpx.AsyncClient(
                base_url=self.endpoint,
                timeout=timeout if timeout is not None else DEFAULT_CLIENT_TIMEOUT,
                transport=transport,
            )
        self._client = client

    @property
    def endpoint(self) -> str:
        assert self.config.endpoint is not None
        return self.config.endpoint

    def with_model(self, model: str) -> OllamaAdapter:
        """Adapter for another model; shares (and takes over) the HTTP client"""
        config = BackendConfig(
            kind=self.kind, model=model, endpoint=self.config.endpoint
        )
        return OllamaAdapter(config, client=self._client)

    def supports(self, capability: Capability) -> bool:
        return capability is Capability.CHAT_TEXT

    def has_text_fallback(self, capability: Capability) -> bool:
        return capability in (Capability.ANALYZE_IMAGE, Capability.ANALYZE_AUDIO)

    async def generate(self, prompt: str, model: str | None = None) -> str:
        """Single non-streaming call to /api/generate"""
        response = await self._client.post(
            "/api/generate",
            json={
                "model": model or self.model,
                "prompt": prompt,
                "system": SYSTEM_PROMPT,
                "stream": False,
                "options": {"temperature": DEFAULT_TEMPERATURE, "top_p": 0.9},
            },
        )
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected response body from {self.provider_name}")
        text = data.get("response")
        if text is not None and not isinstance(text, str):
            raise ValueError(f"Unexpected response field from {self.provider_name}")
        return _require_text(text, self.provider_name)

    async def list_models(self) -> list[str]:
        """Model names from /api/tags. Raises on any failure."""
        response = await self._client.get("/api/tags")
        response.raise_for_status()
        data = response.json()
        models = data.get("models") if isinstance(data, dict) else None
        if not isinstance(models, list):
            raise ValueError("Malformed model list from /api/tags")
        return [
            m["name"]
            for m in models
            if isinstance(m, dict) and isinstance(m.get("name"), str) and m["name"]
        ]

    async def analyze_image(
        self, data: bytes, mime_type: str, prompt: str = IMAGE_PROMPT
    ) -> AnalysisResult:
        # No vision support: answer from the instructions alone
        text = await self.generate(f"Screenshot analysis request: {prompt}")
        return AnalysisResult(text=text, degraded=True)

    async def analyze_audio(
        self, data: bytes, mime_type: str, prompt: str = AUDIO_PROMPT
    ) -> AnalysisResult:
        return AnalysisResult(text=LOCAL_AUDIO_NOTICE, degraded=True)

    async def chat(self, text: str) -> AnalysisResult:
        return AnalysisResult(text=await self.generate(text))

    async def aclose(self) -> None:
        await self._client.aclose()


def build_adapter(
    config: BackendConfig,
    timeout: float | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> BackendAdapter:
    """
    Create the adapter for a configuration.

    `transport` replaces the network layer of the httpx-based clients
    (OpenAI and Ollama); it is how tests stub backends.
    """
    if config.kind is BackendKind.HOSTED_MULTIMODAL:
        return GeminiAdapter(config, timeout=timeout)
    if config.kind is BackendKind.HOSTED_CHAT:
        http_client = None
        if transport is not None:
            http_client = httpx.AsyncClient(
                transport=transport,
                timeout=timeout if timeout is not None else DEFAULT_CLIENT_TIMEOUT,
            )
        return OpenAIChatAdapter(config, timeout=timeout, http_client=http_client)
    return OllamaAdapter(config, timeout=timeout, transport=transport)
