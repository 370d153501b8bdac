"""
Provider Router
===============
Holds the active Session and dispatches analysis requests to the adapter
for its backend.

Concurrency model:
- perform() takes no lock. It reads the active binding (session + adapter)
  exactly once, so a request sees either the pre-switch or the post-switch
  state in full.
- switch operations build the complete new binding first and publish it
  with a single assignment. Switches are serialized among themselves.
- A binding replaced by a switch is closed once its last in-flight request
  has finished.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any

import httpx

from .adapters import (
    CONNECTION_TEST_PROMPT,
    BackendAdapter,
    OllamaAdapter,
    build_adapter,
)
from .discovery import ModelDiscovery
from .errors import classify, sanitize_for_logging, unsupported
from .types import (
    AnalysisRequest,
    AnalysisResult,
    AudioBytes,
    BackendConfig,
    BackendKind,
    ChatText,
    ClassifiedError,
    ConnectionStatus,
    ConstructionError,
    ImageBytes,
    Session,
    SessionStatus,
)

logger = logging.getLogger(__name__)

AdapterFactory = Callable[..., BackendAdapter]


async def dispatch(
    adapter: BackendAdapter,
    request: AnalysisRequest,
    allow_text_fallback: bool = True,
) -> AnalysisResult | ClassifiedError:
    """
    Run one request against one adapter.

    Unsupported capabilities are rejected before any network call, except
    where the adapter offers a degraded text-only answer and the fallback is
    allowed. Failures are returned classified, never raised. No retries.
    """
    capability = request.capability
    if not adapter.supports(capability):
        if not (allow_text_fallback and adapter.has_text_fallback(capability)):
            return unsupported(capability.value, adapter.provider_name)
        logger.info(
            f"{adapter.provider_name} cannot handle {capability.value}; "
            "using text-only fallback"
        )

    try:
        if isinstance(request, ImageBytes):
            if request.prompt:
                return await adapter.analyze_image(
                    request.data, request.mime_type, request.prompt
                )
            return await adapter.analyze_image(request.data, request.mime_type)
        if isinstance(request, AudioBytes):
            if request.prompt:
                return await adapter.analyze_audio(
                    request.data, request.mime_type, request.prompt
                )
            return await adapter.analyze_audio(request.data, request.mime_type)
        return await adapter.chat(request.text)
    except Exception as e:
        error = classify(e, endpoint=adapter.endpoint)
        logger.error(
            f"{adapter.provider_name} {capability.value} failed "
            f"[{error.kind.name}]: {sanitize_for_logging(str(e), max_len=200)}"
        )
        return error


@dataclass
class _Binding:
    session: Session
    adapter: BackendAdapter
    inflight: int = 0
    retired: bool = False


class ProviderRouter:
    """
    Routes analysis requests to the active backend.

    Example:
        >>> router = ProviderRouter()
        >>> await router.initialize(
        ...     BackendKind.HOSTED_CHAT,
        ...     BackendConfig(BackendKind.HOSTED_CHAT, api_key="sk-..."),
        ... )
        >>> result = await router.perform(ChatText("hello"))
    """

    def __init__(
        self,
        timeout: float | None = None,
        local_text_fallback: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
        adapter_factory: AdapterFactory = build_adapter,
    ) -> None:
        self.timeout = timeout
        self.local_text_fallback = local_text_fallback
        self._transport = transport
        self._adapter_factory = adapter_factory
        self._binding: _Binding | None = None
        self._configs: dict[BackendKind, BackendConfig] = {}
        self._switch_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def session(self) -> Session | None:
        binding = self._binding
        return binding.session if binding else None

    @property
    def status(self) -> SessionStatus:
        binding = self._binding
        return binding.session.status if binding else SessionStatus.UNINITIALIZED

    @property
    def current_kind(self) -> BackendKind | None:
        binding = self._binding
        return binding.session.kind if binding else None

    @property
    def current_model(self) -> str | None:
        binding = self._binding
        return binding.session.model if binding else None

    def _make_adapter(self, config: BackendConfig) -> BackendAdapter:
        return self._adapter_factory(
            config, timeout=self.timeout, transport=self._transport
        )

    async def _build_binding(self, config: BackendConfig, discover: bool) -> _Binding:
        adapter = self._make_adapter(config)
        if not (discover and isinstance(adapter, OllamaAdapter)):
            session = Session(config.kind, config, SessionStatus.READY)
            return _Binding(session, adapter)

        try:
            outcome = await ModelDiscovery(adapter).resolve(config.model_name)
        except BaseException:
            # Never published, so nothing else will close it
            await adapter.aclose()
            raise
        if outcome.model != adapter.model:
            # The provisional adapter hands its client over and is dropped
            adapter = adapter.with_model(outcome.model)
        resolved = replace(config, model=outcome.model)
        session = Session(config.kind, resolved, outcome.status, outcome.available)
        return _Binding(session, adapter)

    async def _publish(self, binding: _Binding, requested: BackendConfig) -> Session:
        previous = self._binding
        self._binding = binding
        # Remember what the caller asked for, so a later switch back re-runs
        # discovery when no model was pinned
        self._configs[requested.kind] = requested
        if previous is not None and previous.adapter is not binding.adapter:
            previous.retired = True
            if previous.inflight == 0:
                await previous.adapter.aclose()
        session = binding.session
        logger.info(
            f"Using {session.kind.value} with model: {session.model} "
            f"({session.status.value})"
        )
        return session

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(
        self, kind: BackendKind, config: BackendConfig | None = None
    ) -> Session:
        """
        Create the session for the first backend.

        `config` may be omitted for the local backend, which then uses its
        default endpoint and model.

        Raises:
            ConstructionError: config is invalid for `kind`
        """
        if config is None:
            config = BackendConfig(kind=kind)
        if config.kind is not kind:
            raise ConstructionError(
                f"Configuration for {config.kind.value} cannot initialize {kind.value}"
            )
        async with self._switch_lock:
            binding = await self._build_binding(config, discover=True)
            return await self._publish(binding, config)

    async def switch_to(
        self, kind: BackendKind, config: BackendConfig | None = None
    ) -> Session:
        """
        Re-target the router.

        Without `config` the last configuration used for `kind` is reused.
        A local backend without an explicit model runs discovery first.

        Raises:
            ConstructionError: no usable configuration for `kind`
        """
        if config is None:
            config = self._configs.get(kind)
            if config is None:
                # Hosted kinds fail here for lack of a credential
                config = BackendConfig(kind=kind)
        elif config.kind is not kind:
            raise ConstructionError(
                f"Configuration for {config.kind.value} cannot switch to {kind.value}"
            )

        async with self._switch_lock:
            binding = await self._build_binding(
                config, discover=not config.has_explicit_model
            )
            return await self._publish(binding, config)

    async def rediscover(self) -> Session:
        """Run discovery again for the active local backend"""
        session = self._require_session()
        if session.kind is not BackendKind.LOCAL_INFERENCE:
            return session
        requested = self._configs.get(session.kind, session.config)
        async with self._switch_lock:
            binding = await self._build_binding(session.config, discover=True)
            return await self._publish(binding, requested)

    async def select_model(self, model: str) -> Session:
        """Explicitly choose a model for the active backend"""
        session = self._require_session()
        return await self.switch_to(session.kind, replace(session.config, model=model))

    async def aclose(self) -> None:
        binding = self._binding
        self._binding = None
        if binding is not None:
            await binding.adapter.aclose()

    def _require_session(self) -> Session:
        binding = self._binding
        if binding is None:
            raise RuntimeError("Router not initialized")
        return binding.session

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def perform(
        self, request: AnalysisRequest, timeout: float | None = None
    ) -> AnalysisResult | ClassifiedError:
        """
        Run one analysis request against the active backend.

        Args:
            request: ImageBytes, AudioBytes or ChatText
            timeout: Optional per-call limit in seconds

        Returns:
            AnalysisResult on success, ClassifiedError otherwise
        """
        binding = self._binding
        if binding is None:
            raise RuntimeError("Router not initialized")

        binding.inflight += 1
        try:
            call = dispatch(binding.adapter, request, self.local_text_fallback)
            if timeout is None:
                return await call
            try:
                return await asyncio.wait_for(call, timeout)
            except asyncio.TimeoutError as e:
                return classify(e, endpoint=binding.adapter.endpoint)
        finally:
            binding.inflight -= 1
            if binding.retired and binding.inflight == 0:
                await binding.adapter.aclose()

    async def analyze_image(
        self, data: bytes, mime_type: str = "image/png"
    ) -> AnalysisResult | ClassifiedError:
        return await self.perform(ImageBytes(data, mime_type))

    async def analyze_audio_from_base64(
        self, data: str, mime_type: str
    ) -> AnalysisResult | ClassifiedError:
        return await self.perform(AudioBytes.from_base64(data, mime_type))

    async def chat(self, message: str) -> AnalysisResult | ClassifiedError:
        return await self.perform(ChatText(message))

    async def list_available_models(self) -> list[str]:
        """Installed local models; empty for hosted backends"""
        binding = self._binding
        if binding is None or not isinstance(binding.adapter, OllamaAdapter):
            return []
        return await ModelDiscovery(binding.adapter).list_available_models()

    async def test_connection(self) -> ConnectionStatus:
        """One minimal round-trip to confirm reachability and credentials"""
        binding = self._binding
        if binding is None:
            return ConnectionStatus(ok=False, error="No provider initialized")
        adapter = binding.adapter

        binding.inflight += 1
        try:
            if isinstance(adapter, OllamaAdapter):
                try:
                    await adapter.list_models()
                except (httpx.HTTPError, ValueError):
                    return ConnectionStatus(
                        ok=False, error=f"Ollama not available at {adapter.endpoint}"
                    )
                await adapter.generate(CONNECTION_TEST_PROMPT)
                return ConnectionStatus(ok=True)

            result = await adapter.chat(CONNECTION_TEST_PROMPT)
            if "ok" in result.text.lower():
                return ConnectionStatus(ok=True)
            return ConnectionStatus(
                ok=False, error=f"Unexpected response from {adapter.provider_name}"
            )
        except Exception as e:
            error = classify(e, endpoint=adapter.endpoint)
            logger.error(f"Connection test failed: {error.message}")
            return ConnectionStatus(ok=False, error=error.message)
        finally:
            binding.inflight -= 1
            if binding.retired and binding.inflight == 0:
                await binding.adapter.aclose()


async def create_router(
    kind: BackendKind, config: BackendConfig | None = None, **options: Any
) -> ProviderRouter:
    """Construct a router and initialize it in one step"""
    router = ProviderRouter(**options)
    await router.initialize(kind, config)
    return router
