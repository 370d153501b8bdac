"""
Tests for ProviderRouter
========================
Dispatch, session lifecycle, hot-switching and connection tests against
stubbed backends.
"""

import asyncio

import pytest

from provider_router.adapters import GeminiAdapter, LOCAL_AUDIO_NOTICE, build_adapter
from provider_router.router import ProviderRouter, create_router, dispatch
from provider_router.types import (
    AnalysisResult,
    AudioBytes,
    BackendConfig,
    BackendKind,
    ChatText,
    ClassifiedError,
    ConstructionError,
    ErrorKind,
    ImageBytes,
    SessionStatus,
)

from .stubs import (
    SLOW_PROMPT,
    OllamaStub,
    OpenAIStub,
    combined_transport,
    fake_gemini_client,
)


def chat_config(key="k", model="gpt-4o-mini"):
    return BackendConfig(kind=BackendKind.HOSTED_CHAT, api_key=key, model=model)


def local_config(model=None):
    return BackendConfig(kind=BackendKind.LOCAL_INFERENCE, model=model)


def gemini_factory(client):
    """Adapter factory that plugs a fake Gemini client in"""

    def factory(config, timeout=None, transport=None):
        if config.kind is BackendKind.HOSTED_MULTIMODAL:
            return GeminiAdapter(config, timeout=timeout, client=client)
        return build_adapter(config, timeout=timeout, transport=transport)

    return factory


class TestScenarios:
    """End-to-end scenarios"""

    @pytest.mark.asyncio
    async def test_hosted_chat_text(self):
        stub = OpenAIStub(content="hi")
        router = ProviderRouter(transport=stub.transport)
        session = await router.initialize(BackendKind.HOSTED_CHAT, chat_config())

        result = await router.perform(ChatText("hello"))

        assert session.status is SessionStatus.READY
        assert isinstance(result, AnalysisResult)
        assert result.text == "hi"

    @pytest.mark.asyncio
    async def test_hosted_quota_exceeded(self):
        stub = OpenAIStub(status=429, error_message="Rate limit reached")
        router = ProviderRouter(transport=stub.transport)
        await router.initialize(BackendKind.HOSTED_CHAT, chat_config())

        result = await router.perform(ChatText("hello"))

        assert isinstance(result, ClassifiedError)
        assert result.kind is ErrorKind.QUOTA_EXCEEDED
        # No retries inside the core
        assert len(stub.requests) == 1

    @pytest.mark.asyncio
    async def test_local_discovery_selects_preferred(self):
        stub = OllamaStub(models=["llama3.2", "mistral"])
        router = ProviderRouter(transport=stub.transport)

        session = await router.initialize(BackendKind.LOCAL_INFERENCE, local_config())

        assert session.status is SessionStatus.READY
        assert session.model == "llama3.2"
        assert router.current_model == "llama3.2"

    @pytest.mark.asyncio
    async def test_local_image_is_degraded_text_answer(self):
        stub = OllamaStub()
        router = ProviderRouter(transport=stub.transport)
        await router.initialize(BackendKind.LOCAL_INFERENCE)

        result = await router.perform(ImageBytes(b"\x89PNG", "image/png"))

        assert isinstance(result, AnalysisResult)
        assert result.degraded is True
        assert result.text
        prompt = stub.generate_bodies[-1]["prompt"]
        assert prompt.startswith("Screenshot analysis request:")


class TestCapabilityCheck:
    @pytest.mark.asyncio
    async def test_fallback_disabled_returns_unsupported_without_call(self):
        stub = OllamaStub()
        router = ProviderRouter(transport=stub.transport, local_text_fallback=False)
        await router.initialize(BackendKind.LOCAL_INFERENCE)
        requests_before = len(stub.requests)

        image = await router.perform(ImageBytes(b"\x89PNG"))
        audio = await router.perform(AudioBytes(b"audio"))

        assert image.kind is ErrorKind.UNSUPPORTED_CAPABILITY
        assert audio.kind is ErrorKind.UNSUPPORTED_CAPABILITY
        assert len(stub.requests) == requests_before

    @pytest.mark.asyncio
    async def test_local_audio_returns_notice(self):
        stub = OllamaStub()
        router = ProviderRouter(transport=stub.transport)
        await router.initialize(BackendKind.LOCAL_INFERENCE)
        requests_before = len(stub.requests)

        result = await router.perform(AudioBytes(b"audio", "audio/webm"))

        assert result.text == LOCAL_AUDIO_NOTICE
        assert result.degraded is True
        assert len(stub.requests) == requests_before

    @pytest.mark.asyncio
    async def test_local_image_with_server_down_is_classified(self):
        stub = OllamaStub()
        router = ProviderRouter(transport=stub.transport)
        await router.initialize(BackendKind.LOCAL_INFERENCE)
        stub.reachable = False

        result = await router.perform(ImageBytes(b"\x89PNG"))

        assert isinstance(result, ClassifiedError)
        assert result.kind is ErrorKind.UNAVAILABLE
        assert "http://localhost:11434" in result.message

    @pytest.mark.asyncio
    async def test_dispatch_uses_request_prompt(self):
        client = fake_gemini_client("ok")
        adapter = GeminiAdapter(
            BackendConfig(kind=BackendKind.HOSTED_MULTIMODAL, api_key="k"),
            client=client,
        )

        await dispatch(adapter, AudioBytes(b"a", "audio/ogg", prompt="Transcribe"))

        prompt, _ = client.aio.models.generate_content.await_args.kwargs["contents"]
        assert prompt == "Transcribe"


class TestInitialization:
    def test_status_before_initialize(self):
        router = ProviderRouter()
        assert router.status is SessionStatus.UNINITIALIZED
        assert router.session is None

    @pytest.mark.asyncio
    async def test_perform_before_initialize_raises(self):
        with pytest.raises(RuntimeError):
            await ProviderRouter().perform(ChatText("hello"))

    @pytest.mark.asyncio
    async def test_hosted_initialize_without_key_fails_synchronously(self):
        stub = OpenAIStub()
        router = ProviderRouter(transport=stub.transport)

        with pytest.raises(ConstructionError):
            await router.initialize(BackendKind.HOSTED_CHAT)

        assert stub.requests == []
        assert router.status is SessionStatus.UNINITIALIZED

    @pytest.mark.asyncio
    async def test_mismatched_config_rejected(self):
        with pytest.raises(ConstructionError):
            await ProviderRouter().initialize(BackendKind.LOCAL_INFERENCE, chat_config())

    @pytest.mark.asyncio
    async def test_empty_catalog_leaves_session_degraded(self):
        router = ProviderRouter(transport=OllamaStub(models=[]).transport)

        session = await router.initialize(BackendKind.LOCAL_INFERENCE)

        assert session.status is SessionStatus.DEGRADED
        assert session.model == "llama3.2"

    @pytest.mark.asyncio
    async def test_degraded_session_surfaces_error_on_request(self):
        router = ProviderRouter(transport=OllamaStub(models=[]).transport)
        await router.initialize(BackendKind.LOCAL_INFERENCE)

        result = await router.perform(ChatText("hello"))

        assert isinstance(result, ClassifiedError)
        assert result.kind is ErrorKind.UNKNOWN
        assert "not found" in result.message

    @pytest.mark.asyncio
    async def test_create_router(self):
        router = await create_router(
            BackendKind.LOCAL_INFERENCE, transport=OllamaStub().transport
        )
        assert router.status is SessionStatus.READY


class TestSwitching:
    @pytest.mark.asyncio
    async def test_degraded_to_ready_via_rediscover(self):
        stub = OllamaStub(models=[])
        router = ProviderRouter(transport=stub.transport)
        await router.initialize(BackendKind.LOCAL_INFERENCE)
        assert router.status is SessionStatus.DEGRADED

        stub.models = ["mistral"]
        session = await router.rediscover()

        assert session.status is SessionStatus.READY
        assert session.model == "mistral"

    @pytest.mark.asyncio
    async def test_select_model_skips_discovery(self):
        stub = OllamaStub(models=[])
        router = ProviderRouter(transport=stub.transport)
        await router.initialize(BackendKind.LOCAL_INFERENCE)
        tags_calls = stub.paths.count("/api/tags")

        session = await router.select_model("phi3")

        assert session.status is SessionStatus.READY
        assert session.model == "phi3"
        assert stub.paths.count("/api/tags") == tags_calls

    @pytest.mark.asyncio
    async def test_switch_to_local_without_model_discovers(self):
        ollama = OllamaStub(models=["mistral"])
        router = ProviderRouter(transport=combined_transport(OpenAIStub(), ollama))
        await router.initialize(BackendKind.HOSTED_CHAT, chat_config())

        session = await router.switch_to(BackendKind.LOCAL_INFERENCE)

        assert session.kind is BackendKind.LOCAL_INFERENCE
        assert session.model == "mistral"
        assert "/api/tags" in ollama.paths

    @pytest.mark.asyncio
    async def test_switch_back_reuses_previous_config(self):
        openai_stub = OpenAIStub(echo=True)
        transport = combined_transport(openai_stub, OllamaStub())
        router = ProviderRouter(transport=transport)
        await router.initialize(BackendKind.HOSTED_CHAT, chat_config("key-one", "gpt-4o"))
        await router.switch_to(BackendKind.LOCAL_INFERENCE)

        session = await router.switch_to(BackendKind.HOSTED_CHAT)
        result = await router.perform(ChatText("hello"))

        assert session.model == "gpt-4o"
        assert result.text == "Bearer key-one|gpt-4o"

    @pytest.mark.asyncio
    async def test_switch_to_hosted_without_credentials_fails(self):
        router = ProviderRouter(transport=OllamaStub().transport)
        await router.initialize(BackendKind.LOCAL_INFERENCE)
        before = router.session

        with pytest.raises(ConstructionError):
            await router.switch_to(BackendKind.HOSTED_MULTIMODAL)

        assert router.session is before

    @pytest.mark.asyncio
    async def test_switch_closes_retired_adapter(self):
        client = fake_gemini_client()
        router = ProviderRouter(
            transport=OllamaStub().transport, adapter_factory=gemini_factory(client)
        )
        await router.initialize(
            BackendKind.HOSTED_MULTIMODAL,
            BackendConfig(kind=BackendKind.HOSTED_MULTIMODAL, api_key="k"),
        )

        await router.switch_to(BackendKind.LOCAL_INFERENCE)

        client.aio.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_switch_is_atomic_under_concurrent_requests(self):
        stub = OpenAIStub(echo=True)
        router = ProviderRouter(transport=stub.transport)
        alpha = chat_config("key-alpha-123", "gpt-4o-mini")
        bravo = chat_config("key-bravo-456", "gpt-4o")
        await router.initialize(BackendKind.HOSTED_CHAT, alpha)

        async def switcher():
            for i in range(10):
                await router.switch_to(
                    BackendKind.HOSTED_CHAT, bravo if i % 2 == 0 else alpha
                )
                await asyncio.sleep(0)

        outcomes = await asyncio.gather(
            switcher(), *(router.perform(ChatText("hello")) for _ in range(40))
        )

        allowed = {
            "Bearer key-alpha-123|gpt-4o-mini",
            "Bearer key-bravo-456|gpt-4o",
        }
        results = outcomes[1:]
        assert all(isinstance(r, AnalysisResult) for r in results)
        assert {r.text for r in results} <= allowed


class TestListModels:
    @pytest.mark.asyncio
    async def test_hosted_backend_has_no_model_list(self):
        router = ProviderRouter(transport=OpenAIStub().transport)
        await router.initialize(BackendKind.HOSTED_CHAT, chat_config())
        assert await router.list_available_models() == []

    @pytest.mark.asyncio
    async def test_local_backend_lists_models(self):
        router = ProviderRouter(transport=OllamaStub(models=["a", "b"]).transport)
        await router.initialize(BackendKind.LOCAL_INFERENCE)
        assert await router.list_available_models() == ["a", "b"]

    @pytest.mark.asyncio
    async def test_uninitialized_router_has_no_model_list(self):
        assert await ProviderRouter().list_available_models() == []


class TestConnectionTest:
    @pytest.mark.asyncio
    async def test_hosted_ok(self):
        router = ProviderRouter(transport=OpenAIStub(content="OK").transport)
        await router.initialize(BackendKind.HOSTED_CHAT, chat_config())

        status = await router.test_connection()

        assert status.ok is True
        assert status.error is None

    @pytest.mark.asyncio
    async def test_hosted_unexpected_answer(self):
        router = ProviderRouter(transport=OpenAIStub(content="nope").transport)
        await router.initialize(BackendKind.HOSTED_CHAT, chat_config())

        status = await router.test_connection()

        assert status.ok is False
        assert "Unexpected response" in status.error

    @pytest.mark.asyncio
    async def test_hosted_bad_key(self):
        stub = OpenAIStub(status=401, error_message="Unauthorized: invalid key")
        router = ProviderRouter(transport=stub.transport)
        await router.initialize(BackendKind.HOSTED_CHAT, chat_config())

        status = await router.test_connection()

        assert status.ok is False
        assert "access denied" in status.error.lower()

    @pytest.mark.asyncio
    async def test_local_ok(self):
        router = ProviderRouter(transport=OllamaStub().transport)
        await router.initialize(BackendKind.LOCAL_INFERENCE)
        assert (await router.test_connection()).ok is True

    @pytest.mark.asyncio
    async def test_local_unreachable(self):
        stub = OllamaStub()
        router = ProviderRouter(transport=stub.transport)
        await router.initialize(BackendKind.LOCAL_INFERENCE)
        stub.reachable = False

        status = await router.test_connection()

        assert status.ok is False
        assert status.error == "Ollama not available at http://localhost:11434"

    @pytest.mark.asyncio
    async def test_uninitialized(self):
        status = await ProviderRouter().test_connection()
        assert status.ok is False


class TestTimeoutAndCancellation:
    @pytest.mark.asyncio
    async def test_per_call_timeout_is_classified(self):
        router = ProviderRouter(transport=OllamaStub(delay=1.0).transport)
        await router.initialize(BackendKind.LOCAL_INFERENCE)

        result = await router.perform(ChatText(SLOW_PROMPT), timeout=0.01)

        assert isinstance(result, ClassifiedError)
        assert result.kind is ErrorKind.UNAVAILABLE

    @pytest.mark.asyncio
    async def test_caller_can_cancel(self):
        router = ProviderRouter(transport=OllamaStub(delay=1.0).transport)
        await router.initialize(BackendKind.LOCAL_INFERENCE)

        task = asyncio.create_task(router.perform(ChatText(SLOW_PROMPT)))
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert router._binding.inflight == 0


class TestGeminiThroughRouter:
    @pytest.mark.asyncio
    async def test_image_request(self):
        client = fake_gemini_client("a login form")
        router = ProviderRouter(adapter_factory=gemini_factory(client))
        await router.initialize(
            BackendKind.HOSTED_MULTIMODAL,
            BackendConfig(kind=BackendKind.HOSTED_MULTIMODAL, api_key="k"),
        )

        result = await router.analyze_image(b"\x89PNG")

        assert result.text == "a login form"
        assert result.degraded is False

    @pytest.mark.asyncio
    async def test_resource_exhausted_is_quota(self):
        client = fake_gemini_client()
        client.aio.models.generate_content.side_effect = RuntimeError(
            "429 RESOURCE_EXHAUSTED. Quota exceeded"
        )
        router = ProviderRouter(adapter_factory=gemini_factory(client))
        await router.initialize(
            BackendKind.HOSTED_MULTIMODAL,
            BackendConfig(kind=BackendKind.HOSTED_MULTIMODAL, api_key="k"),
        )

        result = await router.chat("hello")

        assert result.kind is ErrorKind.QUOTA_EXCEEDED


class TestDiscoveryRobustness:
    @pytest.mark.parametrize(
        "tags_body", [{"models": None}, [], {"models": ["llama3.2"]}]
    )
    @pytest.mark.asyncio
    async def test_malformed_catalog_leaves_session_degraded(self, tags_body):
        router = ProviderRouter(transport=OllamaStub(tags_body=tags_body).transport)

        session = await router.initialize(BackendKind.LOCAL_INFERENCE)

        assert session.status is SessionStatus.DEGRADED

    @pytest.mark.asyncio
    async def test_malformed_generate_body_leaves_session_degraded(self):
        stub = OllamaStub(generate_body=["not", "an", "object"])
        router = ProviderRouter(transport=stub.transport)

        session = await router.initialize(BackendKind.LOCAL_INFERENCE)

        assert session.status is SessionStatus.DEGRADED

    @pytest.mark.asyncio
    async def test_cancelled_rediscover_closes_unpublished_adapter(self):
        stub = OllamaStub()
        built = []

        def recording_factory(config, timeout=None, transport=None):
            adapter = build_adapter(config, timeout=timeout, transport=transport)
            built.append(adapter)
            return adapter

        router = ProviderRouter(
            transport=stub.transport, adapter_factory=recording_factory
        )
        before = await router.initialize(BackendKind.LOCAL_INFERENCE)
        stub.tags_delay = 1.0

        task = asyncio.create_task(router.rediscover())
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert len(built) == 2
        assert built[-1]._client.is_closed
        assert not built[0]._client.is_closed
        assert router.session is before
