"""
Provider Router - Uniform Access to Interchangeable AI Backends
===============================================================

Routes screenshot, audio and chat requests from a desktop assistant to one
of three backends (Google Gemini, OpenAI, a local Ollama server) behind a
single interface, with classified errors and safe hot-switching.

Example Usage:
    >>> import asyncio
    >>> from provider_router import BackendConfig, BackendKind, ChatText, create_router
    >>>
    >>> async def main():
    ...     router = await create_router(BackendKind.LOCAL_INFERENCE)
    ...     outcome = await router.perform(ChatText("Explain quantum computing"))
    ...     print(outcome)
    >>>
    >>> asyncio.run(main())
"""

__version__ = "1.0.0"

from .adapters import (
    BackendAdapter,
    GeminiAdapter,
    OllamaAdapter,
    OpenAIChatAdapter,
    build_adapter,
)
from .discovery import ModelDiscovery
from .errors import classify
from .router import ProviderRouter, create_router, dispatch
from .types import (
    AnalysisRequest,
    AnalysisResult,
    AudioBytes,
    BackendConfig,
    BackendKind,
    Capability,
    ChatText,
    ClassifiedError,
    ConnectionStatus,
    ConstructionError,
    ErrorKind,
    ImageBytes,
    Session,
    SessionStatus,
)

__all__ = [
    "__version__",
    # Router
    "ProviderRouter",
    "create_router",
    "dispatch",
    "classify",
    "ModelDiscovery",
    # Adapters
    "BackendAdapter",
    "GeminiAdapter",
    "OpenAIChatAdapter",
    "OllamaAdapter",
    "build_adapter",
    # Types
    "AnalysisRequest",
    "AnalysisResult",
    "AudioBytes",
    "BackendConfig",
    "BackendKind",
    "Capability",
    "ChatText",
    "ClassifiedError",
    "ConnectionStatus",
    "ConstructionError",
    "ErrorKind",
    "ImageBytes",
    "Session",
    "SessionStatus",
]
