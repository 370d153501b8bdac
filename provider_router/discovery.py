"""
Model Discovery
===============
Finds a working model on the local Ollama server. Discovery never raises:
an unreachable server and an empty catalog are treated the same way, and
a failed discovery only leaves the session DEGRADED.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from .adapters import OllamaAdapter
from .errors import sanitize_for_logging
from .types import EmptyResponseError, SessionStatus

logger = logging.getLogger(__name__)

VERIFY_PROMPT = "Hello"

# Failures a misbehaving server can provoke
DISCOVERY_ERRORS = (
    httpx.HTTPError,
    ValueError,
    KeyError,
    TypeError,
    AttributeError,
    EmptyResponseError,
)


@dataclass(frozen=True)
class DiscoveryOutcome:
    model: str
    status: SessionStatus
    available: tuple[str, ...] = ()


def pick_model(preferred: str, models: list[str]) -> str | None:
    """Preferred model if installed, else the first installed one"""
    if not models:
        return None
    if preferred in models:
        return preferred
    return models[0]


class ModelDiscovery:
    """Catalog lookup and verification against one Ollama endpoint"""

    def __init__(self, adapter: OllamaAdapter):
        self.adapter = adapter
        # Catalog seen by the last listing
        self.available: tuple[str, ...] = ()

    async def list_available_models(self) -> list[str]:
        try:
            models = await self.adapter.list_models()
        except DISCOVERY_ERRORS as e:
            logger.warning(
                f"Could not list Ollama models at {self.adapter.endpoint}: {e}"
            )
            self.available = ()
            return []
        self.available = tuple(models)
        logger.debug(f"Found {len(models)} Ollama models: {models}")
        return models

    async def select_working_model(self, preferred: str) -> str | None:
        """Query the catalog and pick a model; None when nothing is installed"""
        return pick_model(preferred, await self.list_available_models())

    async def verify(self, model: str) -> bool:
        """One minimal generate call; True if the model answered"""
        try:
            await self.adapter.generate(VERIFY_PROMPT, model=model)
        except DISCOVERY_ERRORS as e:
            logger.warning(
                f"Model {model} failed verification: "
                f"{sanitize_for_logging(str(e), max_len=200)}"
            )
            return False
        return True

    async def resolve(self, preferred: str) -> DiscoveryOutcome:
        """
        Pick and verify a model.

        Uses `preferred` when installed, otherwise the first installed model.
        If that model fails verification, the first other installed model is
        tried once before settling for DEGRADED.
        """
        selected = await self.select_working_model(preferred)
        available = self.available
        if selected is None:
            logger.warning("No Ollama models found")
            return DiscoveryOutcome(preferred, SessionStatus.DEGRADED, available)

        if selected != preferred:
            logger.info(f"Auto-selected first available model: {selected}")

        if await self.verify(selected):
            logger.info(f"Successfully initialized with model: {selected}")
            return DiscoveryOutcome(selected, SessionStatus.READY, available)

        fallback = next((m for m in available if m != selected), None)
        if fallback is not None:
            logger.info(f"Falling back to: {fallback}")
            if await self.verify(fallback):
                return DiscoveryOutcome(fallback, SessionStatus.READY, available)

        logger.error(f"No working Ollama model found at {self.adapter.endpoint}")
        return DiscoveryOutcome(selected, SessionStatus.DEGRADED, available)
