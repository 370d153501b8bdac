"""
User Settings
=============
Loads ~/.provider_router/config.json and configures logging.

Example config.json:
    {
        "defaults": {
            "provider": "ollama",
            "requestTimeout": 60,
            "localTextFallback": true
        },
        "providers": {
            "openai": {"model": "gpt-4o"},
            "ollama": {"model": "llama3.2", "url": "http://localhost:11434"}
        },
        "logging": {"level": "INFO", "file": "~/provider_router.log"}
    }
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .credentials import CONFIG_DIR, get_api_key
from .types import BackendConfig, BackendKind

CONFIG_FILE = CONFIG_DIR / "config.json"


@dataclass
class Settings:
    provider: BackendKind = BackendKind.HOSTED_MULTIMODAL
    request_timeout: float | None = None
    local_text_fallback: bool = True
    providers: dict[str, dict[str, Any]] = field(default_factory=dict)
    log_config: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Settings:
        defaults = data.get("defaults", {})
        if not isinstance(defaults, dict):
            defaults = {}

        provider = BackendKind.HOSTED_MULTIMODAL
        provider_name = defaults.get("provider")
        if isinstance(provider_name, str):
            try:
                provider = BackendKind.from_name(provider_name)
            except ValueError:
                print(f"Warning: Unknown provider '{provider_name}' in config")

        timeout = defaults.get("requestTimeout")
        if not isinstance(timeout, (int, float)) or isinstance(timeout, bool):
            timeout = None

        fallback = defaults.get("localTextFallback")
        providers = data.get("providers", {})
        log_config = data.get("logging", {})

        return cls(
            provider=provider,
            request_timeout=float(timeout) if timeout is not None else None,
            local_text_fallback=fallback if isinstance(fallback, bool) else True,
            providers=providers if isinstance(providers, dict) else {},
            log_config=log_config if isinstance(log_config, dict) else {},
        )

    def _provider_config(self, kind: BackendKind) -> dict[str, Any]:
        provider_config = self.providers.get(kind.value, {})
        if not isinstance(provider_config, dict):
            return {}
        return provider_config

    def backend_config(
        self,
        kind: BackendKind,
        model: str | None = None,
        endpoint: str | None = None,
    ) -> BackendConfig:
        """
        Build a BackendConfig from settings and stored credentials.

        Raises:
            ConstructionError: hosted provider without an API key
        """
        provider_config = self._provider_config(kind)
        model = model or provider_config.get("model") or None
        if kind.is_hosted:
            return BackendConfig(kind=kind, api_key=get_api_key(kind.value), model=model)
        return BackendConfig(
            kind=kind, model=model, endpoint=endpoint or provider_config.get("url")
        )


def load_settings(path: Path = CONFIG_FILE) -> Settings:
    """Read the settings file; missing or malformed files give defaults"""
    if not path.exists():
        return Settings()

    try:
        with path.open("r", encoding="utf-8") as config_file:
            loaded = json.load(config_file)
    except (OSError, ValueError) as exc:
        # Logging is not configured yet
        print(f"Warning: Failed to load config from {path}: {exc}")
        return Settings()

    if not isinstance(loaded, dict):
        print(f"Warning: Config file {path} did not contain an object.")
        return Settings()

    return Settings.from_dict(loaded)


def setup_logging(settings: Settings, verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO

    log_config = settings.log_config
    if not verbose and "level" in log_config:
        level = getattr(logging, str(log_config["level"]).upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    log_file = log_config.get("file")
    if log_file:
        try:
            handlers.append(
                logging.FileHandler(os.path.expanduser(log_file), encoding="utf-8")
            )
        except OSError as e:
            print(f"Failed to setup log file {log_file}: {e}")

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )
