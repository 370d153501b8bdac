"""
Credential Store
================
API keys for the hosted providers, looked up in order from:
1. System keyring (OS credential store)
2. Encrypted file with a machine-specific key
3. Environment variables

Keys are never written in plain text and never logged.
"""

import base64
import getpass
import hashlib
import json
import logging
import os
import sys
from abc import ABC, abstractmethod
from pathlib import Path

import keyring
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from keyring.errors import KeyringError, PasswordDeleteError

logger = logging.getLogger(__name__)

SERVICE_NAME = "provider_router"
CONFIG_DIR = Path.home() / ".provider_router"
ENCRYPTED_CREDS_FILE = CONFIG_DIR / "credentials.enc"

HOSTED_PROVIDERS = {
    "gemini": "Google Gemini (images, audio, chat)",
    "openai": "OpenAI (chat completions, images)",
}


class CredentialBackend(ABC):
    """Abstract base class for credential storage backends"""

    @abstractmethod
    def get(self, provider: str) -> str | None:
        pass

    @abstractmethod
    def set(self, provider: str, api_key: str) -> bool:
        pass

    @abstractmethod
    def delete(self, provider: str) -> bool:
        pass

    @property
    @abstractmethod
    def is_available(self) -> bool:
        pass


class KeyringBackend(CredentialBackend):
    """OS keychain/keyring"""

    @property
    def is_available(self) -> bool:
        try:
            keyring.get_password(SERVICE_NAME, "__probe__")
            return True
        except KeyringError:
            return False

    def get(self, provider: str) -> str | None:
        try:
            return keyring.get_password(SERVICE_NAME, provider)
        except KeyringError as e:
            logger.warning(f"Keyring get failed for {provider}: {e}")
            return None

    def set(self, provider: str, api_key: str) -> bool:
        try:
            keyring.set_password(SERVICE_NAME, provider, api_key)
        except KeyringError as e:
            logger.error(f"Keyring set failed for {provider}: {e}")
            return False
        logger.info(f"Stored credential in keyring for: {provider}")
        return True

    def delete(self, provider: str) -> bool:
        try:
            keyring.delete_password(SERVICE_NAME, provider)
        except PasswordDeleteError:
            pass
        except KeyringError as e:
            logger.warning(f"Keyring delete failed for {provider}: {e}")
            return False
        return True


class EncryptedFileBackend(CredentialBackend):
    """Fernet-encrypted JSON file keyed on the machine identity"""

    def __init__(self, path: Path = ENCRYPTED_CREDS_FILE):
        self.path = path
        self._fernet = Fernet(self._derive_key())

    @property
    def is_available(self) -> bool:
        return True

    @staticmethod
    def _machine_id() -> bytes:
        identifiers = []
        if sys.platform.startswith("linux"):
            try:
                identifiers.append(Path("/etc/machine-id").read_text().strip())
            except OSError:
                pass
        identifiers.append(getpass.getuser())
        identifiers.append(os.uname().nodename if hasattr(os, "uname") else "unknown")
        return hashlib.sha256(":".join(identifiers).encode()).digest()

    def _derive_key(self) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=b"provider_router_v1",
            iterations=480000,
        )
        return base64.urlsafe_b64encode(kdf.derive(self._machine_id()))

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            decrypted = self._fernet.decrypt(self.path.read_bytes())
            return json.loads(decrypted.decode())
        except (InvalidToken, ValueError, OSError) as e:
            logger.error(f"Failed to load credentials: {e}")
            return {}

    def _save(self, creds: dict[str, str]) -> bool:
        try:
            self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            temp_file = self.path.with_suffix(".tmp")
            temp_file.write_bytes(self._fernet.encrypt(json.dumps(creds).encode()))
            os.chmod(temp_file, 0o600)
            temp_file.replace(self.path)
        except OSError as e:
            logger.error(f"Failed to save credentials: {e}")
            return False
        return True

    def get(self, provider: str) -> str | None:
        return self._load().get(provider)

    def set(self, provider: str, api_key: str) -> bool:
        creds = self._load()
        creds[provider] = api_key
        if self._save(creds):
            logger.info(f"Stored credential in encrypted file for: {provider}")
            return True
        return False

    def delete(self, provider: str) -> bool:
        creds = self._load()
        if provider in creds:
            del creds[provider]
            return self._save(creds)
        return True


class EnvironmentBackend(CredentialBackend):
    """Environment variables (non-persistent, always available)"""

    ENV_VARS = {
        "gemini": ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
        "openai": ("OPENAI_API_KEY",),
    }

    @property
    def is_available(self) -> bool:
        return True

    def _names(self, provider: str) -> tuple[str, ...]:
        return self.ENV_VARS.get(provider, (f"{provider.upper()}_API_KEY",))

    def get(self, provider: str) -> str | None:
        for name in self._names(provider):
            value = os.environ.get(name)
            if value:
                return value
        return None

    def set(self, provider: str, api_key: str) -> bool:
        os.environ[self._names(provider)[0]] = api_key
        logger.warning(f"Set API key in environment (non-persistent) for: {provider}")
        return True

    def delete(self, provider: str) -> bool:
        for name in self._names(provider):
            os.environ.pop(name, None)
        return True


class CredentialManager:
    """Looks credentials up through the backend chain, caching hits"""

    def __init__(self, backends: list[CredentialBackend] | None = None):
        if backends is None:
            backends = [KeyringBackend(), EncryptedFileBackend(), EnvironmentBackend()]
        self._backends = backends
        self._cache: dict[str, str] = {}

    def get_api_key(self, provider: str) -> str | None:
        provider = provider.lower()
        if provider in self._cache:
            return self._cache[provider]

        for backend in self._backends:
            if not backend.is_available:
                continue
            api_key = backend.get(provider)
            if api_key:
                self._cache[provider] = api_key
                logger.debug(
                    f"Retrieved credential for {provider} from {type(backend).__name__}"
                )
                return api_key

        logger.warning(f"No credential found for provider: {provider}")
        return None

    def set_api_key(self, provider: str, api_key: str) -> bool:
        """Store in the first available persistent backend"""
        provider = provider.lower()
        if not api_key or len(api_key) < 10:
            logger.error("Invalid API key: too short")
            return False

        self._cache.pop(provider, None)
        for backend in self._backends:
            if backend.is_available and not isinstance(backend, EnvironmentBackend):
                if backend.set(provider, api_key):
                    return True
        return EnvironmentBackend().set(provider, api_key)

    def delete_api_key(self, provider: str) -> bool:
        provider = provider.lower()
        self._cache.pop(provider, None)
        success = True
        for backend in self._backends:
            if backend.is_available:
                success = backend.delete(provider) and success
        return success

    def configured_providers(self) -> list[str]:
        return [p for p in HOSTED_PROVIDERS if self.get_api_key(p)]


_manager: CredentialManager | None = None


def get_credential_manager() -> CredentialManager:
    global _manager
    if _manager is None:
        _manager = CredentialManager()
    return _manager


def get_api_key(provider: str) -> str | None:
    return get_credential_manager().get_api_key(provider)


def configure_credentials_interactive() -> None:
    """Interactive prompt for the hosted providers' API keys"""
    print("\nProvider Router Credential Configuration\n")
    print("=" * 50)

    manager = get_credential_manager()
    for provider_id, description in HOSTED_PROVIDERS.items():
        status = "configured" if manager.get_api_key(provider_id) else "not set"
        print(f"\n{description}: [{status}]")

        response = input(f"Configure {provider_id}? (y/N/clear): ").strip().lower()
        if response == "clear":
            manager.delete_api_key(provider_id)
            print(f"  -> Cleared {provider_id} credentials")
        elif response == "y":
            api_key = getpass.getpass(f"  Enter API key for {provider_id}: ")
            if api_key and manager.set_api_key(provider_id, api_key):
                print(f"  -> Saved {provider_id} credentials securely")
            else:
                print(f"  -> Failed to save {provider_id} credentials")

    print("\n" + "=" * 50)
    print(f"Configured providers: {manager.configured_providers()}")
