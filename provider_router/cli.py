"""
Command-line diagnostics for the provider router.

Usage:
    provider-router "What is a monad?" --provider ollama
    provider-router --provider gemini --image screenshot.png
    provider-router --provider ollama --list-models
    provider-router --provider openai --test
    provider-router "hello" --provider ollama --json
    provider-router --configure
"""

import argparse
import asyncio
import base64
import json
import mimetypes
import sys
from pathlib import Path

from .router import ProviderRouter
from .settings import load_settings, setup_logging
from .types import (
    AnalysisRequest,
    AnalysisResult,
    AudioBytes,
    BackendKind,
    ChatText,
    ConstructionError,
    ImageBytes,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Provider Router CLI")
    parser.add_argument("prompt", nargs="?", help="Text to send, or a prompt for --image/--audio")
    parser.add_argument(
        "--provider",
        "-p",
        choices=[kind.value for kind in BackendKind],
        help="Backend to use (defaults to the configured provider)",
    )
    parser.add_argument("--model", "-m", help="Model name for the backend")
    parser.add_argument("--ollama-url", help="Ollama server URL")
    media = parser.add_mutually_exclusive_group()
    media.add_argument("--image", type=Path, help="Analyze an image file")
    media.add_argument("--audio", type=Path, help="Analyze an audio file")
    parser.add_argument("--list-models", action="store_true", help="List local models")
    parser.add_argument("--test", action="store_true", help="Test the backend connection")
    parser.add_argument("--json", action="store_true", help="Print the outcome as JSON")
    parser.add_argument("--configure", action="store_true", help="Configure API keys")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    return parser


def _guess_mime(path: Path, fallback: str) -> str:
    guessed, _ = mimetypes.guess_type(path.name)
    return guessed or fallback


def build_request(args: argparse.Namespace) -> AnalysisRequest | None:
    if args.image:
        return ImageBytes(
            args.image.read_bytes(), _guess_mime(args.image, "image/png"), args.prompt
        )
    if args.audio:
        # Same path the recorder takes: base64 payload plus mime type
        encoded = base64.b64encode(args.audio.read_bytes()).decode("ascii")
        return AudioBytes.from_base64(
            encoded, _guess_mime(args.audio, "audio/webm"), args.prompt
        )
    if args.prompt:
        return ChatText(args.prompt)
    return None


async def run(args: argparse.Namespace) -> int:
    settings = load_settings()
    setup_logging(settings, verbose=args.verbose)

    kind = BackendKind.from_name(args.provider) if args.provider else settings.provider
    try:
        config = settings.backend_config(kind, model=args.model, endpoint=args.ollama_url)
    except ConstructionError as e:
        print(f"Error: {e}. Run with --configure to store a key.")
        return 2

    try:
        request = build_request(args)
    except (OSError, ValueError) as e:
        print(f"Error: {e}")
        return 2

    router = ProviderRouter(
        timeout=settings.request_timeout,
        local_text_fallback=settings.local_text_fallback,
    )
    try:
        session = await router.initialize(kind, config)
        if not args.json:
            print(f"[{session.kind.value}:{session.model}] status={session.status.value}")

        if args.list_models:
            models = await router.list_available_models()
            print("\n".join(models) if models else "No models found")
            return 0

        if args.test:
            status = await router.test_connection()
            print("OK" if status.ok else f"Failed: {status.error}")
            return 0 if status.ok else 1

        if request is None:
            build_parser().print_help()
            return 0

        outcome = await router.perform(request)
        if args.json:
            print(json.dumps(outcome.to_dict(), indent=2))
            return 0 if isinstance(outcome, AnalysisResult) else 1
        if isinstance(outcome, AnalysisResult):
            if outcome.degraded:
                print("(text-only answer, media was not analyzed)")
            print("-" * 60)
            print(outcome.text)
            print("-" * 60)
            return 0
        print(f"\n[{outcome.kind.name}] {outcome.message}")
        return 1
    finally:
        await router.aclose()


def main() -> None:
    args = build_parser().parse_args()
    if args.configure:
        from .credentials import configure_credentials_interactive

        configure_credentials_interactive()
        return
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
