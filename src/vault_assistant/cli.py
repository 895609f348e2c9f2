"""Command-line entry point for the vault assistant."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Mapping, Sequence, TextIO, get_args, get_origin, get_type_hints

import httpx

from .ai.auth import OAuthCredentials, OAuthTokenProvider
from .ai.client import OpenAICompatTransport
from .ai.code_assist import CodeAssistTransport
from .ai.errors import AssistantError
from .ai.memory import MemoryStore
from .ai.orchestration import ConversationOrchestrator, HistoryStore, ToolDispatcher
from .ai.prompts import build_system_prompt
from .ai.search import ApiKeySearchBackend, CodeAssistSearchBackend, SearchBackend
from .ai.tools import build_builtin_catalog
from .ai.tools.builtin import FETCH_TIMEOUT, MAX_REDIRECTS
from .ai.transport import StreamTransport
from .services.settings import Settings, SettingsStore, redact_secret
from .utils import logging as logging_utils
from .vault import FileSystemVault

_LOGGER = logging.getLogger(__name__)
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_EXIT_COMMANDS = {"/quit", "/exit"}


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point invoked by the ``vault-assistant`` console script."""

    args = _parse_cli_args(argv)
    settings_path = args.settings_path or os.environ.get("VAULT_ASSISTANT_SETTINGS_PATH")
    store = SettingsStore(Path(settings_path).expanduser() if settings_path else None)

    try:
        overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc
    if args.vault:
        overrides["vault_path"] = args.vault
    if args.model:
        overrides["model"] = args.model
    if args.oauth:
        overrides["use_oauth"] = True
    if args.debug:
        overrides["debug_logging"] = True

    settings = load_settings(store, overrides=overrides or None)

    if args.dump_settings:
        _dump_settings(settings, store, overrides=overrides)
        return

    log_path = logging_utils.setup_logging(
        debug=settings.debug_logging,
        console=args.verbose,
        secrets=(settings.api_key, settings.oauth_access_token, settings.oauth_refresh_token),
    )
    _LOGGER.debug("Logging to %s", log_path)

    try:
        asyncio.run(run_session(settings, store))
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Shutdown requested by user.")


def load_settings(store: SettingsStore, *, overrides: Mapping[str, Any] | None = None) -> Settings:
    """Load persisted settings or fall back to defaults."""

    try:
        return store.load(overrides=overrides)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", store.path, exc)
        return Settings()


# -----------------------------------------------------------------------------
# Session wiring
# -----------------------------------------------------------------------------


class _Session:
    """Owns the long-lived clients of one interactive session."""

    def __init__(self, settings: Settings, store: SettingsStore) -> None:
        self.settings = settings
        self.store = store
        self.http = httpx.AsyncClient(timeout=settings.request_timeout)
        self.fetch_http = httpx.AsyncClient(follow_redirects=True, max_redirects=MAX_REDIRECTS, timeout=FETCH_TIMEOUT)
        self.transport, self.search = self._build_transport()
        vault_root = Path(settings.vault_path or os.getcwd()).expanduser()
        self.vault = FileSystemVault(vault_root)
        self.memory = MemoryStore(settings.resolved_memory_path())
        self.memory.load()

    def _build_transport(self) -> tuple[StreamTransport, SearchBackend | None]:
        settings = self.settings
        if settings.use_oauth:
            auth = OAuthTokenProvider(
                settings.oauth_credentials(),
                http_client=self.http,
                on_refresh=self._persist_credentials,
            )
            transport = CodeAssistTransport(settings.code_assist_settings(), auth, http_client=self.http)
            return transport, CodeAssistSearchBackend(transport, settings.effective_model)
        if not settings.api_key:
            _LOGGER.warning("No API key configured; requests will fail until one is set")
        search = ApiKeySearchBackend(settings.api_key, settings.effective_model, http_client=self.http)
        return OpenAICompatTransport(settings.client_settings()), search

    def _persist_credentials(self, credentials: OAuthCredentials) -> None:
        self.settings = self.settings.with_oauth_credentials(credentials)
        try:
            self.store.save(self.settings)
        except OSError as exc:
            _LOGGER.warning("Failed to persist refreshed OAuth token: %s", exc)

    def build_orchestrator(self) -> ConversationOrchestrator:
        settings = self.settings
        catalog = build_builtin_catalog(
            self.vault,
            self.memory,
            search_backend=self.search,
            http_client=self.fetch_http,
            enable_file_tools=settings.enable_file_tools,
        )
        dispatcher = ToolDispatcher(
            catalog,
            permissions=settings.permission_table(),
            approval=_prompt_approval,
            tool_timeout=settings.tool_timeout if settings.tool_timeout > 0 else None,
        )
        return ConversationOrchestrator(
            self.transport,
            catalog,
            dispatcher,
            generation_config=settings.generation_config(),
            config=settings.orchestrator_config(),
            history=HistoryStore(),
            system_prompt=self._system_prompt,
        )

    def _system_prompt(self) -> str:
        return build_system_prompt(
            self.vault.name,
            self.memory.as_prompt_text(),
            vault_path=str(self.vault.root),
        )

    async def aclose(self) -> None:
        try:
            await self.transport.aclose()
        except Exception as exc:  # pragma: no cover - shutdown path
            _LOGGER.warning("Failed to close transport: %s", exc)
        await self.fetch_http.aclose()
        await self.http.aclose()


async def run_session(settings: Settings, store: SettingsStore, *, stream: TextIO | None = None) -> None:
    """Run the interactive read/stream loop until the user quits."""

    out = stream or sys.stdout
    session = _Session(settings, store)
    orchestrator = session.build_orchestrator()
    out.write(f"Vault: {session.vault.root} | model: {settings.effective_model}\n")
    out.write("Type /reset to start over, /quit to exit.\n")
    try:
        while True:
            try:
                line = await asyncio.to_thread(input, "\n> ")
            except EOFError:
                break
            utterance = line.strip()
            if not utterance:
                continue
            if utterance in _EXIT_COMMANDS:
                break
            if utterance == "/reset":
                orchestrator.reset()
                out.write("Conversation cleared.\n")
                continue
            await _print_turn(orchestrator, utterance, out)
    finally:
        await session.aclose()


async def _print_turn(orchestrator: ConversationOrchestrator, utterance: str, out: TextIO) -> None:
    async for event in orchestrator.stream(utterance):
        if event.type == "text" and event.text:
            out.write(event.text)
            out.flush()
        elif event.type == "tool_calls":
            for call in event.calls:
                out.write(f"\n[tool] {call.name}({json.dumps(dict(call.args), ensure_ascii=False)})\n")
        elif event.type == "tool_result" and event.tool_call is not None:
            record = event.tool_call
            if record.error:
                out.write(f"[tool] {record.name} failed: {record.error}\n")
        elif event.type == "error" and event.error is not None:
            out.write(f"\nError: {_describe_error(event.error)}\n")
        elif event.type == "done":
            if event.budget_exhausted:
                out.write("\n[stopped: tool turn budget exhausted]\n")
            out.write("\n")
    out.flush()


async def _prompt_approval(name: str, args: Mapping[str, Any]) -> bool:
    rendered = json.dumps(dict(args), ensure_ascii=False, indent=2)
    answer = await asyncio.to_thread(input, f"\nAllow tool '{name}' with arguments:\n{rendered}\n[y/N] ")
    return answer.strip().lower() in {"y", "yes"}


def _describe_error(error: AssistantError) -> str:
    message = str(error)
    return f"{message} (retry may help)" if error.retriable else message


# -----------------------------------------------------------------------------
# Argument parsing
# -----------------------------------------------------------------------------


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="vault-assistant",
        description="Chat with a tool-calling Gemini assistant over a notes vault.",
    )
    parser.add_argument("--vault", metavar="PATH", help="Vault directory (defaults to the current directory).")
    parser.add_argument("--model", help="Model name to request.")
    parser.add_argument("--oauth", action="store_true", help="Use OAuth and the Code Assist endpoint.")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging, including request payloads.")
    parser.add_argument("--verbose", action="store_true", help="Mirror warnings to stderr.")
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.vault_assistant/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this session (repeatable).",
    )
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        overrides[key] = _coerce_value(type_hints.get(key, fields[key].type), raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    optional = type(None) in get_args(annotation)
    target = _resolve_annotation(annotation)
    if optional and raw_value.lower() in {"none", "null"}:
        return None
    if target is bool:
        return _parse_bool(raw_value)
    if target is int:
        return int(raw_value, 10)
    if target is float:
        return float(raw_value)
    if target is dict:
        try:
            payload = json.loads(raw_value or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError("Dict overrides must be valid JSON objects") from exc
        if not isinstance(payload, dict):
            raise ValueError("Dict overrides must be valid JSON objects")
        return payload
    return raw_value


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin is dict:
        return dict
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    return args[0] if args else origin


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    for key in ("api_key", "oauth_access_token", "oauth_refresh_token", "oauth_client_secret"):
        payload[key] = redact_secret(payload.get(key) or "")
    metadata = {
        "path": str(store.path),
        "secret_backend": store.vault.strategy,
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": sorted(name for name in os.environ if name.startswith("VAULT_ASSISTANT_")),
    }
    json.dump({"settings": payload, "meta": metadata}, destination, indent=2)
    destination.write("\n")


if __name__ == "__main__":  # pragma: no cover
    main()
