"""Settings dataclasses and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

from ..ai.ai_types import GenerationConfig
from ..ai.auth import OAuthCredentials
from ..ai.client import DEFAULT_BASE_URL, ClientSettings
from ..ai.code_assist import DEFAULT_ENDPOINT, CodeAssistSettings
from ..ai.orchestration.orchestrator import OrchestratorConfig
from ..ai.orchestration.tool_dispatcher import PermissionTable

__all__ = [
    "Settings",
    "SettingsStore",
    "SecretVault",
    "DEFAULT_MODEL",
    "FALLBACK_MODEL",
    "DEFAULT_TOOL_PERMISSIONS",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".vault_assistant"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
DEFAULT_MODEL = "gemini-2.5-pro"
FALLBACK_MODEL = "gemini-2.5-flash"
_ENV_OVERRIDES: Mapping[str, str] = {
    "VAULT_ASSISTANT_API_KEY": "api_key",
    "VAULT_ASSISTANT_BASE_URL": "base_url",
    "VAULT_ASSISTANT_MODEL": "model",
    "VAULT_ASSISTANT_VAULT_PATH": "vault_path",
    "VAULT_ASSISTANT_CODE_ASSIST_ENDPOINT": "code_assist_endpoint",
    "VAULT_ASSISTANT_OAUTH_ACCESS_TOKEN": "oauth_access_token",
    "VAULT_ASSISTANT_OAUTH_REFRESH_TOKEN": "oauth_refresh_token",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "VAULT_ASSISTANT_USE_OAUTH": "use_oauth",
    "VAULT_ASSISTANT_FALLBACK_MODE": "fallback_mode",
    "VAULT_ASSISTANT_ENABLE_FILE_TOOLS": "enable_file_tools",
    "VAULT_ASSISTANT_DEBUG_LOGGING": "debug_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "VAULT_ASSISTANT_TEMPERATURE": "temperature",
    "VAULT_ASSISTANT_REQUEST_TIMEOUT": "request_timeout",
    "VAULT_ASSISTANT_GENERATION_TIMEOUT": "generation_timeout",
    "VAULT_ASSISTANT_TOOL_TIMEOUT": "tool_timeout",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "VAULT_ASSISTANT_MAX_OUTPUT_TOKENS": "max_output_tokens",
    "VAULT_ASSISTANT_TURN_BUDGET": "turn_budget",
    "VAULT_ASSISTANT_MAX_RETRIES": "max_retries",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_TOKEN_PREFIX = "fernet:"
# plaintext field -> ciphertext field stored on disk
_SECRET_FIELDS: Mapping[str, str] = {
    "api_key": "api_key_ciphertext",
    "oauth_access_token": "oauth_access_token_ciphertext",
    "oauth_refresh_token": "oauth_refresh_token_ciphertext",
    "oauth_client_secret": "oauth_client_secret_ciphertext",
}

DEFAULT_TOOL_PERMISSIONS: Mapping[str, str] = {
    # read-only vault navigation
    "read_file": "always",
    "list_files": "always",
    "read_many_files": "always",
    # writes, network and memory
    "write_file": "ask",
    "create_folder": "ask",
    "web_fetch": "ask",
    "google_web_search": "ask",
    "save_memory": "ask",
    "delete_memory": "ask",
}


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    use_oauth: bool = False
    api_key: str = ""
    base_url: str = DEFAULT_BASE_URL
    code_assist_endpoint: str = DEFAULT_ENDPOINT
    code_assist_project: str | None = None
    oauth_access_token: str = ""
    oauth_refresh_token: str = ""
    oauth_expires_at: float | None = None
    oauth_client_id: str = ""
    oauth_client_secret: str = ""
    model: str = DEFAULT_MODEL
    fallback_mode: bool = False
    temperature: float = 0.7
    max_output_tokens: int = 8192
    request_timeout: float = 90.0
    generation_timeout: float = 120.0
    tool_timeout: float = 60.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    turn_budget: int = 10
    vault_path: str = ""
    memory_path: str | None = None
    enable_file_tools: bool = True
    debug_logging: bool = False
    tool_permissions: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_TOOL_PERMISSIONS))

    # ------------------------------------------------------------------
    # Derived component settings
    # ------------------------------------------------------------------

    @property
    def effective_model(self) -> str:
        return FALLBACK_MODEL if self.fallback_mode else (self.model or DEFAULT_MODEL)

    def resolved_memory_path(self) -> Path:
        if self.memory_path:
            return Path(self.memory_path).expanduser()
        return _SETTINGS_DIR / "memory.json"

    def client_settings(self) -> ClientSettings:
        return ClientSettings(
            api_key=self.api_key,
            model=self.effective_model,
            base_url=self.base_url or DEFAULT_BASE_URL,
            request_timeout=self.request_timeout,
            debug_logging=self.debug_logging,
        )

    def code_assist_settings(self) -> CodeAssistSettings:
        return CodeAssistSettings(
            model=self.effective_model,
            endpoint=self.code_assist_endpoint or DEFAULT_ENDPOINT,
            project_id=self.code_assist_project,
            request_timeout=self.request_timeout,
            max_retries=self.max_retries,
            retry_min_seconds=self.retry_min_seconds,
            retry_max_seconds=self.retry_max_seconds,
            debug_logging=self.debug_logging,
        )

    def oauth_credentials(self) -> OAuthCredentials:
        return OAuthCredentials(
            access_token=self.oauth_access_token,
            refresh_token=self.oauth_refresh_token or None,
            expires_at=self.oauth_expires_at,
            client_id=self.oauth_client_id or None,
            client_secret=self.oauth_client_secret or None,
        )

    def generation_config(self, system_instruction: str | None = None) -> GenerationConfig:
        return GenerationConfig(
            model=self.effective_model,
            temperature=self.temperature,
            max_output_tokens=self.max_output_tokens,
            system_instruction=system_instruction,
        )

    def orchestrator_config(self) -> OrchestratorConfig:
        return OrchestratorConfig(
            turn_budget=self.turn_budget,
            generation_timeout=self.generation_timeout if self.generation_timeout > 0 else None,
        )

    def permission_table(self) -> PermissionTable:
        return PermissionTable(self.tool_permissions)

    def with_oauth_credentials(self, credentials: OAuthCredentials) -> Settings:
        return replace(
            self,
            oauth_access_token=credentials.access_token,
            oauth_refresh_token=credentials.refresh_token or self.oauth_refresh_token,
            oauth_expires_at=credentials.expires_at,
        )


# -----------------------------------------------------------------------------
# Secrets
# -----------------------------------------------------------------------------


class SecretVault:
    """Fernet encryption for secrets persisted in the settings file.

    Stored tokens carry a ``fernet:`` prefix; unprefixed tokens are read as
    bare Fernet payloads.
    """

    strategy = "fernet"

    def __init__(self, *, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._fernet: Fernet | None = None

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._get_fernet().encrypt(secret.encode("utf-8"))
        return f"{_TOKEN_PREFIX}{token.decode('ascii')}"

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        payload = token.removeprefix(_TOKEN_PREFIX)
        if ":" in payload:
            raise ValueError(f"Unsupported secret token prefix {payload.split(':', 1)[0]!r}")
        try:
            raw = self._get_fernet().decrypt(payload.encode("ascii"))
        except (InvalidToken, UnicodeEncodeError) as exc:
            raise ValueError("Invalid Fernet token") from exc
        return raw.decode("utf-8")

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_or_create_key())
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        path = self._key_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            return path.read_bytes().strip()
        key = Fernet.generate_key()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
        return key


# -----------------------------------------------------------------------------
# Store
# -----------------------------------------------------------------------------


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying CLI/environment overrides when present."""

        payload = self._read_payload()
        settings = Settings()
        needs_migration = False

        if payload:
            secrets, migrated = self._decrypt_secrets(payload)
            needs_migration = migrated
            data = _filter_fields(payload)
            permissions = data.get("tool_permissions")
            if isinstance(permissions, Mapping):
                merged = dict(DEFAULT_TOOL_PERMISSIONS)
                merged.update({str(k): str(v) for k, v in permissions.items()})
                data["tool_permissions"] = merged
            elif "tool_permissions" in data:
                data.pop("tool_permissions")
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            if secrets:
                settings = replace(settings, **secrets)
            LOGGER.debug("Settings loaded from %s", self._path)

        version_mismatch = bool(payload) and payload.get("version") != _SETTINGS_VERSION
        if needs_migration or version_mismatch:
            try:
                self.save(settings)
            except OSError as exc:
                LOGGER.warning("Failed to migrate settings payload: %s", exc)

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")
        return self._apply_env_overrides(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        payload = self._serialize(settings)
        body = json.dumps(payload, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s (api key %s)", self._path, redact_secret(settings.api_key) or "unset")
        return self._path

    def _serialize(self, settings: Settings) -> Dict[str, Any]:
        data = asdict(settings)
        for plain_field, cipher_field in _SECRET_FIELDS.items():
            secret = data.pop(plain_field, "") or ""
            ciphertext = self._encrypt_secret_value(secret, field_name=plain_field)
            if ciphertext:
                data[cipher_field] = ciphertext
        data["version"] = _SETTINGS_VERSION
        data["secret_backend"] = self._vault.strategy
        return data

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s does not contain an object", self._path)
            return {}
        return payload

    def _decrypt_secrets(self, payload: Dict[str, Any]) -> tuple[Dict[str, str], bool]:
        secrets: Dict[str, str] = {}
        migrated = False
        for plain_field, cipher_field in _SECRET_FIELDS.items():
            ciphertext = payload.pop(cipher_field, None)
            legacy_plaintext = payload.pop(plain_field, None)
            if ciphertext:
                try:
                    secrets[plain_field] = self._vault.decrypt(ciphertext)
                except ValueError as exc:
                    LOGGER.warning("Unable to decrypt %s: %s", plain_field, exc)
            elif legacy_plaintext:
                LOGGER.info("Detected plaintext %s; migrating to encrypted storage.", plain_field)
                secrets[plain_field] = str(legacy_plaintext)
                migrated = True
        return secrets, migrated

    def _encrypt_secret_value(self, secret: str, *, field_name: str) -> str | None:
        if not secret:
            return None
        try:
            token = self._vault.encrypt(secret)
        except (OSError, ValueError) as exc:  # pragma: no cover - extremely rare
            LOGGER.warning("Failed to encrypt %s: %s", field_name, exc)
            return None
        LOGGER.debug("%s encrypted via %s backend", field_name, self._vault.strategy)
        return token

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> Settings:
        allowed = {item.name for item in fields(Settings)}
        filtered: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in allowed or value is None:
                continue
            filtered[key] = value
        permissions = filtered.get("tool_permissions")
        if isinstance(permissions, Mapping):
            merged = dict(settings.tool_permissions)
            merged.update(permissions)
            filtered["tool_permissions"] = merged
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {item.name for item in fields(Settings)} - set(_SECRET_FIELDS)
    return {key: value for key, value in payload.items() if key in allowed}


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"

