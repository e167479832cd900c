"""Persistent settings storage for dictate-tools."""

import json
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from dictate_tools import credentials
from dictate_tools.config import (
    DEFAULT_LLM_ENDPOINT,
    DEFAULT_LLM_MODEL,
    DEFAULT_LLM_TEMP,
    DEFAULT_MAX_TOOL_ROUNDS,
    DEFAULT_SHUTDOWN_TIMEOUT,
    DEFAULT_TOOL_PROMPT,
    ServerConfig,
    ServerConfigError,
    validate_server_config,
)

logger = logging.getLogger(__name__)

SETTINGS_FILE = Path.home() / ".dictate_tools/dictate_tools_settings.json"

# Settings keys that should be stored securely
SECURE_KEYS = {"llm_key"}


def default_settings() -> dict[str, Any]:
    return {
        "mcp_tools_enabled": False,
        "mcp_servers": {},
        "llm_endpoint": DEFAULT_LLM_ENDPOINT,
        "llm_model": DEFAULT_LLM_MODEL,
        "llm_temperature": DEFAULT_LLM_TEMP,
        "llm_tool_prompt": DEFAULT_TOOL_PROMPT,
        "max_tool_rounds": DEFAULT_MAX_TOOL_ROUNDS,
        "shutdown_timeout": DEFAULT_SHUTDOWN_TIMEOUT,
    }


def load_settings() -> dict[str, Any]:
    """Load saved settings from disk, returning defaults on failure.

    Automatically migrates a plaintext API key to secure storage if found.
    """
    defaults = default_settings()

    try:
        if SETTINGS_FILE.is_file():
            settings = json.loads(SETTINGS_FILE.read_text(encoding="utf-8"))
            if not isinstance(settings, dict):
                raise ValueError("settings file must contain a JSON object")

            for key, value in defaults.items():
                settings.setdefault(key, value)

            _migrate_secure_settings(settings)
            return settings
    except (OSError, UnicodeDecodeError, ValueError) as e:
        # ValueError includes json.JSONDecodeError
        logger.error(f"Could not read saved settings: {e}")
    return defaults


def save_settings(settings: dict[str, Any]) -> bool:
    """Persist settings to disk. Returns True on success, False otherwise.

    Secure settings (API keys) go to the system credential manager and are left out
    of the JSON file.
    """
    try:
        _store_secure_settings(settings)

        settings_to_save = {k: v for k, v in settings.items() if k not in SECURE_KEYS}

        SETTINGS_FILE.parent.mkdir(parents=True, exist_ok=True)
        SETTINGS_FILE.write_text(json.dumps(settings_to_save, indent=2), encoding="utf-8")
        return True
    except (OSError, UnicodeEncodeError, TypeError, ValueError) as e:
        logger.error(f"Could not save settings: {e}")
        return False


def load_server_configs(settings: Mapping[str, Any]) -> dict[str, ServerConfig]:
    """Parse the ``mcp_servers`` map, skipping entries that are not usable.

    Disabled entries are kept so they can be reported.
    """
    raw_servers = settings.get("mcp_servers") or {}
    if not isinstance(raw_servers, Mapping):
        logger.warning("Ignoring mcp_servers: expected an object, got %s", type(raw_servers).__name__)
        return {}

    servers: dict[str, ServerConfig] = {}
    for server_id, data in raw_servers.items():
        try:
            config = ServerConfig.from_dict(str(server_id), data)
        except ServerConfigError as e:
            logger.warning(f"Skipping tool server {server_id}: {e}")
            continue
        error = validate_server_config(config)
        if error:
            logger.warning(f"Skipping tool server {server_id}: {error}")
            continue
        servers[str(server_id)] = config
    return servers


def set_server_config(settings: dict[str, Any], config: ServerConfig) -> None:
    """Add or replace one server entry in ``settings`` (call ``save_settings`` after)."""
    servers = settings.get("mcp_servers")
    if not isinstance(servers, dict):
        servers = {}
        settings["mcp_servers"] = servers
    servers[config.id] = config.to_dict()


def remove_server_config(settings: dict[str, Any], server_id: str) -> bool:
    servers = settings.get("mcp_servers")
    if not isinstance(servers, dict) or server_id not in servers:
        return False
    del servers[server_id]
    return True


def _migrate_secure_settings(settings: dict[str, Any]) -> None:
    """Migrate plaintext secure settings to the credential manager (in place)."""
    for key in SECURE_KEYS:
        plaintext_value = settings.get(key)
        if isinstance(plaintext_value, str) and plaintext_value.strip():
            if credentials.migrate_from_plaintext(plaintext_value, _get_credential_key(key)):
                del settings[key]
                logger.info(f"Migrated {key} to secure storage")


def _store_secure_settings(settings: dict[str, Any]) -> None:
    for key in SECURE_KEYS:
        value = settings.get(key)
        if isinstance(value, str) and value.strip():
            try:
                credentials.store_credential(_get_credential_key(key), value)
            except (credentials.CredentialStorageError, ValueError) as e:
                logger.warning(f"Failed to store {key} in credential manager: {e}")


def get_secure_setting(key: str) -> str | None:
    """Retrieve a secure setting from the credential manager.

    Args:
        key: Settings key (e.g., "llm_key")

    Returns:
        The credential value if found, None otherwise

    Raises:
        ValueError: If ``key`` is not a secure setting
    """
    if key not in SECURE_KEYS:
        raise ValueError(f"Key '{key}' is not a secure setting")

    try:
        return credentials.retrieve_credential(_get_credential_key(key))
    except (credentials.CredentialStorageError, ValueError) as e:
        logger.warning(f"Failed to retrieve {key} from credential manager: {e}")
        return None


def _get_credential_key(settings_key: str) -> str:
    """Map a settings key (e.g. "llm_key") to its keyring key (e.g. "llm_api_key")."""
    key_mapping = {
        "llm_key": credentials.LLM_API_KEY,
    }
    return key_mapping.get(settings_key, settings_key)
