"""Secure credential storage backed by the system keyring.

Holds the LLM API key and any secrets that tool servers need in their environment.
A server's ``env`` entry can reference a stored secret instead of embedding it::

    "env": {"GITHUB_TOKEN": "keyring:github_token"}

The reference is resolved when the server is spawned, so the plaintext never has to
live in the settings file.
"""

import logging
from collections.abc import Mapping

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

logger = logging.getLogger(__name__)

# Service name for keyring storage
SERVICE_NAME = "DictateTools"

# Credential keys
LLM_API_KEY = "llm_api_key"

KEYRING_REFERENCE_PREFIX = "keyring:"


class CredentialStorageError(Exception):
    """Raised when credential storage operations fail."""


def _require_key(key: str) -> None:
    if not key or not key.strip():
        raise ValueError("Credential key cannot be empty")


def store_credential(key: str, value: str) -> None:
    """Store a credential securely in the system keyring.

    Raises:
        CredentialStorageError: If storage fails
        ValueError: If key or value is empty
    """
    _require_key(key)
    if not value or not value.strip():
        raise ValueError("Credential value cannot be empty")

    try:
        keyring.set_password(SERVICE_NAME, key, value)
    except KeyringError as e:
        logger.error(f"Failed to store credential {key}: {e}")
        raise CredentialStorageError(f"Failed to store credential: {e}") from e
    except Exception as e:
        # Backend initialization problems surface as arbitrary exceptions
        logger.error(f"Unexpected error storing credential {key}: {e}")
        raise CredentialStorageError(f"Unexpected error storing credential: {e}") from e
    logger.info(f"Stored credential: {key}")


def retrieve_credential(key: str) -> str | None:
    """Retrieve a credential from the system keyring, or None if absent.

    Raises:
        CredentialStorageError: If retrieval fails
        ValueError: If key is empty
    """
    _require_key(key)

    try:
        value = keyring.get_password(SERVICE_NAME, key)
    except KeyringError as e:
        logger.error(f"Failed to retrieve credential {key}: {e}")
        raise CredentialStorageError(f"Failed to retrieve credential: {e}") from e
    except Exception as e:
        logger.error(f"Unexpected error retrieving credential {key}: {e}")
        raise CredentialStorageError(f"Unexpected error retrieving credential: {e}") from e

    if value:
        logger.debug(f"Retrieved credential: {key}")
    else:
        logger.debug(f"No credential found for: {key}")
    return value


def delete_credential(key: str) -> None:
    """Delete a credential. Deleting a missing credential is not an error.

    Raises:
        CredentialStorageError: If deletion fails
        ValueError: If key is empty
    """
    _require_key(key)

    try:
        keyring.delete_password(SERVICE_NAME, key)
        logger.info(f"Deleted credential: {key}")
    except PasswordDeleteError:
        logger.debug(f"No credential to delete: {key}")
    except KeyringError as e:
        logger.error(f"Failed to delete credential {key}: {e}")
        raise CredentialStorageError(f"Failed to delete credential: {e}") from e


def migrate_from_plaintext(plaintext_value: str, key: str) -> bool:
    """Move a plaintext value into the keyring. Returns True on success."""
    if not plaintext_value or not plaintext_value.strip():
        return False

    try:
        store_credential(key, plaintext_value)
    except (CredentialStorageError, ValueError) as e:
        logger.warning(f"Failed to migrate credential {key}: {e}")
        return False
    logger.info(f"Migrated plaintext credential to secure storage: {key}")
    return True


def is_keyring_reference(value: str) -> bool:
    return isinstance(value, str) and value.startswith(KEYRING_REFERENCE_PREFIX)


def resolve_env_references(env: Mapping[str, str] | None) -> dict[str, str]:
    """Return ``env`` with every ``keyring:<name>`` value replaced by the stored secret.

    Raises:
        CredentialStorageError: If a referenced secret is missing or unreadable
        ValueError: If a reference names no key
    """
    resolved: dict[str, str] = {}
    for name, value in (env or {}).items():
        if not is_keyring_reference(value):
            resolved[name] = str(value)
            continue

        key = value[len(KEYRING_REFERENCE_PREFIX):]
        secret = retrieve_credential(key)
        if secret is None:
            raise CredentialStorageError(f"No stored credential '{key}' for env var {name}")
        resolved[name] = secret
    return resolved
