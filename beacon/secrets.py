"""Telemetry API key resolution: settings literal, OS keyring, then environment."""

import asyncio
import logging
import os
from typing import Any

import keyring
from keyring.errors import KeyringError

logger = logging.getLogger(__name__)
SERVICE_NAME = "beacon"


def _from_keyring(name: str) -> str | None:
    try:
        return keyring.get_password(SERVICE_NAME, name) or None
    except KeyringError as e:
        logger.debug("keyring has no usable entry for %s (%s); trying environment", name, e)
        return None


def get_secret(name: str) -> str | None:
    """Keyring first, environment variable of the same name second."""
    return _from_keyring(name) or os.environ.get(name) or None


async def get_secret_async(name: str) -> str | None:
    """get_secret() with the keyring call moved off the event loop."""
    value = await asyncio.to_thread(_from_keyring, name)
    return value or os.environ.get(name) or None


async def resolve_api_key(transport_settings: dict[str, Any]) -> str | None:
    """API key for the collection service.

    An explicit `api_key` in settings wins; otherwise the secret named by
    `api_key_secret` is looked up. None means requests go out unauthenticated.
    """
    literal = transport_settings.get("api_key")
    if literal:
        return str(literal)
    secret_name = transport_settings.get("api_key_secret")
    if not secret_name:
        return None
    return await get_secret_async(str(secret_name))


def set_secret(name: str, value: str) -> None:
    """Store a key in the OS keyring. Raises KeyringError without a usable backend."""
    keyring.set_password(SERVICE_NAME, name, value)
    logger.info("stored %s in keyring service %r", name, SERVICE_NAME)
