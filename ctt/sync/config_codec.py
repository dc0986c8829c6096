# -*- coding: utf-8 -*-
"""
Portable config codec

Packs the connection settings of an installation into one string that can be
pasted into another installation:

    CTT:v1:<fernet key>.<fernet token>

The key travels inside the string, so anyone holding the string can read the
secrets. The encryption keeps them out of casual view (chat logs, screenshots
of the first characters), nothing more.
"""

import binascii
import json
import logging
from dataclasses import dataclass, asdict
from typing import Dict, Any

from cryptography.fernet import Fernet, InvalidToken

from .config import SyncConfig
from .errors import MalformedConfig, UnsupportedVersion, DecodeFailure

logger = logging.getLogger(__name__)

PREFIX = "CTT:"
CURRENT_VERSION = "v1"
SUPPORTED_VERSIONS = frozenset({"v1"})


@dataclass(frozen=True)
class PortableConfig:
    """The SyncConfig fields that may leave the installation."""
    remote_endpoint: str
    restricted_key: str
    elevated_key: str
    database_url: str

    @classmethod
    def from_config(cls, config: SyncConfig) -> 'PortableConfig':
        return cls(
            remote_endpoint=config.remote_endpoint,
            restricted_key=config.credentials.restricted_key,
            elevated_key=config.credentials.elevated_key,
            database_url=config.database_url,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _canonical_bytes(portable: PortableConfig) -> bytes:
    return json.dumps(
        portable.to_dict(), sort_keys=True, separators=(',', ':'), ensure_ascii=False
    ).encode('utf-8')


def export_config(config) -> str:
    """
    Encode a config as a portable string.

    Args:
        config: SyncConfig or PortableConfig

    Raises:
        ValueError: no database URL to export
    """
    portable = config if isinstance(config, PortableConfig) else PortableConfig.from_config(config)
    if not portable.database_url:
        raise ValueError("No database URL to export")

    key = Fernet.generate_key()
    token = Fernet(key).encrypt(_canonical_bytes(portable))
    return f"{PREFIX}{CURRENT_VERSION}:{key.decode('ascii')}.{token.decode('ascii')}"


def import_config(value: str) -> PortableConfig:
    """
    Decode a portable string.

    Raises:
        MalformedConfig: prefix or version tag missing
        UnsupportedVersion: unknown version tag
        DecodeFailure: decryption or deserialization failed
    """
    if not isinstance(value, str) or not value.strip().startswith(PREFIX):
        raise MalformedConfig(f"Invalid config string. Must start with {PREFIX}")

    version, sep, body = value.strip()[len(PREFIX):].partition(':')
    if not sep or not version:
        raise MalformedConfig("Config string has no version tag")
    if version not in SUPPORTED_VERSIONS:
        raise UnsupportedVersion(f"Unsupported config version: {version}")

    key, sep, token = body.partition('.')
    if not sep or not key or not token:
        raise DecodeFailure("Config string payload is incomplete")

    try:
        plaintext = Fernet(key.encode('ascii')).decrypt(token.encode('ascii'))
        data = json.loads(plaintext.decode('utf-8'))
    except (InvalidToken, ValueError, binascii.Error, UnicodeError) as e:
        logger.warning(f"Config string could not be decoded: {e!r}")
        raise DecodeFailure("Failed to decrypt config string. It may be corrupted or invalid.") from e

    if not isinstance(data, dict):
        raise DecodeFailure("Config payload is not an object")

    fields = {}
    for name in ('remote_endpoint', 'restricted_key', 'elevated_key', 'database_url'):
        item = data.get(name, '')
        if not isinstance(item, str):
            raise DecodeFailure(f"Config field {name} is not a string")
        fields[name] = item

    if not fields['database_url']:
        raise DecodeFailure("Invalid config: missing database URL")

    return PortableConfig(**fields)
