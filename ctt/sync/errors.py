# -*- coding: utf-8 -*-
"""
Sync errors

ConnectivityFailure is transient (state ``offline``, retried on the next
tick). Everything else needs user action and surfaces as ``error``.
"""

from typing import Optional


class SyncError(Exception):
    """Base class for sync failures."""

    #: Records the remote accepted before the failure (push only).
    accepted: int = 0


class ConnectivityFailure(SyncError):
    """Timeout, DNS failure, refused or dropped connection."""
    pass


class AuthFailure(SyncError):
    """Credentials rejected by the remote."""
    pass


class SchemaFailure(SyncError):
    """Remote shape unexpected and not repairable."""
    pass


class ApplyFailure(SyncError):
    """A pulled record could not be written locally."""

    def __init__(self, message: str, record: Optional['ChangeRecord'] = None):
        super().__init__(message)
        self.record = record


class ConfigCodecError(ValueError):
    """Base class for portable config decoding errors."""
    pass


class MalformedConfig(ConfigCodecError):
    """The string does not carry the portable config prefix."""
    pass


class UnsupportedVersion(ConfigCodecError):
    """The version tag is not one this build can read."""
    pass


class DecodeFailure(ConfigCodecError):
    """Decryption or deserialization failed."""
    pass
