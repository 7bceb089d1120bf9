"""Core module - Shared configuration, enums and payload crypto."""

from fieldsync.core.config import BATCH_PATH, HEALTH_PATH, ServerConfig, SyncSettings
from fieldsync.core.crypto import (
    CryptoError,
    derive_key,
    generate_salt,
    make_passphrase_check,
    open_text,
    seal_text,
    verify_passphrase_check,
)
from fieldsync.core.types import EntityType, SyncAction, VerdictStatus

__all__ = [
    # Config
    "BATCH_PATH",
    "HEALTH_PATH",
    "ServerConfig",
    "SyncSettings",
    # Crypto
    "CryptoError",
    "derive_key",
    "generate_salt",
    "make_passphrase_check",
    "open_text",
    "seal_text",
    "verify_passphrase_check",
    # Types
    "EntityType",
    "SyncAction",
    "VerdictStatus",
]
