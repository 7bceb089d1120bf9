"""Device key and at-rest sealing of queued payloads.

Queued payloads can hold personal data collected in the field. When a
device passphrase is configured, the queue store keeps each payload as a
sealed text token:

    base64(nonce (12 bytes) || AES-256-GCM ciphertext || tag (16 bytes))

The key is derived from the passphrase with Argon2id and never stored.
A known value sealed under the key (the passphrase check) lets the CLI
reject a wrong passphrase before any payload is read.
"""

import base64
import binascii
import os

from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

# Argon2id parameters (OWASP recommendations for password hashing)
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536  # 64 MiB
ARGON2_PARALLELISM = 4

KEY_SIZE = 32  # AES-256
NONCE_SIZE = 12
SALT_SIZE = 16

PASSPHRASE_CHECK = "fieldsync-passphrase-check"


class CryptoError(Exception):
    """A sealed token could not be opened (wrong key, tampered or not a token)."""


def generate_salt() -> bytes:
    """Random salt for derive_key(); stored next to the queue config."""
    return os.urandom(SALT_SIZE)


def derive_key(passphrase: str, salt: bytes) -> bytes:
    """Derive the 32-byte device key from a passphrase."""
    return hash_secret_raw(
        secret=passphrase.encode("utf-8"),
        salt=salt,
        time_cost=ARGON2_TIME_COST,
        memory_cost=ARGON2_MEMORY_COST,
        parallelism=ARGON2_PARALLELISM,
        hash_len=KEY_SIZE,
        type=Type.ID,
    )


def seal_text(text: str, key: bytes) -> str:
    """Encrypt text under the device key.

    Args:
        text: Plaintext, typically a JSON-encoded payload.
        key: 32-byte device key.

    Returns:
        ASCII token suitable for a TEXT column.
    """
    nonce = os.urandom(NONCE_SIZE)
    sealed = nonce + AESGCM(key).encrypt(nonce, text.encode("utf-8"), None)
    return base64.b64encode(sealed).decode("ascii")


def open_text(token: str, key: bytes) -> str:
    """Decrypt a token produced by seal_text().

    Raises:
        CryptoError: If the key is wrong or the token is damaged.
    """
    try:
        sealed = base64.b64decode(token, validate=True)
        if len(sealed) <= NONCE_SIZE:
            raise CryptoError("Sealed token is truncated")
        plain = AESGCM(key).decrypt(sealed[:NONCE_SIZE], sealed[NONCE_SIZE:], None)
        return plain.decode("utf-8")
    except (InvalidTag, binascii.Error, UnicodeDecodeError) as e:
        raise CryptoError("Cannot open sealed token") from e


def make_passphrase_check(key: bytes) -> str:
    """Seal the known check value, for storing in the device config."""
    return seal_text(PASSPHRASE_CHECK, key)


def verify_passphrase_check(check: str, key: bytes) -> bool:
    """True if check was made with this key."""
    try:
        return open_text(check, key) == PASSPHRASE_CHECK
    except CryptoError:
        return False
