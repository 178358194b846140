"""End-to-end encryption for exported records.

AES-256-GCM with a PBKDF2-HMAC-SHA256 key derived from the user's passphrase.
The wire formats are fixed; the dashboard decrypts them with Web Crypto, so
every constant below is part of the contract:

    Text:   enc:v1:<iv_base64>:<tag_base64>:<ciphertext_base64>
    Binary: "CTXE" (4) | version 0x01 (1) | iv (12) | tag (16) | ciphertext

Blind indexes are HMAC-SHA256 digests under a key derived from the same
passphrase with a different salt, so index keys and payload keys never
coincide.

Decryption failures are deliberately uniform: a malformed envelope and a
wrong passphrase both come back as ``None``.

Usage::

    from src.sync.encryption import decrypt_text, encrypt_text

    envelope = encrypt_text("hello world", "correct-horse")
    decrypt_text(envelope, "correct-horse")      # "hello world"
    decrypt_text(envelope, "wrong-passphrase")   # None
"""

from __future__ import annotations

import base64
import binascii
import hmac as _stdlib_hmac
import logging
import os
from functools import lru_cache
from typing import Any, Callable, Iterable

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import hmac as crypto_hmac
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from src.sync.errors import AuthenticationError, ConfigurationError, DecodeError

logger = logging.getLogger("contexter.sync.encryption")

IV_LENGTH = 12  # 96 bits for GCM
AUTH_TAG_LENGTH = 16  # 128 bits
KEY_LENGTH = 32  # AES-256
PBKDF2_ITERATIONS = 100_000

# Fixed salts shared with the dashboard
PAYLOAD_SALT = b"contexter-e2e-v1"
INDEX_SALT = b"contexter-search-index-v1"

ENCRYPTED_PREFIX = "enc:v1:"
BUFFER_MAGIC = b"CTXE"
BUFFER_VERSION = 0x01
_BUFFER_HEADER_LENGTH = len(BUFFER_MAGIC) + 1
_BUFFER_MIN_LENGTH = _BUFFER_HEADER_LENGTH + IV_LENGTH + AUTH_TAG_LENGTH


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------


@lru_cache(maxsize=32)
def derive_key(
    passphrase: str,
    salt: bytes = PAYLOAD_SALT,
    iterations: int = PBKDF2_ITERATIONS,
    length: int = KEY_LENGTH,
) -> bytes:
    """Derive a symmetric key from a passphrase with PBKDF2-HMAC-SHA256.

    Results are memoised: the KDF is intentionally slow and the same
    passphrase is used for every field of every batch.

    Args:
        passphrase: User passphrase (UTF-8 encoded before derivation).
        salt:       PAYLOAD_SALT for encryption keys, INDEX_SALT for blind indexes.
        iterations: PBKDF2 iteration count.
        length:     Output key length in bytes.

    Returns:
        Raw key bytes.
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=length,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def _require_passphrase(passphrase: str | None, caller: str) -> str:
    if not passphrase:
        raise ConfigurationError(f"{caller} called without passphrase")
    return passphrase


def _seal(data: bytes, passphrase: str) -> tuple[bytes, bytes, bytes]:
    """Encrypt ``data`` and return (iv, tag, ciphertext)."""
    key = derive_key(passphrase)
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(key).encrypt(iv, data, None)
    # cryptography appends the tag to the ciphertext
    return iv, sealed[-AUTH_TAG_LENGTH:], sealed[:-AUTH_TAG_LENGTH]


def _open(iv: bytes, tag: bytes, ciphertext: bytes, passphrase: str) -> bytes:
    """Decrypt and verify.  Raises DecodeError or AuthenticationError."""
    if len(iv) != IV_LENGTH:
        raise DecodeError(f"IV must be {IV_LENGTH} bytes, got {len(iv)}")
    if len(tag) != AUTH_TAG_LENGTH:
        raise DecodeError(f"Auth tag must be {AUTH_TAG_LENGTH} bytes, got {len(tag)}")
    key = derive_key(passphrase)
    try:
        return AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as exc:
        raise AuthenticationError("Authentication tag mismatch") from exc


# ---------------------------------------------------------------------------
# Text envelope
# ---------------------------------------------------------------------------


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(segment: str) -> bytes:
    try:
        return base64.b64decode(segment, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecodeError("Envelope segment is not valid base64") from exc


def _format_envelope(iv: bytes, tag: bytes, ciphertext: bytes) -> str:
    return f"{ENCRYPTED_PREFIX}{_b64(iv)}:{_b64(tag)}:{_b64(ciphertext)}"


def _parse_envelope(envelope: str) -> tuple[bytes, bytes, bytes]:
    parts = envelope[len(ENCRYPTED_PREFIX):].split(":")
    if len(parts) != 3:
        raise DecodeError(f"Expected 3 envelope segments, got {len(parts)}")
    iv_b64, tag_b64, ciphertext_b64 = parts
    return _unb64(iv_b64), _unb64(tag_b64), _unb64(ciphertext_b64)


def is_encrypted(text: str | None) -> bool:
    """Return True if ``text`` carries the ``enc:v1:`` prefix."""
    return text is not None and text.startswith(ENCRYPTED_PREFIX)


def encrypt_text(plaintext: str, passphrase: str | None) -> str:
    """Encrypt a string into the ``enc:v1:`` text envelope.

    Args:
        plaintext:  Text to encrypt.  Empty strings are returned unchanged.
        passphrase: User passphrase.

    Returns:
        ``enc:v1:<iv>:<tag>:<ciphertext>`` with standard base64 segments.

    Raises:
        ConfigurationError: If no passphrase is given.
    """
    passphrase = _require_passphrase(passphrase, "encrypt_text")
    if not plaintext:
        return plaintext
    return _format_envelope(*_seal(plaintext.encode("utf-8"), passphrase))


def decrypt_text(envelope: str | None, passphrase: str | None) -> str | None:
    """Decrypt an ``enc:v1:`` envelope.

    Strings without the prefix are legacy plaintext and come back unchanged,
    as does any input when no passphrase is available.

    Args:
        envelope:   Text produced by encrypt_text, or plaintext.
        passphrase: User passphrase.

    Returns:
        The plaintext, or None if the envelope is malformed or does not
        authenticate under ``passphrase``.  The two cases are not
        distinguished.
    """
    if not envelope or not passphrase:
        return envelope
    if not is_encrypted(envelope):
        return envelope

    try:
        plain = _open(*_parse_envelope(envelope), passphrase)
        return plain.decode("utf-8")
    except (DecodeError, UnicodeDecodeError):
        logger.debug("Envelope could not be decrypted")
        return None


def encrypt_binary_to_string(data: bytes, passphrase: str | None) -> str:
    """Encrypt bytes into the text envelope (for JSON transport).

    Empty input encrypts to an empty string.

    Raises:
        ConfigurationError: If no passphrase is given.
    """
    passphrase = _require_passphrase(passphrase, "encrypt_binary_to_string")
    if not data:
        return ""
    return _format_envelope(*_seal(data, passphrase))


def decrypt_string_to_binary(envelope: str | None, passphrase: str | None) -> bytes | None:
    """Inverse of encrypt_binary_to_string.

    Non-prefixed input is treated as plain base64.  Returns None when the
    envelope is malformed or does not authenticate.
    """
    if envelope is None:
        return None
    if not envelope:
        return b""
    try:
        if not passphrase or not is_encrypted(envelope):
            return _unb64(envelope)
        return _open(*_parse_envelope(envelope), passphrase)
    except DecodeError:
        logger.debug("Binary envelope could not be decrypted")
        return None


# ---------------------------------------------------------------------------
# Binary framing
# ---------------------------------------------------------------------------


def is_encrypted_buffer(data: bytes | None) -> bool:
    """Return True if ``data`` starts with the CTXE magic."""
    return bool(data) and len(data) >= _BUFFER_HEADER_LENGTH and data[:4] == BUFFER_MAGIC


def encrypt_buffer(data: bytes, passphrase: str | None) -> bytes:
    """Encrypt binary data (screenshots, attachments) into the CTXE frame.

    Raises:
        ConfigurationError: If no passphrase is given.
    """
    passphrase = _require_passphrase(passphrase, "encrypt_buffer")
    if not data:
        return data
    iv, tag, ciphertext = _seal(data, passphrase)
    return BUFFER_MAGIC + bytes([BUFFER_VERSION]) + iv + tag + ciphertext


def decrypt_buffer(data: bytes | None, passphrase: str | None) -> bytes | None:
    """Decrypt a CTXE frame.

    Data without the magic is returned unchanged (legacy plaintext uploads).
    A known magic with an unknown version, a truncated frame, or a failed
    tag check returns None.
    """
    if not data or not passphrase:
        return data
    if data[:4] != BUFFER_MAGIC:
        return data

    version = data[4] if len(data) > 4 else None
    if version != BUFFER_VERSION:
        logger.error("Unknown encryption version: %s", version)
        return None
    if len(data) < _BUFFER_MIN_LENGTH:
        logger.debug("Encrypted buffer is truncated (%d bytes)", len(data))
        return None

    offset = _BUFFER_HEADER_LENGTH
    iv = data[offset:offset + IV_LENGTH]
    tag = data[offset + IV_LENGTH:_BUFFER_MIN_LENGTH]
    ciphertext = data[_BUFFER_MIN_LENGTH:]
    try:
        return _open(iv, tag, ciphertext, passphrase)
    except DecodeError:
        logger.debug("Encrypted buffer could not be decrypted")
        return None


# ---------------------------------------------------------------------------
# Blind index
# ---------------------------------------------------------------------------


def compute_blind_index(plaintext: str, passphrase: str | None) -> str:
    """Return a deterministic HMAC-SHA256 hex digest of ``plaintext``.

    Lets the server equality-match encrypted fields (e.g. chat search)
    without learning their contents.  Returns "" if either input is empty.
    """
    if not plaintext or not passphrase:
        return ""
    mac = crypto_hmac.HMAC(derive_key(passphrase, INDEX_SALT), hashes.SHA256())
    mac.update(plaintext.encode("utf-8"))
    return mac.finalize().hex()


def blind_indexes_match(a: str, b: str) -> bool:
    """Constant-time comparison of two blind index digests."""
    return _stdlib_hmac.compare_digest(a, b)


# ---------------------------------------------------------------------------
# Service façade
# ---------------------------------------------------------------------------


class EncryptionService:
    """Passphrase-aware wrapper used by exporters and the backfill engine.

    The passphrase is resolved on every call because the user can set or
    clear it while the app is running.  When no passphrase is configured the
    service is disabled and records pass through untouched.
    """

    INDEX_SUFFIX = "Index"

    def __init__(self, passphrase_provider: Callable[[], str | None]) -> None:
        self._passphrase_provider = passphrase_provider

    @property
    def passphrase(self) -> str | None:
        return self._passphrase_provider() or None

    @property
    def enabled(self) -> bool:
        return self.passphrase is not None

    def index_fields(self, record: dict[str, Any], fields: Iterable[str]) -> dict[str, Any]:
        """Return a copy of ``record`` with a blind index under ``<field>Index`` per field.

        Non-string and empty values get no index.
        """
        passphrase = self.passphrase
        indexed = dict(record)
        if passphrase is None:
            return indexed
        for name in fields:
            value = record.get(name)
            if isinstance(value, str) and value:
                indexed[f"{name}{self.INDEX_SUFFIX}"] = compute_blind_index(value, passphrase)
        return indexed

    def encrypt_fields(self, record: dict[str, Any], fields: Iterable[str]) -> dict[str, Any]:
        """Return a copy of ``record`` with the named string fields encrypted."""
        passphrase = self.passphrase
        encrypted = dict(record)
        if passphrase is None:
            return encrypted
        for name in fields:
            value = record.get(name)
            if isinstance(value, str) and value:
                encrypted[name] = encrypt_text(value, passphrase)
        return encrypted

    def seal_record(
        self,
        record: dict[str, Any],
        encrypted_fields: Iterable[str] = (),
        index_fields: Iterable[str] = (),
    ) -> dict[str, Any]:
        """Add blind indexes, then encrypt.  Indexes always come from the plaintext."""
        return self.encrypt_fields(self.index_fields(record, index_fields), encrypted_fields)

    def seal_bytes(self, data: bytes) -> tuple[bytes, bool]:
        """Encrypt ``data`` if a passphrase is set.  Returns (payload, encrypted)."""
        passphrase = self.passphrase
        if passphrase is None or not data:
            return data, False
        return encrypt_buffer(data, passphrase), True
