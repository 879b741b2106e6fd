"""AES-256-GCM message envelopes."""

from __future__ import annotations

import asyncio
import base64
import binascii
import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import DecryptionError, EncryptionUnavailable

ALGORITHM = "AES-GCM"
KEY_LENGTH_BITS = 256
TAG_LENGTH_BITS = 128
NONCE_SIZE = 12
PLACEHOLDER_TEXT = "[message unavailable]"


def default_metadata() -> Dict[str, Any]:
    return {"algorithm": ALGORITHM, "keyLength": KEY_LENGTH_BITS, "tagLength": TAG_LENGTH_BITS}


@dataclass(frozen=True)
class Envelope:
    """Self-contained ciphertext; the 128-bit tag trails the ciphertext."""

    ciphertext: str
    nonce: str
    metadata: Dict[str, Any] = field(default_factory=default_metadata)

    def to_fields(self) -> Dict[str, Any]:
        return {"ciphertext": self.ciphertext, "nonce": self.nonce, "metadata": dict(self.metadata)}

    @classmethod
    def from_fields(cls, fields: Mapping[str, Any]) -> "Envelope":
        metadata = fields.get("metadata") or default_metadata()
        return cls(ciphertext=str(fields["ciphertext"]), nonce=str(fields["nonce"]), metadata=dict(metadata))


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(value: str, what: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionError(f"{what} is not valid base64") from exc


def _require_key(key: bytes | None) -> bytes:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_LENGTH_BITS // 8:
        raise EncryptionUnavailable("a 256-bit conversation key is required")
    return bytes(key)


def _check_metadata(metadata: Mapping[str, Any]) -> None:
    if metadata.get("algorithm", ALGORITHM) != ALGORITHM:
        raise DecryptionError(f"unsupported algorithm: {metadata.get('algorithm')!r}")
    if int(metadata.get("keyLength", KEY_LENGTH_BITS)) != KEY_LENGTH_BITS:
        raise DecryptionError("unsupported key length")
    if int(metadata.get("tagLength", TAG_LENGTH_BITS)) != TAG_LENGTH_BITS:
        raise DecryptionError("unsupported tag length")


def encrypt(plaintext: str, key: bytes) -> Envelope:
    """Encrypt ``plaintext`` under ``key`` with a fresh random 96-bit nonce."""

    aead = AESGCM(_require_key(key))
    nonce = secrets.token_bytes(NONCE_SIZE)
    ciphertext = aead.encrypt(nonce, plaintext.encode("utf-8"), None)
    return Envelope(ciphertext=_b64(ciphertext), nonce=_b64(nonce))


def decrypt(envelope: Envelope, key: bytes) -> str:
    """Recover the plaintext or raise :class:`DecryptionError`.

    Any tag mismatch (wrong key, tampered ciphertext or nonce) fails; a
    different plaintext is never returned.
    """

    aead = AESGCM(_require_key(key))
    try:
        _check_metadata(envelope.metadata)
    except (TypeError, ValueError) as exc:
        raise DecryptionError("malformed algorithm metadata") from exc
    nonce = _unb64(envelope.nonce, "nonce")
    if len(nonce) != NONCE_SIZE:
        raise DecryptionError("nonce must be 96 bits")
    ciphertext = _unb64(envelope.ciphertext, "ciphertext")
    try:
        data = aead.decrypt(nonce, ciphertext, None)
    except InvalidTag as exc:
        raise DecryptionError("authentication tag did not verify") from exc
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptionError("plaintext is not valid UTF-8") from exc


async def encrypt_async(plaintext: str, key: bytes) -> Envelope:
    return await asyncio.to_thread(encrypt, plaintext, key)


async def decrypt_async(envelope: Envelope, key: bytes) -> str:
    return await asyncio.to_thread(decrypt, envelope, key)
