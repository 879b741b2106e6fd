"""Deterministic per-conversation key derivation.

Both participants derive the same AES-256 key from nothing but the two
participant identifiers and an optional scope, so no handshake is needed.

This is a convenience scheme, not a key exchange. Anyone who learns both
identifiers (and the scope) can derive the key, and the salt is computed from
the same secret it protects. It keeps message bodies opaque to a passive
backend and nothing more. A real exchange or ratchet protocol can replace
:func:`derive_conversation_key` without touching the cipher or sync layers.
"""

from __future__ import annotations

import asyncio

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from relay.records import ID_SEPARATOR, conversation_id_for

from .errors import KeyDerivationError

KEY_LENGTH_BYTES = 32
MIN_ITERATIONS = 100_000
SALT_PREFIX = "bringora_salt_"

__all__ = [
    "KEY_LENGTH_BYTES",
    "MIN_ITERATIONS",
    "conversation_id_for",
    "conversation_secret",
    "derive_conversation_key",
    "derive_conversation_key_async",
]


def conversation_secret(participant_a: str, participant_b: str, scope: str | None = None) -> str:
    if not isinstance(participant_a, str) or not isinstance(participant_b, str):
        raise KeyDerivationError("participant identifiers must be strings")
    if not participant_a.strip() or not participant_b.strip():
        raise KeyDerivationError("participant identifiers must be non-empty")
    secret = ID_SEPARATOR.join(sorted([participant_a, participant_b]))
    if scope:
        secret = f"{secret}{ID_SEPARATOR}{scope}"
    return secret


def _salt_for(secret: str) -> bytes:
    return f"{SALT_PREFIX}{secret}".encode("utf-8")


def derive_conversation_key(
    participant_a: str,
    participant_b: str,
    scope: str | None = None,
    *,
    iterations: int = MIN_ITERATIONS,
) -> bytes:
    """Return the 256-bit key shared by ``participant_a`` and ``participant_b``.

    Symmetric in the two participants and fully deterministic. Raises
    :class:`KeyDerivationError` for empty identifiers or a weakened
    iteration count.
    """

    if iterations < MIN_ITERATIONS:
        raise KeyDerivationError(f"iterations must be at least {MIN_ITERATIONS}")
    secret = conversation_secret(participant_a, participant_b, scope)
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH_BYTES,
        salt=_salt_for(secret),
        iterations=iterations,
    )
    return kdf.derive(secret.encode("utf-8"))


async def derive_conversation_key_async(
    participant_a: str,
    participant_b: str,
    scope: str | None = None,
    *,
    iterations: int = MIN_ITERATIONS,
) -> bytes:
    """Run :func:`derive_conversation_key` off the event loop."""

    return await asyncio.to_thread(
        derive_conversation_key,
        participant_a,
        participant_b,
        scope,
        iterations=iterations,
    )
