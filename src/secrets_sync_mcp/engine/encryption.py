"""Sealed-box encryption of secret values against per-scope public keys.

GitHub only accepts secret values sealed (libsodium ``crypto_box_seal``)
with the public key of the target scope. Keys are fetched once per scope
and cached for a few minutes. The encryptor never holds a private key.

Key cache rules:
    - Reads are lock-free while the cached key is fresh
    - A refetch takes a per-scope lock, so concurrent writers to the same
      scope wait for one fetch instead of issuing their own
    - ``invalidate`` drops a key; the next use refetches it

When the platform rejects a sealed value because the key rotated
(``StaleKeyError``), ``seal_and_send`` invalidates the key and retries
exactly once before raising ``EncryptionFailure``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from nacl.encoding import Base64Encoder
from nacl.exceptions import CryptoError
from nacl.public import PublicKey, SealedBox

from .exceptions import EncryptionFailure, StaleKeyError
from .models import EncryptedValue, Scope, ScopePublicKey

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_KEY_TTL_SECONDS = 300.0


def seal(public_key: ScopePublicKey, plaintext: str) -> EncryptedValue:
    """Seal ``plaintext`` for the holder of ``public_key``.

    Raises:
        CryptoError, ValueError, TypeError: If the key is malformed
    """
    recipient = PublicKey(public_key.key.encode("ascii"), encoder=Base64Encoder)
    sealed = SealedBox(recipient).encrypt(plaintext.encode("utf-8"), encoder=Base64Encoder)
    return EncryptedValue(encrypted_value=sealed.decode("ascii"), key_id=public_key.key_id)


class SealedEncryptor:
    """Encrypts values for scopes, caching each scope's public key.

    Args:
        fetch_key: Coroutine returning the current public key of a scope
        ttl_seconds: How long a fetched key is trusted

    Example:
        >>> encryptor = SealedEncryptor(client.get_public_key)
        >>> encrypted = await encryptor.encrypt_for(Scope.parse("actions"), "s3cr3t-value")
        >>> encrypted.key_id
        '568250167242549743'
    """

    def __init__(
        self,
        fetch_key: Callable[[Scope], Awaitable[ScopePublicKey]],
        ttl_seconds: float = DEFAULT_KEY_TTL_SECONDS,
    ) -> None:
        self._fetch_key = fetch_key
        self._ttl = ttl_seconds
        self._cache: dict[Scope, tuple[ScopePublicKey, float]] = {}
        self._locks: dict[Scope, asyncio.Lock] = {}

    async def get_public_key(self, scope: Scope) -> ScopePublicKey:
        cached = self._cache.get(scope)
        if cached is not None and cached[1] > time.monotonic():
            return cached[0]

        lock = self._locks.setdefault(scope, asyncio.Lock())
        async with lock:
            # Another writer may have refreshed the key while we waited
            cached = self._cache.get(scope)
            if cached is not None and cached[1] > time.monotonic():
                return cached[0]

            key = await self._fetch_key(scope)
            self._cache[scope] = (key, time.monotonic() + self._ttl)
            logger.debug(f"Fetched public key {key.key_id} for {scope}")
            return key

    def invalidate(self, scope: Scope | None = None) -> None:
        """Drop the cached key of one scope, or of every scope."""
        if scope is None:
            self._cache.clear()
        else:
            self._cache.pop(scope, None)

    async def encrypt_for(self, scope: Scope, plaintext: str) -> EncryptedValue:
        """Seal a value with the scope's current public key.

        Raises:
            EncryptionFailure: If the key cannot be used for sealing
        """
        key = await self.get_public_key(scope)
        try:
            return seal(key, plaintext)
        except (CryptoError, ValueError, TypeError) as e:
            raise EncryptionFailure(str(scope), f"invalid public key {key.key_id}: {e}") from e

    async def seal_and_send(
        self,
        scope: Scope,
        plaintext: str,
        send: Callable[[EncryptedValue], Awaitable[T]],
    ) -> T:
        """Seal a value and hand it to ``send``, refreshing the key once if needed.

        Args:
            scope: Target scope
            plaintext: Value to seal
            send: Coroutine that submits the sealed value to the platform

        Returns:
            Whatever ``send`` returns

        Raises:
            EncryptionFailure: If sealing fails twice, or the platform rejects
                the key twice
        """
        for attempt in range(2):
            try:
                encrypted = await self.encrypt_for(scope, plaintext)
                return await send(encrypted)
            except (StaleKeyError, EncryptionFailure) as e:
                self.invalidate(scope)
                if attempt == 1:
                    if isinstance(e, EncryptionFailure):
                        raise
                    raise EncryptionFailure(
                        str(scope), "public key rejected again after refresh"
                    ) from e
                logger.info(f"Public key for {scope} rejected ({e}), refreshing and retrying once")

        raise RuntimeError(f"Sealing for {scope} failed after all attempts")


__all__ = ["DEFAULT_KEY_TTL_SECONDS", "SealedEncryptor", "seal"]
