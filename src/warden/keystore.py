"""Versioned signing and encryption keys.

Keys are loaded once at process start from a JSON document of the form::

    [{"version": 1, "encryption": "<b64>", "salt": "<b64>", "hmac": "<b64>"}, ...]

Every version is retained so that values written under an older key can still
be verified and decrypted.  The highest version is the one used for new writes.
"""

from __future__ import annotations

import logging
import os
import secrets
from pathlib import Path
from typing import Iterable, Iterator, Mapping

import msgspec
from msgspec import Struct

from .config import read_env_blob
from .exceptions import ConfigurationError
from .serialization import json_decode, json_encode

__all__ = ["KeyStore", "SigningKey", "dump_keys", "generate_key"]

logger = logging.getLogger(__name__)

_AES_KEY_LENGTHS = frozenset({16, 24, 32})
_MIN_SALT_LENGTH = 8


class SigningKey(Struct, frozen=True):
    """One generation of key material."""

    version: int
    encryption: bytes
    salt: bytes
    hmac: bytes

    def __repr__(self) -> str:
        return f"SigningKey(version={self.version})"


class KeyStore:
    """Immutable, versioned set of :class:`SigningKey` values."""

    def __init__(self, keys: Iterable[SigningKey]) -> None:
        index: dict[int, SigningKey] = {}
        for key in keys:
            _validate_key(key)
            if key.version in index:
                raise ConfigurationError(f"Duplicate key version {key.version}")
            index[key.version] = key
        if not index:
            raise ConfigurationError("Key store contains no keys")
        self._keys = index
        self._latest = max(index)

    @classmethod
    def from_json(cls, source: str | bytes) -> "KeyStore":
        try:
            payload = json_decode(source)
            keys = msgspec.convert(payload, type=list[SigningKey])
        except (msgspec.DecodeError, msgspec.ValidationError) as exc:
            raise ConfigurationError(f"Malformed key store: {exc}") from exc
        return cls(keys)

    @classmethod
    def from_file(cls, path: str | os.PathLike[str]) -> "KeyStore":
        try:
            source = Path(path).read_bytes()
        except OSError as exc:
            raise ConfigurationError(f"Key store at '{path}' could not be read") from exc
        store = cls.from_json(source)
        logger.info("Loaded %d key versions from %s (latest=%d)", len(store), path, store.latest_version)
        return store

    @classmethod
    def from_env(cls, *, env: Mapping[str, str] | None = None) -> "KeyStore":
        """Load keys from ``WARDEN_KEYSTORE`` or the file named by ``WARDEN_KEYSTORE_FILE``."""

        source = read_env_blob("WARDEN_KEYSTORE", env if env is not None else os.environ)
        if source is None:
            raise ConfigurationError("WARDEN_KEYSTORE is not configured")
        return cls.from_json(source)

    @property
    def latest_version(self) -> int:
        return self._latest

    @property
    def latest(self) -> SigningKey:
        return self._keys[self._latest]

    def get(self, version: int) -> SigningKey:
        """Return the key for ``version``.

        ``version`` should come from a stored record, never from arithmetic on
        the latest version: gaps in the sequence are allowed.
        """

        try:
            return self._keys[version]
        except KeyError as exc:
            raise ConfigurationError(f"Unknown key version {version}") from exc

    def old_salts(self) -> list[tuple[int, bytes]]:
        """Salts of every superseded key, newest first."""

        return [
            (version, self._keys[version].salt)
            for version in sorted(self._keys, reverse=True)
            if version != self._latest
        ]

    def rotated(self, key: SigningKey) -> "KeyStore":
        """Return a new store that also holds ``key``."""

        return KeyStore([*self._keys.values(), key])

    def __iter__(self) -> Iterator[SigningKey]:
        return iter(self._keys[version] for version in sorted(self._keys))

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, version: object) -> bool:
        return version in self._keys


def generate_key(version: int) -> SigningKey:
    """Create fresh key material suitable for appending to the key file."""

    return SigningKey(
        version=version,
        encryption=secrets.token_bytes(32),
        salt=secrets.token_bytes(16),
        hmac=secrets.token_bytes(64),
    )


def dump_keys(keys: Iterable[SigningKey]) -> bytes:
    """Serialize keys in the on-disk JSON format."""

    return json_encode(sorted(keys, key=lambda key: key.version))


def _validate_key(key: SigningKey) -> None:
    if not 0 <= key.version <= 255:
        raise ConfigurationError(f"Key version {key.version} is outside 0..255")
    if len(key.encryption) not in _AES_KEY_LENGTHS:
        raise ConfigurationError(f"Key version {key.version} has an invalid encryption key length")
    if not key.hmac:
        raise ConfigurationError(f"Key version {key.version} has an empty HMAC key")
    if len(key.salt) < _MIN_SALT_LENGTH:
        raise ConfigurationError(f"Key version {key.version} salt must be at least {_MIN_SALT_LENGTH} bytes")
