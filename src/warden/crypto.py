"""Auth codes, envelope encryption, and hashing tiers."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import secrets
from typing import Iterator, Mapping, NamedTuple, overload

from argon2.low_level import Type as Argon2Type
from argon2.low_level import hash_secret_raw as argon2_hash_secret_raw
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from msgspec import Struct

from .config import HashingConfig
from .exceptions import ConfigurationError, IntegrityError
from .keystore import KeyStore, SigningKey

__all__ = [
    "CryptoCodec",
    "Decrypted",
    "EncryptedAttribute",
    "SecureHash",
    "SystemHash",
    "canonicalize_fields",
    "random_bytes",
]

logger = logging.getLogger(__name__)

_IV_LENGTH = 16


class EncryptedAttribute(Struct, frozen=True):
    """Self-describing ciphertext envelope. All four fields are persisted together."""

    ciphertext: str
    iv: str
    key_version: int
    hmac: str


class Decrypted(NamedTuple):
    plaintext: str
    out_of_date: bool


class SystemHash(NamedTuple):
    hash: str
    salt_version: int


class SecureHash(NamedTuple):
    hash: str
    salt: str


def random_bytes(count: int) -> bytes:
    """Single source of randomness for tokens, IVs, and salts."""

    return secrets.token_bytes(count)


def canonicalize_fields(fields: Mapping[str, object]) -> str:
    """Render ``fields`` as ``k1=v1&k2=v2`` with keys in lexicographic order."""

    return "&".join(f"{name}={_stringify(fields[name])}" for name in sorted(fields))


class CryptoCodec:
    """Stateless cryptographic helpers bound to a :class:`KeyStore`.

    Every primitive receives its key bytes explicitly, so a single codec can be
    shared freely between request threads.
    """

    def __init__(
        self,
        keys: KeyStore,
        *,
        hashing: HashingConfig | None = None,
        hmac_digest: str = "sha256",
    ) -> None:
        self.keys = keys
        self.hashing = hashing or HashingConfig()
        try:
            hashlib.new(hmac_digest)
        except ValueError as exc:
            raise ConfigurationError(f"Unsupported HMAC digest '{hmac_digest}'") from exc
        self.hmac_digest = hmac_digest

    # Auth codes -----------------------------------------------------------

    def make_auth_code(self, fields: Mapping[str, object], key: SigningKey | None = None) -> str:
        """HMAC over :func:`canonicalize_fields` of ``fields``.

        Values are not escaped, so a value containing ``&`` or ``=`` can collide
        with a different field map (``{"a": "1&b=2"}`` and ``{"a": "1", "b": "2"}``).
        Only pass values that cannot contain those characters, such as ids,
        timestamps and encoded tokens.
        """

        signing_key = key or self.keys.latest
        message = canonicalize_fields(fields).encode("utf-8")
        return _b64encode(self._hmac(signing_key, message))

    def verify_auth_code(self, code: str, fields: Mapping[str, object], key: SigningKey | None = None) -> bool:
        expected = self.make_auth_code(fields, key)
        return hmac.compare_digest(code.encode("utf-8"), expected.encode("utf-8"))

    # Envelope encryption ----------------------------------------------------

    def encrypt(self, plaintext: str) -> EncryptedAttribute:
        key = self.keys.latest
        iv = random_bytes(_IV_LENGTH)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(key.encryption), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return EncryptedAttribute(
            ciphertext=_b64encode(ciphertext),
            iv=_b64encode(iv),
            key_version=key.version,
            hmac=_b64encode(self._hmac(key, ciphertext)),
        )

    def decrypt(self, attribute: EncryptedAttribute) -> Decrypted:
        """Verify and decrypt ``attribute``.

        The HMAC is always checked before any decryption is attempted. A value
        written under a superseded key decrypts with that key and is reported as
        ``out_of_date`` so the caller can persist a re-encrypted envelope.
        """

        key = self.keys.get(attribute.key_version)
        try:
            ciphertext = base64.b64decode(attribute.ciphertext, validate=True)
            presented = base64.b64decode(attribute.hmac, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise IntegrityError("encrypted value is not valid base64") from exc
        if not hmac.compare_digest(presented, self._hmac(key, ciphertext)):
            logger.warning("HMAC validation failed on encrypted value (key version = %d)", key.version)
            raise IntegrityError(f"HMAC validation failed on encrypted value (key version = {key.version})")
        try:
            iv = base64.b64decode(attribute.iv, validate=True)
            decryptor = Cipher(algorithms.AES(key.encryption), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = (unpadder.update(padded) + unpadder.finalize()).decode("utf-8")
        except (binascii.Error, ValueError) as exc:
            raise IntegrityError("encrypted value could not be decrypted") from exc
        return Decrypted(plaintext, key.version != self.keys.latest_version)

    def refresh(self, attribute: EncryptedAttribute) -> tuple[str, EncryptedAttribute | None]:
        """Decrypt ``attribute`` and return a replacement envelope when it is out of date."""

        plaintext, out_of_date = self.decrypt(attribute)
        if not out_of_date:
            return plaintext, None
        return plaintext, self.encrypt(plaintext)

    # Hashing tiers ----------------------------------------------------------

    @staticmethod
    def weak_hash(value: str | None) -> str:
        """Fast, unsalted hash for cache keys. Never use it for secrets."""

        data = value.encode("utf-8") if value else b""
        return _b64encode(hashlib.sha256(data).digest())

    def system_hash(self, value: str) -> SystemHash:
        """Deterministic hash salted with the current site-wide salt, for indexed lookups."""

        key = self.keys.latest
        return SystemHash(self._argon2(value, key.salt), key.version)

    def system_hash_candidates(self, value: str) -> Iterator[SystemHash]:
        """Hashes of ``value`` under each superseded site-wide salt, newest first."""

        for version, salt in self.keys.old_salts():
            yield SystemHash(self._argon2(value, salt), version)

    @overload
    def secure_hash(self, value: str) -> SecureHash: ...

    @overload
    def secure_hash(self, value: str, salt: str) -> str: ...

    def secure_hash(self, value: str, salt: str | None = None) -> SecureHash | str:
        """Slow per-value salted hash for passwords.

        Without ``salt`` a new one is generated and returned with the hash.
        """

        if salt is None:
            fresh = _b64encode(random_bytes(self.hashing.salt_len))
            return SecureHash(self._argon2(value, base64.b64decode(fresh)), fresh)
        return self._argon2(value, base64.b64decode(salt))

    def verify_secure_hash(self, value: str, salt: str, expected: str) -> bool:
        candidate = self.secure_hash(value, salt)
        return hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))

    # Internals ----------------------------------------------------------------

    def _hmac(self, key: SigningKey, message: bytes) -> bytes:
        return hmac.new(key.hmac, message, self.hmac_digest).digest()

    def _argon2(self, value: str, salt: bytes) -> str:
        digest = argon2_hash_secret_raw(
            value.encode("utf-8"),
            salt,
            time_cost=self.hashing.time_cost,
            memory_cost=self.hashing.memory_cost,
            parallelism=self.hashing.parallelism,
            hash_len=self.hashing.hash_len,
            type=Argon2Type.ID,
        )
        return _b64encode(digest)


def _stringify(value: object) -> str:
    if value is None:
        return ""
    return str(value)


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")
