from __future__ import annotations

import base64
import logging

import pytest
from msgspec import structs

from warden.crypto import CryptoCodec, EncryptedAttribute, canonicalize_fields
from warden.exceptions import ConfigurationError, IntegrityError
from tests.support import FAST_HASHING, make_key, make_keys


def _codec(*versions: int) -> CryptoCodec:
    return CryptoCodec(make_keys(*versions), hashing=FAST_HASHING)


def _flip_first_byte(value: str) -> str:
    raw = bytearray(base64.b64decode(value))
    raw[0] ^= 0x01
    return base64.b64encode(bytes(raw)).decode()


def test_canonicalize_fields_sorts_and_stringifies() -> None:
    assert canonicalize_fields({"b": 2, "a": "x", "c": None}) == "a=x&b=2&c="
    assert canonicalize_fields({}) == ""


def test_auth_code_is_independent_of_field_order() -> None:
    codec = _codec(1)
    first = codec.make_auth_code({"user": 42, "expires": "2024-01-01", "scope": "read"})
    second = codec.make_auth_code({"scope": "read", "user": 42, "expires": "2024-01-01"})
    assert first == second
    assert codec.verify_auth_code(first, {"expires": "2024-01-01", "scope": "read", "user": 42})


def test_auth_code_changes_with_any_field_value() -> None:
    codec = _codec(1)
    code = codec.make_auth_code({"user": 42, "scope": "read"})
    assert code != codec.make_auth_code({"user": 43, "scope": "read"})
    assert not codec.verify_auth_code(code, {"user": 42, "scope": "write"})
    assert not codec.verify_auth_code(code, {"user": 42, "scope": "read", "extra": 1})


def test_auth_code_depends_on_key() -> None:
    codec = _codec(1, 2)
    fields = {"user": 1}
    old = codec.make_auth_code(fields, codec.keys.get(1))
    new = codec.make_auth_code(fields)
    assert old != new
    assert codec.verify_auth_code(old, fields, codec.keys.get(1))
    assert not codec.verify_auth_code(old, fields)


def test_unsupported_hmac_digest_rejected() -> None:
    with pytest.raises(ConfigurationError, match="Unsupported HMAC digest"):
        CryptoCodec(make_keys(1), hmac_digest="not-a-digest")


def test_encrypt_then_decrypt_returns_plaintext() -> None:
    codec = _codec(1)
    envelope = codec.encrypt("alice@example.com")
    assert envelope.key_version == 1
    assert len(base64.b64decode(envelope.iv)) == 16
    assert "alice" not in envelope.ciphertext

    plaintext, out_of_date = codec.decrypt(envelope)
    assert plaintext == "alice@example.com"
    assert out_of_date is False


def test_encrypt_uses_fresh_iv_each_time() -> None:
    codec = _codec(1)
    first = codec.encrypt("same value")
    second = codec.encrypt("same value")
    assert first.iv != second.iv
    assert first.ciphertext != second.ciphertext


def test_empty_and_unicode_plaintexts() -> None:
    codec = _codec(1)
    assert codec.decrypt(codec.encrypt("")).plaintext == ""
    assert codec.decrypt(codec.encrypt("naïve ☃")).plaintext == "naïve ☃"


def test_value_from_older_key_is_out_of_date() -> None:
    old_codec = _codec(1)
    envelope = old_codec.encrypt("secret")

    rotated = CryptoCodec(old_codec.keys.rotated(make_key(2)), hashing=FAST_HASHING)
    decrypted = rotated.decrypt(envelope)
    assert decrypted.plaintext == "secret"
    assert decrypted.out_of_date is True

    plaintext, replacement = rotated.refresh(envelope)
    assert plaintext == "secret"
    assert replacement is not None
    assert replacement.key_version == 2
    assert rotated.decrypt(replacement) == ("secret", False)
    assert rotated.refresh(replacement) == ("secret", None)


def test_tampered_ciphertext_fails_before_decrypting(caplog: pytest.LogCaptureFixture) -> None:
    codec = _codec(1)
    envelope = codec.encrypt("secret value")
    tampered = structs.replace(envelope, ciphertext=_flip_first_byte(envelope.ciphertext))
    with caplog.at_level(logging.WARNING, logger="warden.crypto"):
        with pytest.raises(IntegrityError, match="HMAC validation failed"):
            codec.decrypt(tampered)
    assert "key version = 1" in caplog.text
    assert "secret value" not in caplog.text


def test_tampered_hmac_rejected() -> None:
    codec = _codec(1)
    envelope = codec.encrypt("secret")
    with pytest.raises(IntegrityError):
        codec.decrypt(structs.replace(envelope, hmac=_flip_first_byte(envelope.hmac)))


def test_hmac_under_wrong_key_version_rejected() -> None:
    codec = _codec(1, 2)
    envelope = codec.encrypt("secret")
    with pytest.raises(IntegrityError):
        codec.decrypt(structs.replace(envelope, key_version=1))


def test_unknown_key_version_is_configuration_error() -> None:
    codec = _codec(1)
    envelope = codec.encrypt("secret")
    with pytest.raises(ConfigurationError, match="Unknown key version 9"):
        codec.decrypt(structs.replace(envelope, key_version=9))


def test_malformed_base64_is_integrity_error() -> None:
    codec = _codec(1)
    envelope = EncryptedAttribute(ciphertext="***", iv="AAAA", key_version=1, hmac="AAAA")
    with pytest.raises(IntegrityError, match="not valid base64"):
        codec.decrypt(envelope)


def test_weak_hash_is_deterministic() -> None:
    assert CryptoCodec.weak_hash("value") == CryptoCodec.weak_hash("value")
    assert CryptoCodec.weak_hash("value") != CryptoCodec.weak_hash("other")
    assert CryptoCodec.weak_hash(None) == CryptoCodec.weak_hash("")


def test_system_hash_is_deterministic_per_salt_version() -> None:
    codec = _codec(1, 2)
    first = codec.system_hash("alice@example.com")
    assert first.salt_version == 2
    assert codec.system_hash("alice@example.com") == first
    assert codec.system_hash("bob@example.com").hash != first.hash


def test_system_hash_candidates_match_after_rotation() -> None:
    before = _codec(1)
    stored = before.system_hash("alice@example.com")

    after = CryptoCodec(before.keys.rotated(make_key(2)), hashing=FAST_HASHING)
    assert after.system_hash("alice@example.com").hash != stored.hash
    candidates = list(after.system_hash_candidates("alice@example.com"))
    assert [candidate.salt_version for candidate in candidates] == [1]
    assert candidates[0] == stored


def test_secure_hash_generates_salt_and_verifies() -> None:
    codec = _codec(1)
    first = codec.secure_hash("hunter2")
    second = codec.secure_hash("hunter2")
    assert first.salt != second.salt
    assert first.hash != second.hash
    assert len(base64.b64decode(first.salt)) == FAST_HASHING.salt_len

    assert codec.secure_hash("hunter2", first.salt) == first.hash
    assert codec.verify_secure_hash("hunter2", first.salt, first.hash)
    assert not codec.verify_secure_hash("hunter3", first.salt, first.hash)


def test_auth_code_fields_are_not_escaped() -> None:
    codec = _codec(1)
    assert canonicalize_fields({"a": "1&b=2"}) == canonicalize_fields({"a": "1", "b": "2"})
    assert codec.make_auth_code({"a": "1&b=2"}) == codec.make_auth_code({"a": "1", "b": "2"})
