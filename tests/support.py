"""Test support utilities for Warden tests."""

from __future__ import annotations

import datetime as dt

from warden.config import HashingConfig
from warden.keystore import KeyStore, SigningKey

# Argon2 at its cheapest so hashing tests stay fast.
FAST_HASHING = HashingConfig(time_cost=1, memory_cost=8, parallelism=1, hash_len=16, salt_len=16)

BASE_TIME = dt.datetime(2024, 1, 1, 12, 0, tzinfo=dt.UTC)


class FakeClock:
    def __init__(self, start: dt.datetime = BASE_TIME) -> None:
        self.now = start

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **kwargs: float) -> dt.datetime:
        self.now = self.now + dt.timedelta(**kwargs)
        return self.now


def make_key(version: int) -> SigningKey:
    return SigningKey(
        version=version,
        encryption=bytes([version]) * 32,
        salt=bytes([version + 1]) * 16,
        hmac=bytes([version + 2]) * 64,
    )


def make_keys(*versions: int) -> KeyStore:
    return KeyStore([make_key(version) for version in versions or (1,)])
