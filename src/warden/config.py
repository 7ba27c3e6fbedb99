"""Configuration objects for Warden services."""

from __future__ import annotations

import datetime as dt
import os
from pathlib import Path
from typing import Mapping

import msgspec
from msgspec import Struct

from .exceptions import ConfigurationError
from .serialization import convert, json_decode


class NonceConfig(Struct, frozen=True):
    """Replay-protection window for nonces."""

    drift_window_seconds: int = 1800

    @property
    def drift_window(self) -> dt.timedelta:
        return dt.timedelta(seconds=self.drift_window_seconds)


class EscalationRule(Struct, frozen=True):
    """Ban an address once more than ``threshold`` matching infractions are live."""

    threshold: int
    infraction_ttl_seconds: int
    ban_seconds: int


class AbuseConfig(Struct, frozen=True):
    """Thresholds used to escalate infractions into temporary bans."""

    xsrf: EscalationRule = EscalationRule(threshold=10, infraction_ttl_seconds=300, ban_seconds=600)
    recovery: EscalationRule = EscalationRule(threshold=5, infraction_ttl_seconds=1800, ban_seconds=3600)
    login_single_account: EscalationRule = EscalationRule(threshold=10, infraction_ttl_seconds=300, ban_seconds=300)
    login_unknown_account: EscalationRule = EscalationRule(threshold=20, infraction_ttl_seconds=300, ban_seconds=1800)
    login_total: EscalationRule = EscalationRule(threshold=30, infraction_ttl_seconds=300, ban_seconds=3600)
    ledger_ttl_seconds: int = 86_400
    mirror_refresh_seconds: int = 300


class HashingConfig(Struct, frozen=True):
    """Argon2id cost parameters for the slow hashing tiers."""

    time_cost: int = 3
    memory_cost: int = 65_536
    parallelism: int = 2
    hash_len: int = 32
    salt_len: int = 16


class AffiliateConfig(Struct, frozen=True):
    """Signature settings for affiliate requests."""

    signature_digest: str = "sha1"
    signature_parameter: str = "sig"
    nonce_parameter: str = "nonce"


class WardenConfig(Struct, frozen=True):
    """Typed configuration for a :class:`~warden.services.Warden` container."""

    keystore_path: str | None = None
    hmac_digest: str = "sha256"
    nonce: NonceConfig = NonceConfig()
    abuse: AbuseConfig = AbuseConfig()
    hashing: HashingConfig = HashingConfig()
    affiliates: AffiliateConfig = AffiliateConfig()


def read_env_blob(name: str, env: Mapping[str, str]) -> str | None:
    """Return ``env[name]`` or the contents of the file named by ``env[name + '_FILE']``."""

    file_key = f"{name}_FILE"
    path = env.get(file_key)
    if path:
        try:
            return Path(path).read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigurationError(f"Configuration file at '{path}' could not be read") from exc
    value = env.get(name)
    if value:
        return value
    return None


def load_config(*, env: Mapping[str, str] | None = None) -> WardenConfig:
    """Decode :class:`WardenConfig` from ``WARDEN_CONFIG`` (or ``WARDEN_CONFIG_FILE``)."""

    source = read_env_blob("WARDEN_CONFIG", env if env is not None else os.environ)
    if source is None:
        return WardenConfig()
    try:
        payload = json_decode(source)
    except msgspec.DecodeError as exc:
        raise ConfigurationError("Failed to decode WARDEN_CONFIG as JSON") from exc
    try:
        return convert(payload, WardenConfig)
    except msgspec.ValidationError as exc:
        raise ConfigurationError(f"Invalid Warden configuration: {exc}") from exc
