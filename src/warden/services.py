"""Process-wide service container, built once at startup."""

from __future__ import annotations

import datetime as dt
import logging
import os
from dataclasses import dataclass
from typing import Callable, Mapping

from .abuse import AbuseTracker, BanStore, MemoryBanStore
from .affiliates import AffiliateTrust
from .cache import Cache, MemoryCache
from .config import WardenConfig, load_config
from .crypto import CryptoCodec
from .keystore import KeyStore
from .nonces import NonceStore
from .policy import MutationPolicyEngine, PolicyRegistry

__all__ = ["Warden", "build_warden"]

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class Warden:
    """Every trust component, wired to shared collaborators.

    Request handlers receive this object (or the pieces they need) rather than
    reaching for module-level state.
    """

    config: WardenConfig
    keys: KeyStore
    codec: CryptoCodec
    nonces: NonceStore
    policy: MutationPolicyEngine
    abuse: AbuseTracker
    affiliates: AffiliateTrust


def build_warden(
    *,
    config: WardenConfig | None = None,
    keys: KeyStore | None = None,
    cache: Cache | None = None,
    ban_store: BanStore | None = None,
    registry: PolicyRegistry | None = None,
    clock: Callable[[], dt.datetime] | None = None,
    env: Mapping[str, str] | None = None,
) -> Warden:
    """Assemble a :class:`Warden`.

    Key material is mandatory: when ``keys`` is not given it is loaded from
    ``config.keystore_path`` or the ``WARDEN_KEYSTORE`` environment variables,
    and a :class:`~warden.exceptions.ConfigurationError` stops startup if that
    fails.
    """

    environ = env if env is not None else os.environ
    resolved_config = config or load_config(env=environ)
    if keys is None:
        if resolved_config.keystore_path:
            keys = KeyStore.from_file(resolved_config.keystore_path)
        else:
            keys = KeyStore.from_env(env=environ)
    shared_cache = cache or MemoryCache()
    nonces = NonceStore(shared_cache, resolved_config.nonce, clock=clock)
    warden = Warden(
        config=resolved_config,
        keys=keys,
        codec=CryptoCodec(keys, hashing=resolved_config.hashing, hmac_digest=resolved_config.hmac_digest),
        nonces=nonces,
        policy=MutationPolicyEngine(registry),
        abuse=AbuseTracker(shared_cache, ban_store or MemoryBanStore(), resolved_config.abuse, clock=clock),
        affiliates=AffiliateTrust(nonces, resolved_config.affiliates),
    )
    logger.info("Warden ready with key version %d", keys.latest_version)
    return warden
