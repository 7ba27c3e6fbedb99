"""Short-lived, IP-bound nonces for replay protection."""

from __future__ import annotations

import base64
import binascii
import datetime as dt
import logging
import struct
from typing import Callable, NamedTuple

from .cache import Cache
from .config import NonceConfig
from .crypto import random_bytes
from .exceptions import ValidationError

__all__ = ["NonceCheck", "NonceStore"]

logger = logging.getLogger(__name__)

_EPOCH = dt.datetime(1970, 1, 1, tzinfo=dt.timezone.utc)
_TIMESTAMP = struct.Struct("<q")
_RANDOM_LENGTH = 8
_NONCE_LENGTH = _TIMESTAMP.size + _RANDOM_LENGTH


class NonceCheck(NamedTuple):
    ok: bool
    reason: str | None = None


class NonceStore:
    """Create and validate nonces.

    A nonce is stateless until it is first used; marking it records the
    claiming IP in the cache for the length of the drift window. Replays from
    the claiming IP are tolerated, replays from anywhere else are not.
    """

    def __init__(
        self,
        cache: Cache,
        config: NonceConfig | None = None,
        *,
        clock: Callable[[], dt.datetime] | None = None,
    ) -> None:
        self.cache = cache
        self.config = config or NonceConfig()
        self._clock = clock or (lambda: dt.datetime.now(dt.UTC))

    @property
    def drift_window(self) -> dt.timedelta:
        return self.config.drift_window

    def create(self, base_time: dt.datetime | None = None) -> str:
        moment = _ensure_utc(base_time or self._clock())
        seconds = int((moment - _EPOCH).total_seconds())
        raw = _TIMESTAMP.pack(seconds) + random_bytes(_RANDOM_LENGTH)
        return base64.b64encode(raw).decode("ascii")

    @staticmethod
    def parse(nonce: str) -> dt.datetime | None:
        """Return the creation time encoded in ``nonce`` or ``None`` when malformed."""

        raw = _decode(nonce)
        if raw is None:
            return None
        return _created_at(raw)

    def is_valid(self, nonce: str, remote_ip: str, now: dt.datetime | None = None) -> NonceCheck:
        raw = _decode(nonce)
        created = _created_at(raw) if raw is not None else None
        if raw is None or created is None:
            return NonceCheck(False, "malformed nonce")
        moment = _ensure_utc(now or self._clock())
        if abs(moment - created) >= self.drift_window:
            return NonceCheck(False, "nonce expired")
        used_by = self.cache.get(_cache_key(raw))
        if used_by is not None and used_by != remote_ip:
            logger.warning("Nonce replayed from %s after use by another address", remote_ip)
            return NonceCheck(False, "re-used nonce")
        return NonceCheck(True)

    def mark_used(self, nonce: str, ip: str) -> bool:
        """Record ``nonce`` as claimed by ``ip``.

        Returns ``True`` when ``ip`` holds the claim afterwards and ``False``
        when another address claimed it first.
        """

        raw = _decode(nonce)
        if raw is None or _created_at(raw) is None:
            raise ValidationError(f"Invalid nonce passed [{nonce}]")
        key = _cache_key(raw)
        ttl = self.drift_window.total_seconds()
        while True:
            if self.cache.add(key, ip, ttl):
                return True
            holder = self.cache.get(key)
            if holder is not None:
                return holder == ip

    def consume(self, nonce: str, remote_ip: str, now: dt.datetime | None = None) -> NonceCheck:
        """Validate and claim ``nonce`` in one step."""

        check = self.is_valid(nonce, remote_ip, now)
        if not check.ok:
            return check
        if not self.mark_used(nonce, remote_ip):
            logger.warning("Nonce claim from %s lost to another address", remote_ip)
            return NonceCheck(False, "re-used nonce")
        return check


def _decode(nonce: str) -> bytes | None:
    try:
        raw = base64.b64decode(nonce, validate=True)
    except (binascii.Error, ValueError, TypeError):
        return None
    if len(raw) != _NONCE_LENGTH:
        return None
    return raw


def _created_at(raw: bytes) -> dt.datetime | None:
    (seconds,) = _TIMESTAMP.unpack_from(raw)
    try:
        return _EPOCH + dt.timedelta(seconds=seconds)
    except OverflowError:
        return None


def _cache_key(raw: bytes) -> str:
    # Keyed on the decoded bytes: several base64 spellings decode to the same nonce.
    return "nonce-" + base64.b64encode(raw).decode("ascii")


def _ensure_utc(moment: dt.datetime) -> dt.datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=dt.timezone.utc)
    return moment.astimezone(dt.timezone.utc)
