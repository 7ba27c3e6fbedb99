"""Per-IP infraction tracking and temporary bans."""

from __future__ import annotations

import datetime as dt
import logging
import threading
from collections import Counter
from enum import Enum
from typing import Callable, Iterable, Protocol

from msgspec import Struct

from .cache import Cache
from .config import AbuseConfig, EscalationRule
from .network import is_private_ip

__all__ = [
    "AbuseTracker",
    "BanStore",
    "IPBan",
    "Infraction",
    "InfractionType",
    "MemoryBanStore",
]

logger = logging.getLogger(__name__)

_LEDGER_MAX_ITEMS = 512


class InfractionType(str, Enum):
    LOGIN = "login"
    XSRF = "xsrf"
    RECOVERY = "recovery"


class Infraction(Struct, frozen=True):
    type: InfractionType
    expires_at: dt.datetime
    related_id: int | str | None = None


class IPBan(Struct, frozen=True):
    ip: str
    created_at: dt.datetime
    expires_at: dt.datetime
    reason: str


class BanStore(Protocol):
    """Durable, append-only ban list."""

    def append(self, ban: IPBan) -> None: ...

    def since(self, created_at: dt.datetime | None) -> Iterable[IPBan]:
        """Return bans created at or after ``created_at`` (all bans when ``None``)."""
        ...


class MemoryBanStore:
    """Thread-safe in-process :class:`BanStore`."""

    def __init__(self, bans: Iterable[IPBan] | None = None) -> None:
        self._bans: list[IPBan] = list(bans or [])
        self._lock = threading.Lock()

    def append(self, ban: IPBan) -> None:
        with self._lock:
            self._bans.append(ban)

    def since(self, created_at: dt.datetime | None) -> list[IPBan]:
        with self._lock:
            if created_at is None:
                return list(self._bans)
            return [ban for ban in self._bans if ban.created_at >= created_at]

    def __len__(self) -> int:
        with self._lock:
            return len(self._bans)


class AbuseTracker:
    """Turn repeated infractions from one address into temporary bans.

    Infraction ledgers live in the cache and expire entry by entry. Bans are
    written to the durable :class:`BanStore` and mirrored in memory; the mirror
    pulls newer records from the store on a fixed cadence so bans placed by
    other processes are honoured too. Private network addresses are never
    recorded or banned.
    """

    def __init__(
        self,
        cache: Cache,
        store: BanStore,
        config: AbuseConfig | None = None,
        *,
        clock: Callable[[], dt.datetime] | None = None,
    ) -> None:
        self.cache = cache
        self.store = store
        self.config = config or AbuseConfig()
        self._clock = clock or (lambda: dt.datetime.now(dt.UTC))
        self._mirror: dict[str, IPBan] = {}
        self._mirror_lock = threading.Lock()
        self._refreshing = threading.Lock()
        self._high_water: dt.datetime | None = None
        self._next_refresh: dt.datetime | None = None

    # Infractions ------------------------------------------------------------

    def record_infraction(
        self,
        ip: str,
        type: InfractionType,
        related_id: int | str | None = None,
        ttl: dt.timedelta | None = None,
        now: dt.datetime | None = None,
    ) -> IPBan | None:
        """Append an infraction and escalate to a ban when a threshold is crossed."""

        if is_private_ip(ip):
            return None
        moment = self._now(now)
        lifetime = ttl if ttl is not None else dt.timedelta(seconds=self._default_rule(type).infraction_ttl_seconds)
        infraction = Infraction(type=type, expires_at=moment + lifetime, related_id=related_id)
        ledger = self.cache.append(
            _ledger_key(ip),
            infraction,
            self.config.ledger_ttl_seconds,
            max_items=_LEDGER_MAX_ITEMS,
        )
        live = [entry for entry in ledger if entry.expires_at >= moment]
        escalation = self._escalate(type, live)
        if escalation is None:
            return None
        duration, reason = escalation
        return self.ban(ip, duration, reason, now=moment)

    def infractions(self, ip: str, now: dt.datetime | None = None) -> list[Infraction]:
        moment = self._now(now)
        ledger = self.cache.get(_ledger_key(ip)) or ()
        return [entry for entry in ledger if entry.expires_at >= moment]

    def bad_xsrf_token(self, ip: str, now: dt.datetime | None = None) -> IPBan | None:
        return self.record_infraction(ip, InfractionType.XSRF, now=now)

    def attempted_recovery_email(self, ip: str, now: dt.datetime | None = None) -> IPBan | None:
        # Recovery error messages can be used to probe for registered addresses.
        return self.record_infraction(ip, InfractionType.RECOVERY, now=now)

    def bad_login_attempt(
        self, ip: str, user_id: int | str | None = None, now: dt.datetime | None = None
    ) -> IPBan | None:
        return self.record_infraction(ip, InfractionType.LOGIN, related_id=user_id, now=now)

    def _default_rule(self, type: InfractionType) -> EscalationRule:
        if type is InfractionType.XSRF:
            return self.config.xsrf
        if type is InfractionType.RECOVERY:
            return self.config.recovery
        return self.config.login_single_account

    def _escalate(self, type: InfractionType, live: list[Infraction]) -> tuple[dt.timedelta, str] | None:
        config = self.config
        if type is InfractionType.XSRF:
            count = sum(1 for entry in live if entry.type is InfractionType.XSRF)
            if count > config.xsrf.threshold:
                return _seconds(config.xsrf.ban_seconds), "Too many bad XSRF tokens."
            return None
        if type is InfractionType.RECOVERY:
            count = sum(1 for entry in live if entry.type is InfractionType.RECOVERY)
            if count > config.recovery.threshold:
                return _seconds(config.recovery.ban_seconds), "Too many attempts at recovering an account."
            return None

        logins = [entry for entry in live if entry.type is InfractionType.LOGIN]
        per_account = Counter(entry.related_id for entry in logins if entry.related_id is not None)
        if per_account and max(per_account.values()) > config.login_single_account.threshold:
            return (
                _seconds(config.login_single_account.ban_seconds),
                f"More than {config.login_single_account.threshold} attempts to login as a user.",
            )
        unknown = sum(1 for entry in logins if entry.related_id is None)
        if unknown > config.login_unknown_account.threshold:
            return (
                _seconds(config.login_unknown_account.ban_seconds),
                f"More than {config.login_unknown_account.threshold} attempts to login.",
            )
        # Spreading attempts across accounts to stay under the other two limits.
        if len(logins) > config.login_total.threshold:
            return (
                _seconds(config.login_total.ban_seconds),
                "Appears to be spamming login attempts, while dodging throttles.",
            )
        return None

    # Bans -------------------------------------------------------------------

    def ban(self, ip: str, duration: dt.timedelta, reason: str, now: dt.datetime | None = None) -> IPBan | None:
        if is_private_ip(ip):
            return None
        moment = self._now(now)
        record = IPBan(ip=ip, created_at=moment, expires_at=moment + duration, reason=reason)
        self.store.append(record)
        with self._mirror_lock:
            self._upsert(record)
        logger.info("Banned %s until %s: %s", ip, record.expires_at.isoformat(), reason)
        return record

    def lift(self, ip: str, now: dt.datetime | None = None) -> IPBan:
        """End any active ban on ``ip`` by appending an already-expired record."""

        moment = self._now(now)
        record = IPBan(ip=ip, created_at=moment, expires_at=moment, reason="Ban lifted.")
        self.store.append(record)
        with self._mirror_lock:
            self._upsert(record)
        logger.info("Lifted ban on %s", ip)
        return record

    def is_banned(self, ip: str, now: dt.datetime | None = None) -> bool:
        if is_private_ip(ip):
            return False
        moment = self._now(now)
        self._maybe_refresh(moment)
        with self._mirror_lock:
            ban = self._mirror.get(ip)
        return ban is not None and ban.expires_at > moment

    def active_bans(self, now: dt.datetime | None = None) -> list[IPBan]:
        moment = self._now(now)
        self._maybe_refresh(moment)
        with self._mirror_lock:
            return sorted(
                (ban for ban in self._mirror.values() if ban.expires_at > moment),
                key=lambda ban: ban.created_at,
            )

    def refresh(self, now: dt.datetime | None = None) -> None:
        """Pull bans newer than the last refresh and prune expired mirror entries."""

        moment = self._now(now)
        # Single flight: a refresh already in progress serves everyone.
        if not self._refreshing.acquire(blocking=False):
            return
        try:
            with self._mirror_lock:
                since = self._high_water
            fresh = sorted(self.store.since(since), key=lambda ban: ban.created_at)
            with self._mirror_lock:
                for record in fresh:
                    self._upsert(record)
                    if self._high_water is None or record.created_at > self._high_water:
                        self._high_water = record.created_at
                expired = [ip for ip, ban in self._mirror.items() if ban.expires_at <= moment]
                for ip in expired:
                    del self._mirror[ip]
                self._next_refresh = moment + _seconds(self.config.mirror_refresh_seconds)
        finally:
            self._refreshing.release()

    def _now(self, now: dt.datetime | None) -> dt.datetime:
        return _ensure_utc(now if now is not None else self._clock())

    def _maybe_refresh(self, moment: dt.datetime) -> None:
        with self._mirror_lock:
            due = self._next_refresh is None or moment >= self._next_refresh
        if due:
            self.refresh(moment)

    def _upsert(self, record: IPBan) -> None:
        current = self._mirror.get(record.ip)
        if current is None or record.created_at >= current.created_at:
            self._mirror[record.ip] = record


def _ledger_key(ip: str) -> str:
    return f"infraction-{ip}"


def _seconds(value: int) -> dt.timedelta:
    return dt.timedelta(seconds=value)


def _ensure_utc(moment: dt.datetime) -> dt.datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=dt.UTC)
    return moment.astimezone(dt.UTC)
