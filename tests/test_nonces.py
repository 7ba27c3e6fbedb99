from __future__ import annotations

import base64
import datetime as dt
import logging
import threading

import pytest

from warden.cache import MemoryCache
from warden.config import NonceConfig
from warden.exceptions import ValidationError
from warden.nonces import NonceCheck, NonceStore
from tests.support import BASE_TIME, FakeClock


def _store(clock: FakeClock | None = None, *, drift: int = 1800) -> NonceStore:
    return NonceStore(MemoryCache(), NonceConfig(drift_window_seconds=drift), clock=clock or FakeClock())


@pytest.mark.parametrize(
    "moment",
    [
        BASE_TIME,
        dt.datetime(1970, 1, 1, tzinfo=dt.UTC),
        dt.datetime(1969, 6, 1, 3, 4, 5, tzinfo=dt.UTC),
        dt.datetime(2099, 12, 31, 23, 59, 59, 999_999, tzinfo=dt.UTC),
    ],
)
def test_parse_recovers_creation_time(moment: dt.datetime) -> None:
    store = _store()
    parsed = store.parse(store.create(moment))
    assert parsed is not None
    assert abs(parsed - moment) < dt.timedelta(seconds=1)


def test_create_defaults_to_clock_and_is_unique() -> None:
    clock = FakeClock()
    store = _store(clock)
    first, second = store.create(), store.create()
    assert first != second
    assert store.parse(first) == BASE_TIME
    assert len(base64.b64decode(first)) == 16


def test_naive_times_are_treated_as_utc() -> None:
    store = _store()
    naive = BASE_TIME.replace(tzinfo=None)
    assert store.parse(store.create(naive)) == BASE_TIME
    assert store.is_valid(store.create(BASE_TIME), "1.2.3.4", now=naive).ok


@pytest.mark.parametrize(
    "nonce",
    ["", "not base64!", base64.b64encode(b"short").decode(), base64.b64encode(b"x" * 17).decode()],
)
def test_malformed_nonces(nonce: str) -> None:
    store = _store()
    assert store.parse(nonce) is None
    assert store.is_valid(nonce, "1.2.3.4") == NonceCheck(False, "malformed nonce")
    with pytest.raises(ValidationError, match="Invalid nonce passed"):
        store.mark_used(nonce, "1.2.3.4")


@pytest.mark.parametrize(
    "offset, expected",
    [
        (dt.timedelta(0), True),
        (dt.timedelta(minutes=29, seconds=59), True),
        (-dt.timedelta(minutes=29, seconds=59), True),
        (dt.timedelta(minutes=30), False),
        (-dt.timedelta(minutes=30), False),
        (dt.timedelta(hours=5), False),
    ],
)
def test_validity_window_is_symmetric(offset: dt.timedelta, expected: bool) -> None:
    store = _store()
    nonce = store.create(BASE_TIME)
    check = store.is_valid(nonce, "1.2.3.4", now=BASE_TIME + offset)
    assert check.ok is expected
    if not expected:
        assert check.reason == "nonce expired"


def test_drift_window_is_configurable() -> None:
    store = _store(drift=300)
    nonce = store.create(BASE_TIME)
    assert store.is_valid(nonce, "1.2.3.4", now=BASE_TIME + dt.timedelta(minutes=4)).ok
    assert not store.is_valid(nonce, "1.2.3.4", now=BASE_TIME + dt.timedelta(minutes=5)).ok


def test_reuse_from_another_ip_is_rejected(caplog: pytest.LogCaptureFixture) -> None:
    store = _store()
    nonce = store.create()

    assert store.is_valid(nonce, "1.2.3.4").ok
    assert store.mark_used(nonce, "1.2.3.4") is True
    with caplog.at_level(logging.WARNING, logger="warden.nonces"):
        assert store.is_valid(nonce, "9.9.9.9") == NonceCheck(False, "re-used nonce")
    assert "9.9.9.9" in caplog.text
    assert store.is_valid(nonce, "1.2.3.4").ok


def test_mark_used_keeps_first_claim() -> None:
    store = _store()
    nonce = store.create()
    assert store.mark_used(nonce, "1.2.3.4") is True
    assert store.mark_used(nonce, "9.9.9.9") is False
    assert store.mark_used(nonce, "1.2.3.4") is True
    assert store.is_valid(nonce, "9.9.9.9").reason == "re-used nonce"


def test_consume_validates_and_claims() -> None:
    store = _store()
    nonce = store.create()
    assert store.consume(nonce, "1.2.3.4").ok
    assert store.consume(nonce, "1.2.3.4").ok
    assert store.consume(nonce, "9.9.9.9") == NonceCheck(False, "re-used nonce")
    assert store.consume("garbage", "1.2.3.4") == NonceCheck(False, "malformed nonce")


def test_concurrent_claims_have_one_winner() -> None:
    store = _store()
    nonce = store.create()
    ips = [f"8.8.{index}.1" for index in range(16)]
    results: dict[str, bool] = {}
    barrier = threading.Barrier(len(ips))

    def claim(ip: str) -> None:
        barrier.wait()
        results[ip] = store.consume(nonce, ip).ok

    threads = [threading.Thread(target=claim, args=(ip,)) for ip in ips]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(results.values()) == 1


def _alternate_spelling(nonce: str) -> str:
    # The last data character of a padded 16-byte value carries four unused bits.
    alphabet = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/"
    index = nonce.index("=") - 1
    twin = alphabet[alphabet.index(nonce[index]) ^ 1]
    return nonce[:index] + twin + nonce[index + 1 :]


def test_alternate_base64_spelling_cannot_replay_claimed_nonce() -> None:
    store = _store()
    nonce = store.create()
    twin = _alternate_spelling(nonce)
    assert twin != nonce
    assert base64.b64decode(twin) == base64.b64decode(nonce)

    assert store.consume(nonce, "1.2.3.4").ok
    assert store.is_valid(twin, "9.9.9.9") == NonceCheck(False, "re-used nonce")
    assert store.consume(twin, "9.9.9.9") == NonceCheck(False, "re-used nonce")
    assert store.mark_used(twin, "9.9.9.9") is False
    assert store.consume(twin, "1.2.3.4").ok


def test_known_alternate_spellings_share_a_claim() -> None:
    store = _store()
    original, twin = "QKmSZQAAAAALXkHnRxIz1w==", "QKmSZQAAAAALXkHnRxIz1x=="
    now = store.parse(original)
    assert store.mark_used(original, "1.2.3.4") is True
    assert store.is_valid(twin, "9.9.9.9", now=now) == NonceCheck(False, "re-used nonce")
