"""Client address helpers."""

from __future__ import annotations

import ipaddress
import re

from .exceptions import ValidationError

__all__ = ["is_private_ip", "remote_ip"]

# Whatever looks like an IPv4 or IPv6 address at the end of a header value.
_LAST_ADDRESS = re.compile(r"[0-9a-fA-F.:]+$")


def _parse(value: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    try:
        return ipaddress.ip_address(value.strip())
    except ValueError:
        return None


def is_private_ip(value: str) -> bool:
    """Return ``True`` for loopback, private, and unique-local addresses."""

    address = _parse(value)
    if address is None:
        return False
    return address.is_private or address.is_loopback


def remote_ip(remote_addr: str | None, x_forwarded_for: str | None = None) -> str:
    """Pick the address used for throttling and logging.

    The last hop in ``X-Forwarded-For`` wins when it is a public address;
    otherwise the socket address is used.
    """

    if x_forwarded_for:
        match = _LAST_ADDRESS.search(x_forwarded_for.strip())
        forwarded = match.group(0) if match else ""
        if _parse(forwarded) is not None and not is_private_ip(forwarded):
            remote_addr = forwarded
    if not remote_addr:
        raise ValidationError("cannot determine source of request")
    return remote_addr
