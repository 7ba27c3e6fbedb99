"""Trust model for third-party affiliates.

Affiliates sign requests with an RSA key we generated for them; only the
public modulus is retained.  Callback URLs must fall under the affiliate's
declared host filter, e.g. ``dev.*.example.com``.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from typing import Mapping
from urllib.parse import urlsplit

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from msgspec import Struct

from .config import AffiliateConfig
from .exceptions import ConfigurationError
from .nonces import NonceCheck, NonceStore

__all__ = [
    "FIXED_EXPONENT",
    "Affiliate",
    "AffiliateKeys",
    "AffiliateTrust",
    "canonical_request",
    "confirm_signature",
    "displayable_host_filter",
    "generate_affiliate_keys",
    "is_valid_callback",
    "is_valid_filter",
    "resolve_digest",
    "sign_request",
]

logger = logging.getLogger(__name__)

FIXED_EXPONENT = 65537
MAX_FILTER_LENGTH = 100

_FILTER_CHARACTERS = re.compile(r"[A-Za-z0-9.*]+")

_DIGESTS: dict[str, type[hashes.HashAlgorithm]] = {
    "sha1": hashes.SHA1,
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}


class Affiliate(Struct, frozen=True):
    id: int
    host_filter: str
    verification_modulus: str

    @property
    def displayable_host_filter(self) -> str:
        return displayable_host_filter(self.host_filter)


class AffiliateKeys(Struct, frozen=True):
    """Key pair for a new affiliate. The private half is handed over once and discarded."""

    private_key_pem: str
    verification_modulus: str


def resolve_digest(name: str) -> hashes.HashAlgorithm:
    try:
        return _DIGESTS[name.lower()]()
    except KeyError as exc:
        raise ConfigurationError(f"Unsupported signature digest '{name}'") from exc


def canonical_request(request_path: str, parameters: Mapping[str, str], *, exclude: str = "sig") -> bytes:
    """Render ``path?k1=v1&k2=v2`` with keys sorted, leaving out ``exclude``."""

    query = "&".join(f"{name}={parameters[name]}" for name in sorted(parameters) if name != exclude)
    return f"{request_path}?{query}".encode("utf-8")


def confirm_signature(
    signature: str,
    request_path: str,
    parameters: Mapping[str, str],
    affiliate: Affiliate,
    *,
    digest: hashes.HashAlgorithm | None = None,
    signature_parameter: str = "sig",
) -> bool:
    """Return ``True`` when ``signature`` is the affiliate's signature over the request."""

    try:
        modulus = int.from_bytes(base64.b64decode(affiliate.verification_modulus, validate=True), "big")
        signature_bytes = base64.b64decode(signature, validate=True)
    except (binascii.Error, ValueError):
        return False
    try:
        public_key = rsa.RSAPublicNumbers(FIXED_EXPONENT, modulus).public_key()
    except ValueError:
        return False
    payload = canonical_request(request_path, parameters, exclude=signature_parameter)
    try:
        public_key.verify(signature_bytes, payload, padding.PKCS1v15(), digest or hashes.SHA1())
    except InvalidSignature:
        return False
    return True


def sign_request(
    private_key_pem: str,
    request_path: str,
    parameters: Mapping[str, str],
    *,
    digest: hashes.HashAlgorithm | None = None,
    signature_parameter: str = "sig",
) -> str:
    """Produce the signature an affiliate sends with a request."""

    private_key = serialization.load_pem_private_key(private_key_pem.encode("ascii"), password=None)
    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise ConfigurationError("Affiliate keys must be RSA keys")
    payload = canonical_request(request_path, parameters, exclude=signature_parameter)
    signature = private_key.sign(payload, padding.PKCS1v15(), digest or hashes.SHA1())
    return base64.b64encode(signature).decode("ascii")


def generate_affiliate_keys(*, key_size: int = 2048) -> AffiliateKeys:
    private_key = rsa.generate_private_key(public_exponent=FIXED_EXPONENT, key_size=key_size)
    modulus = private_key.public_key().public_numbers().n
    pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return AffiliateKeys(
        private_key_pem=pem.decode("ascii"),
        verification_modulus=base64.b64encode(modulus.to_bytes((modulus.bit_length() + 7) // 8, "big")).decode("ascii"),
    )


def is_valid_filter(pattern: str) -> bool:
    """Return ``True`` for an exact host or a host with one non-registrable wildcard.

    Valid: ``example.com``, ``*.example.com``, ``sub.*.example.com``.
    Invalid: ``*.com``, ``example.*.com``, ``*.example.*.com``.
    """

    if len(pattern) > MAX_FILTER_LENGTH:
        return False
    if not _FILTER_CHARACTERS.fullmatch(pattern):
        return False
    if pattern.count("*") > 1:
        return False
    labels = pattern.split(".")
    if len(labels) < 2 or any(not label for label in labels):
        return False
    if labels[-1] == "*" or labels[-2] == "*":
        return False
    return True


def is_valid_callback(url: str, affiliate: Affiliate | str) -> bool:
    """Return ``True`` when ``url`` is http(s) on a host under the affiliate's filter.

    ``*`` stands for exactly one non-empty label.
    """

    host_filter = affiliate if isinstance(affiliate, str) else affiliate.host_filter
    try:
        parts = urlsplit(url)
        parts.port  # raises ValueError for a malformed port
    except ValueError:
        return False
    if parts.scheme.lower() not in {"http", "https"}:
        return False
    host = parts.hostname
    if not host:
        return False
    host_labels = host.lower().split(".")
    filter_labels = host_filter.lower().split(".")
    if len(host_labels) != len(filter_labels):
        return False
    for host_label, filter_label in zip(host_labels, filter_labels):
        if filter_label == "*":
            if not host_label:
                return False
        elif host_label != filter_label:
            return False
    return True


def displayable_host_filter(pattern: str) -> str:
    """Part of a filter that is safe to show a user: ``meta.*.example.com`` -> ``example.com``."""

    wildcard = pattern.find("*.")
    if wildcard == -1:
        return pattern
    return pattern[wildcard + 2 :]


class AffiliateTrust:
    """Verify signed affiliate requests, including nonce replay checks."""

    def __init__(self, nonces: NonceStore, config: AffiliateConfig | None = None) -> None:
        self.nonces = nonces
        self.config = config or AffiliateConfig()
        self.digest = resolve_digest(self.config.signature_digest)

    def confirm_signature(
        self, signature: str, request_path: str, parameters: Mapping[str, str], affiliate: Affiliate
    ) -> bool:
        return confirm_signature(
            signature,
            request_path,
            parameters,
            affiliate,
            digest=self.digest,
            signature_parameter=self.config.signature_parameter,
        )

    def verify_request(
        self,
        request_path: str,
        parameters: Mapping[str, str],
        affiliate: Affiliate,
        remote_ip: str,
    ) -> NonceCheck:
        """Check the signature carried in ``parameters`` and consume its nonce."""

        signature = parameters.get(self.config.signature_parameter)
        if not signature or not self.confirm_signature(signature, request_path, parameters, affiliate):
            logger.warning("Bad signature from affiliate %s for %s", affiliate.id, request_path)
            return NonceCheck(False, "bad signature")
        nonce = parameters.get(self.config.nonce_parameter)
        if not nonce:
            return NonceCheck(False, "missing nonce")
        return self.nonces.consume(nonce, remote_ip)

    @staticmethod
    def is_valid_filter(pattern: str) -> bool:
        return is_valid_filter(pattern)

    @staticmethod
    def is_valid_callback(url: str, affiliate: Affiliate) -> bool:
        return is_valid_callback(url, affiliate)
