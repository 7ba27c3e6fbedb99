"""Warden: cryptographic and abuse-prevention core for an identity provider."""

from .abuse import AbuseTracker, BanStore, Infraction, InfractionType, IPBan, MemoryBanStore
from .affiliates import (
    Affiliate,
    AffiliateKeys,
    AffiliateTrust,
    confirm_signature,
    displayable_host_filter,
    generate_affiliate_keys,
    is_valid_callback,
    is_valid_filter,
    sign_request,
)
from .cache import Cache, MemoryCache
from .config import (
    AbuseConfig,
    AffiliateConfig,
    EscalationRule,
    HashingConfig,
    NonceConfig,
    WardenConfig,
    load_config,
)
from .crypto import CryptoCodec, Decrypted, EncryptedAttribute, SecureHash, SystemHash
from .exceptions import ConfigurationError, IntegrityError, PolicyViolation, ValidationError, WardenError
from .keystore import KeyStore, SigningKey, dump_keys, generate_key
from .network import is_private_ip, remote_ip
from .nonces import NonceCheck, NonceStore
from .passwords import PasswordCheck, check_password
from .policy import (
    ChangeSet,
    ChangeSetItem,
    ChangeTracker,
    FieldPolicy,
    ModifiedField,
    MutationPolicyEngine,
    PolicyDecision,
    PolicyRegistry,
    UnitOfWork,
    default_registry,
)
from .services import Warden, build_warden

__all__ = [
    "AbuseConfig",
    "AbuseTracker",
    "Affiliate",
    "AffiliateConfig",
    "AffiliateKeys",
    "AffiliateTrust",
    "BanStore",
    "Cache",
    "ChangeSet",
    "ChangeSetItem",
    "ChangeTracker",
    "ConfigurationError",
    "CryptoCodec",
    "Decrypted",
    "EncryptedAttribute",
    "EscalationRule",
    "FieldPolicy",
    "HashingConfig",
    "IPBan",
    "Infraction",
    "InfractionType",
    "IntegrityError",
    "KeyStore",
    "MemoryBanStore",
    "MemoryCache",
    "ModifiedField",
    "MutationPolicyEngine",
    "NonceCheck",
    "NonceConfig",
    "NonceStore",
    "PasswordCheck",
    "PolicyDecision",
    "PolicyRegistry",
    "PolicyViolation",
    "SecureHash",
    "SigningKey",
    "SystemHash",
    "UnitOfWork",
    "ValidationError",
    "Warden",
    "WardenConfig",
    "WardenError",
    "build_warden",
    "check_password",
    "confirm_signature",
    "default_registry",
    "displayable_host_filter",
    "dump_keys",
    "generate_affiliate_keys",
    "generate_key",
    "is_private_ip",
    "is_valid_callback",
    "is_valid_filter",
    "load_config",
    "remote_ip",
    "sign_request",
]
