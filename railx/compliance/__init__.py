"""
Compliance side: counterparty screening, identity keys and the encrypted
channel between sender and recipient.
"""

from .gate import ComplianceGate, RiskRegistry, ScreeningClient, normalize_name
from .channel import (
    EncryptedPacket,
    generate_identity_keypair,
    derive_storage_key,
    seal_private_key,
    open_private_key,
    encrypt_packet,
    decrypt_packet,
    export_public_key,
    import_public_key,
)
from .identity import KeyStore, IdentityService, UserIdentity, signing_message, sign_challenge

__all__ = [
    "ComplianceGate",
    "RiskRegistry",
    "ScreeningClient",
    "normalize_name",
    "EncryptedPacket",
    "generate_identity_keypair",
    "derive_storage_key",
    "seal_private_key",
    "open_private_key",
    "encrypt_packet",
    "decrypt_packet",
    "export_public_key",
    "import_public_key",
    "KeyStore",
    "IdentityService",
    "UserIdentity",
    "signing_message",
    "sign_challenge",
]
