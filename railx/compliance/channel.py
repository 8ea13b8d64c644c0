"""
Secure compliance channel.

Hybrid encryption for trade packets and at-rest sealing of identity keys:

- Identity keys: RSA-OAEP 2048 / SHA-256
- Storage key:   PBKDF2-HMAC-SHA256(signature, salt=principal), 100k rounds
- Sealing:       AES-256-GCM, 12-byte IV prepended, base64
- Packets:       fresh AES-256-GCM content key per message, wrapped with
                 the recipient's RSA public key

Every authentication failure surfaces as a CryptoError subclass; nothing
here ever returns unauthenticated plaintext.
"""

import os
import json
import base64
import binascii
from dataclasses import dataclass
from typing import Any, Dict, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa, padding
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..core import (
    AES_KEY_BYTES,
    GCM_IV_BYTES,
    PBKDF2_ITERATIONS,
    RSA_KEY_SIZE,
    normalize_address,
)
from ..errors import CryptoError, UnlockFailed, DecryptionFailed

OAEP = padding.OAEP(
    mgf=padding.MGF1(algorithm=hashes.SHA256()),
    algorithm=hashes.SHA256(),
    label=None,
)


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(text: str) -> bytes:
    if not text:
        raise ValueError("empty base64 field")
    cleaned = "".join(text.split())
    return base64.b64decode(cleaned, validate=True)


# =============================================================================
# Identity keys
# =============================================================================

def generate_identity_keypair() -> Tuple[rsa.RSAPublicKey, rsa.RSAPrivateKey]:
    """Fresh RSA-OAEP keypair (2048-bit, e=65537)."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE)
    return private_key.public_key(), private_key


def export_public_key(public_key: rsa.RSAPublicKey) -> str:
    """SubjectPublicKeyInfo PEM."""
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


def import_public_key(pem: str) -> rsa.RSAPublicKey:
    try:
        key = serialization.load_pem_public_key(pem.encode("ascii"))
    except (ValueError, TypeError, UnicodeEncodeError) as e:
        raise CryptoError(f"Invalid public key: {e}") from e
    if not isinstance(key, rsa.RSAPublicKey):
        raise CryptoError("Public key is not RSA")
    return key


# =============================================================================
# Storage key + sealing
# =============================================================================

def derive_storage_key(signature: str, principal_id: str,
                       iterations: int = PBKDF2_ITERATIONS) -> bytes:
    """
    Deterministic AES-256 key from a wallet signature.

    The salt is the lower-cased principal id, so the same signature by the
    same wallet always rederives the same key.
    """
    if not signature:
        raise CryptoError("Signature required")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=AES_KEY_BYTES,
        salt=normalize_address(principal_id).encode("utf-8"),
        iterations=iterations,
    )
    return kdf.derive(signature.encode("utf-8"))


def seal_private_key(private_key: rsa.RSAPrivateKey, storage_key: bytes) -> str:
    """Encrypt the PKCS#8 private key under storage_key: base64(iv || ct)."""
    der = private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    iv = os.urandom(GCM_IV_BYTES)
    ciphertext = AESGCM(storage_key).encrypt(iv, der, None)
    return _b64encode(iv + ciphertext)


def open_private_key(sealed: str, storage_key: bytes) -> rsa.RSAPrivateKey:
    """
    Reverse of seal_private_key.

    Raises:
        UnlockFailed: wrong storage key, tampered or malformed ciphertext
    """
    try:
        combined = _b64decode(sealed)
        if len(combined) <= GCM_IV_BYTES:
            raise ValueError("sealed key too short")
        iv, ciphertext = combined[:GCM_IV_BYTES], combined[GCM_IV_BYTES:]
        der = AESGCM(storage_key).decrypt(iv, ciphertext, None)
    except InvalidTag as e:
        raise UnlockFailed("Storage key does not open this private key") from e
    except (ValueError, TypeError, binascii.Error) as e:
        raise UnlockFailed(f"Malformed sealed key: {e}") from e

    try:
        key = serialization.load_der_private_key(der, password=None)
    except (ValueError, TypeError) as e:
        raise UnlockFailed(f"Sealed payload is not a private key: {e}") from e
    if not isinstance(key, rsa.RSAPrivateKey):
        raise UnlockFailed("Sealed key is not RSA")
    return key


# =============================================================================
# Packets
# =============================================================================

@dataclass
class EncryptedPacket:
    """Hybrid-encrypted container; all fields base64."""
    iv: str
    key: str        # content key wrapped with RSA-OAEP
    content: str    # AES-GCM ciphertext of the JSON payload

    def to_dict(self) -> Dict[str, str]:
        return {"iv": self.iv, "content": self.content, "key": self.key}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EncryptedPacket":
        """
        Accepts a packet nested under "data" and the encryptedAesKey /
        encryptedContent field names.

        Raises:
            DecryptionFailed: any field missing
        """
        if not isinstance(data, dict):
            raise DecryptionFailed("Packet is not an object")
        inner = data.get("data") if isinstance(data.get("data"), dict) else data
        key = inner.get("key") or inner.get("encryptedAesKey")
        iv = inner.get("iv")
        content = inner.get("content") or inner.get("encryptedContent")
        if not key or not iv or not content:
            raise DecryptionFailed(
                f"Missing packet fields (key={bool(key)}, iv={bool(iv)}, content={bool(content)})"
            )
        return cls(iv=iv, key=key, content=content)


def encrypt_packet(payload: Any, recipient_public_key: rsa.RSAPublicKey) -> EncryptedPacket:
    """Encrypt a JSON-serialisable payload for one recipient."""
    content_key = AESGCM.generate_key(bit_length=AES_KEY_BYTES * 8)
    iv = os.urandom(GCM_IV_BYTES)
    plaintext = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    ciphertext = AESGCM(content_key).encrypt(iv, plaintext, None)
    wrapped = recipient_public_key.encrypt(content_key, OAEP)
    return EncryptedPacket(
        iv=_b64encode(iv),
        key=_b64encode(wrapped),
        content=_b64encode(ciphertext),
    )


def decrypt_packet(packet: Any, private_key: rsa.RSAPrivateKey) -> Any:
    """
    Unwrap and authenticate a packet.

    Args:
        packet: EncryptedPacket or its dict form
        private_key: Recipient's RSA private key

    Raises:
        DecryptionFailed: missing fields, wrong key or failed tag check
    """
    if not isinstance(packet, EncryptedPacket):
        packet = EncryptedPacket.from_dict(packet)

    try:
        wrapped = _b64decode(packet.key)
        iv = _b64decode(packet.iv)
        ciphertext = _b64decode(packet.content)
        content_key = private_key.decrypt(wrapped, OAEP)
        plaintext = AESGCM(content_key).decrypt(iv, ciphertext, None)
        return json.loads(plaintext.decode("utf-8"))
    except InvalidTag as e:
        raise DecryptionFailed("Packet authentication failed") from e
    except (ValueError, TypeError, binascii.Error) as e:
        raise DecryptionFailed(f"Packet could not be decrypted: {e}") from e
