"""
Identity directory and key unlock.

Onboarding flow:
1. Wallet signs SIGNING_MESSAGE + lower-cased address
2. Signature -> PBKDF2 storage key (salt = address)
3. Fresh RSA keypair; private key sealed under the storage key
4. Public key PEM + sealed private key stored; the plain private key is
   returned to the caller and never persisted

Unlock repeats steps 1-2 and opens the sealed key.

Writes to the shared directory (strategies, quantities, trade records) carry
a wallet signature over action_message(); check_action() verifies it.
"""

import time
import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Tuple

from eth_account import Account
from eth_account.messages import encode_defunct
from cryptography.hazmat.primitives.asymmetric import rsa

from ..core import SIGNING_MESSAGE, PBKDF2_ITERATIONS, UserType, normalize_address
from ..errors import ValidationError, UnknownIdentity, Unauthorized
from ..storage import JsonStore
from .channel import (
    generate_identity_keypair,
    derive_storage_key,
    seal_private_key,
    open_private_key,
    export_public_key,
    import_public_key,
)

log = logging.getLogger(__name__)


def signing_message(address: str) -> str:
    """Challenge text the wallet signs to unlock its keys."""
    return f"{SIGNING_MESSAGE}{normalize_address(address)}"


def _sign_text(private_key: str, text: str) -> str:
    signed = Account.from_key(private_key).sign_message(encode_defunct(text=text))
    signature = signed.signature.hex()
    return signature if signature.startswith("0x") else "0x" + signature


def _recover_text(text: str, signature: str) -> str:
    if not signature:
        raise ValidationError("Signature required")
    try:
        signer = Account.recover_message(encode_defunct(text=text), signature=signature)
    except Exception as e:
        raise ValidationError(f"Unreadable signature: {e}") from e
    return signer.lower()


def sign_challenge(private_key: str, address: Optional[str] = None) -> str:
    """
    Sign the unlock challenge with a wallet key (client side).

    Returns:
        0x-prefixed signature hex
    """
    if address is None:
        address = Account.from_key(private_key).address
    return _sign_text(private_key, signing_message(address))


def recover_signer(address: str, signature: str) -> str:
    """
    Lower-cased address that produced signature over address's challenge.

    Raises:
        ValidationError: signature missing or not recoverable
    """
    return _recover_text(signing_message(address), signature)


# =============================================================================
# Signed actions
# =============================================================================

# Seconds a signed action stays valid
ACTION_WINDOW = 300


def _canonical(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def action_message(action: str, fields: Dict[str, Any]) -> str:
    """
    Text a wallet signs to authorise one write on the shared directory.

    Fields are listed sorted by name, one "name: value" line each.
    """
    lines = [f"RailX action: {action}"]
    lines.extend(f"{name}: {_canonical(fields[name])}" for name in sorted(fields))
    return "\n".join(lines)


def sign_action(private_key: str, action: str, fields: Dict[str, Any]) -> str:
    return _sign_text(private_key, action_message(action, fields))


def check_action(signers, action: str, fields: Dict[str, Any], signature: str,
                 now: Optional[float] = None, window: int = ACTION_WINDOW) -> str:
    """
    Verify a signed action.

    Args:
        signers: Address, or tuple of addresses, allowed to sign
        action: Action name, e.g. "lp.quantity"
        fields: Signed fields; must include issued_at (unix seconds)
        signature: Wallet signature over action_message(action, fields)

    Returns:
        Lower-cased signer address

    Raises:
        Unauthorized: stale, missing or foreign signature
    """
    if isinstance(signers, str):
        signers = (signers,)
    allowed = {normalize_address(s) for s in signers}
    try:
        issued_at = int(fields["issued_at"])
    except (KeyError, TypeError, ValueError):
        raise Unauthorized(f"{action}: issued_at required")
    now = time.time() if now is None else now
    if abs(now - issued_at) > window:
        raise Unauthorized(f"{action}: signature expired")
    try:
        signer = _recover_text(action_message(action, fields), signature)
    except ValidationError as e:
        raise Unauthorized(f"{action}: {e}") from e
    if signer not in allowed:
        raise Unauthorized(f"{action}: not signed by an authorised wallet")
    return signer


@dataclass
class UserIdentity:
    """Directory entry. Holds no usable private key."""
    principal_id: str
    public_key_pem: str
    sealed_private_key: str
    user_type: UserType = UserType.INDIVIDUAL
    kyc_data: Dict[str, Any] = field(default_factory=dict)
    settings: Dict[str, Any] = field(default_factory=dict)
    created_at: int = 0

    @property
    def display_name(self) -> Optional[str]:
        return self.kyc_data.get("name")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "principal_id": self.principal_id,
            "public_key_pem": self.public_key_pem,
            "sealed_private_key": self.sealed_private_key,
            "user_type": self.user_type.value,
            "kyc_data": self.kyc_data,
            "settings": self.settings,
            "created_at": self.created_at,
        }

    def public_dict(self) -> Dict[str, Any]:
        data = self.to_dict()
        data.pop("kyc_data")
        data.pop("settings")
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserIdentity":
        return cls(
            principal_id=data["principal_id"],
            public_key_pem=data["public_key_pem"],
            sealed_private_key=data["sealed_private_key"],
            user_type=UserType(data.get("user_type", "INDIVIDUAL")),
            kyc_data=dict(data.get("kyc_data") or {}),
            settings=dict(data.get("settings") or {}),
            created_at=int(data.get("created_at", 0)),
        )


class KeyStore:
    """UserIdentity records keyed by lower-cased principal id."""

    def __init__(self, store: JsonStore = None):
        self._store = store or JsonStore()

    def store(self, identity: UserIdentity, signature: str = ""):
        """Persist identity. signature is only checked by remote directories."""
        identity.principal_id = normalize_address(identity.principal_id)
        self._store.put(identity.principal_id, identity.to_dict())

    def get(self, principal_id: str) -> Optional[UserIdentity]:
        record = self._store.get(normalize_address(principal_id))
        return UserIdentity.from_dict(record) if record else None

    def load(self, principal_id: str) -> UserIdentity:
        identity = self.get(principal_id)
        if identity is None:
            raise UnknownIdentity(f"No registered keys for {principal_id}")
        return identity

    def list_principals(self) -> List[str]:
        return sorted(r["principal_id"] for r in self._store.values())

    def public_key(self, principal_id: str) -> rsa.RSAPublicKey:
        return import_public_key(self.load(principal_id).public_key_pem)


class IdentityService:
    """Onboarding and unlock on top of a KeyStore."""

    def __init__(self, keystore: KeyStore, iterations: int = PBKDF2_ITERATIONS,
                 verify_signatures: bool = True):
        self.keystore = keystore
        self.iterations = iterations
        self.verify_signatures = verify_signatures

    def _check_signature(self, principal_id: str, signature: str):
        if not self.verify_signatures:
            return
        if recover_signer(principal_id, signature) != normalize_address(principal_id):
            raise ValidationError("Signature was not produced by this wallet")

    def onboard(
        self,
        principal_id: str,
        signature: str,
        user_type: UserType = UserType.INDIVIDUAL,
        kyc_data: Dict[str, Any] = None,
        settings: Dict[str, Any] = None,
    ) -> Tuple[UserIdentity, rsa.RSAPrivateKey]:
        """
        Register (or rotate) a principal's keypair.

        Returns:
            (stored identity, unlocked private key for this session)
        """
        principal_id = normalize_address(principal_id)
        self._check_signature(principal_id, signature)

        storage_key = derive_storage_key(signature, principal_id, self.iterations)
        public_key, private_key = generate_identity_keypair()

        identity = UserIdentity(
            principal_id=principal_id,
            public_key_pem=export_public_key(public_key),
            sealed_private_key=seal_private_key(private_key, storage_key),
            user_type=UserType(user_type),
            kyc_data=dict(kyc_data or {}),
            settings=dict(settings or {}),
            created_at=int(time.time()),
        )
        self.keystore.store(identity, signature)
        log.info(f"Identity registered: {principal_id[:10]}... ({identity.user_type.value})")
        return identity, private_key

    def register_public(self, identity: UserIdentity, signature: str):
        """
        Store a client-built identity (keys generated off-server).

        The signature over the unlock challenge proves wallet control.
        """
        self._check_signature(identity.principal_id, signature)
        import_public_key(identity.public_key_pem)
        if not identity.sealed_private_key:
            raise ValidationError("sealed_private_key required")
        self.keystore.store(identity, signature)
        log.info(f"Identity registered: {identity.principal_id[:10]}...")

    def unlock(self, principal_id: str, signature: str) -> rsa.RSAPrivateKey:
        """
        Rederive the storage key and open the sealed private key.

        Raises:
            UnknownIdentity: principal not onboarded
            UnlockFailed: signature does not open the key
        """
        identity = self.keystore.load(principal_id)
        storage_key = derive_storage_key(signature, identity.principal_id, self.iterations)
        return open_private_key(identity.sealed_private_key, storage_key)

    def resolve_public_key(self, principal_id: str) -> rsa.RSAPublicKey:
        return self.keystore.public_key(principal_id)
