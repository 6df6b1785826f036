"""Identity profiles resolved from the naming directory, and local key files."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, x25519

from ..core.keys import KEY_SIZE, KeyPair
from ..utils.encoding import b64u_decode
from ..utils.error_handler import ProfileError


def decode_public_key(value: str, key_type: str, field_name: str) -> bytes:
    """Return the 32 raw key bytes of a base64url key, stripping SPKI framing if present."""
    try:
        der = b64u_decode(value)
    except ValueError as e:
        raise ProfileError(f"{field_name}: not valid base64url ({e})")

    if len(der) == KEY_SIZE:
        return der

    expected = x25519.X25519PublicKey if key_type == "x25519" else ed25519.Ed25519PublicKey
    try:
        key = serialization.load_der_public_key(der)
    except (ValueError, TypeError) as e:
        raise ProfileError(f"{field_name}: invalid SPKI DER ({e})")
    if not isinstance(key, expected):
        raise ProfileError(f"{field_name}: expected {key_type} key, got {type(key).__name__}")

    return key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


def _pick_key(pub: Dict[str, Any], key_type: str, prefix: str) -> Optional[bytes]:
    for suffix in ("pk_b64u", "spki_b64u"):
        name = f"{key_type}_{suffix}"
        if pub.get(name):
            return decode_public_key(pub[name], key_type, f"{prefix}.{name}")
    return None


@dataclass
class Mailbox:
    url: str
    id: str
    prio: int = 0


@dataclass
class IdentityProfile:
    name: str
    x25519_public_key: bytes
    ed25519_public_key: Optional[bytes] = None
    mailboxes: List[Mailbox] = field(default_factory=list)

    @property
    def endpoint(self) -> Optional[str]:
        return self.mailboxes[0].url if self.mailboxes else None

    @classmethod
    def from_document(cls, name: str, doc: Dict[str, Any]) -> "IdentityProfile":
        if not isinstance(doc, dict):
            raise ProfileError(f"Profile for {name} is not a JSON object")

        container = doc.get("usage_identity") if isinstance(doc.get("usage_identity"), dict) else doc
        prefix = "usage_identity.pub" if container is not doc else "pub"
        pub = container.get("pub")
        if not isinstance(pub, dict):
            raise ProfileError(f"Profile for {name} has no '{prefix}' key section")

        x25519_key = _pick_key(pub, "x25519", prefix)
        if x25519_key is None:
            raise ProfileError(f"Profile for {name} is missing an X25519 public key")
        ed25519_key = _pick_key(pub, "ed25519", prefix)
        if ed25519_key is not None and ed25519_key == x25519_key:
            raise ProfileError(f"Profile for {name}: x25519 and ed25519 keys must differ")

        mailboxes = []
        for i, mb in enumerate(doc.get("mailboxes") or []):
            if (not isinstance(mb, dict) or not isinstance(mb.get("url"), str)
                    or not isinstance(mb.get("prio", 0), int)):
                raise ProfileError(f"Profile for {name}: mailboxes[{i}] is invalid")
            mailboxes.append(Mailbox(url=mb["url"], id=str(mb.get("id", "")), prio=mb.get("prio", 0)))
        mailboxes.sort(key=lambda mb: mb.prio)

        return cls(
            name=doc.get("handle") or name,
            x25519_public_key=x25519_key,
            ed25519_public_key=ed25519_key,
            mailboxes=mailboxes,
        )


class LocalIdentity:
    """Long-term key material of the local user."""

    def __init__(self, name: str, x25519_key_pair: KeyPair,
                 ed25519_private_key: Optional[ed25519.Ed25519PrivateKey] = None):
        self.name = name
        self.x25519_key_pair = x25519_key_pair
        self.ed25519_private_key = ed25519_private_key

    @property
    def ed25519_public_key(self) -> Optional[bytes]:
        if self.ed25519_private_key is None:
            return None
        return self.ed25519_private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw
        )

    @classmethod
    def generate(cls, name: str) -> "LocalIdentity":
        return cls(name, KeyPair.generate(), ed25519.Ed25519PrivateKey.generate())

    @classmethod
    def from_keys_document(cls, name: str, doc: Dict[str, Any]) -> "LocalIdentity":
        """Load a key file with private.x25519_sk_b64u and private.ed25519_sk_b64u entries."""
        private = doc.get("private") if isinstance(doc, dict) else None
        if not isinstance(private, dict) or "x25519_sk_b64u" not in private:
            raise ProfileError(f"Key file for {name} has no private.x25519_sk_b64u")

        try:
            x25519_secret = b64u_decode(private["x25519_sk_b64u"])
            ed25519_secret = b64u_decode(private["ed25519_sk_b64u"]) if private.get("ed25519_sk_b64u") else None
        except ValueError as e:
            raise ProfileError(f"Key file for {name}: {e}")

        if len(x25519_secret) != KEY_SIZE:
            raise ProfileError(f"Key file for {name}: X25519 secret must be {KEY_SIZE} bytes")

        signing_key = None
        if ed25519_secret is not None:
            # libsodium stores seed || public key
            if len(ed25519_secret) not in (32, 64):
                raise ProfileError(f"Key file for {name}: Ed25519 secret must be 32 or 64 bytes")
            signing_key = ed25519.Ed25519PrivateKey.from_private_bytes(ed25519_secret[:32])

        return cls(name, KeyPair.from_private_bytes(x25519_secret), signing_key)

    def to_profile(self) -> IdentityProfile:
        return IdentityProfile(
            name=self.name,
            x25519_public_key=self.x25519_key_pair.public_key,
            ed25519_public_key=self.ed25519_public_key,
        )
