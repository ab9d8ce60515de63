"""
Claw Gateway Cryptography Module

RSA-2048 agent keypairs for non-repudiation, plus the hashing and canonical
JSON helpers shared by the audit hash chain.

- The identity registry holds private keys; callers only ever see public keys
  and signatures.
- Signatures are RSASSA-PKCS1-v1_5 over SHA-256, base64 encoded.
- Keys are exported as PEM (SPKI for public, PKCS#8 for private) so identity
  records stay plain JSON.
"""

import base64
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa


RSA_KEY_SIZE = 2048
RSA_PUBLIC_EXPONENT = 65537


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _now_iso() -> str:
    return _now_utc().isoformat()


def _parse_iso_utc(ts: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp into a timezone-aware UTC datetime.

    Returns None if parsing fails or input is empty.
    """
    if not ts:
        return None
    try:
        s = str(ts).strip()
        if not s:
            return None
        # Accept RFC 3339 'Z' suffix.
        if s.endswith('Z'):
            s = s[:-1] + '+00:00'
        dt = datetime.fromisoformat(s)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    except ValueError:
        return None


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def canonical_json_dumps(obj: Any) -> str:
    """Canonical JSON for stable hashing.

    - sort_keys: deterministic key order
    - separators: no whitespace ambiguity
    - ensure_ascii=False: preserve unicode deterministically (UTF-8)
    - default=str: avoid crashes on datetimes/Decimals while keeping determinism
    """

    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def _to_bytes(message: Union[str, bytes]) -> bytes:
    if isinstance(message, bytes):
        return message
    return str(message).encode("utf-8")


@dataclass
class RSAKeyPair:
    """
    RSA key pair used as an agent's cryptographic identity.

    SECURITY: `private_key_pem` must never leave the identity registry. Use
    `public_only()` before handing a key to anything else.
    """
    public_key_pem: str
    private_key_pem: Optional[str] = None

    @classmethod
    def generate(cls) -> "RSAKeyPair":
        """Generate a new RSA-2048 key pair."""
        private_key = rsa.generate_private_key(
            public_exponent=RSA_PUBLIC_EXPONENT,
            key_size=RSA_KEY_SIZE,
        )
        private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        public_pem = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        return cls(
            public_key_pem=public_pem.decode("ascii"),
            private_key_pem=private_pem.decode("ascii"),
        )

    @classmethod
    def from_public_key(cls, public_key_pem: str) -> "RSAKeyPair":
        """Create key pair with public key only (for verification)."""
        return cls(public_key_pem=public_key_pem, private_key_pem=None)

    def public_only(self) -> "RSAKeyPair":
        return RSAKeyPair.from_public_key(self.public_key_pem)

    def can_sign(self) -> bool:
        """Check if this key pair can sign (has private key)."""
        return self.private_key_pem is not None

    def sign(self, message: Union[str, bytes]) -> str:
        """Sign a message and return the base64 signature."""
        if not self.can_sign():
            raise ValueError("Key pair has no private key - cannot sign")

        private_key = serialization.load_pem_private_key(
            self.private_key_pem.encode("ascii"),
            password=None,
        )
        signature = private_key.sign(_to_bytes(message), padding.PKCS1v15(), hashes.SHA256())
        return base64.b64encode(signature).decode("ascii")

    def verify(self, message: Union[str, bytes], signature_b64: str) -> bool:
        """Verify a base64 signature with the public key.

        Any decoding or key problem is treated as a failed verification.
        """
        try:
            signature = base64.b64decode(signature_b64, validate=True)
        except (ValueError, TypeError):
            return False

        try:
            public_key = serialization.load_pem_public_key(self.public_key_pem.encode("ascii"))
            public_key.verify(signature, _to_bytes(message), padding.PKCS1v15(), hashes.SHA256())
            return True
        except InvalidSignature:
            return False
        except (ValueError, TypeError):
            return False

    def fingerprint(self) -> str:
        """SHA-256 over the public key PEM, handy for logs."""
        return _sha256_hex(self.public_key_pem.encode("ascii"))[:16]
