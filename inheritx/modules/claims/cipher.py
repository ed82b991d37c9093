"""
Claim code hashing and encryption.

Hashing is keccak-256 so digests match what the inheritance contract computes
with Solidity's keccak256; verification never needs the plaintext back.
Encryption is Fernet (AES-CBC + HMAC-SHA256) and exists only so an owner can
recover a claim code for display. It is never used for verification.
"""

import base64
import hmac
import logging
import secrets
import string
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, Optional

from Crypto.Hash import keccak
from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from inheritx.core.config import settings
from inheritx.core.errors import CipherError

logger = logging.getLogger(__name__)

CLAIM_CODE_LENGTH = 6
CLAIM_CODE_ALPHABET = string.ascii_uppercase + string.digits

_KDF_SALT = b"inheritx_claim_code_encryption_v1"
_KDF_ITERATIONS = 200_000


def keccak256(data: bytes) -> bytes:
    """Compute keccak256 (Ethereum flavour, not NIST SHA3)."""
    k = keccak.new(digest_bits=256)
    k.update(data)
    return k.digest()


def to_hex(digest: bytes) -> str:
    return "0x" + digest.hex()


def from_hex(value: str) -> bytes:
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


def normalize_claim_code(code: str) -> str:
    return code.strip().upper()


def normalize_identity(value: str) -> str:
    """Trim and case-fold an identity field (name, email, relationship)."""
    return value.strip().casefold()


def is_valid_claim_code(code: str) -> bool:
    normalized = normalize_claim_code(code)
    return len(normalized) == CLAIM_CODE_LENGTH and all(c in CLAIM_CODE_ALPHABET for c in normalized)


def generate_claim_code(length: int = CLAIM_CODE_LENGTH) -> str:
    """Generate a random uppercase alphanumeric claim code."""
    return "".join(secrets.choice(CLAIM_CODE_ALPHABET) for _ in range(length))


def hash_claim_code(code: str) -> str:
    return to_hex(keccak256(normalize_claim_code(code).encode("utf-8")))


def hash_identity(value: str) -> str:
    return to_hex(keccak256(normalize_identity(value).encode("utf-8")))


@dataclass(frozen=True)
class BeneficiaryHashes:
    name_hash: str
    email_hash: str
    relationship_hash: str
    claim_code_hash: str
    combined_hash: str


def beneficiary_hashes(name: str, email: str, relationship: str, claim_code: str) -> BeneficiaryHashes:
    """
    Hash a beneficiary's identity tuple.

    combined_hash = keccak256(name_hash || email_hash || relationship_hash || claim_code_hash)
    over the raw 32-byte digests, so all four inputs must agree for a match.
    """
    name_hash = hash_identity(name)
    email_hash = hash_identity(email)
    relationship_hash = hash_identity(relationship)
    claim_code_hash = hash_claim_code(claim_code)
    packed = b"".join(from_hex(h) for h in (name_hash, email_hash, relationship_hash, claim_code_hash))
    return BeneficiaryHashes(
        name_hash=name_hash,
        email_hash=email_hash,
        relationship_hash=relationship_hash,
        claim_code_hash=claim_code_hash,
        combined_hash=to_hex(keccak256(packed)),
    )


def hashes_equal(a: Optional[str], b: Optional[str]) -> bool:
    """Constant-time comparison of two hex digests."""
    if not a or not b:
        return False
    return hmac.compare_digest(a.lower(), b.lower())


def derive_key_from_secret(secret: str) -> bytes:
    """Derive a Fernet key from a passphrase using PBKDF2-HMAC-SHA256."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=_KDF_SALT,
        iterations=_KDF_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))


class ClaimCodeCipher:
    """Symmetric encryption of claim codes under the process-wide secret."""

    def __init__(self, secret: str, previous_secrets: Iterable[str] = ()):
        if not secret:
            raise ValueError("Claim code secret must not be empty")
        keys = [Fernet(derive_key_from_secret(secret))]
        keys += [Fernet(derive_key_from_secret(s)) for s in previous_secrets if s]
        # MultiFernet encrypts with the first key and tries every key on decrypt
        self._fernet = MultiFernet(keys)

    def encrypt(self, code: str) -> str:
        return self._fernet.encrypt(normalize_claim_code(code).encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError, AttributeError) as e:
            raise CipherError("Claim code ciphertext is invalid or was tampered with") from e

    @staticmethod
    def hash(code: str) -> str:
        return hash_claim_code(code)


@lru_cache
def get_cipher() -> ClaimCodeCipher:
    """Process-wide cipher built from settings; the key is read-only at runtime."""
    if settings.CLAIM_CODE_SECRET == "default-claim-code-secret":
        logger.warning("CLAIM_CODE_SECRET is the built-in default; set it in production")
    return ClaimCodeCipher(settings.CLAIM_CODE_SECRET, settings.CLAIM_CODE_PREVIOUS_SECRETS)
