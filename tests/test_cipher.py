"""
Claim code hashing and encryption tests.
"""

import pytest

from inheritx.core.errors import CipherError
from inheritx.modules.claims.cipher import (
    CLAIM_CODE_ALPHABET,
    ClaimCodeCipher,
    beneficiary_hashes,
    generate_claim_code,
    hash_claim_code,
    hashes_equal,
    is_valid_claim_code,
    keccak256,
)


def test_keccak256_is_ethereum_keccak_not_sha3():
    # keccak256("") differs from NIST sha3_256("")
    assert keccak256(b"").hex() == "c5d2460186f7233c927e7db2dcc703c0e500b653ca82273b7bfad8045d85a470"


def test_generated_codes_are_six_uppercase_alphanumerics():
    for _ in range(50):
        code = generate_claim_code()
        assert len(code) == 6
        assert all(c in CLAIM_CODE_ALPHABET for c in code)
        assert is_valid_claim_code(code)


def test_claim_code_hash_ignores_case_and_whitespace():
    assert hash_claim_code(" abc123 ") == hash_claim_code("ABC123")


@pytest.mark.parametrize("code", ["ABC12", "ABC1234", "ABC-12", ""])
def test_invalid_claim_codes(code):
    assert not is_valid_claim_code(code)


def test_combined_hash_normalizes_identity_fields():
    a = beneficiary_hashes("Alice Smith", "Alice@Example.com", "Daughter", "alice1")
    b = beneficiary_hashes("  alice smith ", "alice@example.com", "DAUGHTER", "ALICE1")
    assert a.combined_hash == b.combined_hash


def test_combined_hash_changes_if_any_field_differs():
    base = beneficiary_hashes("Alice", "alice@example.com", "Daughter", "ALICE1")
    variants = [
        beneficiary_hashes("Alicia", "alice@example.com", "Daughter", "ALICE1"),
        beneficiary_hashes("Alice", "alice@example.org", "Daughter", "ALICE1"),
        beneficiary_hashes("Alice", "alice@example.com", "Niece", "ALICE1"),
        beneficiary_hashes("Alice", "alice@example.com", "Daughter", "ALICE2"),
    ]
    for variant in variants:
        assert variant.combined_hash != base.combined_hash


def test_hashes_equal_handles_missing_values():
    assert hashes_equal("0xAB", "0xab")
    assert not hashes_equal(None, "0xab")
    assert not hashes_equal("", "")


def test_encrypt_then_decrypt_recovers_normalized_code(cipher):
    token = cipher.encrypt("abc123")
    assert token != "ABC123"
    assert cipher.decrypt(token) == "ABC123"


def test_tampered_ciphertext_raises_cipher_error(cipher):
    token = cipher.encrypt("ABC123")
    tampered = token[:-4] + ("AAAA" if not token.endswith("AAAA") else "BBBB")
    with pytest.raises(CipherError):
        cipher.decrypt(tampered)


def test_wrong_key_cannot_decrypt(cipher):
    other = ClaimCodeCipher("another-secret")
    with pytest.raises(CipherError):
        other.decrypt(cipher.encrypt("ABC123"))


def test_previous_secret_still_decrypts_after_rotation(cipher):
    old_token = cipher.encrypt("XYZ789")
    rotated = ClaimCodeCipher("rotated-secret", previous_secrets=["test-claim-code-secret"])
    assert rotated.decrypt(old_token) == "XYZ789"


def test_empty_secret_rejected():
    with pytest.raises(ValueError):
        ClaimCodeCipher("")
