"""AES-256-GCM content encryption with a keccak256 key commitment."""

import hmac
import secrets
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from eth_utils import keccak

from escrow_watch.errors import DecryptionFailed

KEY_LENGTH = 32
SALT_LENGTH = 32
IV_LENGTH = 12
AUTH_TAG_LENGTH = 16


@dataclass(frozen=True)
class EncryptionResult:
    ciphertext: bytes  # IV(12) || ciphertext || authTag(16)
    key: bytes
    salt: bytes
    key_commitment: str  # 0x-prefixed keccak256(key || salt)


def to_hex(data: bytes) -> str:
    return "0x" + data.hex()


def from_hex(value: str) -> bytes:
    """Parse a hex string with or without the 0x prefix."""
    clean = value[2:] if value[:2].lower() == "0x" else value
    return bytes.fromhex(clean)


def content_hash(data: bytes) -> str:
    """Digest used on-chain to pin the ciphertext."""
    return to_hex(keccak(data))


def compute_key_commitment(key: bytes, salt: bytes) -> str:
    return to_hex(keccak(bytes(key) + bytes(salt)))


def verify_commitment(key: bytes, salt: bytes, commitment: str | bytes) -> bool:
    """Check that key + salt reproduce the published commitment."""
    if isinstance(commitment, (bytes, bytearray)):
        commitment = to_hex(bytes(commitment))
    computed = compute_key_commitment(key, salt)
    return hmac.compare_digest(computed.lower(), commitment.lower())


def encrypt(plaintext: bytes) -> EncryptionResult:
    """Encrypt plaintext under a fresh random key and commit to that key."""
    key = secrets.token_bytes(KEY_LENGTH)
    salt = secrets.token_bytes(SALT_LENGTH)
    iv = secrets.token_bytes(IV_LENGTH)

    # cryptography appends the 16-byte tag to the ciphertext
    sealed = AESGCM(key).encrypt(iv, plaintext, None)

    return EncryptionResult(
        ciphertext=iv + sealed,
        key=key,
        salt=salt,
        key_commitment=compute_key_commitment(key, salt),
    )


def decrypt(ciphertext: bytes, key: bytes) -> bytes:
    """Decrypt ``IV || ciphertext || tag``.

    Short input, a bad tag and a wrong key all raise the same
    DecryptionFailed so callers learn nothing about which one happened.
    """
    if len(ciphertext) < IV_LENGTH + AUTH_TAG_LENGTH or len(key) != KEY_LENGTH:
        raise DecryptionFailed()

    iv = ciphertext[:IV_LENGTH]
    try:
        return AESGCM(bytes(key)).decrypt(iv, ciphertext[IV_LENGTH:], None)
    except InvalidTag:
        raise DecryptionFailed() from None


def wipe(buf: bytearray) -> None:
    """Overwrite a secret buffer in place."""
    for i in range(len(buf)):
        buf[i] = 0
