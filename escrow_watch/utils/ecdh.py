"""ECDH (secp256k1) key encryption for a single named buyer.

The seller never broadcasts the content key in the clear: it is sealed
under ``sha256(x(ephemeral_priv * buyer_pub))`` with AES-256-GCM, and the
ephemeral public key travels alongside so the buyer can rebuild the
same secret from their own private key.

Wire layout of a serialized bundle::

    ephemeral_public_key (33) || iv (12) || encrypted_key (>= 1)
"""

import hashlib
import secrets
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from eth_utils import keccak, to_checksum_address

from escrow_watch.errors import DecryptionFailed, InvalidPublicKey
from escrow_watch.utils.crypto import wipe

CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

PRIVATE_KEY_LENGTH = 32
COMPRESSED_PUBKEY_LENGTH = 33
UNCOMPRESSED_PUBKEY_LENGTH = 65
IV_LENGTH = 12
MIN_SERIALIZED_LENGTH = COMPRESSED_PUBKEY_LENGTH + IV_LENGTH + 1


@dataclass
class KeyPair:
    private_key: bytearray  # 32 bytes, wipe() when done
    public_key: bytes  # 33-byte compressed point


@dataclass(frozen=True)
class BuyerEncryptedKey:
    encrypted_key: bytes  # AES-GCM ciphertext + tag
    iv: bytes
    ephemeral_public_key: bytes


def is_valid_scalar(raw: bytes | bytearray) -> bool:
    return len(raw) == PRIVATE_KEY_LENGTH and 0 < int.from_bytes(raw, "big") < CURVE_ORDER


def _private_key(raw: bytes | bytearray) -> ec.EllipticCurvePrivateKey:
    return ec.derive_private_key(int.from_bytes(raw, "big"), ec.SECP256K1())


def public_key_from_private(raw: bytes | bytearray) -> bytes:
    return _private_key(raw).public_key().public_bytes(Encoding.X962, PublicFormat.CompressedPoint)


def load_public_key(data: bytes) -> ec.EllipticCurvePublicKey:
    """Parse a 33-byte compressed or 65-byte uncompressed point."""
    if len(data) not in (COMPRESSED_PUBKEY_LENGTH, UNCOMPRESSED_PUBKEY_LENGTH):
        raise InvalidPublicKey(f"Invalid public key length: {len(data)}")
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), bytes(data))
    except ValueError:
        raise InvalidPublicKey("Public key is not a point on secp256k1") from None


def generate_key_pair() -> KeyPair:
    """Draw a uniformly random valid scalar and derive its compressed point."""
    raw = bytearray(secrets.token_bytes(PRIVATE_KEY_LENGTH))
    while not is_valid_scalar(raw):
        raw[:] = secrets.token_bytes(PRIVATE_KEY_LENGTH)
    return KeyPair(private_key=raw, public_key=public_key_from_private(raw))


def _derive_shared_key(private_key: bytes | bytearray, peer: ec.EllipticCurvePublicKey) -> bytearray:
    # exchange() yields the x-coordinate of the shared point
    shared_x = _private_key(private_key).exchange(ec.ECDH(), peer)
    return bytearray(hashlib.sha256(shared_x).digest())


def encrypt_for_recipient(short_key: bytes, recipient_public_key: bytes) -> BuyerEncryptedKey:
    recipient = load_public_key(recipient_public_key)

    ephemeral = generate_key_pair()
    shared = bytearray()
    try:
        shared = _derive_shared_key(ephemeral.private_key, recipient)
        iv = secrets.token_bytes(IV_LENGTH)
        encrypted_key = AESGCM(bytes(shared)).encrypt(iv, bytes(short_key), None)
    finally:
        wipe(ephemeral.private_key)
        wipe(shared)

    return BuyerEncryptedKey(
        encrypted_key=encrypted_key,
        iv=iv,
        ephemeral_public_key=ephemeral.public_key,
    )


def decrypt_as_recipient(bundle: BuyerEncryptedKey, recipient_private_key: bytes | bytearray) -> bytes:
    if not is_valid_scalar(recipient_private_key):
        raise DecryptionFailed()
    try:
        ephemeral = load_public_key(bundle.ephemeral_public_key)
    except InvalidPublicKey:
        raise DecryptionFailed() from None

    shared = _derive_shared_key(recipient_private_key, ephemeral)
    try:
        return AESGCM(bytes(shared)).decrypt(bundle.iv, bundle.encrypted_key, None)
    except (InvalidTag, ValueError):
        raise DecryptionFailed() from None
    finally:
        wipe(shared)


def serialize_encrypted_key(bundle: BuyerEncryptedKey) -> bytes:
    return bundle.ephemeral_public_key + bundle.iv + bundle.encrypted_key


def deserialize_encrypted_key(data: bytes) -> BuyerEncryptedKey:
    if len(data) < MIN_SERIALIZED_LENGTH:
        raise ValueError(
            f"Encrypted key data too short: {len(data)} bytes, need at least {MIN_SERIALIZED_LENGTH}"
        )
    eph_end = COMPRESSED_PUBKEY_LENGTH
    iv_end = eph_end + IV_LENGTH
    return BuyerEncryptedKey(
        ephemeral_public_key=bytes(data[:eph_end]),
        iv=bytes(data[eph_end:iv_end]),
        encrypted_key=bytes(data[iv_end:]),
    )


def public_key_to_address(public_key: bytes) -> bytes:
    """Ethereum-style 20-byte address of a public key (display/matching only)."""
    point = load_public_key(public_key)
    uncompressed = point.public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)
    return keccak(uncompressed[1:])[-20:]


def address_to_hex(address: bytes) -> str:
    return to_checksum_address(address)
