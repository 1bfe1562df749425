"""Passphrase-protected keystore for the ECDH identity.

Ethereum keystore layout: scrypt KDF, AES-128-CTR, and
``mac = keccak256(derived[16:32] || ciphertext)``.
"""

import hmac
import json
import secrets
import time

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from eth_utils import keccak
from pydantic import BaseModel

from escrow_watch.utils.crypto import wipe

SCRYPT_N = 2**18
SCRYPT_R = 8
SCRYPT_P = 1
SCRYPT_DKLEN = 32
MIN_PASSWORD_LENGTH = 8


class KeystoreError(Exception):
    """Wrong passphrase, unsupported format, or a corrupted keystore."""


class KeystorePayload(BaseModel):
    name: str
    public_key: str  # 0x-prefixed hex
    private_key: str  # 0x-prefixed hex
    created: int


def _derive(password: str, salt: bytes, n: int) -> bytearray:
    kdf = Scrypt(salt=salt, length=SCRYPT_DKLEN, n=n, r=SCRYPT_R, p=SCRYPT_P)
    return bytearray(kdf.derive(password.encode()))


def _ctr(key: bytes, iv: bytes, data: bytes) -> bytes:
    # CTR is symmetric: the same call encrypts and decrypts
    cipher = Cipher(algorithms.AES(key), modes.CTR(iv)).encryptor()
    return cipher.update(data) + cipher.finalize()


def _mac(derived: bytearray, ciphertext: bytes) -> bytes:
    return keccak(bytes(derived[16:32]) + ciphertext)


def validate_password(password: str) -> str | None:
    """Return an error message, or None when the password is acceptable."""
    if len(password) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
    return None


def create_keystore(
    name: str,
    private_key: bytes,
    public_key: bytes,
    password: str,
    n: int = SCRYPT_N,
) -> str:
    payload = KeystorePayload(
        name=name,
        public_key="0x" + public_key.hex(),
        private_key="0x" + bytes(private_key).hex(),
        created=int(time.time()),
    )
    plaintext = payload.model_dump_json().encode()

    salt = secrets.token_bytes(32)
    iv = secrets.token_bytes(16)
    derived = _derive(password, salt, n)
    try:
        ciphertext = _ctr(bytes(derived[:16]), iv, plaintext)
        mac = _mac(derived, ciphertext)
    finally:
        wipe(derived)

    keystore = {
        "version": 1,
        "type": "escrow-watch-identity",
        "name": name,
        "crypto": {
            "cipher": "aes-128-ctr",
            "ciphertext": ciphertext.hex(),
            "cipherparams": {"iv": iv.hex()},
            "kdf": "scrypt",
            "kdfparams": {
                "dklen": SCRYPT_DKLEN,
                "n": n,
                "r": SCRYPT_R,
                "p": SCRYPT_P,
                "salt": salt.hex(),
            },
            "mac": mac.hex(),
        },
    }
    return json.dumps(keystore, indent=2)


def parse_keystore(keystore_json: str, password: str) -> KeystorePayload:
    try:
        keystore = json.loads(keystore_json)
        crypto = keystore["crypto"]
        if keystore.get("version") != 1:
            raise KeystoreError(f"Unsupported keystore version: {keystore.get('version')}")
        if crypto["kdf"] != "scrypt" or crypto["cipher"] != "aes-128-ctr":
            raise KeystoreError("Unsupported keystore cipher or KDF")
        params = crypto["kdfparams"]
        salt = bytes.fromhex(params["salt"])
        iv = bytes.fromhex(crypto["cipherparams"]["iv"])
        ciphertext = bytes.fromhex(crypto["ciphertext"])
        stored_mac = bytes.fromhex(crypto["mac"])
        n = int(params["n"])
    except (KeyError, TypeError, ValueError) as e:
        raise KeystoreError(f"Malformed keystore: {e}") from None

    derived = _derive(password, salt, n)
    try:
        if not hmac.compare_digest(_mac(derived, ciphertext), stored_mac):
            raise KeystoreError("Incorrect password or corrupted keystore")
        plaintext = _ctr(bytes(derived[:16]), iv, ciphertext)
    finally:
        wipe(derived)

    return KeystorePayload.model_validate_json(plaintext)
