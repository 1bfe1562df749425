"""Per-escrow secrets in the keychain.

Naming: ``ESCROW_<id>_KEY`` / ``ESCROW_<id>_SALT`` (content key and
commitment salt, 0x hex), ``ESCROW_<id>_ENCRYPTED_KEY`` (serialized ECDH
bundle), ``ESCROW_<id>_CONTENT_REF`` (storage reference) and
``ESCROW_<id>_BUYER_PUBKEY``.
"""

import re
from dataclasses import dataclass

from escrow_watch.services.keychain import Keychain
from escrow_watch.utils.crypto import from_hex, to_hex

SIGNING_KEY_NAME = "WALLET_PRIVATE_KEY"
CUMULATIVE_BACKUP_NAME = "WATCH_CUMULATIVE"
DAILY_BACKUP_NAME = "WATCH_DAILY"

_KEY_PATTERN = re.compile(r"^ESCROW_(\d+)_KEY$")


@dataclass(frozen=True)
class EscrowKeys:
    encryption_key: bytes
    salt: bytes


def _name(escrow_id: int, suffix: str) -> str:
    return f"ESCROW_{escrow_id}_{suffix}"


def store_escrow_keys(keychain: Keychain, escrow_id: int, keys: EscrowKeys) -> None:
    keychain.set(_name(escrow_id, "KEY"), to_hex(keys.encryption_key))
    keychain.set(_name(escrow_id, "SALT"), to_hex(keys.salt))


def get_escrow_keys(keychain: Keychain, escrow_id: int) -> EscrowKeys | None:
    """Return key + salt, or None if either is missing or not valid hex."""
    key = keychain.get(_name(escrow_id, "KEY"))
    salt = keychain.get(_name(escrow_id, "SALT"))
    if not key or not salt:
        return None
    try:
        return EscrowKeys(encryption_key=from_hex(key), salt=from_hex(salt))
    except ValueError:
        return None


def get_encryption_key(keychain: Keychain, escrow_id: int) -> bytes | None:
    """Raw content key alone (buyers never hold the salt)."""
    key = keychain.get(_name(escrow_id, "KEY"))
    if not key:
        return None
    try:
        return from_hex(key)
    except ValueError:
        return None


def store_encryption_key(keychain: Keychain, escrow_id: int, key: bytes) -> None:
    keychain.set(_name(escrow_id, "KEY"), to_hex(key))


def list_escrow_ids(keychain: Keychain) -> list[int]:
    """Escrow ids with a complete key + salt pair stored."""
    names = set(keychain.list())
    ids = []
    for name in names:
        match = _KEY_PATTERN.match(name)
        if match and _name(int(match.group(1)), "SALT") in names:
            ids.append(int(match.group(1)))
    return sorted(ids)


def get_encrypted_key(keychain: Keychain, escrow_id: int) -> bytes | None:
    value = keychain.get(_name(escrow_id, "ENCRYPTED_KEY"))
    return from_hex(value) if value else None


def store_encrypted_key(keychain: Keychain, escrow_id: int, blob: bytes) -> None:
    keychain.set(_name(escrow_id, "ENCRYPTED_KEY"), to_hex(blob))


def get_content_ref(keychain: Keychain, escrow_id: int) -> str | None:
    return keychain.get(_name(escrow_id, "CONTENT_REF"))


def store_content_ref(keychain: Keychain, escrow_id: int, reference: str) -> None:
    keychain.set(_name(escrow_id, "CONTENT_REF"), reference)


def get_buyer_pubkey(keychain: Keychain, escrow_id: int) -> str | None:
    return keychain.get(_name(escrow_id, "BUYER_PUBKEY"))
