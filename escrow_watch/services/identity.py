"""Key-exchange identity owned by one daemon or CLI invocation.

The session holds the unlocked ECDH private key for exactly as long as the
owner needs it. Nothing here is module-global: whoever constructs the
session passes it to the code that needs to decrypt.
"""

import logging

from escrow_watch.errors import ErrorCode, WatchError
from escrow_watch.services.keychain import Keychain
from escrow_watch.utils.crypto import from_hex, wipe
from escrow_watch.utils.ecdh import (
    generate_key_pair,
    is_valid_scalar,
    public_key_from_private,
    public_key_to_address,
    address_to_hex,
)
from escrow_watch.utils.keystore import (
    SCRYPT_N,
    KeystoreError,
    create_keystore,
    parse_keystore,
    validate_password,
)

logger = logging.getLogger(__name__)

ACTIVE_IDENTITY_NAME = "IDENTITY_ACTIVE"


def keystore_entry(name: str) -> str:
    return f"IDENTITY_KEYSTORE_{name}"


class IdentitySession:
    def __init__(self, keychain: Keychain, scrypt_n: int = SCRYPT_N) -> None:
        self._keychain = keychain
        self._scrypt_n = scrypt_n
        self._private_key: bytearray | None = None
        self._public_key: bytes | None = None
        self.name: str | None = None

    @property
    def unlocked(self) -> bool:
        return self._private_key is not None

    @property
    def private_key(self) -> bytearray:
        if self._private_key is None:
            raise WatchError(
                ErrorCode.MISSING_KEY,
                "ECDH-encrypted key requires an unlocked identity",
                "Use --password-stdin to unlock the identity for ECDH decryption",
            )
        return self._private_key

    @property
    def public_key(self) -> bytes | None:
        return self._public_key

    @property
    def address(self) -> str | None:
        if self._public_key is None:
            return None
        return address_to_hex(public_key_to_address(self._public_key))

    def active_name(self) -> str | None:
        return self._keychain.get(ACTIVE_IDENTITY_NAME)

    def create(self, name: str, password: str) -> bytes:
        """Generate and store a new identity, make it active, return its public key."""
        problem = validate_password(password)
        if problem:
            raise WatchError(ErrorCode.INVALID_ARGUMENT, problem)

        pair = generate_key_pair()
        try:
            blob = create_keystore(name, pair.private_key, pair.public_key, password, n=self._scrypt_n)
        finally:
            wipe(pair.private_key)
        self._keychain.set(keystore_entry(name), blob)
        self._keychain.set(ACTIVE_IDENTITY_NAME, name)
        logger.info("Created identity '%s'", name)
        return pair.public_key

    def unlock(self, password: str, name: str | None = None) -> None:
        name = name or self.active_name()
        if not name:
            raise WatchError(ErrorCode.MISSING_KEY, "No active identity configured")
        blob = self._keychain.get(keystore_entry(name))
        if not blob:
            raise WatchError(ErrorCode.MISSING_KEY, f"No keystore stored for identity '{name}'")

        try:
            payload = parse_keystore(blob, password)
        except KeystoreError as e:
            raise WatchError(ErrorCode.DECRYPTION_FAILED, str(e)) from None

        raw = bytearray(from_hex(payload.private_key))
        if not is_valid_scalar(raw):
            wipe(raw)
            raise WatchError(ErrorCode.DECRYPTION_FAILED, f"Keystore for '{name}' holds an invalid key")

        self.lock()
        self._private_key = raw
        self._public_key = public_key_from_private(raw)
        self.name = name
        logger.info("Unlocked identity '%s'", name)

    def lock(self) -> None:
        if self._private_key is not None:
            wipe(self._private_key)
        self._private_key = None
        self._public_key = None
        self.name = None
