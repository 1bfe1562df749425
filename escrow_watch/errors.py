"""Structured errors with stable codes, exit codes, and retry hints."""

import enum


class ErrorCode(str, enum.Enum):
    INVALID_ARGUMENT = "ERR_INVALID_ARGUMENT"
    MISSING_KEY = "ERR_MISSING_KEY"
    MISSING_RPC = "ERR_MISSING_RPC"
    INVALID_PUBKEY = "ERR_INVALID_PUBKEY"
    COMMITMENT_MISMATCH = "ERR_COMMITMENT_MISMATCH"
    DECRYPTION_FAILED = "ERR_DECRYPTION_FAILED"
    TX_REVERTED = "ERR_TX_REVERTED"
    GAS_TOO_HIGH = "ERR_GAS_TOO_HIGH"
    COMMIT_FAILED = "ERR_COMMIT_FAILED"
    REVEAL_TIMEOUT = "ERR_REVEAL_TIMEOUT"
    CLAIM_TOO_EARLY = "ERR_CLAIM_TOO_EARLY"
    CLAIM_FAILED = "ERR_CLAIM_FAILED"
    FUND_FAILED = "ERR_FUND_FAILED"
    DOWNLOAD_FAILED = "ERR_DOWNLOAD_FAILED"
    NOT_FOUND = "ERR_NOT_FOUND"
    RATE_LIMITED = "ERR_RATE_LIMITED"
    NETWORK_TIMEOUT = "ERR_NETWORK_TIMEOUT"
    API_ERROR = "ERR_API_ERROR"
    SPENDING_LIMIT = "ERR_SPENDING_LIMIT"
    KEYCHAIN_UNAVAILABLE = "ERR_KEYCHAIN_UNAVAILABLE"
    DAEMON_LOCKED = "ERR_DAEMON_LOCKED"
    STATE_CORRUPT = "ERR_STATE_CORRUPT"


class ExitCode(enum.IntEnum):
    OK = 0
    INVALID_ARGUMENT = 1
    MISSING_CREDENTIALS = 2
    CHAIN_ERROR = 3
    NETWORK_ERROR = 4
    SPENDING_LIMIT = 5
    DAEMON_LOCKED = 6
    STATE_CORRUPT = 7


_EXIT_CODES: dict[ErrorCode, ExitCode] = {
    ErrorCode.INVALID_ARGUMENT: ExitCode.INVALID_ARGUMENT,
    ErrorCode.INVALID_PUBKEY: ExitCode.INVALID_ARGUMENT,
    ErrorCode.MISSING_KEY: ExitCode.MISSING_CREDENTIALS,
    ErrorCode.MISSING_RPC: ExitCode.MISSING_CREDENTIALS,
    ErrorCode.DECRYPTION_FAILED: ExitCode.MISSING_CREDENTIALS,
    ErrorCode.COMMITMENT_MISMATCH: ExitCode.CHAIN_ERROR,
    ErrorCode.TX_REVERTED: ExitCode.CHAIN_ERROR,
    ErrorCode.GAS_TOO_HIGH: ExitCode.CHAIN_ERROR,
    ErrorCode.COMMIT_FAILED: ExitCode.CHAIN_ERROR,
    ErrorCode.REVEAL_TIMEOUT: ExitCode.CHAIN_ERROR,
    ErrorCode.CLAIM_TOO_EARLY: ExitCode.CHAIN_ERROR,
    ErrorCode.CLAIM_FAILED: ExitCode.CHAIN_ERROR,
    ErrorCode.FUND_FAILED: ExitCode.CHAIN_ERROR,
    ErrorCode.DOWNLOAD_FAILED: ExitCode.NETWORK_ERROR,
    ErrorCode.NOT_FOUND: ExitCode.NETWORK_ERROR,
    ErrorCode.RATE_LIMITED: ExitCode.NETWORK_ERROR,
    ErrorCode.NETWORK_TIMEOUT: ExitCode.NETWORK_ERROR,
    ErrorCode.API_ERROR: ExitCode.NETWORK_ERROR,
    ErrorCode.SPENDING_LIMIT: ExitCode.SPENDING_LIMIT,
    ErrorCode.KEYCHAIN_UNAVAILABLE: ExitCode.MISSING_CREDENTIALS,
    ErrorCode.DAEMON_LOCKED: ExitCode.DAEMON_LOCKED,
    ErrorCode.STATE_CORRUPT: ExitCode.STATE_CORRUPT,
}

RETRYABLE_CODES = frozenset({
    ErrorCode.NETWORK_TIMEOUT,
    ErrorCode.REVEAL_TIMEOUT,
    ErrorCode.DOWNLOAD_FAILED,
    ErrorCode.COMMIT_FAILED,
    ErrorCode.CLAIM_FAILED,
    ErrorCode.FUND_FAILED,
    ErrorCode.RATE_LIMITED,
    ErrorCode.API_ERROR,
    ErrorCode.GAS_TOO_HIGH,
    ErrorCode.TX_REVERTED,
    ErrorCode.KEYCHAIN_UNAVAILABLE,
})


class WatchError(Exception):
    """Base error for everything the daemon surfaces to an operator."""

    default_code = ErrorCode.API_ERROR

    def __init__(
        self,
        code: ErrorCode | None = None,
        message: str = "",
        suggestion: str | None = None,
    ) -> None:
        self.code = code or self.default_code
        self.message = message or self.code.value
        self.suggestion = suggestion
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return self.code in RETRYABLE_CODES

    @property
    def exit_code(self) -> ExitCode:
        return _EXIT_CODES.get(self.code, ExitCode.NETWORK_ERROR)

    def to_dict(self) -> dict:
        error: dict = {
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.suggestion:
            error["suggestion"] = self.suggestion
        return {"success": False, "error": error}

    def to_human(self) -> str:
        msg = f"error: {self.code.value}: {self.message}"
        if self.suggestion:
            msg += f". {self.suggestion}"
        return msg


class DecryptionFailed(WatchError):
    """AEAD verification failed. Never says why (bad tag, wrong key, short input)."""

    default_code = ErrorCode.DECRYPTION_FAILED

    def __init__(self, message: str = "Decryption failed", suggestion: str | None = None) -> None:
        super().__init__(ErrorCode.DECRYPTION_FAILED, message, suggestion)


class InvalidPublicKey(WatchError):
    default_code = ErrorCode.INVALID_PUBKEY

    def __init__(self, message: str = "Invalid secp256k1 public key") -> None:
        super().__init__(ErrorCode.INVALID_PUBKEY, message)


class StateCorrupt(WatchError):
    default_code = ErrorCode.STATE_CORRUPT

    def __init__(self, message: str = "Watch state file has been tampered with or is corrupted") -> None:
        super().__init__(ErrorCode.STATE_CORRUPT, message, "Run: escrow-watch --reset-state")


class DaemonLocked(WatchError):
    default_code = ErrorCode.DAEMON_LOCKED

    def __init__(self, message: str, suggestion: str | None = None) -> None:
        super().__init__(ErrorCode.DAEMON_LOCKED, message, suggestion)
