"""Error taxonomy for wallet sessions and shielded transfers.

Every error carries an optional ``context`` dict naming the part, job or
index the failure belongs to, so callers can report partial progress.
"""

from typing import Any, Optional


class ZkWalletError(Exception):
    """Base exception for all wallet errors."""

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}


class ConfigurationError(ZkWalletError):
    """Missing or invalid configuration. Aborts session setup."""

    pass


class UnsupportedNetwork(ConfigurationError):
    """Raised for a network kind without an adapter."""

    pass


class AuthenticationError(ZkWalletError):
    """Credential problem. The caller should re-prompt."""

    pass


class InvalidMnemonic(AuthenticationError):
    """Seed phrase failed BIP-39 checksum validation."""

    pass


class WeakPassword(AuthenticationError):
    """Password shorter than the configured minimum."""

    pass


class IncorrectPassword(AuthenticationError):
    """Stored seed could not be decrypted into a valid mnemonic."""

    pass


class IdentityNotFound(AuthenticationError):
    """No stored seed exists for the identity name."""

    pass


class SessionLocked(ZkWalletError):
    """Operation requires an unlocked session."""

    pass


class ReadinessTimeout(ZkWalletError):
    """Pool state never became ready to transact (StateNotReady)."""

    pass


class InsufficientFunds(ZkWalletError):
    """Fee model reported the shielded balance cannot cover the request."""

    pass


class AmountTooSmall(ZkWalletError):
    """Requested amount cannot be split into any valid transaction."""

    pass


class SubmissionFailure(ZkWalletError):
    """A transaction part failed to submit.

    ``outcome`` holds the jobs that were issued before the failure, already
    awaited, so partial completion stays observable.
    """

    def __init__(
        self,
        message: str,
        outcome: Any = None,
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.outcome = outcome


class IntegrityError(ZkWalletError):
    """Expected ciphertext or ECDH key material is missing for an index."""

    pass
