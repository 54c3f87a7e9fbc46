"""
errors.py: the failure taxonomy shared by client and relay.

Every cryptographic failure is terminal for the single message it concerns;
nothing here is retried automatically.
"""


class ShushError(Exception):
    """Base class for every error this package raises."""


class CryptoError(ShushError):
    """Something went wrong inside the hybrid cipher."""


class KeyGenerationFailure(CryptoError):
    """A fresh identity keypair could not be produced; the old one stays current."""


class AuthenticationFailure(CryptoError):
    """The AEAD tag did not verify (tampering, wrong key, or corrupted nonce)."""


class DecodeFailure(ShushError, ValueError):
    """Input had the wrong shape, or decrypted bytes were not valid UTF-8."""


class FrameError(DecodeFailure):
    """A transport frame was oversized or did not contain JSON."""


class RecipientUnavailable(ShushError, LookupError):
    """The addressed identity is not present in the roster."""
