"""
Error taxonomy for the hybrid ECDSA + post-quantum account signer.

Codec, hashing and device errors propagate unchanged to whoever asked for
a signature.  Only fee and gas estimation failures are recovered locally
(see ``OperationBuilder``).
"""

from __future__ import annotations

from typing import Any, Optional


class PQAccountError(Exception):
    """Base class for every error raised by this package."""


class ValidationError(PQAccountError, ValueError):
    """Malformed seed, hex string, length or path.  Raised before any crypto runs."""


# Status words the device uses for "the user said no".
SW_DENIED_BY_USER = 0x6985
SW_USER_REFUSED = 0x5501


class TransportError(PQAccountError, RuntimeError):
    """The secure element answered with a non-success status word."""

    def __init__(self, status_word: int, message: str = "") -> None:
        self.status_word = status_word
        text = f"device returned status 0x{status_word:04x}"
        if message:
            text += f" ({message})"
        super().__init__(text)

    @property
    def is_user_rejection(self) -> bool:
        return self.status_word in (SW_DENIED_BY_USER, SW_USER_REFUSED)


class ProtocolError(PQAccountError, RuntimeError):
    """Response had an unexpected shape: bad header byte, short chunk, bad DER."""


class DeviceBusyError(PQAccountError, RuntimeError):
    """Another caller already owns the device session."""


class RpcError(PQAccountError):
    """JSON-RPC call failed at the HTTP layer or returned an ``error`` object."""

    def __init__(self, message: str, rpc_error: Optional[Any] = None) -> None:
        self.rpc_error = rpc_error
        super().__init__(message)


class EstimationError(RpcError):
    """Bundler gas estimation failed.  Callers fall back to default limits."""


class SubmissionError(RpcError):
    """Bundler rejected the operation.  Never retried automatically."""
