"""
epochsettle/errors.py

Error taxonomy for settlement and classification of raw ledger errors.

Write-path errors coming back from the ledger (reverts, RPC failures,
receipt timeouts) are mapped onto these classes by classify_error() so
the coordinator can decide between skip, retry and fail.
"""

from typing import Optional


class SettlementError(Exception):
    """Base class for all settlement errors."""

    def __init__(self, message: str = "", cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class AlreadySettled(SettlementError):
    """Range already committed, approved or batch already processed."""


class NotEligible(SettlementError):
    """Distributor outside its commit window, or range not yet confirmed."""


class ProofInvalid(SettlementError):
    """Merkle proof does not verify against the committed root."""


class UpstreamUnavailable(SettlementError):
    """RPC node, analytics store or signing gateway failed or timed out."""


class InsufficientData(SettlementError):
    """No eligible workers or metrics in the window."""


class RangeCollision(SettlementError):
    """Another distributor committed the same range first."""


class ConfigError(ValueError):
    """Invalid configuration value."""


# Revert reason fragments, matched case-insensitively
_COLLISION_MARKERS = (
    "already committed",
    "alreadycommitted",
    "merklerootalreadycommitted",
)
_SETTLED_MARKERS = (
    "already approved",
    "alreadyapproved",
    "already processed",
    "alreadyprocessed",
    "already distributed",
    "batch processed",
)
_NOT_ELIGIBLE_MARKERS = (
    "not allowed",
    "cannot commit",
    "not eligible",
    "notcommitter",
)
_PROOF_MARKERS = (
    "invalid proof",
    "invalidproof",
    "invalid merkle",
)


def classify_error(exc: BaseException) -> SettlementError:
    """
    Map a raw exception onto the settlement taxonomy.

    Already-classified errors pass through unchanged. Anything that is not
    recognised is treated as UpstreamUnavailable so it gets retried on the
    next poll.
    """
    if isinstance(exc, SettlementError):
        return exc

    message = str(exc)
    lowered = message.lower().replace("_", " ")
    compact = lowered.replace(" ", "")

    def matches(markers) -> bool:
        return any(m in lowered or m in compact for m in markers)

    if matches(_COLLISION_MARKERS):
        return RangeCollision(message, cause=exc)
    if matches(_SETTLED_MARKERS):
        return AlreadySettled(message, cause=exc)
    if matches(_NOT_ELIGIBLE_MARKERS):
        return NotEligible(message, cause=exc)
    if matches(_PROOF_MARKERS):
        return ProofInvalid(message, cause=exc)
    return UpstreamUnavailable(message or type(exc).__name__, cause=exc)
