"""Service error hierarchy for the mint generation pipeline.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable errors (network, rate limits, timeouts)
- PermanentError: Non-retryable errors (invalid requests, quota, reverts)

Local contract violations (duplicate events, unknown breeds, bad task ids) and
fatal startup errors live here too so callers have a single import point.
"""


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Rate limit exceeded (429)
    - Service unavailable (503)
    - RPC node unreachable
    """

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Invalid request parameters (400)
    - Pinning quota exhausted
    - Transaction reverts
    """

    pass


# Chain-specific errors
class ChainUnavailable(TransientError):
    """RPC endpoint failed or timed out before a transaction was sent."""

    pass


class CommitUnconfirmed(PermanentError):
    """setTokenURI was sent but no receipt arrived in time.

    Never retried: re-sending could write the same token twice.
    """

    def __init__(self, message: str, tx_hash: str | None = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class TransactionReverted(PermanentError):
    """Transaction reverted on-chain."""

    def __init__(self, message: str, tx_hash: str | None = None):
        super().__init__(message)
        self.tx_hash = tx_hash


# Image provider errors
class ProviderError(ServiceError):
    """Marker base for image provider failures."""

    pass


class ProviderRateLimited(TransientError, ProviderError):
    """Provider returned 429."""

    pass


class ProviderTransient(TransientError, ProviderError):
    """Network timeout or 5xx that is likely to clear on its own."""

    pass


class ProviderUnavailable(TransientError, ProviderError):
    """Provider is down or overloaded; retried, then falls back."""

    pass


class ProviderInvalidRequest(PermanentError, ProviderError):
    """Provider rejected the request (bad options, content policy, auth)."""

    pass


# IPFS-specific errors
class IpfsError(ServiceError):
    """Marker base for IPFS upload failures."""

    pass


class IpfsTransient(TransientError, IpfsError):
    """Network timeout, rate limit or service unavailable."""

    pass


class IpfsQuota(PermanentError, IpfsError):
    """Pinning quota or payload limit exceeded (402, 403, 413)."""

    pass


class IpfsAuthError(PermanentError, IpfsError):
    """Authentication failure (401)."""

    pass


class IpfsValidationError(PermanentError, IpfsError):
    """Bad request (400)."""

    pass


# Pipeline errors
class StageTimeout(TransientError):
    """A single stage attempt exceeded its timeout."""

    pass


class StageFailed(ServiceError):
    """A stage gave up; carries a message that is safe to show to clients."""

    def __init__(self, stage: str, user_message: str, cause: Exception | None = None):
        super().__init__(f"{stage}: {user_message}")
        self.stage = stage
        self.user_message = user_message
        self.cause = cause


# Local contract violations
class DuplicateKey(ServiceError):
    """A task already exists for this id or token."""

    pass


class TaskNotFound(ServiceError):
    """No task with the requested id or token."""

    pass


class UnknownBreed(ValueError):
    """Breed is not part of the known set."""

    pass


class InvalidStateTransition(Exception):
    """Raised when a task patch would violate the lifecycle invariants."""

    pass


# Fatal startup errors
class ConfigurationError(ServiceError):
    """Required configuration is missing or malformed."""

    pass


class ChainIdMismatch(ConfigurationError):
    """RPC reports a different chain than CHAIN_ID."""

    pass
