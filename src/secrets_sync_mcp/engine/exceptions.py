"""Exception hierarchy for secret distribution.

Every exception carries a stable ``code`` that the HTTP layer and the CLI
surface to callers. Messages never contain secret values, only names,
scopes and remote status information.

Exception Hierarchy:
    SyncError (base)
    ├── RateLimitExhausted (quota preflight failed, fatal for a batch)
    ├── SecondaryRateLimit (abuse limiter, retry after a pause)
    ├── RemoteApiError (any other unexpected platform response)
    ├── StaleKeyError (platform rejected the key id used for sealing)
    ├── SecretRejected (platform refused the name or body of a secret)
    ├── EncryptionFailure (sealing failed even after a key refresh)
    ├── ScopeUnreachable / ScopeNotConfigured (configuration errors)
    ├── PermissionDenied (token lacks the required permission)
    ├── ReviewerNotFound (environment protection references unknown user)
    ├── ConflictDetected (value diverged from previously distributed value)
    ├── PayloadDivergence / OperationInProgress (idempotency violations)
    ├── InvalidSecretName (name fails the naming rule)
    ├── CredentialMissing (no platform access token configured)
    └── SecretSourceError (secret values cannot be read)

Example:
    >>> try:
    ...     await quota.check_and_reserve(QuotaType.SECRETS, 40)
    ... except RateLimitExhausted as e:
    ...     print(f"Retry after {e.reset_at.isoformat()}")
"""

from __future__ import annotations

from datetime import datetime


class SyncError(Exception):
    """Base exception for all distribution errors.

    Attributes:
        code: Stable machine-readable error code
    """

    code = "GITHUB_SECRETS_SYNC_FAILED"


class RateLimitExhausted(SyncError):
    """Raised when a quota class has fewer calls left than the safety margin.

    Attributes:
        quota_type: Quota class that is exhausted (core, secrets, graphql)
        remaining: Calls remaining in the current window
        limit: Window size
        reset_at: When the window resets
        requested: Number of calls the caller tried to reserve
    """

    code = "GITHUB_SECRETS_RATE_LIMIT_EXHAUSTED"

    def __init__(
        self,
        quota_type: str,
        remaining: int,
        limit: int,
        reset_at: datetime,
        requested: int = 0,
    ) -> None:
        self.quota_type = quota_type
        self.remaining = remaining
        self.limit = limit
        self.reset_at = reset_at
        self.requested = requested

        super().__init__(
            f"Rate limit for '{quota_type}' exhausted: {remaining}/{limit} remaining, "
            f"{requested} requested. Resets at {reset_at.isoformat()}"
        )


class SecondaryRateLimit(SyncError):
    """Raised when the platform's abuse limiter rejects a request.

    Attributes:
        retry_after: Seconds from the Retry-After header, None when absent
            (callers then fall back to their configured pause, 60s by default)
    """

    code = "GITHUB_SECONDARY_RATE_LIMIT"

    def __init__(self, retry_after: float | None = None) -> None:
        self.retry_after = retry_after

        message = "Secondary rate limit hit"
        if retry_after is not None:
            message += f", retry after {retry_after:g}s"
        super().__init__(message)


class RemoteApiError(SyncError):
    """Raised for platform responses not covered by a more specific error.

    Attributes:
        status_code: HTTP status, or None for transport failures
        path: Request path
        details: Message returned by the platform
    """

    code = "GITHUB_API_ERROR"

    def __init__(self, status_code: int | None, path: str, details: str) -> None:
        self.status_code = status_code
        self.path = path
        self.details = details

        status = status_code if status_code is not None else "network"
        super().__init__(f"GitHub API error ({status}) on {path}: {details}")

    @property
    def retryable(self) -> bool:
        """Transport failures, 5xx and 429 are worth another attempt."""
        return self.status_code is None or self.status_code >= 500 or self.status_code == 429


class StaleKeyError(SyncError):
    """Raised when the platform rejects a value sealed with an outdated key."""

    code = "GITHUB_SECRETS_STALE_KEY"

    def __init__(self, scope: str, key_id: str) -> None:
        self.scope = scope
        self.key_id = key_id
        super().__init__(f"Public key '{key_id}' for scope '{scope}' is no longer valid")


class SecretRejected(SyncError):
    """Raised when the platform refuses a secret for reasons other than its key."""

    code = "VALIDATION_ERROR"

    def __init__(self, scope: str, name: str, details: str) -> None:
        self.scope = scope
        self.name = name
        self.details = details
        super().__init__(f"GitHub rejected secret '{name}' in scope '{scope}': {details}")


class EncryptionFailure(SyncError):
    """Raised when a value cannot be sealed for a scope."""

    code = "GITHUB_SECRETS_ENCRYPTION_FAILED"

    def __init__(self, scope: str, details: str) -> None:
        self.scope = scope
        self.details = details
        super().__init__(f"Encryption failed for scope '{scope}': {details}")


class ScopeUnreachable(SyncError):
    """Raised when a scope cannot be reached with the configured repository."""

    code = "GITHUB_SECRETS_CONFIG_ERROR"

    def __init__(self, scope: str, details: str) -> None:
        self.scope = scope
        self.details = details
        super().__init__(f"Scope '{scope}' is unreachable: {details}")


class ScopeNotConfigured(SyncError):
    """Raised when a scope is not enabled for the repository (e.g. Codespaces off)."""

    code = "GITHUB_SECRETS_CONFIG_ERROR"

    def __init__(self, scope: str) -> None:
        self.scope = scope
        super().__init__(f"Scope '{scope}' is not configured for this repository")


class PermissionDenied(SyncError):
    """Raised when the access token lacks permission for an operation."""

    code = "GITHUB_ENV_PERMISSION_DENIED"

    def __init__(self, resource: str, details: str = "") -> None:
        self.resource = resource
        self.details = details

        message = f"Permission denied for '{resource}'"
        if details:
            message += f": {details}"
        super().__init__(message)


class ReviewerNotFound(SyncError):
    """Raised when protection rules reference a reviewer the platform does not know."""

    code = "GITHUB_ENV_REVIEWER_NOT_FOUND"

    def __init__(self, environment: str, reviewer_ids: list[int]) -> None:
        self.environment = environment
        self.reviewer_ids = reviewer_ids

        ids = ", ".join(str(r) for r in reviewer_ids)
        super().__init__(f"Reviewer(s) not found for environment '{environment}': {ids}")


class ConflictDetected(SyncError):
    """Non-fatal: a scope held a different value than the one being distributed.

    Carried inside write outcomes rather than raised through a batch.
    """

    code = "SECRET_VALUE_CONFLICT"

    def __init__(self, secret_name: str, scope: str) -> None:
        self.secret_name = secret_name
        self.scope = scope
        super().__init__(
            f"Secret '{secret_name}' in scope '{scope}' was overwritten with a different value"
        )


class PayloadDivergence(SyncError):
    """Raised when an idempotency key is replayed with a different payload."""

    code = "IDEMPOTENCY_KEY_CONFLICT"

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Idempotency key '{key}' was already used with a different payload")


class OperationInProgress(SyncError):
    """Raised when an idempotency key is held by an operation in another process."""

    code = "IDEMPOTENCY_KEY_IN_PROGRESS"

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Operation for idempotency key '{key}' is still in progress")


class InvalidSecretName(SyncError):
    """Raised when a secret name does not match ``^[A-Z][A-Z0-9_]*$``."""

    code = "VALIDATION_ERROR"

    def __init__(self, name: str, reason: str | None = None) -> None:
        self.name = name
        self.reason = reason or (
            "must start with an uppercase letter and "
            "contain only uppercase letters, digits and underscores"
        )
        super().__init__(f"Invalid secret name '{name}': {self.reason}")


class CredentialMissing(SyncError):
    """Raised when a required credential or setting is absent."""

    code = "GITHUB_SECRETS_CONFIG_ERROR"

    def __init__(self, name: str, hint: str | None = None) -> None:
        self.name = name
        self.hint = hint

        message = f"Required setting '{name}' is not configured"
        if hint:
            message += f". {hint}"
        super().__init__(message)


class SecretSourceError(SyncError):
    """Raised when secret values cannot be read from their source."""

    code = "GITHUB_SECRETS_CONFIG_ERROR"

    def __init__(self, source: str, details: str) -> None:
        self.source = source
        self.details = details
        super().__init__(f"Cannot read secrets from {source}: {details}")


__all__ = [
    "SyncError",
    "RateLimitExhausted",
    "SecondaryRateLimit",
    "RemoteApiError",
    "StaleKeyError",
    "SecretRejected",
    "EncryptionFailure",
    "ScopeUnreachable",
    "ScopeNotConfigured",
    "PermissionDenied",
    "ReviewerNotFound",
    "ConflictDetected",
    "PayloadDivergence",
    "OperationInProgress",
    "InvalidSecretName",
    "CredentialMissing",
    "SecretSourceError",
]
