"""Secret distribution engine core components.

Key Components:

- Redactor: Masks credential-shaped substrings before logs and audit records
- NameClassifier: Parses NAME[_DEV|_STAGING|_PROD] and applies exclusions
- QuotaTracker: Per-class rate-limit counters with mandatory preflight
- SealedEncryptor: Per-scope public key cache and sealed-box encryption
- ScopeWriter: Idempotent upsert of one secret into one scope
- EnvironmentProvisioner: dev/staging/production with protection policy
- ConflictValidator: Missing/conflicting report with remediation steps
- IdempotencyGate: At-most-once execution per idempotency key
- AuditRecorder: One immutable SyncEvent per operation
- DistributionEngine: Composes the above into distribution runs
- StateStore: SQLite persistence (WAL) for all of the above
"""

from .audit import AuditRecorder
from .classifier import NameClassifier, global_exclusion_seeds
from .config import SyncConfig, SyncConfigLoader
from .distribution import DistributionEngine, build_engine, parse_targets
from .encryption import SealedEncryptor
from .environments import DEFAULT_PROTECTION, EnvironmentProvisioner
from .exceptions import (
    ConflictDetected,
    CredentialMissing,
    EncryptionFailure,
    InvalidSecretName,
    OperationInProgress,
    PayloadDivergence,
    PermissionDenied,
    RateLimitExhausted,
    RemoteApiError,
    ReviewerNotFound,
    ScopeNotConfigured,
    ScopeUnreachable,
    SecondaryRateLimit,
    SecretRejected,
    SecretSourceError,
    StaleKeyError,
    SyncError,
)
from .github_client import GitHubClient
from .idempotency import (
    GateResult,
    IdempotencyGate,
    IdempotencyStore,
    InMemoryIdempotencyStore,
    SqliteIdempotencyStore,
    payload_checksum,
)
from .models import (
    EnvironmentName,
    EnvironmentSpec,
    EnvironmentsResult,
    Operation,
    ProtectionRules,
    QuotaType,
    Scope,
    SecretInput,
    SecretKey,
    SyncEvent,
    SyncResult,
    SyncStatusReport,
    ValidationReport,
)
from .quota import QuotaTracker
from .redactor import Redactor, RedactingFilter, install_log_redaction
from .sources import DotenvSecretSource, EnvVarSecretSource, SecretSource, collect
from .store import StateStore
from .validator import ConflictValidator
from .writer import ScopeWriter, hash_value

__all__ = [
    # Components
    "AuditRecorder",
    "ConflictValidator",
    "DistributionEngine",
    "EnvironmentProvisioner",
    "GitHubClient",
    "IdempotencyGate",
    "NameClassifier",
    "QuotaTracker",
    "Redactor",
    "RedactingFilter",
    "ScopeWriter",
    "SealedEncryptor",
    "StateStore",
    # Configuration and sources
    "SyncConfig",
    "SyncConfigLoader",
    "SecretSource",
    "EnvVarSecretSource",
    "DotenvSecretSource",
    # Idempotency stores
    "GateResult",
    "IdempotencyStore",
    "InMemoryIdempotencyStore",
    "SqliteIdempotencyStore",
    # Models
    "EnvironmentName",
    "EnvironmentSpec",
    "EnvironmentsResult",
    "Operation",
    "ProtectionRules",
    "QuotaType",
    "Scope",
    "SecretInput",
    "SecretKey",
    "SyncEvent",
    "SyncResult",
    "SyncStatusReport",
    "ValidationReport",
    # Exceptions
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
    # Helpers
    "DEFAULT_PROTECTION",
    "build_engine",
    "collect",
    "global_exclusion_seeds",
    "hash_value",
    "install_log_redaction",
    "parse_targets",
    "payload_checksum",
]
