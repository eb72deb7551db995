"""Pydantic models for secret distribution state and operation results.

Two families live here:

* Persisted records (SecretMapping, EnvironmentRecord, SyncEvent,
  ExclusionPattern, QuotaRecord, IdempotencyRecord). Field names are
  snake_case and match the SQLite columns in ``store.py``.
* Operation inputs and results (WriteOutcome, SyncResult, ValidationReport
  and friends). These derive from ``CamelModel`` so the HTTP layer can dump
  them with camelCase keys while Python code keeps snake_case attributes.

Invariants enforced at construction time:
    - secret names match ``^[A-Z][A-Z0-9_]*$``
    - SyncEvent: success_count + failure_count == len(affected_scopes),
      success implies no failures, failure implies no successes
    - ExclusionPattern: global if and only if project_id is None
    - QuotaRecord: 0 <= remaining <= limit
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    computed_field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

SECRET_NAME_PATTERN = re.compile(r"^[A-Z][A-Z0-9_]*$")


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid4())


# =============================================================================
# Enumerations
# =============================================================================


class SyncStatus(str, Enum):
    """Distribution state of a single secret mapping."""

    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"
    CONFLICT = "conflict"


class Operation(str, Enum):
    """Audited operation kinds."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SYNC_ALL = "sync_all"
    VALIDATE = "validate"


class EventStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL = "partial"


class EnvironmentStatus(str, Enum):
    """Environment lifecycle: provisioning -> active | failed."""

    PROVISIONING = "provisioning"
    ACTIVE = "active"
    FAILED = "failed"


class EnvironmentName(str, Enum):
    """Canonical deployment environments."""

    DEV = "dev"
    STAGING = "staging"
    PRODUCTION = "production"


class QuotaType(str, Enum):
    CORE = "core"
    SECRETS = "secrets"
    GRAPHQL = "graphql"


class IdempotencyStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class ScopeKind(str, Enum):
    ACTIONS = "actions"
    CODESPACES = "codespaces"
    DEPENDABOT = "dependabot"
    ENVIRONMENT = "environment"


class WriteStatus(str, Enum):
    WRITTEN = "written"
    SKIPPED = "skipped"
    FAILED = "failed"


class ProvisionOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    # Remote state could not be read
    UNKNOWN = "unknown"


# =============================================================================
# Scopes and keys
# =============================================================================


class Scope(BaseModel):
    """A secret store on the platform.

    Repository-wide scopes are identified by kind alone; environment scopes
    carry the environment name. The string form is ``actions``,
    ``codespaces``, ``dependabot`` or ``environment:<name>``.

    Example:
        >>> Scope.parse("environment:staging").environment
        'staging'
        >>> str(Scope(kind=ScopeKind.ACTIONS))
        'actions'
    """

    model_config = ConfigDict(frozen=True)

    kind: ScopeKind
    environment: str | None = None

    @model_validator(mode="after")
    def _check_environment(self) -> Scope:
        if self.kind is ScopeKind.ENVIRONMENT and not self.environment:
            raise ValueError("environment scope requires an environment name")
        if self.kind is not ScopeKind.ENVIRONMENT and self.environment is not None:
            raise ValueError(f"scope '{self.kind.value}' does not take an environment name")
        return self

    @classmethod
    def parse(cls, value: str | Scope) -> Scope:
        """Parse the string form of a scope.

        Raises:
            ValueError: If the scope is unknown or malformed
        """
        if isinstance(value, Scope):
            return value

        if value.startswith("environment:"):
            return cls(kind=ScopeKind.ENVIRONMENT, environment=value.split(":", 1)[1])

        try:
            kind = ScopeKind(value)
        except ValueError:
            raise ValueError(
                f"Unknown scope '{value}'. Expected one of: actions, codespaces, "
                "dependabot, environment:<name>"
            ) from None

        return cls(kind=kind)

    @classmethod
    def for_environment(cls, name: str | EnvironmentName) -> Scope:
        env = name.value if isinstance(name, EnvironmentName) else name
        return cls(kind=ScopeKind.ENVIRONMENT, environment=env)

    @property
    def is_environment(self) -> bool:
        return self.kind is ScopeKind.ENVIRONMENT

    def __str__(self) -> str:
        if self.kind is ScopeKind.ENVIRONMENT:
            return f"environment:{self.environment}"
        return self.kind.value


GLOBAL_SCOPES: tuple[Scope, ...] = (
    Scope(kind=ScopeKind.ACTIONS),
    Scope(kind=ScopeKind.CODESPACES),
    Scope(kind=ScopeKind.DEPENDABOT),
)


class SecretKey(BaseModel):
    """Classified secret name: base name plus optional environment."""

    model_config = ConfigDict(frozen=True)

    base: str
    environment: EnvironmentName | None = None

    @property
    def is_global(self) -> bool:
        return self.environment is None

    def __str__(self) -> str:
        if self.environment is None:
            return f"{self.base} (global)"
        return f"{self.base} ({self.environment.value})"


def validate_secret_name(name: str) -> str:
    if not SECRET_NAME_PATTERN.match(name):
        raise ValueError(f"secret name '{name}' must match {SECRET_NAME_PATTERN.pattern}")
    return name


# =============================================================================
# Persisted records
# =============================================================================


class ScopeHash(BaseModel):
    """Hash of the value last written to one scope."""

    value_hash: str
    synced_at: datetime


class SecretMapping(BaseModel):
    """Distribution state of one secret within a project.

    Keyed by the original secret name, so ``DATABASE_URL_DEV`` and
    ``DATABASE_URL_STAGING`` are tracked independently. Plaintext is never
    stored; ``scope_hashes`` records what was written where.
    """

    id: str = Field(default_factory=new_id)
    project_id: str
    secret_name: str
    value_hash: str = Field(description="SHA-256 hex digest of the latest value")
    source_scope: str = Field(default="actions", description="Source-of-truth scope")
    target_scopes: list[str] = Field(default_factory=list)
    scope_hashes: dict[str, ScopeHash] = Field(default_factory=dict)
    is_excluded: bool = False
    last_synced_at: datetime | None = None
    sync_status: SyncStatus = SyncStatus.PENDING
    error_message: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    _validate_name = field_validator("secret_name")(validate_secret_name)

    @field_validator("value_hash")
    @classmethod
    def _check_hash(cls, v: str) -> str:
        if not re.fullmatch(r"[0-9a-f]{64}", v):
            raise ValueError("value_hash must be a SHA-256 hex digest")
        return v


class ProtectionRules(BaseModel):
    """Deployment protection policy for an environment."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    required_reviewers: int = Field(default=0, ge=0, le=6)
    reviewer_ids: list[int] = Field(default_factory=list, max_length=6)
    restrict_to_main_branch: bool = False
    wait_timer_minutes: int = Field(default=0, ge=0, le=43200)


class EnvironmentSecret(BaseModel):
    name: str
    last_updated_at: datetime


class EnvironmentRecord(BaseModel):
    """Local view of a deployment environment on the platform."""

    id: str = Field(default_factory=new_id)
    project_id: str
    environment_name: EnvironmentName
    remote_environment_id: int | None = None
    protection_rules: ProtectionRules = Field(default_factory=ProtectionRules)
    secrets: list[EnvironmentSecret] = Field(default_factory=list)
    linked_resources: dict[str, str] = Field(default_factory=dict)
    status: EnvironmentStatus = EnvironmentStatus.PROVISIONING
    error_message: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class SyncEvent(BaseModel):
    """Immutable audit record of one operation."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    project_id: str
    actor_id: str
    operation: Operation
    secret_name: str | None = None
    affected_scopes: list[str] = Field(default_factory=list)
    status: EventStatus
    success_count: int = Field(ge=0)
    failure_count: int = Field(ge=0)
    error_message: str | None = None
    correlation_id: str
    duration_ms: int = Field(default=0, ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def partition_month(self) -> str:
        return self.created_at.strftime("%Y-%m")

    @model_validator(mode="after")
    def _check_counts(self) -> SyncEvent:
        if self.success_count + self.failure_count != len(self.affected_scopes):
            raise ValueError(
                f"success_count ({self.success_count}) + failure_count "
                f"({self.failure_count}) must equal len(affected_scopes) "
                f"({len(self.affected_scopes)})"
            )
        if self.status is EventStatus.SUCCESS and self.failure_count:
            raise ValueError("success event cannot have failures")
        if self.status is EventStatus.FAILURE and self.success_count:
            raise ValueError("failure event cannot have successes")
        if self.status is EventStatus.PARTIAL and not (self.success_count and self.failure_count):
            raise ValueError("partial event needs both successes and failures")
        return self


class ExclusionPattern(BaseModel):
    """Regex that keeps matching secret names from ever being distributed."""

    id: str = Field(default_factory=new_id)
    project_id: str | None = None
    pattern: str
    reason: str = ""
    is_global: bool = False

    @field_validator("pattern")
    @classmethod
    def _check_pattern(cls, v: str) -> str:
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"invalid exclusion pattern '{v}': {e}") from e
        return v

    @model_validator(mode="after")
    def _check_scope(self) -> ExclusionPattern:
        if self.is_global != (self.project_id is None):
            raise ValueError("global patterns have no project_id; project patterns need one")
        return self


class QuotaRecord(BaseModel):
    project_id: str
    quota_type: QuotaType
    remaining: int = Field(ge=0)
    limit: int = Field(ge=0)
    reset_at: datetime
    last_checked_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_remaining(self) -> QuotaRecord:
        if self.remaining > self.limit:
            raise ValueError(f"remaining ({self.remaining}) exceeds limit ({self.limit})")
        return self


class IdempotencyRecord(BaseModel):
    key: str
    payload_checksum: str
    status: IdempotencyStatus = IdempotencyStatus.PENDING
    result: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Operation inputs and results
# =============================================================================


class CamelModel(BaseModel):
    """Base for models exchanged with HTTP and MCP callers."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ScopePublicKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    key_id: str
    key: str = Field(description="Base64-encoded Curve25519 public key")


class EncryptedValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    encrypted_value: str = Field(description="Base64-encoded sealed box")
    key_id: str


class SecretInput(CamelModel):
    """A named secret value supplied by a caller."""

    name: str
    value: SecretStr

    _validate_name = field_validator("name")(validate_secret_name)


class WriteOutcome(CamelModel):
    """Result of writing one secret into one scope."""

    scope: str
    secret_name: str = Field(description="Name written to the scope")
    source_name: str = Field(description="Original name the value came from")
    status: WriteStatus
    value_hash: str
    conflict: bool = False
    dry_run: bool = False
    error: str | None = None
    code: str | None = None


class SyncFailure(CamelModel):
    secret_name: str | None = None
    scope: str | None = None
    environment: str | None = None
    error: str
    code: str


class ProvisionResult(CamelModel):
    environment_name: EnvironmentName
    outcome: ProvisionOutcome
    status: EnvironmentStatus
    errors: list[SyncFailure] = Field(default_factory=list)
    secrets_written: list[str] = Field(default_factory=list)


class EnvironmentSpec(CamelModel):
    """Requested state of one environment."""

    name: EnvironmentName
    protection_rules: ProtectionRules | None = None
    secrets: list[SecretInput] = Field(default_factory=list)
    linked_resources: dict[str, str] = Field(default_factory=dict)


class SyncResult(CamelModel):
    synced_count: int = 0
    skipped_count: int = 0
    failed_count: int = 0
    errors: list[SyncFailure] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    conflicts: list[str] = Field(default_factory=list)
    environments: list[ProvisionResult] = Field(default_factory=list)
    outcomes: list[WriteOutcome] = Field(default_factory=list)
    correlation_id: str
    duration_ms: int = 0
    dry_run: bool = False


class EnvironmentsResult(CamelModel):
    created: list[str] = Field(default_factory=list)
    updated: list[str] = Field(default_factory=list)
    errors: list[SyncFailure] = Field(default_factory=list)
    environments: list[ProvisionResult] = Field(default_factory=list)
    correlation_id: str


class MissingSecret(CamelModel):
    secret_name: str
    scope: str


class SecretConflict(CamelModel):
    secret_name: str
    scopes: list[str]
    value_hashes: dict[str, str] = Field(description="Scope to value hash prefix")


class ValidationSummary(CamelModel):
    total_secrets: int
    missing_count: int
    conflict_count: int
    valid_count: int


class ValidationReport(CamelModel):
    valid: bool
    missing: list[MissingSecret] = Field(default_factory=list)
    conflicts: list[SecretConflict] = Field(default_factory=list)
    summary: ValidationSummary
    remediation_steps: list[str] = Field(default_factory=list)


class SyncStatusReport(CamelModel):
    last_sync_at: datetime | None
    status: Literal["synced", "pending", "error", "never_synced"]
    pending_count: int
    error_count: int
    conflict_count: int = 0
    next_scheduled_sync_at: datetime
    quota_remaining: dict[str, int | None]
