"""All Pydantic data models for appforge.

Defines the data contracts shared by the resilience layer, the build-error
recovery engine, and the pipeline orchestrator. Backend wire payloads,
client results, classification verdicts, and pipeline events all live here.
"""

from __future__ import annotations

import enum
from datetime import UTC, datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, SecretStr


def _now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class CredentialRole(str, enum.Enum):
    PRIMARY = "primary"
    BACKUP = "backup"


class ClientErrorKind(str, enum.Enum):
    RATE_LIMIT = "rate_limit"
    QUOTA_EXCEEDED = "quota_exceeded"
    NETWORK = "network"
    AUTH = "auth"
    PARSE = "parse"
    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"
    CANCELLED = "cancelled"


class BuildErrorType(str, enum.Enum):
    SYMBOL_NOT_FOUND = "symbol-not-found"
    UNRESOLVED_REFERENCE = "unresolved-reference"
    DUPLICATE_DEFINITION = "duplicate-definition"
    SYNTAX_ERROR = "syntax-error"
    MANIFEST_ERROR = "manifest-error"
    RESOURCE_ERROR = "resource-error"
    DEPENDENCY_ERROR = "dependency-error"
    UNKNOWN = "unknown"


class Severity(str, enum.Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class FixAction(str, enum.Enum):
    REGENERATE_UNIT = "regenerate-unit"
    ADD_MISSING_REFERENCE = "add-missing-reference"
    UPDATE_DEPENDENCIES = "update-dependencies"
    REMOVE_DUPLICATE = "remove-duplicate"
    UPDATE_MANIFEST = "update-manifest"
    CREATE_RESOURCE = "create-resource"
    MANUAL_REVIEW = "manual-review"


class PipelinePhase(str, enum.Enum):
    PLANNING = "planning"
    CODE_GENERATION = "code_generation"
    PROJECT_ADAPTATION = "project_adaptation"
    BUILD = "build"
    ERROR_RECOVERY = "error_recovery"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelinePhase.SUCCEEDED, PipelinePhase.FAILED, PipelinePhase.CANCELLED)


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

class Credential(BaseModel):
    role: CredentialRole
    secret: SecretStr
    failure_count: int = 0
    active: bool = False


class VaultStatus(BaseModel):
    """Non-secret view of the vault for display."""
    primary_configured: bool = False
    primary_masked: str = "***"
    primary_failures: int = 0
    backup_configured: bool = False
    backup_masked: str = "***"
    backup_failures: int = 0
    active_role: CredentialRole = CredentialRole.PRIMARY
    setup_complete: bool = False
    setup_timestamp: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Backend wire schema
# ---------------------------------------------------------------------------

class BackendRequest(BaseModel):
    """Logical request; contents and tools stay opaque structured documents."""
    system_instruction: str = ""
    contents: Any = Field(default_factory=list)
    tools: Any = None
    thinking_budget: Optional[int] = None

    def to_payload(self) -> dict[str, Any]:
        """Render to the backend's generateContent JSON body."""
        payload: dict[str, Any] = {"contents": self.contents}
        if self.system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": self.system_instruction}]}
        if self.tools is not None:
            payload["tools"] = self.tools
        if self.thinking_budget is not None:
            payload["generationConfig"] = {
                "thinkingConfig": {"thinkingBudget": self.thinking_budget},
            }
        return payload


class BackendResponse(BaseModel):
    candidates: Any
    raw: dict[str, Any] = Field(default_factory=dict)

    @property
    def text(self) -> str:
        """Concatenated text parts of the first candidate, if any."""
        if not isinstance(self.candidates, list) or not self.candidates:
            return ""
        first = self.candidates[0]
        if not isinstance(first, dict):
            return ""
        parts = (first.get("content") or {}).get("parts") or []
        return "".join(p.get("text", "") for p in parts if isinstance(p, dict))


class ClientError(BaseModel):
    kind: ClientErrorKind
    code: str
    message: str
    http_status: Optional[int] = None
    retry_after_ms: Optional[int] = None


class SendResult(BaseModel):
    """Tagged result of BackendClient.send: exactly one of response/error is set."""
    response: Optional[BackendResponse] = None
    error: Optional[ClientError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.response is not None

    @classmethod
    def success(cls, response: BackendResponse) -> SendResult:
        return cls(response=response)

    @classmethod
    def failure(
        cls,
        kind: ClientErrorKind,
        code: str,
        message: str,
        http_status: Optional[int] = None,
        retry_after_ms: Optional[int] = None,
    ) -> SendResult:
        return cls(error=ClientError(
            kind=kind,
            code=code,
            message=message,
            http_status=http_status,
            retry_after_ms=retry_after_ms,
        ))


# ---------------------------------------------------------------------------
# Build-error recovery
# ---------------------------------------------------------------------------

class BuildError(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: BuildErrorType
    message: str
    details: str = ""
    severity: Severity = Severity.MEDIUM
    recoverable: bool = False
    excerpt: str = ""  # first 200 chars of the raw build output


class FixSuggestion(BaseModel):
    model_config = ConfigDict(frozen=True)

    error: BuildError
    fix_text: str
    action: FixAction
    confidence: int = Field(ge=0, le=100)


class RetryRecommendation(BaseModel):
    model_config = ConfigDict(frozen=True)

    can_retry: bool
    reason: str
    attempt_number: int


# ---------------------------------------------------------------------------
# Pipeline events (tagged union delivered over the event channel)
# ---------------------------------------------------------------------------

class PhaseStartedEvent(BaseModel):
    kind: Literal["phase_started"] = "phase_started"
    phase: PipelinePhase
    detail: str = ""
    created_at: datetime = Field(default_factory=_now)


class PhaseProgressEvent(BaseModel):
    kind: Literal["phase_progress"] = "phase_progress"
    message: str
    percent: int = Field(ge=0, le=100)
    created_at: datetime = Field(default_factory=_now)


class PhaseCompletedEvent(BaseModel):
    kind: Literal["phase_completed"] = "phase_completed"
    phase: PipelinePhase
    result: Any = None
    created_at: datetime = Field(default_factory=_now)


class PipelineErrorEvent(BaseModel):
    kind: Literal["error"] = "error"
    phase: PipelinePhase
    message: str
    fix_text: Optional[str] = None
    confidence: Optional[int] = None
    build_error: Optional[BuildError] = None
    created_at: datetime = Field(default_factory=_now)


class BuildSucceededEvent(BaseModel):
    kind: Literal["build_success"] = "build_success"
    artifact_location: str
    created_at: datetime = Field(default_factory=_now)


class CancelledEvent(BaseModel):
    kind: Literal["cancelled"] = "cancelled"
    phase: PipelinePhase
    reason: str = "Generation cancelled by user"
    created_at: datetime = Field(default_factory=_now)


PipelineEvent = Annotated[
    Union[
        PhaseStartedEvent,
        PhaseProgressEvent,
        PhaseCompletedEvent,
        PipelineErrorEvent,
        BuildSucceededEvent,
        CancelledEvent,
    ],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Pipeline results
# ---------------------------------------------------------------------------

class BuildOutcome(BaseModel):
    """What the external build toolchain reports for one build attempt."""
    success: bool
    artifact_location: Optional[str] = None
    log: str = ""


class PipelineOutcome(BaseModel):
    phase: PipelinePhase
    build_attempts: int = 0
    artifact_location: Optional[str] = None
    message: str = ""
    error: Optional[BuildError] = None
    suggestion: Optional[FixSuggestion] = None
    recommendation: Optional[RetryRecommendation] = None

    @property
    def succeeded(self) -> bool:
        return self.phase == PipelinePhase.SUCCEEDED


class PipelineStatus(BaseModel):
    phase: PipelinePhase
    build_attempts: int
    max_auto_fix_attempts: int
    cancel_requested: bool = False
